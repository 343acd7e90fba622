"""
Preference Resolver

Bidirectional targeting between restaurants and couriers:

1. Restaurant side: ``all_couriers`` keeps every non-blocked courier,
   ``selected_couriers`` keeps only the couriers the restaurant selected.
2. Courier side: ``all_restaurants`` keeps the courier, ``selected_restaurants``
   keeps it only if it selected this restaurant.

The eligible set is the intersection. A restaurant in ``selected_couriers``
mode with nothing selected falls back to every non-blocked courier so that
its orders are never orphaned.

Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.core.errors import NotFoundError
from courier_dispatch.models import (
    Courier,
    CourierRestaurantPreference,
    NotificationMode,
    Order,
    Restaurant,
    RestaurantCourierPreference,
    VisibilityMode,
)

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    courier_ids: list[int]
    fallback: bool = False


class PreferenceResolver:
    """Reads and writes the two preference directions."""

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def resolve_couriers_for_order(self, db: AsyncSession, restaurant_id: int) -> Resolution:
        restaurant = await db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant #{restaurant_id} not found")

        if restaurant.courier_visibility_mode == VisibilityMode.SELECTED_COURIERS:
            result = await db.execute(
                select(Courier)
                .join(RestaurantCourierPreference, RestaurantCourierPreference.courier_id == Courier.id)
                .where(
                    RestaurantCourierPreference.restaurant_id == restaurant_id,
                    RestaurantCourierPreference.is_selected.is_(True),
                    Courier.is_blocked.is_(False),
                )
            )
            candidates = list(result.scalars().all())

            if not candidates:
                # Flagged for product review: may hide a misconfigured restaurant.
                fallback = await self._active_courier_ids(db)
                logger.warning(
                    f"Restaurant #{restaurant_id} selects couriers but has none selected; "
                    f"falling back to all {len(fallback)} active couriers"
                )
                return Resolution(courier_ids=fallback, fallback=True)
        else:
            result = await db.execute(select(Courier).where(Courier.is_blocked.is_(False)))
            candidates = list(result.scalars().all())

        opted_in = await self._couriers_selecting_restaurant(db, restaurant_id)
        eligible = [
            c.id for c in candidates
            if c.notification_mode == NotificationMode.ALL_RESTAURANTS or c.id in opted_in
        ]
        logger.debug(
            f"Restaurant #{restaurant_id}: {len(eligible)}/{len(candidates)} candidate couriers eligible"
        )
        return Resolution(courier_ids=sorted(eligible))

    async def filter_orders_for_courier(
        self, db: AsyncSession, courier: Courier, orders: Iterable[Order]
    ) -> list[Order]:
        """Keep the orders whose restaurant and the courier both allow the pairing."""
        orders = list(orders)
        restaurant_ids = {o.restaurant_id for o in orders}
        if not restaurant_ids:
            return []

        result = await db.execute(select(Restaurant).where(Restaurant.id.in_(restaurant_ids)))
        restaurants = {r.id: r for r in result.scalars().all()}

        result = await db.execute(
            select(RestaurantCourierPreference.restaurant_id, RestaurantCourierPreference.courier_id)
            .where(
                RestaurantCourierPreference.restaurant_id.in_(restaurant_ids),
                RestaurantCourierPreference.is_selected.is_(True),
            )
        )
        selections: dict[int, set[int]] = {}
        for restaurant_id, courier_id in result.all():
            selections.setdefault(restaurant_id, set()).add(courier_id)

        courier_selected = await self._restaurants_selected_by(db, courier.id)

        visible = []
        for order in orders:
            restaurant = restaurants.get(order.restaurant_id)
            if restaurant is None:
                continue

            if restaurant.courier_visibility_mode == VisibilityMode.SELECTED_COURIERS:
                chosen = selections.get(restaurant.id, set())
                if not chosen:
                    visible.append(order)  # same fallback as resolution
                    continue
                if courier.id not in chosen:
                    continue

            if (courier.notification_mode == NotificationMode.SELECTED_RESTAURANTS
                    and order.restaurant_id not in courier_selected):
                continue
            visible.append(order)
        return visible

    # =========================================================================
    # READ / UPDATE
    # =========================================================================

    async def get_courier_preferences(self, db: AsyncSession, courier_id: int) -> dict:
        courier = await db.get(Courier, courier_id)
        if courier is None:
            raise NotFoundError(f"Courier #{courier_id} not found")
        return {
            "notification_mode": courier.notification_mode,
            "selected_restaurant_ids": sorted(await self._restaurants_selected_by(db, courier_id)),
        }

    async def update_courier_preferences(
        self,
        db: AsyncSession,
        courier_id: int,
        mode: NotificationMode,
        restaurant_ids: Optional[Iterable[int]] = None,
    ) -> dict:
        """Replace the courier's selection set; ``all_restaurants`` clears it."""
        courier = await db.get(Courier, courier_id)
        if courier is None:
            raise NotFoundError(f"Courier #{courier_id} not found")

        ids = sorted(set(restaurant_ids or ())) if mode == NotificationMode.SELECTED_RESTAURANTS else []
        if ids:
            await self._require_all(db, Restaurant, ids, "Restaurant")

        courier.notification_mode = mode
        await db.execute(
            delete(CourierRestaurantPreference).where(CourierRestaurantPreference.courier_id == courier_id)
        )
        db.add_all([
            CourierRestaurantPreference(courier_id=courier_id, restaurant_id=rid, is_selected=True)
            for rid in ids
        ])
        await db.commit()

        logger.info(f"Courier #{courier_id} preferences: {mode.value}, {len(ids)} restaurant(s)")
        return {"notification_mode": mode, "selected_restaurant_ids": ids}

    async def get_restaurant_preferences(self, db: AsyncSession, restaurant_id: int) -> dict:
        restaurant = await db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant #{restaurant_id} not found")
        result = await db.execute(
            select(RestaurantCourierPreference.courier_id).where(
                RestaurantCourierPreference.restaurant_id == restaurant_id,
                RestaurantCourierPreference.is_selected.is_(True),
            )
        )
        return {
            "courier_visibility_mode": restaurant.courier_visibility_mode,
            "selected_courier_ids": sorted(result.scalars().all()),
        }

    async def update_restaurant_preferences(
        self,
        db: AsyncSession,
        restaurant_id: int,
        mode: VisibilityMode,
        courier_ids: Optional[Iterable[int]] = None,
    ) -> dict:
        """Replace the restaurant's selection set; ``all_couriers`` clears it."""
        restaurant = await db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant #{restaurant_id} not found")

        ids = sorted(set(courier_ids or ())) if mode == VisibilityMode.SELECTED_COURIERS else []
        if ids:
            await self._require_all(db, Courier, ids, "Courier")

        restaurant.courier_visibility_mode = mode
        await db.execute(
            delete(RestaurantCourierPreference)
            .where(RestaurantCourierPreference.restaurant_id == restaurant_id)
        )
        db.add_all([
            RestaurantCourierPreference(restaurant_id=restaurant_id, courier_id=cid, is_selected=True)
            for cid in ids
        ])
        await db.commit()

        logger.info(f"Restaurant #{restaurant_id} preferences: {mode.value}, {len(ids)} courier(s)")
        return {"courier_visibility_mode": mode, "selected_courier_ids": ids}

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _active_courier_ids(self, db: AsyncSession) -> list[int]:
        result = await db.execute(
            select(Courier.id).where(Courier.is_blocked.is_(False)).order_by(Courier.id)
        )
        return list(result.scalars().all())

    async def _couriers_selecting_restaurant(self, db: AsyncSession, restaurant_id: int) -> set[int]:
        result = await db.execute(
            select(CourierRestaurantPreference.courier_id).where(
                CourierRestaurantPreference.restaurant_id == restaurant_id,
                CourierRestaurantPreference.is_selected.is_(True),
            )
        )
        return set(result.scalars().all())

    async def _restaurants_selected_by(self, db: AsyncSession, courier_id: int) -> set[int]:
        result = await db.execute(
            select(CourierRestaurantPreference.restaurant_id).where(
                CourierRestaurantPreference.courier_id == courier_id,
                CourierRestaurantPreference.is_selected.is_(True),
            )
        )
        return set(result.scalars().all())

    async def _require_all(self, db: AsyncSession, model, ids: list[int], label: str) -> None:
        result = await db.execute(select(model.id).where(model.id.in_(ids)))
        missing = set(ids) - set(result.scalars().all())
        if missing:
            raise NotFoundError(f"{label}(s) not found: {sorted(missing)}")
