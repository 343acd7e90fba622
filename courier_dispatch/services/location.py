"""
Location Relay

Accepts courier positions for the order the courier is currently carrying.

    1. coordinates must be in range
    2. courier must exist and not be blocked
    3. order must be assigned to that courier, in ``assigned`` status,
       and belong to the given restaurant

Anything failing validation is dropped silently (logged only) so that the
sender learns nothing about other couriers' assignments. Accepted updates
are persisted at most once per ``location_persist_interval_seconds`` per
courier and fanned out live to the owning restaurant and the admins, with
bursts inside ``location_fanout_dedupe_seconds`` collapsed.

Version: 1.0.0
"""

import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.core.timeutils import utcnow
from courier_dispatch.models import Courier, Order, OrderStatus
from courier_dispatch.realtime.registry import (
    ADMINS_ROOM,
    ConnectionRegistry,
    restaurant_room,
)

logger = logging.getLogger(__name__)


class LocationResult(str, enum.Enum):
    PERSISTED = "persisted"        # stored and relayed
    RELAYED = "relayed"            # relayed, persist throttled
    DEDUPED = "deduped"            # inside the burst window, nothing sent
    INVALID_COORDINATES = "invalid_coordinates"
    COURIER_REJECTED = "courier_rejected"
    NOT_ASSIGNED = "not_assigned"

    @property
    def accepted(self) -> bool:
        return self in (LocationResult.PERSISTED, LocationResult.RELAYED, LocationResult.DEDUPED)


@dataclass
class LocationUpdate:
    courier_id: int
    order_id: int
    restaurant_id: int
    latitude: float
    longitude: float


def valid_coordinates(latitude: Any, longitude: Any) -> bool:
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


class LocationRelay:
    """Throttle state lives here; create one per process."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.settings = settings or get_settings()
        self.clock = clock
        self._last_persist: dict[int, float] = {}
        self._last_fanout: dict[int, float] = {}

    async def handle(self, db: AsyncSession, update_: LocationUpdate) -> LocationResult:
        if not valid_coordinates(update_.latitude, update_.longitude):
            logger.warning(
                f"Location from courier #{update_.courier_id} dropped: invalid coordinates "
                f"({update_.latitude}, {update_.longitude})"
            )
            return LocationResult.INVALID_COORDINATES

        lat = float(update_.latitude)
        lng = float(update_.longitude)

        courier = await db.get(Courier, update_.courier_id)
        if courier is None or courier.is_blocked:
            logger.warning(f"Location from courier #{update_.courier_id} dropped: unknown or blocked")
            return LocationResult.COURIER_REJECTED

        order_restaurant = await db.scalar(
            select(Order.restaurant_id).where(
                Order.id == update_.order_id,
                Order.courier_id == update_.courier_id,
                Order.status == OrderStatus.ASSIGNED,
            )
        )
        if order_restaurant is None or order_restaurant != update_.restaurant_id:
            logger.warning(
                f"Location from courier #{update_.courier_id} dropped: order #{update_.order_id} "
                f"not assigned to it for restaurant #{update_.restaurant_id}"
            )
            return LocationResult.NOT_ASSIGNED

        now = self.clock()
        persisted = False
        last_persist = self._last_persist.get(courier.id)
        if last_persist is None or now - last_persist >= self.settings.location_persist_interval_seconds:
            await db.execute(
                update(Courier)
                .where(Courier.id == courier.id)
                .values(
                    latitude=lat,
                    longitude=lng,
                    location_updated_at=utcnow(),
                    is_online=True,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            self._last_persist[courier.id] = now
            persisted = True
            logger.debug(f"📍 Courier #{courier.id} location stored: {lat}, {lng}")

        last_fanout = self._last_fanout.get(courier.id)
        if last_fanout is not None and now - last_fanout < self.settings.location_fanout_dedupe_seconds:
            return LocationResult.PERSISTED if persisted else LocationResult.DEDUPED
        self._last_fanout[courier.id] = now

        payload = {
            "courierId": courier.id,
            "orderId": update_.order_id,
            "restaurantId": update_.restaurant_id,
            "latitude": lat,
            "longitude": lng,
            "courierName": courier.name,
            "courierPhone": courier.phone,
            "timestamp": utcnow().isoformat(),
        }
        await self.registry.emit(restaurant_room(update_.restaurant_id), "locationUpdate", payload)
        await self.registry.emit(ADMINS_ROOM, "courierLocationUpdate", payload)

        return LocationResult.PERSISTED if persisted else LocationResult.RELAYED

    def cleanup_cache(self) -> int:
        """Evict couriers idle longer than the cache TTL; returns entries removed."""
        now = self.clock()
        ttl = self.settings.throttle_cache_ttl_seconds
        stale = [
            courier_id
            for courier_id in set(self._last_persist) | set(self._last_fanout)
            if now - max(self._last_persist.get(courier_id, -math.inf),
                         self._last_fanout.get(courier_id, -math.inf)) > ttl
        ]
        for courier_id in stale:
            self._last_persist.pop(courier_id, None)
            self._last_fanout.pop(courier_id, None)
        if stale:
            logger.debug(f"Location throttle cache: evicted {len(stale)} courier(s)")
        return len(stale)

    def forget(self, courier_id: int) -> None:
        self._last_persist.pop(courier_id, None)
        self._last_fanout.pop(courier_id, None)

    def clear(self) -> None:
        self._last_persist.clear()
        self._last_fanout.clear()
