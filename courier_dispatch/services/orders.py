"""
Order Lifecycle Manager

Owns the order state machine. Every transition is a single conditional
UPDATE guarded on the expected current status, so concurrent requests
resolve to exactly one winner without application-level locks:

    pending  --accept/assign-->  assigned
    assigned --deliver (online, gift card)-->  delivered
    assigned --deliver (cash, card)-->  awaiting_approval --approve--> delivered
    assigned --cancel-->  pending

Ownership: restaurants mutate only their own orders, couriers only the
orders they currently hold; admins bypass ownership checks.

Notifications are best-effort: they run after the commit and a failure is
logged, never propagated to the caller.

Version: 1.0.0
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.core.errors import (
    AuthorizationError,
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
    OrderAlreadyTakenError,
)
from courier_dispatch.core.security import Actor
from courier_dispatch.core.timeutils import utcnow
from courier_dispatch.models import (
    Courier,
    Order,
    OrderStatus,
    PushToken,
    Restaurant,
    UserRole,
    requires_approval,
)
from courier_dispatch.realtime.registry import COURIERS_ROOM
from courier_dispatch.services.notifications.dispatcher import (
    BroadcastResult,
    NotificationDispatcher,
)
from courier_dispatch.services.preferences import PreferenceResolver
from courier_dispatch.services.tracking import OrderTracking

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AcceptOutcome:
    accepted: list[Order] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)


class OrderLifecycleManager:
    """Guarded transitions plus the reads the apps poll."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        resolver: PreferenceResolver,
        tracking: OrderTracking,
    ):
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.tracking = tracking

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_order(
        self, db: AsyncSession, actor: Actor, data: dict[str, Any]
    ) -> tuple[Order, BroadcastResult]:
        if actor.is_restaurant:
            restaurant_id = actor.user_id
        elif actor.is_admin:
            restaurant_id = data.get("restaurant_id")
            if not restaurant_id:
                raise DispatchError("restaurant_id is required when an admin creates an order")
        else:
            raise AuthorizationError("Only restaurants and admins can create orders")

        restaurant = await db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant #{restaurant_id} not found")

        fields = {k: v for k, v in data.items() if k != "restaurant_id" and hasattr(Order, k)}
        order = Order(
            **fields,
            restaurant_id=restaurant.id,
            restaurant_name=restaurant.name,
            status=OrderStatus.PENDING,
            created_at=utcnow(),
        )
        db.add(order)
        await db.commit()
        await db.refresh(order)

        logger.info(f"📦 Order #{order.id} created by restaurant #{restaurant.id} ({order.neighborhood})")

        result = await self._best_effort(
            self.broadcast_new_order(db, order), f"new-order broadcast for #{order.id}"
        )
        await self._best_effort(
            self.dispatcher.notify_admins(db, "orderStatusUpdate", self._status_event(order)),
            f"admin update for #{order.id}",
        )
        return order, result or BroadcastResult()

    async def broadcast_new_order(self, db: AsyncSession, order: Order) -> BroadcastResult:
        """Offer a pending order to every eligible courier (live or push)."""
        resolution = await self.resolver.resolve_couriers_for_order(db, order.restaurant_id)

        # A courier app signed in on the restaurant's own device must not ring.
        result = await db.execute(
            select(PushToken.token).where(
                PushToken.user_id == order.restaurant_id,
                PushToken.user_type == UserRole.RESTAURANT.value,
                PushToken.is_active.is_(True),
            )
        )
        exclude = set(result.scalars().all())

        return await self.dispatcher.broadcast(
            db,
            UserRole.COURIER.value,
            resolution.courier_ids,
            "new_order",
            order.to_dict(),
            title=f"New order - {order.restaurant_name or 'Restaurant'}",
            body=f"New order for {order.neighborhood or 'your area'}. Fee: {order.courier_fee:.2f} TL",
            push_data={"orderId": order.id, "restaurantId": order.restaurant_id},
            exclude_tokens=exclude,
        )

    # =========================================================================
    # ACCEPT / ASSIGN
    # =========================================================================

    async def accept_orders(
        self,
        db: AsyncSession,
        actor: Actor,
        order_ids: list[int],
        courier_id: Optional[int] = None,
    ) -> AcceptOutcome:
        """
        Accept several pending orders for one courier.

        Each order is its own conditional update and commit; a lost race on
        one order is reported in ``failed`` and never retried.
        """
        courier = await self._courier_for_action(db, actor, courier_id)
        courier_id, courier_name = courier.id, courier.name
        outcome = AcceptOutcome()

        for order_id in dict.fromkeys(order_ids):
            try:
                order = await self.accept_order(db, courier, order_id, notify=False)
            except DispatchError as e:
                outcome.failed.append((order_id, e.error_code))
                continue
            outcome.accepted.append(order)

        for order in outcome.accepted:
            await self._after_accept(db, order, courier_id, courier_name)

        logger.info(
            f"Courier #{courier_id} accepted {len(outcome.accepted)} order(s), "
            f"{len(outcome.failed)} failed"
        )
        return outcome

    async def accept_order(
        self, db: AsyncSession, courier: Courier, order_id: int, notify: bool = True
    ) -> Order:
        """
        Raises:
            OrderAlreadyTakenError: another courier won the race
            NotFoundError: no such order
        """
        courier_id, courier_name = courier.id, courier.name
        now = utcnow()
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .values(
                status=OrderStatus.ASSIGNED,
                courier_id=courier_id,
                accepted_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._raise_missing_or_taken(db, order_id)

        await db.execute(
            update(Courier)
            .where(Courier.id == courier_id)
            .values(total_packages=Courier.total_packages + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        order = await self._reload(db, order_id)
        self.tracking.forget(order_id)
        logger.info(f"✅ Order #{order_id} accepted by courier #{courier_id}")

        if notify:
            await self._after_accept(db, order, courier_id, courier_name)
        return order

    async def assign_courier(
        self, db: AsyncSession, actor: Actor, order_id: int, courier_id: int
    ) -> Order:
        """Hand a pending order to a specific courier (admin or owning restaurant)."""
        order = await self._load(db, order_id)
        self._require_restaurant_or_admin(actor, order)

        courier = await db.get(Courier, courier_id)
        if courier is None:
            raise NotFoundError(f"Courier #{courier_id} not found")
        if courier.is_blocked:
            raise AuthorizationError(f"Courier #{courier_id} is blocked")

        if order.status != OrderStatus.PENDING:
            raise OrderAlreadyTakenError(order_id)

        order = await self.accept_order(db, courier, order_id, notify=False)
        await self._best_effort(
            self.dispatcher.notify_courier(
                db, courier.id, "new_order_assigned", order.to_dict(),
                title="New order assigned",
                body=f"Order #{order.id} from {order.restaurant_name} was assigned to you",
                push_data={"orderId": order.id, "restaurantId": order.restaurant_id},
            ),
            f"assignment notice for #{order.id}",
        )
        await self._after_accept(db, order, courier.id, courier.name, notify_restaurant=actor.is_admin)
        return order

    # =========================================================================
    # DELIVER / APPROVE
    # =========================================================================

    async def deliver_order(self, db: AsyncSession, actor: Actor, order_id: int) -> Order:
        order = await self._load(db, order_id)
        if not actor.is_admin and not (actor.is_courier and order.courier_id == actor.user_id):
            raise AuthorizationError(f"Order #{order_id} is not held by this courier")
        if order.status != OrderStatus.ASSIGNED:
            raise InvalidTransitionError(
                f"Order #{order_id} cannot be delivered from status '{order.status.value}'"
            )

        needs_approval = requires_approval(order.payment_method)
        now = utcnow()
        values: dict[str, Any] = {"delivered_at": now, "updated_at": now}
        if needs_approval:
            values["status"] = OrderStatus.AWAITING_APPROVAL
        else:
            values["status"] = OrderStatus.DELIVERED
            values["approved_at"] = now

        result = await db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.ASSIGNED,
                Order.courier_id == order.courier_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._end_unchanged(db)
            raise InvalidTransitionError(f"Order #{order_id} changed state during delivery")
        await db.commit()

        order = await self._reload(db, order_id)
        self.tracking.forget(order_id)
        courier_name = await self._courier_name(db, order.courier_id)
        payload = {**self._status_event(order), "courierName": courier_name}

        if needs_approval:
            logger.info(f"📬 Order #{order_id} delivered, awaiting restaurant approval")
            await self._best_effort(
                self.dispatcher.notify_restaurant(
                    db, order.restaurant_id, "delivery:needs-approval", payload,
                    title="Delivery approval needed",
                    body=f"{courier_name} delivered order #{order.id}. Please confirm the payment.",
                    push_data={"orderId": order.id, "courierId": order.courier_id},
                ),
                f"approval request for #{order_id}",
            )
        else:
            logger.info(f"🎉 Order #{order_id} delivered ({order.payment_method}, no approval needed)")
            await self._best_effort(
                self.dispatcher.notify_restaurant(
                    db, order.restaurant_id, "delivery:completed", payload,
                    title="Order delivered",
                    body=f"Order #{order.id} was delivered by {courier_name}",
                    push_data={"orderId": order.id, "courierId": order.courier_id},
                ),
                f"delivery notice for #{order_id}",
            )
            await self._best_effort(
                self.dispatcher.registry.send_to_user(
                    UserRole.COURIER.value, order.courier_id, "order_delivered", payload
                ),
                f"courier delivery confirmation for #{order_id}",
            )

        await self._best_effort(
            self.dispatcher.notify_admins(db, "orderStatusUpdate", payload),
            f"admin update for #{order_id}",
        )
        return order

    async def approve_delivery(self, db: AsyncSession, actor: Actor, order_id: int) -> Order:
        order = await self._load(db, order_id)
        self._require_restaurant_or_admin(actor, order)
        if order.status != OrderStatus.AWAITING_APPROVAL:
            raise InvalidTransitionError(
                f"Order #{order_id} is not awaiting approval (status '{order.status.value}')"
            )

        now = utcnow()
        result = await db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.AWAITING_APPROVAL,
                Order.restaurant_id == order.restaurant_id,
            )
            .values(status=OrderStatus.DELIVERED, approved_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._end_unchanged(db)
            raise InvalidTransitionError(f"Order #{order_id} was already approved")
        await db.commit()

        order = await self._reload(db, order_id)
        logger.info(f"👍 Order #{order_id} approved by {actor.role} #{actor.user_id}")
        payload = self._status_event(order)

        if order.courier_id:
            await self._best_effort(
                self.dispatcher.notify_courier(
                    db, order.courier_id, "order_approved", payload,
                    title="Delivery approved",
                    body=f"{order.restaurant_name} approved order #{order.id}",
                    push_data={"orderId": order.id, "restaurantId": order.restaurant_id},
                ),
                f"approval notice for #{order_id}",
            )
        await self._best_effort(
            self.dispatcher.emit(COURIERS_ROOM, "orderStatusUpdate", payload),
            f"courier pool update for #{order_id}",
        )
        await self._best_effort(
            self.dispatcher.notify_admins(db, "orderStatusUpdate", payload),
            f"admin update for #{order_id}",
        )
        return order

    # =========================================================================
    # CANCEL / DELETE
    # =========================================================================

    async def cancel_order(
        self, db: AsyncSession, actor: Actor, order_id: int, reason: Optional[str] = None
    ) -> Order:
        """Return an assigned order to the pending pool."""
        order = await self._load(db, order_id)

        if actor.is_courier:
            if order.courier_id != actor.user_id:
                raise AuthorizationError(f"Order #{order_id} is not held by this courier")
        elif actor.is_restaurant:
            if order.restaurant_id != actor.user_id:
                raise AuthorizationError(f"Order #{order_id} belongs to another restaurant")
        elif not actor.is_admin:
            raise AuthorizationError("Not allowed to cancel orders")

        if order.status != OrderStatus.ASSIGNED:
            raise InvalidTransitionError(
                f"Order #{order_id} cannot be cancelled from status '{order.status.value}'"
            )

        held_by = order.courier_id
        result = await db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.ASSIGNED,
                Order.courier_id == held_by,
            )
            .values(
                status=OrderStatus.PENDING,
                courier_id=None,
                accepted_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._end_unchanged(db)
            raise InvalidTransitionError(f"Order #{order_id} changed state during cancellation")
        await db.commit()

        order = await self._reload(db, order_id)
        self.tracking.forget(order_id)
        courier_name = await self._courier_name(db, held_by)
        reason = reason or "No reason given"
        logger.info(f"↩️ Order #{order_id} cancelled by {actor.role} #{actor.user_id}, back in pool")

        payload = {
            **self._status_event(order),
            "courierId": held_by,
            "courierName": courier_name,
            "reason": reason,
            "cancelledBy": actor.role,
        }

        if actor.is_courier:
            await self._best_effort(
                self.dispatcher.notify_restaurant(
                    db, order.restaurant_id, "orderCancelled", payload,
                    title="Order cancelled by courier",
                    body=f"{courier_name} cancelled order #{order.id}. It is back in the pool.",
                    push_data={"orderId": order.id, "courierId": held_by},
                ),
                f"cancel notice for #{order_id}",
            )
        elif held_by is not None:
            await self._best_effort(
                self.dispatcher.notify_courier(
                    db, held_by, "order_cancelled", payload,
                    title="Order cancelled",
                    body=f"Order #{order.id} from {order.restaurant_name} was cancelled",
                    push_data={"orderId": order.id, "restaurantId": order.restaurant_id},
                ),
                f"cancel notice for #{order_id}",
            )

        await self._best_effort(
            self.dispatcher.emit(COURIERS_ROOM, "orderStatusUpdate", payload),
            f"courier pool update for #{order_id}",
        )
        await self._best_effort(self.broadcast_new_order(db, order), f"re-broadcast of #{order_id}")
        await self._best_effort(
            self.dispatcher.notify_admins(db, "orderStatusUpdate", payload),
            f"admin update for #{order_id}",
        )
        return order

    async def delete_order(self, db: AsyncSession, actor: Actor, order_id: int) -> None:
        order = await self._load(db, order_id)
        self._require_restaurant_or_admin(actor, order)

        snapshot = self._status_event(order)
        held_by = order.courier_id if order.status in (OrderStatus.ASSIGNED, OrderStatus.AWAITING_APPROVAL) else None

        await db.execute(delete(Order).where(Order.id == order_id))
        await db.commit()
        self.tracking.forget(order_id)
        logger.info(f"🗑️ Order #{order_id} deleted by {actor.role} #{actor.user_id}")

        await self.announce_deletion(db, snapshot, held_by, reason="deleted", notify_restaurant=actor.is_admin)

    async def announce_deletion(
        self,
        db: AsyncSession,
        snapshot: dict[str, Any],
        held_by: Optional[int],
        reason: str,
        notify_restaurant: bool = True,
    ) -> None:
        """Tell everyone who could still be looking at a removed order."""
        payload = {**snapshot, "reason": reason, "timestamp": now_ms()}
        order_id = snapshot["orderId"]

        await self._best_effort(
            self.dispatcher.emit(COURIERS_ROOM, "orderDeleted", payload),
            f"courier pool deletion notice for #{order_id}",
        )
        if held_by is not None:
            await self._best_effort(
                self.dispatcher.notify_courier(
                    db, held_by, "orderDeleted", payload,
                    title="Order removed",
                    body=f"Order #{order_id} was removed ({reason})",
                    push_data={"orderId": order_id},
                ),
                f"courier deletion notice for #{order_id}",
            )
        if notify_restaurant:
            await self._best_effort(
                self.dispatcher.notify_restaurant(
                    db, snapshot["restaurantId"], "orderDeleted", payload,
                    title="Order removed",
                    body=f"Order #{order_id} was removed ({reason})",
                    push_data={"orderId": order_id},
                ),
                f"restaurant deletion notice for #{order_id}",
            )
        await self._best_effort(
            self.dispatcher.notify_admins(db, "orderDeleted", payload),
            f"admin deletion notice for #{order_id}",
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, db: AsyncSession, actor: Actor, order_id: int) -> Order:
        order = await self._load(db, order_id)
        if actor.is_restaurant and order.restaurant_id != actor.user_id:
            raise AuthorizationError(f"Order #{order_id} belongs to another restaurant")
        if actor.is_courier and order.status != OrderStatus.PENDING and order.courier_id != actor.user_id:
            raise AuthorizationError(f"Order #{order_id} is held by another courier")
        return order

    async def get_active_orders(self, db: AsyncSession, courier_id: int) -> list[Order]:
        result = await db.execute(
            select(Order)
            .where(Order.courier_id == courier_id, Order.status == OrderStatus.ASSIGNED)
            .order_by(Order.accepted_at.desc())
        )
        return list(result.scalars().all())

    async def get_available_orders(self, db: AsyncSession, courier_id: int) -> list[Order]:
        """Pending orders this courier may see under both preference directions."""
        courier = await db.get(Courier, courier_id)
        if courier is None:
            raise NotFoundError(f"Courier #{courier_id} not found")
        if courier.is_blocked:
            return []
        result = await db.execute(
            select(Order).where(Order.status == OrderStatus.PENDING).order_by(Order.created_at.desc())
        )
        return await self.resolver.filter_orders_for_courier(db, courier, result.scalars().all())

    async def get_restaurant_orders(self, db: AsyncSession, restaurant_id: int) -> list[Order]:
        result = await db.execute(
            select(Order)
            .where(
                Order.restaurant_id == restaurant_id,
                Order.status.in_((OrderStatus.PENDING, OrderStatus.ASSIGNED)),
            )
            .order_by(Order.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_pending_approval_orders(self, db: AsyncSession, actor: Actor) -> list[Order]:
        query = select(Order).where(Order.status == OrderStatus.AWAITING_APPROVAL)
        if actor.is_restaurant:
            query = query.where(Order.restaurant_id == actor.user_id)
        elif actor.is_courier:
            query = query.where(Order.courier_id == actor.user_id)
        result = await db.execute(query.order_by(Order.delivered_at.desc()))
        return list(result.scalars().all())

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _after_accept(
        self,
        db: AsyncSession,
        order: Order,
        courier_id: int,
        courier_name: str,
        notify_restaurant: bool = True,
    ) -> None:
        payload = {
            **self._status_event(order),
            "courierId": courier_id,
            "courierName": courier_name,
        }
        if notify_restaurant:
            await self._best_effort(
                self.dispatcher.notify_restaurant(
                    db, order.restaurant_id, "orderStatusUpdate", payload,
                    title="Order accepted",
                    body=f"{courier_name} accepted order #{order.id}",
                    push_data={"orderId": order.id, "courierId": courier_id},
                ),
                f"accept notice for #{order.id}",
            )
        await self._best_effort(
            self.dispatcher.emit(COURIERS_ROOM, "orderStatusUpdate", payload),
            f"courier pool update for #{order.id}",
        )
        await self._best_effort(
            self.dispatcher.notify_admins(db, "orderStatusUpdate", payload),
            f"admin update for #{order.id}",
        )

    async def _courier_for_action(
        self, db: AsyncSession, actor: Actor, courier_id: Optional[int]
    ) -> Courier:
        if actor.is_courier:
            if courier_id is not None and courier_id != actor.user_id:
                raise AuthorizationError("Couriers can only accept orders for themselves")
            courier_id = actor.user_id
        elif not actor.is_admin:
            raise AuthorizationError("Only couriers can accept orders")
        if courier_id is None:
            raise DispatchError("courier_id is required")

        courier = await db.get(Courier, courier_id)
        if courier is None:
            raise NotFoundError(f"Courier #{courier_id} not found")
        if courier.is_blocked:
            raise AuthorizationError(f"Courier #{courier_id} is blocked")
        return courier

    def _require_restaurant_or_admin(self, actor: Actor, order: Order) -> None:
        if actor.is_admin:
            return
        if actor.is_restaurant and order.restaurant_id == actor.user_id:
            return
        raise AuthorizationError(f"Order #{order.id} belongs to another restaurant")

    async def _raise_missing_or_taken(self, db: AsyncSession, order_id: int) -> None:
        exists = await db.scalar(select(Order.id).where(Order.id == order_id))
        await self._end_unchanged(db)
        if exists is None:
            raise NotFoundError(f"Order #{order_id} not found")
        logger.info(f"Order #{order_id} already taken; accept rejected")
        raise OrderAlreadyTakenError(order_id)

    @staticmethod
    async def _end_unchanged(db: AsyncSession) -> None:
        # A guarded UPDATE that matched no rows wrote nothing. Committing ends the
        # transaction without expiring the instances the caller still holds.
        await db.commit()

    async def _load(self, db: AsyncSession, order_id: int) -> Order:
        order = await self._reload(db, order_id)
        if order is None:
            raise NotFoundError(f"Order #{order_id} not found")
        return order

    async def _reload(self, db: AsyncSession, order_id: int) -> Optional[Order]:
        result = await db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _courier_name(self, db: AsyncSession, courier_id: Optional[int]) -> str:
        if courier_id is None:
            return "Courier"
        name = await db.scalar(select(Courier.name).where(Courier.id == courier_id))
        return name or f"Courier #{courier_id}"

    @staticmethod
    def _status_event(order: Order) -> dict[str, Any]:
        return {
            "orderId": order.id,
            "restaurantId": order.restaurant_id,
            "courierId": order.courier_id,
            "status": order.status.value,
            "neighborhood": order.neighborhood,
            "timestamp": now_ms(),
        }

    @staticmethod
    async def _best_effort(awaitable: Awaitable, what: str):
        try:
            return await awaitable
        except Exception as e:
            logger.error(f"❌ {what} failed: {e}")
            return None
