"""
Reaper / Reminder Service

Periodic sweeps over the persisted orders:

    stale sweep (5 min)     delete pending > 1 h and held orders > 4 h after acceptance
    reminder sweep (30 s)   one reminder per assigned order older than the threshold
    timeout sweep (2 min)   alert admins once per order pending > 5 min
    timeout cleanup (10 min) forget alerts for orders that left pending

Every sweep runs in its own asyncio task started from the application
lifespan and cancelled on shutdown. An iteration that raises is logged and
the loop keeps going. Deletions are irreversible; their notifications are
best-effort.

Version: 1.0.0
"""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.core.timeutils import minutes_between, utcnow
from courier_dispatch.models import AdminSetting, Order, OrderStatus
from courier_dispatch.services.orders import OrderLifecycleManager
from courier_dispatch.services.tracking import OrderTracking

logger = logging.getLogger(__name__)

REMINDER_SETTING_KEY = "order_reminder_minutes"


async def run_periodic(name: str, interval: float, job: Callable[[], Awaitable[object]]) -> None:
    """Run ``job`` every ``interval`` seconds until cancelled."""
    logger.info(f"⏱️ Background loop '{name}' started (every {interval:g}s)")
    try:
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Background loop '{name}' iteration failed")
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info(f"Background loop '{name}' stopped")
        raise


class ReaperService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        lifecycle: OrderLifecycleManager,
        tracking: OrderTracking,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.dispatcher = lifecycle.dispatcher
        self.tracking = tracking
        self.settings = settings or get_settings()
        self._tasks: list[asyncio.Task] = []

    # =========================================================================
    # STALE ORDERS
    # =========================================================================

    async def sweep_stale_orders(self, db: AsyncSession) -> list[int]:
        now = utcnow()
        pending_cutoff = now - timedelta(minutes=self.settings.pending_order_ttl_minutes)
        held_cutoff = now - timedelta(minutes=self.settings.assigned_order_ttl_minutes)

        result = await db.execute(
            select(Order).where(
                (
                    (Order.status == OrderStatus.PENDING) & (Order.created_at < pending_cutoff)
                ) | (
                    Order.status.in_((OrderStatus.ASSIGNED, OrderStatus.AWAITING_APPROVAL))
                    & (Order.accepted_at < held_cutoff)
                )
            )
        )
        stale = list(result.scalars().all())
        deleted: list[int] = []

        for order in stale:
            snapshot = OrderLifecycleManager._status_event(order)
            held_by = order.courier_id if order.status != OrderStatus.PENDING else None
            was_pending = order.status == OrderStatus.PENDING

            # Only delete if nobody moved the order since it was read.
            outcome = await db.execute(
                delete(Order).where(Order.id == order.id, Order.status == order.status)
            )
            await db.commit()
            if outcome.rowcount != 1:
                continue

            deleted.append(snapshot["orderId"])
            self.tracking.forget(snapshot["orderId"])
            reason = "expired_pending" if was_pending else "expired_assigned"
            logger.info(f"🗑️ Reaper deleted order #{snapshot['orderId']} ({reason})")

            try:
                await self.lifecycle.announce_deletion(db, snapshot, held_by, reason=reason)
            except Exception as e:
                logger.error(f"❌ Deletion notice for order #{snapshot['orderId']} failed: {e}")

        return deleted

    # =========================================================================
    # REMINDERS
    # =========================================================================

    async def reminder_minutes(self, db: AsyncSession) -> int:
        """Admin override from admin_settings, else the configured default."""
        setting = await db.get(AdminSetting, REMINDER_SETTING_KEY)
        if setting is not None and setting.value:
            try:
                minutes = int(setting.value)
                if minutes > 0:
                    return minutes
            except ValueError:
                logger.warning(f"Ignoring invalid {REMINDER_SETTING_KEY}={setting.value!r}")
        return self.settings.order_reminder_minutes

    async def sweep_reminders(self, db: AsyncSession) -> list[int]:
        minutes = await self.reminder_minutes(db)
        now = utcnow()

        result = await db.execute(select(Order).where(Order.status == OrderStatus.ASSIGNED))
        assigned = list(result.scalars().all())

        # Entries for orders no longer assigned are dropped.
        still_assigned = {o.id for o in assigned}
        self.tracking.reminded.intersection_update(still_assigned)
        self.tracking.trim_reminders()

        cutoff = now - timedelta(minutes=minutes)
        reminded: list[int] = []
        for order in assigned:
            if order.accepted_at is None or order.accepted_at >= cutoff:
                continue
            if not self.tracking.mark_reminded(order.id):
                continue

            elapsed = minutes_between(order.accepted_at, now)
            payload = {
                "orderId": order.id,
                "restaurantId": order.restaurant_id,
                "restaurantName": order.restaurant_name,
                "neighborhood": order.neighborhood,
                "minutesSinceAccepted": elapsed,
            }
            try:
                await self.dispatcher.notify_courier(
                    db, order.courier_id, "order_reminder", payload,
                    title="Delivery reminder",
                    body=f"Order #{order.id} ({order.neighborhood}) was accepted {elapsed} minutes ago",
                    push_data={"orderId": order.id},
                )
            except Exception as e:
                logger.error(f"❌ Reminder for order #{order.id} failed: {e}")
            reminded.append(order.id)

        if reminded:
            logger.info(f"⏰ Sent {len(reminded)} delivery reminder(s)")
        return reminded

    # =========================================================================
    # PENDING TIMEOUTS
    # =========================================================================

    async def sweep_pending_timeouts(self, db: AsyncSession) -> list[int]:
        now = utcnow()
        cutoff = now - timedelta(minutes=self.settings.pending_timeout_minutes)
        result = await db.execute(
            select(Order).where(Order.status == OrderStatus.PENDING, Order.created_at < cutoff)
        )

        alerted: list[int] = []
        for order in result.scalars().all():
            if not self.tracking.mark_timeout_reported(order.id):
                continue
            waiting = minutes_between(order.created_at, now)
            payload = {
                "orderId": order.id,
                "restaurantId": order.restaurant_id,
                "restaurantName": order.restaurant_name,
                "neighborhood": order.neighborhood,
                "waitingMinutes": waiting,
            }
            try:
                await self.dispatcher.notify_admins(
                    db, "orderTimeoutAlert", payload,
                    title="Order waiting for a courier",
                    body=f"Order #{order.id} from {order.restaurant_name} has been pending for {waiting} minutes",
                    push_data={"orderId": order.id, "restaurantId": order.restaurant_id},
                )
            except Exception as e:
                logger.error(f"❌ Timeout alert for order #{order.id} failed: {e}")
            alerted.append(order.id)

        if alerted:
            logger.warning(f"⚠️ {len(alerted)} order(s) pending longer than {self.settings.pending_timeout_minutes} min")
        return alerted

    async def cleanup_timeout_tracking(self, db: AsyncSession) -> int:
        if not self.tracking.timeout_reported:
            return 0
        result = await db.execute(
            select(Order.id).where(
                Order.id.in_(list(self.tracking.timeout_reported)),
                Order.status == OrderStatus.PENDING,
            )
        )
        still_pending = set(result.scalars().all())
        removed = self.tracking.timeout_reported - still_pending
        self.tracking.timeout_reported.intersection_update(still_pending)
        return len(removed)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def _with_session(self, sweep: Callable[[AsyncSession], Awaitable[object]]):
        async def job():
            async with self.session_factory() as db:
                return await sweep(db)
        return job

    def start(self) -> None:
        if self._tasks:
            return
        s = self.settings
        loops = [
            ("stale-orders", s.stale_sweep_interval_seconds, self.sweep_stale_orders),
            ("order-reminders", s.reminder_sweep_interval_seconds, self.sweep_reminders),
            ("pending-timeouts", s.timeout_sweep_interval_seconds, self.sweep_pending_timeouts),
            ("timeout-tracking", s.timeout_cleanup_interval_seconds, self.cleanup_timeout_tracking),
        ]
        for name, interval, sweep in loops:
            self._tasks.append(asyncio.create_task(
                run_periodic(name, interval, self._with_session(sweep)), name=name
            ))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.tracking.clear()

    @property
    def running(self) -> bool:
        return bool(self._tasks)
