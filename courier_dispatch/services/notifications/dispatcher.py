"""
Notification Dispatcher

Routes every notifiable event either over the live channel or as a push
message, never both:

    recipient online  -> live event only
    recipient offline -> push message to the recipient's active token

Bulk fan-out tracks per-recipient outcomes; a failing recipient never
aborts the batch and push failures are never raised to the caller.

Version: 1.0.0
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.models import PushToken, UserRole
from courier_dispatch.realtime.registry import (
    ADMINS_ROOM,
    ConnectionRegistry,
    restaurant_room,
)
from courier_dispatch.services.notifications.base import BasePushService, PushMessage

logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    """How a single recipient was reached."""
    user_id: int
    channel: str  # live, push, none
    success: bool
    error: Optional[str] = None


@dataclass
class BroadcastResult:
    live_sent: int = 0
    push_sent: int = 0
    push_failed: int = 0
    unreachable: int = 0
    details: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.details)

    def record(self, outcome: DeliveryOutcome) -> None:
        self.details.append(outcome)
        if outcome.channel == "live":
            self.live_sent += 1
        elif outcome.channel == "push" and outcome.success:
            self.push_sent += 1
        elif outcome.channel == "push":
            self.push_failed += 1
        else:
            self.unreachable += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "liveSent": self.live_sent,
            "pushSent": self.push_sent,
            "pushFailed": self.push_failed,
            "unreachable": self.unreachable,
            "total": self.total,
        }


class NotificationDispatcher:
    """Presence-aware live/push router."""

    def __init__(self, registry: ConnectionRegistry, push_service: BasePushService):
        self.registry = registry
        self.push_service = push_service

    # =========================================================================
    # TOKENS
    # =========================================================================

    async def latest_push_token(
        self, db: AsyncSession, user_id: int, user_type: str
    ) -> Optional[PushToken]:
        result = await db.execute(
            select(PushToken)
            .where(
                PushToken.user_id == user_id,
                PushToken.user_type == user_type,
                PushToken.is_active.is_(True),
            )
            .order_by(PushToken.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _active_tokens(
        self, db: AsyncSession, user_type: str, user_ids: Iterable[int]
    ) -> dict[int, PushToken]:
        ids = list(user_ids)
        if not ids:
            return {}
        result = await db.execute(
            select(PushToken).where(
                PushToken.user_type == user_type,
                PushToken.user_id.in_(ids),
                PushToken.is_active.is_(True),
            )
        )
        return {token.user_id: token for token in result.scalars().all()}

    # =========================================================================
    # SINGLE RECIPIENT
    # =========================================================================

    async def notify_user(
        self,
        db: AsyncSession,
        role: str,
        user_id: int,
        event: str,
        payload: dict[str, Any],
        title: str,
        body: str,
        push_data: Optional[dict[str, Any]] = None,
    ) -> DeliveryOutcome:
        if self.registry.is_online(role, user_id):
            if role == UserRole.RESTAURANT.value:
                delivered = await self.registry.emit(restaurant_room(user_id), event, payload) > 0
            else:
                delivered = await self.registry.send_to_user(role, user_id, event, payload)
            if delivered:
                return DeliveryOutcome(user_id=user_id, channel="live", success=True)
            logger.info(f"Live delivery of '{event}' to {role} #{user_id} failed, falling back to push")

        token = await self.latest_push_token(db, user_id, role)
        if token is None:
            logger.debug(f"No active push token for {role} #{user_id}; '{event}' not delivered")
            return DeliveryOutcome(user_id=user_id, channel="none", success=False, error="no_token")

        result = await self.push_service.send(PushMessage(
            to=token.token,
            title=title,
            body=body,
            data={"type": event, **(push_data or {})},
            platform=token.platform,
        ))
        if not result.success:
            logger.warning(f"Push '{event}' to {role} #{user_id} failed: {result.error_message}")
        return DeliveryOutcome(
            user_id=user_id,
            channel="push",
            success=result.success,
            error=result.error_message,
        )

    async def notify_courier(self, db: AsyncSession, courier_id: int, event: str,
                             payload: dict[str, Any], title: str, body: str,
                             push_data: Optional[dict[str, Any]] = None) -> DeliveryOutcome:
        return await self.notify_user(
            db, UserRole.COURIER.value, courier_id, event, payload, title, body, push_data
        )

    async def notify_restaurant(self, db: AsyncSession, restaurant_id: int, event: str,
                                payload: dict[str, Any], title: str, body: str,
                                push_data: Optional[dict[str, Any]] = None) -> DeliveryOutcome:
        return await self.notify_user(
            db, UserRole.RESTAURANT.value, restaurant_id, event, payload, title, body, push_data
        )

    # =========================================================================
    # BULK
    # =========================================================================

    async def broadcast(
        self,
        db: AsyncSession,
        role: str,
        user_ids: Iterable[int],
        event: str,
        payload: dict[str, Any],
        title: str,
        body: str,
        push_data: Optional[dict[str, Any]] = None,
        exclude_tokens: Optional[set[str]] = None,
    ) -> BroadcastResult:
        """
        Live event to every online target, one push batch for the rest.

        Tokens in ``exclude_tokens`` are skipped (a courier app logged in on
        the sending restaurant's device).
        """
        result = BroadcastResult()
        offline: list[int] = []

        for user_id in dict.fromkeys(user_ids):
            if self.registry.is_online(role, user_id):
                if await self.registry.send_to_user(role, user_id, event, payload):
                    result.record(DeliveryOutcome(user_id=user_id, channel="live", success=True))
                    continue
            offline.append(user_id)

        tokens = await self._active_tokens(db, role, offline)
        excluded = exclude_tokens or set()
        messages: list[PushMessage] = []
        recipients: list[int] = []

        for user_id in offline:
            token = tokens.get(user_id)
            if token is None or token.token in excluded:
                result.record(DeliveryOutcome(
                    user_id=user_id,
                    channel="none",
                    success=False,
                    error="no_token" if token is None else "shared_device",
                ))
                continue
            recipients.append(user_id)
            messages.append(PushMessage(
                to=token.token,
                title=title,
                body=body,
                data={"type": event, **(push_data or {})},
                platform=token.platform,
            ))

        if messages:
            try:
                push_results = await self.push_service.send_many(messages)
            except Exception as e:
                logger.error(f"Push batch for '{event}' failed: {e}")
                push_results = []
            for index, user_id in enumerate(recipients):
                if index < len(push_results):
                    pr = push_results[index]
                    result.record(DeliveryOutcome(
                        user_id=user_id, channel="push", success=pr.success, error=pr.error_message
                    ))
                else:
                    result.record(DeliveryOutcome(
                        user_id=user_id, channel="push", success=False, error="batch_failed"
                    ))

        logger.info(
            f"Broadcast '{event}' to {result.total} {role}(s): "
            f"{result.live_sent} live, {result.push_sent} push, "
            f"{result.push_failed} push failed, {result.unreachable} unreachable"
        )
        return result

    async def notify_admins(
        self,
        db: AsyncSession,
        event: str,
        payload: dict[str, Any],
        title: Optional[str] = None,
        body: Optional[str] = None,
        push_data: Optional[dict[str, Any]] = None,
    ) -> BroadcastResult:
        """
        Emit to the admin room; with a title, offline admins also get a push.
        """
        await self.registry.emit(ADMINS_ROOM, event, payload)
        if title is None:
            return BroadcastResult()

        result = await db.execute(
            select(PushToken.user_id).where(
                PushToken.user_type == UserRole.ADMIN.value,
                PushToken.is_active.is_(True),
            )
        )
        admin_ids = [
            uid for uid in result.scalars().all()
            if not self.registry.is_online(UserRole.ADMIN.value, uid)
        ]
        return await self.broadcast(
            db, UserRole.ADMIN.value, admin_ids, event, payload,
            title, body or "", push_data,
        )

    async def emit(self, room: str, event: str, payload: Any = None) -> int:
        return await self.registry.emit(room, event, payload)
