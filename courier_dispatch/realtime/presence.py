"""
Presence Guard

Coordinates the three places where "who is connected" matters:

- the login layer: a new login supersedes every active session of the same
  (user, role) and any live connection bound to one gets ``forceLogout``;
- the connection registry: one live connection per account, the previous
  one is closed when the same account joins again;
- the persisted online flag of couriers, flipped on join, disconnect and
  block, with admins told about every change.

Disconnecting never touches order state.

Version: 1.0.0
"""

import logging
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.core.errors import NotFoundError
from courier_dispatch.core.timeutils import minutes_between, utcnow
from courier_dispatch.models import ActiveSession, Courier, Order, OrderStatus, Restaurant, UserRole
from courier_dispatch.realtime.connection import LiveConnection
from courier_dispatch.realtime.registry import (
    ADMINS_ROOM,
    COURIERS_ROOM,
    RESTAURANTS_ROOM,
    ConnectionRegistry,
    courier_room,
    restaurant_room,
)
from courier_dispatch.services.notifications.dispatcher import NotificationDispatcher
from courier_dispatch.services.sessions import LoginResult, SessionService

logger = logging.getLogger(__name__)

# WebSocket close codes (4000-4999 are application defined)
CLOSE_REPLACED = 4000
CLOSE_LOGGED_OUT = 4001
CLOSE_REJECTED = 4003
CLOSE_HEARTBEAT = 4008


class PresenceGuard:
    def __init__(
        self,
        registry: ConnectionRegistry,
        sessions: SessionService,
        dispatcher: NotificationDispatcher,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.sessions = sessions
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    # =========================================================================
    # AUTHENTICATION LAYER
    # =========================================================================

    async def login(
        self,
        db: AsyncSession,
        email: str,
        password: str,
        role: UserRole,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        result = await self.sessions.login(db, email, password, role, device_info, ip_address)
        await self.force_logout(
            result.superseded_socket_ids,
            reason="LOGGED_IN_ELSEWHERE",
            message="Your account was signed in on another device",
        )
        return result

    async def logout(self, db: AsyncSession, token: str) -> None:
        socket_id = await self.sessions.logout(db, token)
        if socket_id:
            await self.force_logout([socket_id], reason="LOGGED_OUT", message="Signed out")

    async def authenticate_token(self, db: AsyncSession, token: Optional[str]) -> ActiveSession:
        return await self.sessions.validate(db, token)

    async def force_logout(self, socket_ids: list[str], reason: str, message: str) -> int:
        """Send ``forceLogout`` to the given connections and close them."""
        closed = 0
        for socket_id in socket_ids:
            connection = self.registry.get(socket_id)
            if connection is None:
                continue
            await self.registry.send(connection, "forceLogout", {"reason": reason, "message": message})
            await connection.close(code=CLOSE_LOGGED_OUT, reason=reason)
            await self._drop(connection)
            closed += 1
        if closed:
            logger.info(f"🚪 Forced logout of {closed} live connection(s): {reason}")
        return closed

    # =========================================================================
    # JOIN
    # =========================================================================

    async def join_courier(
        self,
        db: AsyncSession,
        connection: LiveConnection,
        courier_id: Optional[int] = None,
        device_info: Optional[str] = None,
    ) -> bool:
        courier_id = courier_id or connection.user_id
        if connection.role != UserRole.COURIER.value or courier_id != connection.user_id:
            await self._reject(connection, "IDENTITY_MISMATCH", "Token does not belong to this courier", courierId=courier_id)
            return False

        courier = await db.get(Courier, courier_id)
        if courier is None:
            await self._reject(connection, "COURIER_NOT_FOUND", "Courier not found", courierId=courier_id)
            return False
        if courier.is_blocked:
            await self._reject(
                connection, "ACCOUNT_BLOCKED",
                "Your account is blocked. Please contact an administrator.",
                courierId=courier_id,
            )
            return False

        await self._replace_previous(connection)
        self.registry.join(connection, COURIERS_ROOM)
        self.registry.join(connection, courier_room(courier_id))

        if not courier.is_online or courier.last_online_at is None:
            courier.last_online_at = utcnow()
        courier.is_online = True
        await db.commit()
        await self.sessions.bind_socket(db, connection.session_token, connection.id)

        logger.info(f"🛵 Courier #{courier_id} online ({device_info or 'unknown device'})")
        await self._announce(db, "courierOnlineStatusChanged", {
            "courierId": courier_id,
            "isOnline": True,
            "totalOnline": len(self.registry.online_ids(UserRole.COURIER.value)),
            "courierName": courier.name,
            "deviceInfo": device_info,
        })
        await self.registry.send(connection, "connectionSuccess", {
            "message": "Connected",
            "courierId": courier_id,
            "serverTime": utcnow().isoformat(),
            "pingInterval": int(self.settings.heartbeat_interval_seconds * 1000),
        })
        return True

    async def join_restaurant(
        self, db: AsyncSession, connection: LiveConnection, restaurant_id: Optional[int] = None
    ) -> bool:
        restaurant_id = restaurant_id or connection.user_id
        if connection.role != UserRole.RESTAURANT.value or restaurant_id != connection.user_id:
            await self._reject(connection, "IDENTITY_MISMATCH", "Token does not belong to this restaurant", restaurantId=restaurant_id)
            return False

        restaurant = await db.get(Restaurant, restaurant_id)
        if restaurant is None:
            await self._reject(connection, "RESTAURANT_NOT_FOUND", "Restaurant not found", restaurantId=restaurant_id)
            return False

        await self._replace_previous(connection)
        self.registry.join(connection, RESTAURANTS_ROOM)
        self.registry.join(connection, restaurant_room(restaurant_id))
        await self.sessions.bind_socket(db, connection.session_token, connection.id)

        logger.info(f"🏪 Restaurant #{restaurant_id} online")
        await self._announce(db, "restaurantOnlineStatusChanged", {
            "restaurantId": restaurant_id,
            "isOnline": True,
            "totalOnline": len(self.registry.online_ids(UserRole.RESTAURANT.value)),
            "restaurantName": restaurant.name,
        })
        await self.registry.send(connection, "connectionSuccess", {
            "message": "Connected",
            "restaurantId": restaurant_id,
            "serverTime": utcnow().isoformat(),
            "pingInterval": int(self.settings.heartbeat_interval_seconds * 1000),
        })
        return True

    async def join_admin(self, db: AsyncSession, connection: LiveConnection) -> bool:
        if connection.role != UserRole.ADMIN.value:
            await self._reject(connection, "IDENTITY_MISMATCH", "Admin role required")
            return False

        await self._replace_previous(connection)
        self.registry.join(connection, ADMINS_ROOM)
        await self.sessions.bind_socket(db, connection.session_token, connection.id)
        await self.registry.send(connection, "connectionSuccess", {
            "message": "Connected",
            "adminId": connection.user_id,
            "serverTime": utcnow().isoformat(),
        })
        await self.registry.send(connection, "onlineStats", self.online_stats())
        return True

    def online_stats(self) -> dict:
        return {
            **self.registry.stats(),
            "onlineCourierIds": self.registry.online_ids(UserRole.COURIER.value),
            "onlineRestaurantIds": self.registry.online_ids(UserRole.RESTAURANT.value),
        }

    # =========================================================================
    # DISCONNECT / BLOCK / HEARTBEAT
    # =========================================================================

    async def disconnect(self, db: AsyncSession, connection: LiveConnection) -> None:
        """Presence cleanup for a closed connection. Idempotent."""
        entry = self.registry.remove(connection)
        if entry is None:
            return

        if connection.role == UserRole.COURIER.value:
            courier = await db.get(Courier, connection.user_id)
            if courier is not None:
                now = utcnow()
                if courier.last_online_at is not None:
                    courier.total_online_minutes += max(0, minutes_between(courier.last_online_at, now))
                courier.is_online = False
                courier.last_online_at = None
                await db.commit()
            logger.info(f"🛵 Courier #{connection.user_id} offline")
            await self._announce(db, "courierOnlineStatusChanged", {
                "courierId": connection.user_id,
                "isOnline": False,
                "totalOnline": len(self.registry.online_ids(UserRole.COURIER.value)),
            })
        elif connection.role == UserRole.RESTAURANT.value:
            logger.info(f"🏪 Restaurant #{connection.user_id} offline")
            await self._announce(db, "restaurantOnlineStatusChanged", {
                "restaurantId": connection.user_id,
                "isOnline": False,
                "totalOnline": len(self.registry.online_ids(UserRole.RESTAURANT.value)),
            })

    async def block_courier(self, db: AsyncSession, courier_id: int, blocked: bool = True) -> Courier:
        courier = await db.get(Courier, courier_id)
        if courier is None:
            raise NotFoundError(f"Courier #{courier_id} not found")

        courier.is_blocked = blocked
        if blocked:
            courier.is_online = False
        await db.commit()

        if blocked:
            await self.sessions.invalidate_user_sessions(db, courier_id, UserRole.COURIER)
            connection = self.registry.connection_for(UserRole.COURIER.value, courier_id)
            if connection is not None:
                await self.registry.send(connection, "forceLogout", {
                    "reason": "ACCOUNT_BLOCKED",
                    "message": "Your account is blocked. Please contact an administrator.",
                })
                await connection.close(code=CLOSE_REJECTED, reason="ACCOUNT_BLOCKED")
                self.registry.remove(connection)

        logger.info(f"⛔ Courier #{courier_id} {'blocked' if blocked else 'unblocked'}")
        await self._announce(db, "courierOnlineStatusChanged", {
            "courierId": courier_id,
            "isOnline": courier.is_online,
            "isBlocked": blocked,
            "totalOnline": len(self.registry.online_ids(UserRole.COURIER.value)),
        })
        return courier

    async def heartbeat_sweep(self) -> list[LiveConnection]:
        """Ping every connection; drop those that missed too many pings."""
        dropped = []
        for connection in self.registry.connections():
            if connection.missed_heartbeats >= self.settings.max_missed_heartbeats:
                logger.warning(f"💔 {connection!r} missed {connection.missed_heartbeats} heartbeats; dropping")
                await connection.close(code=CLOSE_HEARTBEAT, reason="heartbeat timeout")
                await self._drop(connection)
                dropped.append(connection)
                continue
            if await self.registry.send(connection, "server-ping", {"timestamp": int(time.time() * 1000)}):
                connection.missed_heartbeats += 1
            else:
                await self._drop(connection)
                dropped.append(connection)
        return dropped

    async def live_couriers(self, db: AsyncSession, restaurant_id: Optional[int] = None) -> list[dict]:
        """Online couriers with a known position, optionally only those carrying a restaurant's orders."""
        ids = self.registry.online_ids(UserRole.COURIER.value)
        if not ids:
            return []
        query = select(Courier).where(
            Courier.id.in_(ids),
            Courier.latitude.is_not(None),
            Courier.longitude.is_not(None),
        )
        if restaurant_id is not None:
            query = query.where(Courier.id.in_(
                select(Order.courier_id).where(
                    Order.restaurant_id == restaurant_id,
                    Order.status == OrderStatus.ASSIGNED,
                )
            ))
        result = await db.execute(query)
        return [c.to_dict() for c in result.scalars().all()]

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _replace_previous(self, connection: LiveConnection) -> None:
        previous = self.registry.bind_identity(connection)
        if previous is None:
            return
        logger.info(f"🔄 {connection.role} #{connection.user_id} reconnected; closing {previous!r}")
        await self.registry.send(previous, "forceLogout", {
            "reason": "DUPLICATE_CONNECTION",
            "message": "This account connected from another device",
        })
        await previous.close(code=CLOSE_REPLACED, reason="replaced by a newer connection")
        self.registry.remove(previous)

    async def _reject(self, connection: LiveConnection, reason: str, message: str, **extra) -> None:
        logger.warning(f"Join rejected for {connection!r}: {reason}")
        await self.registry.send(connection, "connectionRejected", {"reason": reason, "message": message, **extra})
        await connection.close(code=CLOSE_REJECTED, reason=reason)
        self.registry.remove(connection)

    async def _drop(self, connection: LiveConnection) -> None:
        async with self.session_factory() as db:
            await self.disconnect(db, connection)

    async def _announce(self, db: AsyncSession, event: str, payload: dict) -> None:
        try:
            await self.dispatcher.notify_admins(db, event, payload)
        except Exception as e:
            logger.error(f"❌ Admin presence notice '{event}' failed: {e}")
