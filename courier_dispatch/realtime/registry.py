"""
Connection Registry

In-process map of live connections, rooms and per-account presence.

Presence is keyed by (role, user_id) and holds at most one connection:
binding a new connection for an identity that is already present hands the
previous connection back to the caller, which closes it. The registry is
created at application startup and cleared on shutdown; nothing here is
authoritative, the database rows are.

Rooms:
    couriers, courier_{id}, restaurants, restaurant_{id}, admins

Version: 1.0.0
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from courier_dispatch.core.timeutils import utcnow
from courier_dispatch.realtime.connection import LiveConnection

logger = logging.getLogger(__name__)


COURIERS_ROOM = "couriers"
RESTAURANTS_ROOM = "restaurants"
ADMINS_ROOM = "admins"


def courier_room(courier_id: int) -> str:
    return f"courier_{courier_id}"


def restaurant_room(restaurant_id: int) -> str:
    return f"restaurant_{restaurant_id}"


@dataclass
class PresenceEntry:
    connection_id: str
    role: str
    user_id: int
    joined_at: datetime
    last_activity: datetime


class ConnectionRegistry:
    """Injectable registry of live connections."""

    def __init__(self):
        self._connections: dict[str, LiveConnection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._memberships: dict[str, set[str]] = defaultdict(set)
        self._presence: dict[tuple[str, int], PresenceEntry] = {}

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    def add(self, connection: LiveConnection) -> None:
        self._connections[connection.id] = connection

    def get(self, connection_id: Optional[str]) -> Optional[LiveConnection]:
        if not connection_id:
            return None
        return self._connections.get(connection_id)

    def connections(self) -> list[LiveConnection]:
        return list(self._connections.values())

    def remove(self, connection: LiveConnection) -> Optional[PresenceEntry]:
        """
        Forget a connection and its room memberships.

        Returns the presence entry if this connection was the one holding
        its identity, so the caller knows to flip the persisted online flag.
        """
        self._connections.pop(connection.id, None)
        for room in self._memberships.pop(connection.id, set()):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection.id)
                if not members:
                    del self._rooms[room]

        key = (connection.role, connection.user_id)
        entry = self._presence.get(key)
        if entry is not None and entry.connection_id == connection.id:
            del self._presence[key]
            return entry
        return None

    # =========================================================================
    # PRESENCE
    # =========================================================================

    def bind_identity(self, connection: LiveConnection) -> Optional[LiveConnection]:
        """
        Mark the connection as the live device for its account.

        Returns the previously bound connection, if it was a different one.
        """
        self.add(connection)
        key = (connection.role, connection.user_id)
        now = utcnow()
        previous_entry = self._presence.get(key)

        self._presence[key] = PresenceEntry(
            connection_id=connection.id,
            role=connection.role,
            user_id=connection.user_id,
            joined_at=now,
            last_activity=now,
        )

        if previous_entry is None or previous_entry.connection_id == connection.id:
            return None
        return self._connections.get(previous_entry.connection_id)

    def is_online(self, role: str, user_id: int) -> bool:
        return (role, user_id) in self._presence

    def presence(self, role: str, user_id: int) -> Optional[PresenceEntry]:
        return self._presence.get((role, user_id))

    def connection_for(self, role: str, user_id: int) -> Optional[LiveConnection]:
        entry = self._presence.get((role, user_id))
        if entry is None:
            return None
        return self._connections.get(entry.connection_id)

    def online_ids(self, role: str) -> list[int]:
        return sorted(uid for (r, uid) in self._presence if r == role)

    def touch(self, connection: LiveConnection) -> None:
        connection.touch()
        entry = self._presence.get((connection.role, connection.user_id))
        if entry is not None and entry.connection_id == connection.id:
            entry.last_activity = connection.last_activity

    # =========================================================================
    # ROOMS
    # =========================================================================

    def join(self, connection: LiveConnection, room: str) -> None:
        self._rooms[room].add(connection.id)
        self._memberships[connection.id].add(room)

    def leave(self, connection: LiveConnection, room: str) -> None:
        self._rooms.get(room, set()).discard(connection.id)
        self._memberships.get(connection.id, set()).discard(room)

    def room_members(self, room: str) -> list[LiveConnection]:
        return [
            self._connections[cid]
            for cid in self._rooms.get(room, ())
            if cid in self._connections
        ]

    # =========================================================================
    # SENDING
    # =========================================================================

    async def send(self, connection: LiveConnection, event: str, data: Any = None) -> bool:
        """Send to one connection. A transport failure is logged, not raised."""
        try:
            await connection.send(event, data)
            return True
        except Exception as e:
            logger.warning(f"Live send of '{event}' to {connection!r} failed: {e}")
            return False

    async def emit(
        self,
        room: str,
        event: str,
        data: Any = None,
        exclude: Optional[LiveConnection] = None,
    ) -> int:
        """Send to every member of a room; returns the number delivered."""
        delivered = 0
        for connection in self.room_members(room):
            if exclude is not None and connection.id == exclude.id:
                continue
            if await self.send(connection, event, data):
                delivered += 1
        return delivered

    async def send_to_user(self, role: str, user_id: int, event: str, data: Any = None) -> bool:
        connection = self.connection_for(role, user_id)
        if connection is None:
            return False
        return await self.send(connection, event, data)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def stats(self) -> dict[str, int]:
        roles = [role for (role, _) in self._presence]
        return {
            "online_couriers": roles.count("courier"),
            "online_restaurants": roles.count("restaurant"),
            "online_admins": roles.count("admin"),
            "total_connections": len(self._connections),
        }

    async def close_all(self) -> None:
        """Close every connection and drop all state (shutdown)."""
        for connection in list(self._connections.values()):
            try:
                await connection.close(code=1001, reason="server shutdown")
            except Exception as e:
                logger.debug(f"Closing {connection!r} during shutdown failed: {e}")
        self.clear()

    def clear(self) -> None:
        self._connections.clear()
        self._rooms.clear()
        self._memberships.clear()
        self._presence.clear()
