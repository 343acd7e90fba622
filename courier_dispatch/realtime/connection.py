"""
Live connection handles.

A LiveConnection is what the registry stores: something that can send a
``{"event", "data"}`` frame and be closed. WebSocketConnection adapts a
Starlette WebSocket; tests provide their own recording subclass.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from starlette.websockets import WebSocket, WebSocketState

from courier_dispatch.core.timeutils import utcnow

logger = logging.getLogger(__name__)


class LiveConnection(ABC):
    """One authenticated live channel."""

    def __init__(
        self,
        user_id: int,
        role: str,
        session_token: Optional[str] = None,
        connection_id: Optional[str] = None,
    ):
        self.id = connection_id or uuid.uuid4().hex
        self.user_id = user_id
        self.role = role
        self.session_token = session_token
        self.connected_at: datetime = utcnow()
        self.last_activity: datetime = self.connected_at
        self.missed_heartbeats = 0
        self.closed = False

    def touch(self) -> None:
        """Any inbound frame proves the peer is alive."""
        self.last_activity = utcnow()
        self.missed_heartbeats = 0

    @abstractmethod
    async def send(self, event: str, data: Any = None) -> None:
        """Send one frame. Raises on transport failure."""

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the transport. Must be idempotent."""

    def __repr__(self):
        return f"<{type(self).__name__} {self.role}:{self.user_id} {self.id[:8]}>"


class WebSocketConnection(LiveConnection):
    def __init__(self, websocket: WebSocket, user_id: int, role: str, session_token: Optional[str] = None):
        super().__init__(user_id=user_id, role=role, session_token=session_token)
        self.websocket = websocket

    async def send(self, event: str, data: Any = None) -> None:
        if self.closed:
            return
        await self.websocket.send_json({"event": event, "data": data if data is not None else {}})

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        if self.websocket.application_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close(code=code, reason=reason)
            except RuntimeError as e:
                # Peer already gone; the receive loop will finish the cleanup.
                logger.debug(f"WebSocket close on {self!r} ignored: {e}")
