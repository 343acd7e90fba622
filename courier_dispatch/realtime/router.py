"""
Message Router

Single entry point for inbound live-channel frames. Handlers are
registered explicitly per event name; each frame is parsed into its typed
variant and dispatched with a fresh database session.

Business errors (DispatchError) become an ``error`` event on the sending
connection. The socket stays open.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.core.errors import DispatchError
from courier_dispatch.core.security import Actor
from courier_dispatch.realtime.connection import LiveConnection
from courier_dispatch.realtime.messages import INBOUND_EVENTS, parse_message

if TYPE_CHECKING:
    from courier_dispatch.container import ServiceContainer

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    connection: LiveConnection
    services: "ServiceContainer"
    db: AsyncSession

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.connection.user_id, role=self.connection.role)

    async def reply(self, event: str, data: Any = None) -> bool:
        return await self.services.registry.send(self.connection, event, data)


Handler = Callable[[HandlerContext, Any], Awaitable[None]]


class MessageRouter:
    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, *events: str):
        """Decorator registering one handler for one or more event names."""
        def decorator(handler: Handler) -> Handler:
            for event in events:
                if event in self._handlers:
                    raise ValueError(f"Handler for '{event}' already registered")
                self._handlers[event] = handler
            return handler
        return decorator

    def add(self, event: str, handler: Handler) -> None:
        self.register(event)(handler)

    @property
    def events(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, services: "ServiceContainer", connection: LiveConnection, raw: Any) -> Optional[str]:
        """
        Route one raw frame. Returns the handled event name, or None if the
        frame was rejected.
        """
        registry = services.registry
        registry.touch(connection)

        event = raw.get("event") if isinstance(raw, dict) else None
        if event not in INBOUND_EVENTS:
            await registry.send(connection, "error", {
                "error": "unknown_event",
                "detail": f"Unknown event '{event}'",
            })
            return None

        try:
            message = parse_message(raw)
        except ValidationError as e:
            logger.debug(f"Malformed '{event}' frame from {connection!r}: {e.errors()}")
            await registry.send(connection, "error", {
                "error": "malformed_message",
                "event": event,
                "detail": "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                ),
            })
            return None

        handler = self._handlers.get(message.event)
        if handler is None:
            await registry.send(connection, "error", {
                "error": "unhandled_event",
                "event": event,
                "detail": f"No handler for '{event}'",
            })
            return None

        async with services.session_factory() as db:
            context = HandlerContext(connection=connection, services=services, db=db)
            try:
                await handler(context, message)
            except DispatchError as e:
                logger.info(f"'{event}' from {connection!r} refused: {e.message}")
                await registry.send(connection, "error", {**e.to_dict(), "event": event})
            except Exception as e:
                await db.rollback()
                logger.exception(f"Handler for '{event}' failed: {e}")
                await registry.send(connection, "error", {
                    "success": False,
                    "error": "internal_error",
                    "event": event,
                    "detail": "An unexpected error occurred",
                })
        return message.event
