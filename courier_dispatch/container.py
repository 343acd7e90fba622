"""
Service wiring.

Builds every collaborator once per process so that the registry, the
throttle caches and the seen-sets are explicit objects with a lifecycle
(created in the application lifespan, cleared on shutdown) instead of
module globals. Tests build their own container around fakes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.realtime.presence import PresenceGuard
from courier_dispatch.realtime.registry import ConnectionRegistry
from courier_dispatch.realtime.router import MessageRouter
from courier_dispatch.realtime.handlers import register_default_handlers
from courier_dispatch.services.location import LocationRelay
from courier_dispatch.services.notifications import BasePushService, get_push_service
from courier_dispatch.services.notifications.dispatcher import NotificationDispatcher
from courier_dispatch.services.orders import OrderLifecycleManager
from courier_dispatch.services.preferences import PreferenceResolver
from courier_dispatch.services.reaper import ReaperService, run_periodic
from courier_dispatch.services.sessions import SessionService
from courier_dispatch.services.tracking import OrderTracking

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: async_sessionmaker
    registry: ConnectionRegistry
    push_service: BasePushService
    dispatcher: NotificationDispatcher
    resolver: PreferenceResolver
    tracking: OrderTracking
    sessions: SessionService
    presence: PresenceGuard
    lifecycle: OrderLifecycleManager
    location: LocationRelay
    reaper: ReaperService
    router: MessageRouter
    _tasks: list[asyncio.Task] = field(default_factory=list)

    def start_background(self) -> None:
        """Start the sweeps and housekeeping loops."""
        if self.settings.reaper_enabled:
            self.reaper.start()

        async def throttle_cleanup():
            self.location.cleanup_cache()

        self._tasks = [
            asyncio.create_task(run_periodic(
                "location-cache", self.settings.throttle_cleanup_interval_seconds, throttle_cleanup
            ), name="location-cache"),
            asyncio.create_task(run_periodic(
                "heartbeat", self.settings.heartbeat_interval_seconds, self.presence.heartbeat_sweep
            ), name="heartbeat"),
        ]

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.reaper.stop()
        await self.registry.close_all()
        self.location.clear()
        self.tracking.clear()
        await self.push_service.close()


def build_container(
    session_factory: async_sessionmaker,
    settings: Optional[Settings] = None,
    push_service: Optional[BasePushService] = None,
    registry: Optional[ConnectionRegistry] = None,
) -> ServiceContainer:
    settings = settings or get_settings()
    registry = registry or ConnectionRegistry()
    push_service = push_service or get_push_service()

    dispatcher = NotificationDispatcher(registry, push_service)
    resolver = PreferenceResolver()
    tracking = OrderTracking(reminder_max=settings.reminder_tracking_max)
    sessions = SessionService(settings)
    presence = PresenceGuard(registry, sessions, dispatcher, session_factory, settings)
    lifecycle = OrderLifecycleManager(dispatcher, resolver, tracking)
    location = LocationRelay(registry, settings)
    reaper = ReaperService(session_factory, lifecycle, tracking, settings)

    router = MessageRouter()
    register_default_handlers(router)

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        registry=registry,
        push_service=push_service,
        dispatcher=dispatcher,
        resolver=resolver,
        tracking=tracking,
        sessions=sessions,
        presence=presence,
        lifecycle=lifecycle,
        location=location,
        reaper=reaper,
        router=router,
    )
