"""
Push Service Factory

Returns the Mock or Expo push service based on ENV_MODE.

Version: 1.0.0
"""

import logging
from functools import lru_cache

from courier_dispatch.core.config import get_settings
from courier_dispatch.services.notifications.base import (
    BasePushService,
    PushMessage,
    PushResult,
)
from courier_dispatch.services.notifications.mock import MockPushService
from courier_dispatch.services.notifications.expo import ExpoPushService

logger = logging.getLogger(__name__)


@lru_cache()
def get_push_service() -> BasePushService:
    """Get the configured push service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Push Service: Using MockPushService (development mode)")
        return MockPushService(failure_rate=0.0)
    else:
        logger.info(f"Push Service: Using ExpoPushService ({settings.env_mode.value} mode)")
        return ExpoPushService(settings)


def reset_push_service() -> None:
    """Clear the cached service instance."""
    get_push_service.cache_clear()


__all__ = [
    "get_push_service",
    "reset_push_service",
    "BasePushService",
    "PushMessage",
    "PushResult",
]
