"""
Push Service Abstract Base Class

Defines the interface for delivering push messages to mobile devices.
Supports both Mock (development) and Expo (production) implementations.

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class PushMessage:
    """One push message addressed to a single device token."""
    to: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    platform: Optional[str] = None
    sound_type: Optional[str] = None


@dataclass
class PushResult:
    """Result from sending one push message."""
    success: bool
    token: str
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class BasePushService(ABC):
    """Abstract base class for push delivery."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send_many(self, messages: list[PushMessage]) -> list[PushResult]:
        """
        Send a batch of messages.

        Must return exactly one PushResult per message, in order, and must
        not raise for per-message failures.
        """
        pass

    async def send(self, message: PushMessage) -> PushResult:
        """Send a single message."""
        results = await self.send_many([message])
        return results[0]

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    async def close(self) -> None:
        """Release any held network resources."""
        return None
