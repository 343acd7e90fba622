"""
Mock Push Service

Simulates push delivery for development.
No actual messages are sent - just logged.

Version: 1.0.0
"""

import asyncio
import logging
import random
import uuid

from courier_dispatch.services.notifications.base import (
    BasePushService,
    PushMessage,
    PushResult,
)
from courier_dispatch.services.notifications.payload import build_push_payload

logger = logging.getLogger(__name__)


class MockPushService(BasePushService):
    """Mock push service for development."""

    def __init__(self, failure_rate: float = 0.0, simulate_latency: bool = True):
        self.failure_rate = failure_rate
        self.simulate_latency = simulate_latency
        self.sent: list[dict] = []
        logger.info(f"MockPushService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        if self.simulate_latency:
            await asyncio.sleep(random.uniform(0.05, 0.15))

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def send_many(self, messages: list[PushMessage]) -> list[PushResult]:
        """Simulate sending a batch."""
        if not messages:
            return []
        await self._simulate_latency()

        results = []
        for message in messages:
            if self._should_fail():
                logger.warning(f"Mock push failed (simulated) to {message.to[:24]}...")
                results.append(PushResult(
                    success=False,
                    token=message.to,
                    error_message="Simulated push failure",
                    provider="mock",
                ))
                continue

            payload = build_push_payload(message)
            self.sent.append(payload)
            message_id = f"push_mock_{uuid.uuid4().hex[:12]}"
            logger.info(f"Mock push sent to {message.to[:24]}...: {message.title} (ID: {message_id})")
            results.append(PushResult(
                success=True,
                token=message.to,
                message_id=message_id,
                provider="mock",
            ))
        return results

    async def health_check(self) -> bool:
        return True
