"""
Expo Push Service

Production implementation posting to the Expo push API with httpx.
Messages are sent in chunks; every message gets its own PushResult and a
failing chunk never aborts the rest of the batch.

Version: 1.0.0
"""

import logging
from typing import Optional

import httpx

from courier_dispatch.core.config import Settings, get_settings
from courier_dispatch.services.notifications.base import (
    BasePushService,
    PushMessage,
    PushResult,
)
from courier_dispatch.services.notifications.payload import build_push_payload

logger = logging.getLogger(__name__)


class ExpoPushService(BasePushService):
    """Push delivery through https://exp.host."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.settings.expo_access_token:
            headers["Authorization"] = f"Bearer {self.settings.expo_access_token}"
        else:
            logger.warning("Expo access token not configured")

        self.client = client or httpx.AsyncClient(
            timeout=self.settings.push_request_timeout,
            headers=headers,
        )
        logger.info("ExpoPushService initialized")

    @property
    def provider_name(self) -> str:
        return "expo"

    async def send_many(self, messages: list[PushMessage]) -> list[PushResult]:
        results: list[PushResult] = []
        size = max(1, self.settings.push_chunk_size)

        for start in range(0, len(messages), size):
            chunk = messages[start:start + size]
            results.extend(await self._send_chunk(chunk))

        sent = sum(1 for r in results if r.success)
        if messages:
            logger.info(f"Expo push: {sent}/{len(messages)} delivered")
        return results

    async def _send_chunk(self, chunk: list[PushMessage]) -> list[PushResult]:
        payload = [build_push_payload(m, self.settings) for m in chunk]

        try:
            response = await self.client.post(self.settings.expo_push_url, json=payload)
            response.raise_for_status()
            tickets = response.json().get("data", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Expo push request failed for {len(chunk)} message(s): {e}")
            return [
                PushResult(success=False, token=m.to, error_message=str(e), provider="expo")
                for m in chunk
            ]

        if isinstance(tickets, dict):
            tickets = [tickets]

        results = []
        for index, message in enumerate(chunk):
            ticket = tickets[index] if index < len(tickets) else {}
            if ticket.get("status") == "ok":
                results.append(PushResult(
                    success=True,
                    token=message.to,
                    message_id=ticket.get("id"),
                    provider="expo",
                ))
            else:
                error = ticket.get("message") or "No ticket returned"
                logger.warning(f"Expo rejected push to {message.to[:24]}...: {error}")
                results.append(PushResult(
                    success=False,
                    token=message.to,
                    error_message=error,
                    provider="expo",
                ))
        return results

    async def health_check(self) -> bool:
        # The push endpoint has no health route; a configured token is the best signal.
        return bool(self.settings.expo_access_token)

    async def close(self) -> None:
        await self.client.aclose()
