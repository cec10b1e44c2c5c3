"""
Card Engine — Expo Push Delivery

Sends price-alert pushes through the Expo push API. Delivery is best-effort:
a failed chunk is logged and skipped, never raised, because the notification
row is already committed by the time pushes go out.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from card_engine.config import settings

logger = structlog.get_logger(__name__)

EXPO_TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[")


def is_expo_token(token: str) -> bool:
    return token.startswith(EXPO_TOKEN_PREFIXES)


class PushMessage(BaseModel):
    """One Expo push message, serialized as-is into the request body."""
    to: str
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    sound: str | None = "default"


class ExpoPushClient:
    """
    Posts push messages to Expo in chunks.

    Usage:
        async with ExpoPushClient() as push:
            sent = await push.send_messages(messages)
    """

    def __init__(
        self,
        push_url: str | None = None,
        access_token: str | None = None,
        batch_size: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._push_url = push_url or settings.EXPO_PUSH_URL
        self._access_token = access_token if access_token is not None else settings.EXPO_ACCESS_TOKEN
        self._batch_size = batch_size or settings.EXPO_PUSH_BATCH_SIZE
        self._timeout = timeout or settings.EXPO_PUSH_TIMEOUT_SECONDS
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ExpoPushClient:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        self._client = httpx.AsyncClient(headers=headers, timeout=self._timeout)
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _send_chunk(self, chunk: list[PushMessage]) -> bool:
        assert self._client is not None, "Client not initialized. Use 'async with'."

        try:
            response = await self._client.post(
                self._push_url,
                json=[message.model_dump(exclude_none=True) for message in chunk],
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "expo_push_request_failed",
                messages=len(chunk),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

        if response.status_code >= 400:
            logger.warning(
                "expo_push_http_error",
                status_code=response.status_code,
                messages=len(chunk),
                body=response.text[:500],
            )
            return False
        return True

    async def send_messages(self, messages: list[PushMessage]) -> int:
        """
        Send messages in chunks of at most EXPO_PUSH_BATCH_SIZE.

        Returns:
            Count of messages in chunks Expo accepted.
        """
        if not messages:
            return 0

        delivered = 0
        for start in range(0, len(messages), self._batch_size):
            chunk = messages[start:start + self._batch_size]
            if await self._send_chunk(chunk):
                delivered += len(chunk)

        logger.info("expo_push_batch_sent", total=len(messages), delivered=delivered)
        return delivered
