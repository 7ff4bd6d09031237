"""HTTP client for the chat gateway that owns the platform session."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from time import perf_counter
from typing import Any
from urllib.parse import quote

import aiohttp

from .errors import SendFailed
from .structured_logging import log_event
from .utils import normalize_name

__all__ = [
    "Conversation",
    "ConversationSnapshot",
    "GatewayAPIError",
    "GatewayClient",
    "GatewayDirectory",
]

_DEFAULT_HEADERS: Mapping[str, str] = {
    "Accept": "application/json",
}
_MAX_BACKOFF_SECONDS = 30.0
_REJECTED_STATUSES = frozenset({429})


class GatewayAPIError(RuntimeError):
    """Error raised when the gateway returns a non-success response."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Gateway request failed with status {status}: {body}")
        self.status = status
        self.body = body


@dataclass(frozen=True, slots=True)
class Conversation:
    id: str
    name: str


class ConversationSnapshot:
    """Case-insensitive view of the conversations visible at one moment."""

    __slots__ = ("_by_name", "_by_id", "_size")

    def __init__(self, conversations: Iterable[Conversation]) -> None:
        self._by_name: dict[str, Conversation] = {}
        self._by_id: dict[str, Conversation] = {}
        self._size = 0
        for conversation in conversations:
            self._size += 1
            name_key = normalize_name(conversation.name)
            if name_key is not None:
                # First listed wins when two chats share a name.
                self._by_name.setdefault(name_key, conversation)
            id_key = normalize_name(conversation.id)
            if id_key is not None:
                self._by_id.setdefault(id_key, conversation)

    def __len__(self) -> int:
        return self._size

    def resolve(self, name: str) -> Conversation | None:
        key = normalize_name(name)
        if key is None:
            return None
        return self._by_name.get(key) or self._by_id.get(key)


class GatewayClient:
    """REST client for ``GET /chats`` and ``POST /chats/{id}/messages``."""

    RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
    __slots__ = ("_base_url", "_session", "_headers", "_retry_attempts")

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession,
        *,
        token: str | None = None,
        retry_attempts: int = 3,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._headers = dict(_DEFAULT_HEADERS)
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._retry_attempts = max(0, retry_attempts)

    async def list_conversations(self) -> list[Conversation]:
        data = await self._request_json("GET", "/chats")
        if isinstance(data, Mapping):
            data = data.get("chats")
        if not isinstance(data, list):
            raise RuntimeError("Unexpected gateway response shape when listing chats")

        conversations: list[Conversation] = []
        for item in data:
            if not isinstance(item, Mapping):
                continue
            conversation_id = _conversation_id(item.get("id"))
            if conversation_id is None:
                continue
            name = item.get("name") or item.get("title") or item.get("formattedTitle") or ""
            conversations.append(Conversation(id=conversation_id, name=str(name).strip()))
        return conversations

    async def send_text(self, conversation_id: str, text: str) -> None:
        try:
            await self._request_json(
                "POST",
                f"/chats/{quote(conversation_id, safe='')}/messages",
                payload={"text": text},
                target=conversation_id,
                idempotent=False,
            )
        except GatewayAPIError as exc:
            raise SendFailed(str(exc), status=exc.status) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SendFailed(
                f"Gateway send failed due to a network error: {type(exc).__name__}"
            ) from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        target: str | None = None,
        idempotent: bool = True,
    ) -> Any:
        # A POST the gateway may already have delivered is only retried when it
        # was refused outright (429) or the connection was never established.
        retry_statuses = self.RETRYABLE_STATUSES if idempotent else _REJECTED_STATUSES
        url = f"{self._base_url}{path}"
        attempt = 0
        while True:
            attempt += 1
            start = perf_counter()
            try:
                async with self._session.request(
                    method,
                    url,
                    json=payload,
                    headers=self._headers,
                ) as response:
                    elapsed_ms = (perf_counter() - start) * 1000
                    if (
                        response.status in retry_statuses
                        and attempt <= self._retry_attempts
                    ):
                        delay = max(
                            _retry_after_seconds(response),
                            random.uniform(0.5, min(2 ** attempt, _MAX_BACKOFF_SECONDS)),
                        )
                        log_event(
                            "gateway_retry",
                            level=logging.WARNING,
                            origin=None,
                            message_key=None,
                            target=target,
                            outcome="retry",
                            latency_ms=elapsed_ms,
                            extra={
                                "status": response.status,
                                "method": method,
                                "url": url,
                                "attempt": attempt,
                                "delay": delay,
                            },
                        )
                        await asyncio.sleep(delay)
                        continue

                    if response.status >= 400:
                        text = await response.text()
                        log_event(
                            "gateway_http_error",
                            level=logging.ERROR,
                            origin=None,
                            message_key=None,
                            target=target,
                            outcome="failure",
                            latency_ms=elapsed_ms,
                            extra={"status": response.status, "method": method, "url": url},
                        )
                        raise GatewayAPIError(response.status, text[:200])

                    if response.status == 204:
                        return None
                    try:
                        return await response.json(content_type=None)
                    except ValueError:
                        return None
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                elapsed_ms = (perf_counter() - start) * 1000
                retryable = idempotent or isinstance(exc, aiohttp.ClientConnectorError)
                if not retryable or attempt > self._retry_attempts:
                    log_event(
                        "gateway_network_failure",
                        level=logging.ERROR,
                        origin=None,
                        message_key=None,
                        target=target,
                        outcome="failure",
                        latency_ms=elapsed_ms,
                        extra={"method": method, "url": url, "error": type(exc).__name__},
                    )
                    raise
                delay = random.uniform(0.5, min(2 ** attempt, _MAX_BACKOFF_SECONDS))
                log_event(
                    "gateway_network_retry",
                    level=logging.WARNING,
                    origin=None,
                    message_key=None,
                    target=target,
                    outcome="retry",
                    latency_ms=elapsed_ms,
                    extra={
                        "method": method,
                        "url": url,
                        "error": type(exc).__name__,
                        "delay": delay,
                    },
                )
                await asyncio.sleep(delay)


class GatewayDirectory:
    """Conversation directory backed by a live gateway listing."""

    __slots__ = ("_client",)

    def __init__(self, client: GatewayClient) -> None:
        self._client = client

    async def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(await self._client.list_conversations())

    async def resolve(self, name: str) -> str | None:
        # Names change between messages, so every lookup lists chats again.
        conversation = (await self.snapshot()).resolve(name)
        return conversation.id if conversation is not None else None

    async def send(self, handle: str, text: str) -> None:
        await self._client.send_text(handle, text)


def _conversation_id(raw: object) -> str | None:
    if isinstance(raw, Mapping):
        raw = raw.get("_serialized") or raw.get("id")
    if raw is None or isinstance(raw, bool):
        return None
    text = str(raw).strip()
    return text or None


def _retry_after_seconds(response: aiohttp.ClientResponse) -> float:
    header = response.headers.get("Retry-After")
    if not header:
        return 0.0
    try:
        return max(float(header), 0.0)
    except ValueError:
        return 1.0
