"""Sequential message pipeline: route, deduplicate, forward, record."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from time import perf_counter

import aiohttp

from .dedup import KeyStore
from .forwarder import ConversationDirectory, Forwarder
from .models import ForwardResult, Message
from .routing import RoutingEngine
from .structured_logging import log_event

__all__ = ["HandleOutcome", "RelayEngine", "RelayStats"]

_ISOLATED_ERRORS = (
    RuntimeError,
    ValueError,
    LookupError,
    OSError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


class HandleOutcome(str, Enum):
    UNROUTED = "unrouted"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    FORWARDED = "forwarded"
    FAILED = "failed"


@dataclass(slots=True)
class RelayStats:
    received: int = 0
    unrouted: int = 0
    duplicates: int = 0
    unmatched: int = 0
    forwarded: int = 0
    failed: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class RelayEngine:
    """Owns the dedup store and processes one message at a time."""

    def __init__(
        self,
        routing: RoutingEngine,
        store: KeyStore,
        directory: ConversationDirectory,
        *,
        forwarder: Forwarder | None = None,
    ) -> None:
        self._routing = routing
        self._store = store
        self._directory = directory
        self._forwarder = forwarder or Forwarder()
        self._lock = asyncio.Lock()
        self.stats = RelayStats()

    async def handle(self, message: Message) -> HandleOutcome:
        # Serialised so concurrent callers never interleave dedup updates.
        async with self._lock:
            return await self._handle(message)

    async def _handle(self, message: Message) -> HandleOutcome:
        self.stats.received += 1
        rules = self._routing.applicable(message)
        if not rules:
            self.stats.unrouted += 1
            return HandleOutcome.UNROUTED

        start = perf_counter()
        key = message.dedup_key()
        origin = message.origin_label
        if self._store.has(key):
            self.stats.duplicates += 1
            log_event(
                "message_duplicate",
                level=logging.DEBUG,
                origin=origin,
                message_key=key,
                target=None,
                outcome="skipped",
                latency_ms=(perf_counter() - start) * 1000,
                extra={},
            )
            return HandleOutcome.DUPLICATE

        decisions = self._routing.evaluate(message, rules)
        if not decisions:
            self.stats.unmatched += 1
            log_event(
                "message_unmatched",
                level=logging.DEBUG,
                origin=origin,
                message_key=key,
                target=None,
                outcome="skipped",
                latency_ms=(perf_counter() - start) * 1000,
                extra={"rules": len(rules)},
            )
            return HandleOutcome.UNMATCHED

        results: list[ForwardResult] = []
        try:
            for decision in decisions:
                result = await self._forwarder.forward(
                    decision, self._directory, message_key=key, origin=origin
                )
                results.append(result)
        finally:
            # Deliveries already made must not be repeated on redelivery.
            delivered = sum(1 for result in results if result.delivered)
            if delivered:
                self._store.record(key)

        if delivered:
            self.stats.forwarded += 1
            outcome = HandleOutcome.FORWARDED
        else:
            self.stats.failed += 1
            outcome = HandleOutcome.FAILED

        log_event(
            "message_processed",
            level=logging.INFO if delivered else logging.WARNING,
            origin=origin,
            message_key=key,
            target=None,
            outcome=outcome.value,
            latency_ms=(perf_counter() - start) * 1000,
            extra={
                "decisions": len(decisions),
                "delivered": delivered,
                "outcomes": [result.outcome.value for result in results],
            },
        )
        return outcome

    async def run(self, queue: asyncio.Queue[Message | None]) -> None:
        """Consume ``queue`` until a ``None`` sentinel arrives."""

        while True:
            message = await queue.get()
            try:
                if message is None:
                    return
                await self.handle(message)
            except asyncio.CancelledError:
                raise
            except _ISOLATED_ERRORS as exc:
                self.stats.errors += 1
                log_event(
                    "message_handling_failed",
                    level=logging.ERROR,
                    origin=message.origin_label if message is not None else None,
                    message_key=None,
                    target=None,
                    outcome="failure",
                    latency_ms=None,
                    extra={"error": type(exc).__name__, "detail": str(exc)},
                )
            finally:
                queue.task_done()
