"""Delivery of routing decisions through the conversation directory."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Protocol

import aiohttp

from .errors import TargetNotFound
from .models import ForwardOutcome, ForwardResult, RoutingDecision
from .structured_logging import log_event

__all__ = ["ConversationDirectory", "Forwarder"]

_TRANSPORT_ERRORS = (RuntimeError, aiohttp.ClientError, asyncio.TimeoutError)


class ConversationDirectory(Protocol):
    async def resolve(self, name: str) -> str | None:
        """Return a destination handle for ``name`` (case-insensitive) or ``None``."""

    async def send(self, handle: str, text: str) -> None:
        """Deliver ``text``; raise on transport failure."""


class Forwarder:
    """Resolve a decision's target and send its text."""

    async def forward(
        self,
        decision: RoutingDecision,
        directory: ConversationDirectory,
        *,
        message_key: str | None = None,
        origin: str | None = None,
    ) -> ForwardResult:
        start = perf_counter()
        try:
            handle = await directory.resolve(decision.target)
            if handle is None:
                raise TargetNotFound(decision.target)
        except TargetNotFound as exc:
            return self._not_found(decision, start, message_key, origin, str(exc))
        except _TRANSPORT_ERRORS as exc:
            # Lookup failures are not retried here; the next message lists chats again.
            return self._not_found(decision, start, message_key, origin, str(exc))

        try:
            await directory.send(handle, decision.text)
        except Exception as exc:  # noqa: BLE001
            log_event(
                "forward_failed",
                level=logging.ERROR,
                origin=origin,
                message_key=message_key,
                target=decision.target,
                outcome=ForwardOutcome.SEND_FAILED.value,
                latency_ms=(perf_counter() - start) * 1000,
                extra={"rule": decision.rule_name, "handle": handle, "error": str(exc)},
            )
            return ForwardResult(
                ForwardOutcome.SEND_FAILED, decision, handle=handle, error=str(exc)
            )

        log_event(
            "message_forwarded",
            level=logging.INFO,
            origin=origin,
            message_key=message_key,
            target=decision.target,
            outcome=ForwardOutcome.DELIVERED.value,
            latency_ms=(perf_counter() - start) * 1000,
            extra={"rule": decision.rule_name, "handle": handle, "length": len(decision.text)},
        )
        return ForwardResult(ForwardOutcome.DELIVERED, decision, handle=handle)

    @staticmethod
    def _not_found(
        decision: RoutingDecision,
        start: float,
        message_key: str | None,
        origin: str | None,
        error: str,
    ) -> ForwardResult:
        log_event(
            "target_not_found",
            level=logging.WARNING,
            origin=origin,
            message_key=message_key,
            target=decision.target,
            outcome=ForwardOutcome.TARGET_NOT_FOUND.value,
            latency_ms=(perf_counter() - start) * 1000,
            extra={"rule": decision.rule_name, "error": error},
        )
        return ForwardResult(ForwardOutcome.TARGET_NOT_FOUND, decision, error=error)
