from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest


def _ensure_src_on_path() -> None:
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    src_str = str(src)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)


_ensure_src_on_path()

from group_relay.models import Message  # noqa: E402


class FakeDirectory:
    """In-memory conversation directory recording every send."""

    def __init__(self, conversations: dict[str, str] | None = None) -> None:
        self.conversations = dict(conversations or {})
        self.sent: list[tuple[str, str]] = []
        self.resolve_calls: list[str] = []
        self.failing_handles: set[str] = set()
        self.lookup_error: Exception | None = None

    async def resolve(self, name: str) -> str | None:
        self.resolve_calls.append(name)
        if self.lookup_error is not None:
            raise self.lookup_error
        wanted = name.strip().casefold()
        for conversation_name, handle in self.conversations.items():
            if conversation_name.casefold() == wanted:
                return handle
        return None

    async def send(self, handle: str, text: str) -> None:
        if handle in self.failing_handles:
            raise RuntimeError(f"gateway refused delivery to {handle}")
        self.sent.append((handle, text))


def make_message(**kwargs: Any) -> Message:
    return Message(
        origin_id=str(kwargs.get("origin_id", "Sales")),
        origin_name=kwargs.get("origin_name"),
        sender_id=str(kwargs.get("sender_id", "alice")),
        sender_name=kwargs.get("sender_name"),
        timestamp=kwargs.get("timestamp", datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)),
        text=str(kwargs.get("text", "")),
        message_id=kwargs.get("message_id"),
    )


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory({"Archive": "chat-archive", "Support Desk": "chat-support"})


@pytest.fixture(autouse=True)
def _relay_logger_propagates() -> Iterator[None]:
    # The CLI detaches the relay logger; keep it visible to caplog in every test.
    logger = logging.getLogger("relay")
    handlers = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
