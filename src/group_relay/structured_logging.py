"""JSON event lines for the relay, one object per processing step.

Every line carries the same core fields (event, origin, message key, target,
outcome, latency) so a run can be followed per message. Extra fields are
sanitised: credentials are masked and long strings are cut.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, MutableMapping
from typing import Any, Final

RELAY_LOGGER_NAME: Final = "relay"
_REDACT_KEYS: Final = {"token", "authorization", "secret", "webhook_secret"}
_MAX_STRING_LENGTH: Final = 512
_LOGGER = logging.getLogger(RELAY_LOGGER_NAME)


def configure_relay_logging(level: int) -> None:
    """Attach a plain stream handler to the relay logger once; later calls only set the level."""

    logger = _LOGGER
    if logger.handlers:
        logger.setLevel(level)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def log_event(
    event: str,
    *,
    level: int,
    origin: str | None,
    message_key: str | None,
    target: str | None,
    outcome: str | None,
    latency_ms: float | None,
    extra: Mapping[str, Any] | None = None,
) -> None:
    payload: MutableMapping[str, Any] = {
        "event": event,
        "origin": origin,
        "message_key": message_key,
        "target": target,
        "outcome": outcome,
        "latency_ms": round(latency_ms, 3) if latency_ms is not None else None,
    }

    if extra:
        for key, value in extra.items():
            if key is None:
                continue
            key_text = str(key)
            lower_key = key_text.lower()
            if lower_key in _REDACT_KEYS:
                payload[key_text] = "***"
                continue
            payload[key_text] = _sanitize_value(value)

    _LOGGER.log(level, json.dumps(payload, ensure_ascii=False, separators=(",", ":")))


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        if len(value) > _MAX_STRING_LENGTH:
            return f"{value[:_MAX_STRING_LENGTH]}…"
        return value
    if isinstance(value, bool | int | float) or value is None:
        return value
    if isinstance(value, list | tuple):
        return [_sanitize_value(item) for item in value]
    return str(value)
