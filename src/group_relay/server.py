"""Webhook message source and keep-alive endpoint."""

from __future__ import annotations

import asyncio
import hmac
import logging
from collections.abc import Callable, Mapping
from typing import Any

from aiohttp import web

from .models import Message, message_from_payload
from .structured_logging import log_event

__all__ = ["SECRET_HEADER", "build_app"]

SECRET_HEADER = "X-Relay-Secret"

_QUEUE_KEY: web.AppKey[asyncio.Queue[Message | None]] = web.AppKey("queue")
_SECRET_KEY: web.AppKey[str] = web.AppKey("webhook_secret")
_STATS_KEY: web.AppKey[Callable[[], Mapping[str, Any]]] = web.AppKey("stats")


def build_app(
    queue: asyncio.Queue[Message | None],
    *,
    stats: Callable[[], Mapping[str, Any]],
    webhook_secret: str | None = None,
) -> web.Application:
    app = web.Application()
    app[_QUEUE_KEY] = queue
    app[_SECRET_KEY] = webhook_secret or ""
    app[_STATS_KEY] = stats
    app.router.add_get("/", _health)
    app.router.add_get("/healthz", _health)
    app.router.add_post("/messages", _receive_message)
    return app


async def _health(request: web.Request) -> web.Response:
    stats = request.app[_STATS_KEY]
    queue = request.app[_QUEUE_KEY]
    return web.json_response(
        {"status": "ok", "queued": queue.qsize(), "stats": dict(stats())}
    )


async def _receive_message(request: web.Request) -> web.Response:
    secret = request.app[_SECRET_KEY]
    if secret:
        provided = request.headers.get(SECRET_HEADER, "")
        if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
            log_event(
                "webhook_rejected",
                level=logging.WARNING,
                origin=None,
                message_key=None,
                target=None,
                outcome="unauthorized",
                latency_ms=None,
                extra={"remote": request.remote},
            )
            return web.json_response({"error": "unauthorized"}, status=401)

    try:
        payload = await request.json()
    except ValueError:
        return web.json_response({"error": "body must be JSON"}, status=400)

    try:
        message = message_from_payload(payload)
    except ValueError as exc:
        log_event(
            "webhook_invalid_payload",
            level=logging.WARNING,
            origin=None,
            message_key=None,
            target=None,
            outcome="rejected",
            latency_ms=None,
            extra={"reason": str(exc)},
        )
        return web.json_response({"error": str(exc)}, status=400)

    await request.app[_QUEUE_KEY].put(message)
    log_event(
        "message_received",
        level=logging.DEBUG,
        origin=message.origin_label,
        message_key=message.message_id,
        target=None,
        outcome="queued",
        latency_ms=None,
        extra={"queued": request.app[_QUEUE_KEY].qsize()},
    )
    return web.json_response({"status": "queued"}, status=202)
