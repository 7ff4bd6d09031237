"""Application bootstrap for the group relay."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

import aiohttp
from aiohttp import web

from .config import DedupSettings, RelayConfig
from .dedup import JsonKeyStore, MemoryKeyStore, SqliteKeyStore
from .engine import RelayEngine
from .gateway import GatewayClient, GatewayDirectory
from .models import Message
from .routing import RoutingEngine
from .rules import compile_rules
from .server import build_app
from .structured_logging import log_event
from .utils import resolve_timezone

__all__ = ["RelayApp", "build_routing", "open_key_store"]


def open_key_store(settings: DedupSettings) -> MemoryKeyStore:
    if settings.backend == "memory":
        return MemoryKeyStore(max_keys=settings.max_keys, trim_batch=settings.trim_batch)
    if settings.backend == "sqlite":
        return SqliteKeyStore(
            settings.state_file, max_keys=settings.max_keys, trim_batch=settings.trim_batch
        )
    return JsonKeyStore(
        settings.state_file, max_keys=settings.max_keys, trim_batch=settings.trim_batch
    )


def build_routing(config: RelayConfig) -> RoutingEngine:
    compiled = compile_rules(config.rules)
    dropped = len(config.rules) - len(compiled)
    log_event(
        "rules_compiled",
        level=logging.INFO if compiled else logging.WARNING,
        origin=None,
        message_key=None,
        target=None,
        outcome="success" if compiled else "empty",
        latency_ms=None,
        extra={"compiled": len(compiled), "skipped": dropped},
    )
    return RoutingEngine(
        compiled,
        fan_out=config.routing.fan_out,
        zone=resolve_timezone(config.routing.timezone),
    )


class RelayApp:
    """Ties together the webhook source, the relay engine and the gateway."""

    def __init__(self, config: RelayConfig) -> None:
        self._config = config
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        config = self._config
        routing = build_routing(config)
        store = open_key_store(config.dedup)
        log_event(
            "dedup_loaded",
            level=logging.INFO,
            origin=None,
            message_key=None,
            target=None,
            outcome="success",
            latency_ms=None,
            extra={"backend": config.dedup.backend, "keys": len(store)},
        )

        timeout = aiohttp.ClientTimeout(total=config.gateway.timeout_seconds or None)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                client = GatewayClient(
                    config.gateway.base_url,
                    session,
                    token=config.gateway.token,
                    retry_attempts=config.gateway.retry_attempts,
                )
                engine = RelayEngine(routing, store, GatewayDirectory(client))
                queue: asyncio.Queue[Message | None] = asyncio.Queue()

                web_app = build_app(
                    queue,
                    stats=engine.stats.as_dict,
                    webhook_secret=config.server.webhook_secret,
                )
                runner = web.AppRunner(web_app)
                await runner.setup()
                site = web.TCPSite(runner, config.server.host, config.server.port)
                await site.start()
                log_event(
                    "relay_started",
                    level=logging.INFO,
                    origin=None,
                    message_key=None,
                    target=None,
                    outcome="listening",
                    latency_ms=None,
                    extra={
                        "host": config.server.host,
                        "port": config.server.port,
                        "gateway": config.gateway.base_url,
                    },
                )

                consumer = asyncio.create_task(engine.run(queue), name="relay-consumer")
                self._install_signal_handlers()
                try:
                    await self._stop.wait()
                finally:
                    await runner.cleanup()
                    await self._drain(queue, consumer)
                    log_event(
                        "relay_stopped",
                        level=logging.INFO,
                        origin=None,
                        message_key=None,
                        target=None,
                        outcome="stopped",
                        latency_ms=None,
                        extra=engine.stats.as_dict(),
                    )
        finally:
            store.close()

    async def _drain(
        self, queue: asyncio.Queue[Message | None], consumer: asyncio.Task[None]
    ) -> None:
        # Let the message in flight finish; pending ones get the grace period.
        queue.put_nowait(None)
        try:
            await asyncio.wait_for(
                asyncio.shield(consumer), timeout=self._config.shutdown_grace_seconds
            )
        except asyncio.TimeoutError:
            log_event(
                "relay_drain_timeout",
                level=logging.WARNING,
                origin=None,
                message_key=None,
                target=None,
                outcome="cancelled",
                latency_ms=None,
                extra={"pending": queue.qsize()},
            )
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.stop)
