from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .app import RelayApp
from .config import RelayConfig
from .errors import ConfigInvalid
from .structured_logging import configure_relay_logging, log_event


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Forward chat messages between groups when they match pattern rules",
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to the YAML (or JSON) configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    configure_relay_logging(log_level)

    config_path = Path(args.config)
    try:
        config = RelayConfig.from_file(config_path)
    except ConfigInvalid as exc:
        logging.getLogger(__name__).error("Failed to start relay: %s", exc)
        log_event(
            "startup_failed",
            level=logging.ERROR,
            origin=None,
            message_key=None,
            target=None,
            outcome="failure",
            latency_ms=None,
            extra={"reason": str(exc)},
        )
        sys.exit(1)

    try:
        asyncio.run(RelayApp(config).run())
    except OSError as exc:
        # Typically the webhook port is already taken.
        logging.getLogger(__name__).error("Relay stopped: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
