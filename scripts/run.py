#!/usr/bin/env python3
"""Main entrypoint — builds the incident response engine and runs it.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level
    python scripts/run.py --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from src.core.config import ConfigValidationError, load_settings
from src.core.logging import setup_logging
from src.core.types import Alert
from src.engine.factory import create_engine
from src.notify.exceptions import UnsupportedChannelError

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Start the engine and run until interrupted."""
    try:
        settings = load_settings(args.config)
    except ConfigValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1
    setup_logging(level=args.log_level)

    try:
        engine = create_engine(settings)
    except UnsupportedChannelError as exc:
        logger.error("engine_build_failed", error=str(exc))
        return 1

    def _log_alert(alert: Alert) -> None:
        logger.info(
            "alert_triggered",
            alert_id=alert.id,
            rule_id=alert.rule_id,
            severity=alert.severity.value,
        )

    engine.on_alert(_log_alert)

    logger.info(
        "engine_starting",
        environment=settings.engine.environment,
        rules=len(settings.alert_rules),
        policies=len(settings.escalation_policies),
        channels=[c.id for c in settings.channels],
    )
    await engine.start()

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("engine_shutting_down")
    await engine.shutdown()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the alert & incident response engine.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
