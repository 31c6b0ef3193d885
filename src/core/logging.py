"""Structured logging setup using structlog.

Two streams come out of the engine: ordinary operational logs from
``structlog.get_logger(__name__)`` and decision records from the dedicated
``decision_log`` logger (alert created or suppressed, escalation level run,
channel skipped, rollback).  Both share the same processor chain; decision
records can additionally be teed into their own JSON-lines file.
"""

from __future__ import annotations

import logging
import sys

import structlog

from src.core.config import LoggingConfig, get_settings

DECISION_LOGGER = "decision_log"


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def _formatter(renderer: structlog.types.Processor) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def setup_logging(
    level: str | None = None,
    fmt: str | None = None,
    config: LoggingConfig | None = None,
) -> None:
    """Configure structlog with JSON or console renderer.

    Args:
        level: Log level override (e.g. "DEBUG"). Uses config if None.
        fmt: Renderer format override ("json" or "console"). Uses config if None.
        config: Logging section to apply; defaults to the loaded settings.
    """
    if config is None:
        settings = get_settings()
        config = settings.logging
        structlog.contextvars.bind_contextvars(
            environment=settings.engine.environment,
            service=settings.engine.service,
        )
    log_level = getattr(logging, (level or config.level).upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_formatter(_renderer(fmt or config.format)))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name, lib_level in config.library_levels.items():
        logging.getLogger(name).setLevel(lib_level.upper())

    # Decisions are always kept, whatever the operational level.
    decision = logging.getLogger(DECISION_LOGGER)
    decision.setLevel(logging.INFO)
    for old in [h for h in decision.handlers if isinstance(h, logging.FileHandler)]:
        decision.removeHandler(old)
        old.close()
    if config.decision_log_file:
        file_handler = logging.FileHandler(config.decision_log_file)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        decision.addHandler(file_handler)
