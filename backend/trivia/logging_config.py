"""Structured logging setup for the trivia service."""

from __future__ import annotations

import logging
import sys

import structlog

from .config import settings


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog and route the standard library loggers through it."""
    level_name = (level or settings.LOG_LEVEL).upper()
    as_json = settings.LOG_JSON if json_logs is None else json_logs

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    renderer = structlog.processors.JSONRenderer() if as_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
