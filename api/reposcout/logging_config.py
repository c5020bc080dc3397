"""Structured logging setup.

Routes both structlog and stdlib logging (uvicorn, sqlalchemy, httpx) through
one JSON renderer so every line carries the same timestamp and context keys.
"""

import logging
import sys

import structlog

from reposcout.config import settings


def configure_logging(level: str | None = None) -> None:
    """Configure structlog + stdlib logging. Safe to call more than once."""
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    # httpx logs every request at INFO; the GitHub fan-out makes that noisy
    logging.getLogger("httpx").setLevel(logging.WARNING)
