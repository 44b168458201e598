"""Structured logging setup shared by the API and the Celery worker."""

import logging
import sys

import structlog

from .config import settings


def configure_logging(level: str = None, json_logs: bool = None) -> None:
    level = (level or settings.LOG_LEVEL).upper()
    if json_logs is None:
        json_logs = not settings.is_local

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
        cache_logger_on_first_use=True,
    )
