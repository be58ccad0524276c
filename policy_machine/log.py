"""
Logging Setup

Structured logging configuration driven by application settings.
"""

import logging
from typing import Optional

import structlog

from config.settings import Settings, get_settings


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog for the policy machine.

    Production emits one JSON object per event; other environments use the
    console renderer.

    Args:
        settings: Settings providing the log level and environment (defaults to cached settings)
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level)
    if settings.is_production:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )
