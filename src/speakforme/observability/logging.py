"""structlog configuration.

JSON lines in production, coloured console output everywhere else.
Context bound with ``structlog.contextvars`` (suggestion id, workspace id)
is merged into every event emitted inside the bound block.
"""

from __future__ import annotations

import logging

import structlog

from speakforme.config import settings


def configure_logging(level: str | None = None, env: str | None = None) -> None:
    level_name = (level or settings.log_level).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    env = env or settings.env

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info
            if env == "production"
            else structlog.dev.set_exc_info,
            structlog.processors.JSONRenderer()
            if env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
