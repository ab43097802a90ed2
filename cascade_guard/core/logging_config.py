"""
Cascade Guard - Structured Logging
==================================

One-time structlog configuration shared by every component.
"""

import logging
from typing import Optional

import structlog

from cascade_guard.core.config import Settings, get_settings

_configured = False


def configure_logging(settings: Optional[Settings] = None, level: Optional[int] = None) -> None:
    """
    Configure structlog for the process.

    JSON output in production, console rendering everywhere else.
    Calling this more than once is a no-op.
    """
    global _configured
    if _configured:
        return

    settings = settings or get_settings()
    if level is None:
        level = logging.DEBUG if settings.DEBUG else logging.INFO
    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True
