"""Structured logging for the award engine.

Engine modules log through ``structlog.get_logger()`` with snake_case event
names (``xp_awarded``, ``level_reached``, ``achievement_granted``) and
keyword context. Call ``setup_logging`` once at process start.
"""

import logging

import structlog

from funlab.config import Settings


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON or console output."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    structlog.contextvars.bind_contextvars(service="funlab", environment=settings.environment)


def bind_awardable(awardable_type: str, awardable_id: int) -> None:
    """Attach the current awardable to every log line of this context."""
    structlog.contextvars.bind_contextvars(awardable_type=awardable_type, awardable_id=awardable_id)


def clear_awardable() -> None:
    structlog.contextvars.unbind_contextvars("awardable_type", "awardable_id")
