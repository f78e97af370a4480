"""Structured logging configuration with structlog."""

import logging

import structlog

from zuno.config import Settings

NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "aiosqlite")


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON or console output."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
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

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    # Per-request and per-frame chatter from the transport libraries
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def bind_session_context(user_id: str | None, zuno_tag: str | None = None) -> None:
    """Attach the signed-in identity to every subsequent log line."""
    structlog.contextvars.clear_contextvars()
    if user_id is not None:
        structlog.contextvars.bind_contextvars(user_id=user_id, zuno_tag=zuno_tag)
