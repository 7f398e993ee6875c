"""structlog setup — called once at startup.

Learn: Every module does `logger = structlog.get_logger()` and logs
dotted event names with key/value context:

    logger.info("feedrelay.client_connected", client_id=3)

Values bound with structlog.contextvars (e.g. client_id inside the
WebSocket handler) are merged into every entry logged from that task.
"""

import logging

import structlog


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Configure structlog's processor chain and level filter."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )
