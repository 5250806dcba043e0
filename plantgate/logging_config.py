"""structlog configuration module."""

import logging
import sys

import structlog


def setup_logging(debug: bool = False) -> None:
    """
    Configure structlog and stdlib logging.

    Debug mode renders colored console lines; otherwise every event is a
    JSON object so quota decisions can be queried by `subject_key`.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
    """
    level = logging.DEBUG if debug else logging.INFO

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, subject_key (from middleware/auth)
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # httpx and supabase log through stdlib; keep them on the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)
