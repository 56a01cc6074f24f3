"""
Structured Logging with Structlog.

Every record carries the service name and version. Signed App Store
payloads are large and carry customer data, so JWS strings that end up
in an event are cut down to their header segment before rendering.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from entitlement_relay.config import settings

# Event keys that may hold a compact JWS
SIGNED_FIELDS = frozenset({"signed_payload", "signed_transaction", "signed_renewal"})


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_signed_payloads(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Keep only the JOSE header of signed values."""
    for key in SIGNED_FIELDS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and value.count(".") == 2:
            event_dict[key] = value.split(".", 1)[0] + ".<redacted>"
    return event_dict


def _renderer(log_format: str) -> Processor:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(log_level: str | None = None) -> None:
    """
    Configure structlog on top of the standard library logger.

    JSON lines look like:
    {
        "event": "notification_processed",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "entitlement_relay.services.pipeline",
        "service": "entitlement-relay",
        "version": "0.1.0",
        "notification_id": "6f1c...",
        "result": "processed"
    }

    Args:
        log_level: Overrides LOG_LEVEL when given
    """
    level_name = (log_level or settings.log_level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # Access logs duplicate the request middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_signed_payloads,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _renderer(settings.log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("ledger_applied", user_id=user_id, version=record.version)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """
    Bind context variables for the duration of a block.

    Usage:
        with log_context(notification_id=notification_id):
            logger.info("notification_duplicate")

    Nested blocks restore the outer values on exit.
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
