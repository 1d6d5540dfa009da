"""
Logging Configuration
=====================

Structured logging with structlog. Modules obtain loggers with
``structlog.get_logger(__name__)`` and log an event name plus key/value context.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Optional

import structlog

from .config import settings

request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

SENSITIVE_KEYS = ("secret", "password", "token", "authorization", "api_key")


class RequestContextProcessor:
    """Attach the current request id to every event."""

    def __call__(self, logger, method_name, event_dict):
        req_id = request_id.get()
        if req_id:
            event_dict["request_id"] = req_id
        event_dict["environment"] = settings.ENVIRONMENT
        return event_dict


class RedactSecretsProcessor:
    """Mask values whose key looks like a credential."""

    def __call__(self, logger, method_name, event_dict):
        for key in list(event_dict.keys()):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                event_dict[key] = "[REDACTED]"
        return event_dict


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog for the process."""
    level = (level or settings.LOG_LEVEL).upper()
    log_format = log_format or settings.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        RequestContextProcessor(),
        RedactSecretsProcessor(),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
