"""Logging configuration using structlog."""

import logging
import sys
from collections.abc import Mapping
from typing import Any

import structlog

from store_publisher.config import Settings, get_settings

REDACTED = "[REDACTED]"

# Substrings of event keys whose string values never reach a log line
SENSITIVE_KEYS = (
    "authorization",
    "cookie",
    "password",
    "secret",
    "token",
    "private_key",
    "service_account",
    "assertion",
    "api_key",
    "credential",
)


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if _is_sensitive(key) and value[key] else _redact(value[key])
            for key in value
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower().replace("-", "_")
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor that masks credential-like fields."""
    for key in list(event_dict):
        if key == "event":
            continue
        if _is_sensitive(key) and event_dict[key]:
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structured logging for one publisher run."""
    settings = settings or get_settings()

    # Logs go to stderr so stdout stays reserved for the deployment summary
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.log_level),
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
