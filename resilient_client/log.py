"""Structured logging for resilient-client.

Usage:
    from resilient_client.log import configure_logging, get_logger

    configure_logging(level="DEBUG", format="json")
    logger = get_logger("retry")
    logger.info("retry_scheduled", attempt=1, delay=1.2)
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, List, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Keys whose values must never reach a log sink
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "authorization",
    "bearer",
})


def _sanitize_value(key: str, value: Any) -> Any:
    key_lower = key.lower()
    for pattern in SENSITIVE_PATTERNS:
        if pattern in key_lower:
            return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields, one level deep."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _sanitize_value(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _get_processors(format: str) -> List[Processor]:  # noqa: A002
    processors: List[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_timestamp,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    return processors


def configure_logging(level: str = "INFO", format: str = "console") -> None:  # noqa: A002
    """
    Configure structured logging for the package.

    Call once at application startup. Library code only emits events; it
    never configures handlers on its own.

    Args:
        level: Minimum level name ("DEBUG", "INFO", "WARNING", "ERROR")
        format: "console" for human-readable output, "json" for one JSON
            object per line

    Raises:
        ValueError: If format or level is not recognized
    """
    if format not in ("console", "json"):
        raise ValueError(f"Unknown log format: {format}")

    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    # Loggers created at import time must pick up this configuration
    structlog.configure(
        processors=_get_processors(format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> Any:
    """Get a structlog logger bound to a component name."""
    return structlog.get_logger("resilient_client", component=component, **initial_context)


def log_error(error: Any, context: Optional[str] = None) -> None:
    """
    Log a typed error's diagnostic fields.

    Args:
        error: A TypedError (anything with a to_dict() method)
        context: Short label for where the error was observed
    """
    logger = get_logger("errors")
    fields = error.to_dict()
    kind = fields.pop("kind")
    occurred_at = fields.pop("timestamp")
    logger.error(
        "typed_error",
        context=context or "TypedError",
        error_kind=kind,
        occurred_at=occurred_at,
        **fields,
    )
