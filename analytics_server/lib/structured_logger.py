"""Structured Logger with JSON Formatting.

Provides structured logging with JSON output for machine-readable logs and
request-scoped correlation IDs that follow a request through async calls.
"""

import contextvars
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

# Async-safe: propagates through awaits and tasks created inside a request
correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    'request_id', default='no-request-id'
)

# Record attributes copied into the JSON payload when present
CONTEXT_FIELDS = (
    'database',
    'operation',
    'collection',
    'duration_ms',
    'cache_key',
    'key_prefix',
    'event_type',
    'group_id',
    'endpoint',
    'status_code',
)

SENSITIVE_KEYS = ('token', 'password', 'api_key', 'admin_api_key', 'uri', 'secret')


def get_correlation_id() -> str:
    """Return the current request's correlation ID ('no-request-id' outside a request)."""
    return correlation_id.get()


def set_correlation_id(request_id: str) -> None:
    correlation_id.set(request_id)


def generate_correlation_id() -> str:
    """Generate a new correlation ID and set it in context.

    Returns:
        Generated correlation ID (UUID4 string)
    """
    request_id = str(uuid4())
    set_correlation_id(request_id)
    return request_id


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': _utc_timestamp(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'request_id': get_correlation_id(),
        }

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
            }

        return json.dumps(log_data, default=str)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON formatter on the root logger.

    Called once by the application entry points. Library modules only ever
    call logging.getLogger(__name__).

    Args:
        level: Log level name; defaults to the LOG_LEVEL environment variable
    """
    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in root.handlers:
        if isinstance(handler.formatter, JSONFormatter):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


class StructuredLogger:
    """Thin wrapper that turns keyword arguments into structured context.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info('Cache miss', cache_key='engagement_metrics:params:period=week')
        logger.error('Probe failed', exc_info=True, database='mongodb')
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def info(self, message: str, **extra: Any) -> None:
        self.logger.info(message, extra=extra)

    def warning(self, message: str, exc_info: bool = False, **extra: Any) -> None:
        self.logger.warning(message, exc_info=exc_info, extra=extra)

    def error(self, message: str, exc_info: bool = False, **extra: Any) -> None:
        self.logger.error(message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **extra: Any) -> None:
        self.logger.debug(message, extra=extra)


def log_event(event: str, level: str = 'INFO', context: Optional[Dict[str, Any]] = None) -> None:
    """Log a named event with correlation ID, dropping sensitive context keys.

    Args:
        event: Event name (e.g., "monitor.automatic_checks_started")
        level: Log level (INFO, WARNING, ERROR, DEBUG)
        context: Additional context dictionary

    Example:
        log_event('cache.invalidated', context={'kind': 'comment', 'entity_id': 'c1'})
    """
    payload = {
        'event': event,
        'correlation_id': get_correlation_id(),
        **(context or {}),
    }
    for key in SENSITIVE_KEYS:
        payload.pop(key, None)

    logging.getLogger('analytics_server.events').log(
        getattr(logging, level.upper(), logging.INFO),
        json.dumps(payload, default=str),
    )
