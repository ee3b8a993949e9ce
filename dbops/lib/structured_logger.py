"""Structured Logger with JSON Formatting.

Provides JSON log lines for the database operations subsystem. Context passed
as keyword arguments travels on the record under ``context`` and is flattened
into the JSON document by ``JSONFormatter``.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dbops.lib.distributed_tracing import get_correlation_id

PACKAGE_LOGGER = 'dbops'

# Keys never written to the log, bind parameters included
SENSITIVE_KEYS = ('password', 'token', 'secret', 'params', 'access_token')


def _filter_sensitive(context: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in context.items() if key not in SENSITIVE_KEYS}


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
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name,
            'module': record.module,
            'function': record.funcName,
            'correlation_id': get_correlation_id(),
        }

        context = getattr(record, 'context', None)
        if isinstance(context, dict):
            for key, value in _filter_sensitive(context).items():
                log_data.setdefault(key, value)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
            }

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Thin wrapper around a stdlib logger that accepts keyword context.

    Records propagate to the ``dbops`` package logger, which owns the JSON
    handler once ``configure_logging`` has run.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info('Backup created', backup_id='backup_...', size_bytes=2048)
        logger.error('Restore failed', exc_info=True, backup_id=backup_id)
    """

    def __init__(self, name: str):
        """Initialize structured logger.

        Args:
            name: Logger name (typically module name)
        """
        self.logger = logging.getLogger(name)

    def info(self, message: str, **context: Any) -> None:
        self.logger.info(message, extra={'context': context})

    def warning(self, message: str, exc_info: bool = False, **context: Any) -> None:
        self.logger.warning(message, exc_info=exc_info, extra={'context': context})

    def error(self, message: str, exc_info: bool = False, **context: Any) -> None:
        self.logger.error(message, exc_info=exc_info, extra={'context': context})

    def debug(self, message: str, **context: Any) -> None:
        self.logger.debug(message, extra={'context': context})


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Install the JSON handler on the package logger.

    Safe to call more than once; a second call only adjusts the level.

    Args:
        level: Log level name, defaults to the LOG_LEVEL environment variable

    Returns:
        The configured package logger
    """
    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not any(isinstance(h.formatter, JSONFormatter) for h in package_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        package_logger.addHandler(handler)

    return package_logger


def log_event(event: str, level: str = 'INFO', context: Optional[Dict[str, Any]] = None) -> None:
    """Log a named operational event.

    Args:
        event: Event name (e.g., "backup.created", "restore.integrity_failed")
        level: Log level (INFO, WARNING, ERROR, DEBUG)
        context: Additional context dictionary (filtered for sensitive data)

    Example:
        log_event('backup.created', context={'backup_id': metadata.id, 'tables': 4})
    """
    event_logger = logging.getLogger(f'{PACKAGE_LOGGER}.events')
    payload = {'event': event, **_filter_sensitive(context or {})}
    event_logger.log(getattr(logging, level.upper(), logging.INFO), event, extra={'context': payload})


def log_request(endpoint: str, method: str, status_code: int, duration_ms: float) -> None:
    """Log an operator API request.

    Args:
        endpoint: API endpoint path
        method: HTTP method
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
    """
    log_event(
        'http.request',
        context={
            'endpoint': endpoint,
            'method': method,
            'status_code': status_code,
            'duration_ms': round(duration_ms, 2),
        },
    )
