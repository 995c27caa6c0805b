"""
Structured logging that keeps clinical data out of the logs.

Record content, titles, descriptions, tags, search text and identity data
are redacted by key at any nesting depth. Model instances are logged as
``app_label.Model:pk`` because several of them render PHI from __str__
(a User prints its email).
"""
import logging
import json
from datetime import datetime, timezone

from django.db import models

from .correlation import get_request_id, get_trace_id, get_user_id, get_user_roles


# Keys whose values never reach a log line
SENSITIVE_FIELDS = frozenset({
    # credentials
    'password',
    'token',
    'secret',
    'api_key',
    'authorization',
    # record payloads
    'content',
    'previous_content',
    'title',
    'description',
    'change_description',
    'tags',
    'snapshot',
    'diff',
    # search input may carry diagnoses or names
    'q',
    'query',
    # identity
    'first_name',
    'last_name',
    'email',
    'phone',
    'address',
    'date_of_birth',
})

# Standard LogRecord attributes that are not extra fields
_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message', 'asctime',
}

REDACTED = '[REDACTED]'


def is_sensitive(key):
    return str(key).lower() in SENSITIVE_FIELDS


def redact(value):
    """Copy of ``value`` with sensitive keys redacted at every depth."""
    if isinstance(value, dict):
        return {k: REDACTED if is_sensitive(k) else redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [redact(v) for v in value]
    if isinstance(value, models.Model):
        return f'{value._meta.label}:{value.pk}'
    return value


def sanitize_dict(data):
    """
    Sanitize a dictionary by redacting sensitive fields.

    Args:
        data: Dictionary to sanitize

    Returns:
        Sanitized copy; non-dict input is returned unchanged
    """
    if not isinstance(data, dict):
        return data
    return redact(data)


class CorrelationFilter(logging.Filter):
    """
    Logging filter that injects correlation context into log records.
    """

    def filter(self, record):
        record.request_id = get_request_id() or '-'
        record.trace_id = get_trace_id() or '-'
        record.user_id = get_user_id() or '-'
        record.user_roles = ','.join(get_user_roles()) or '-'
        return True


class SanitizedJSONFormatter(logging.Formatter):
    """
    One JSON object per line: correlation fields plus redacted extras.
    """

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'request_id': getattr(record, 'request_id', '-'),
            'trace_id': getattr(record, 'trace_id', '-'),
            'user_id': getattr(record, 'user_id', '-'),
            'user_roles': getattr(record, 'user_roles', '-'),
        }

        extras = {
            key: value for key, value in record.__dict__.items()
            if key not in log_data and not key.startswith('_') and key not in _RESERVED_ATTRS
        }
        log_data.update(redact(extras))

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def get_sanitized_logger(name):
    """
    Get a logger with correlation filter applied.

    Usage:
        logger = get_sanitized_logger(__name__)
        logger.info('Event', extra={'event': 'record.created', 'record_id': str(record.id)})
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationFilter) for f in logger.filters):
        logger.addFilter(CorrelationFilter())

    return logger
