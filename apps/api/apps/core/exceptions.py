"""
Service error taxonomy and the DRF exception handler that renders it.

Every error leaves the API as ``{"error": "<message>"}`` with the status
code of its class. Input validation errors add ``details``.
"""
import logging

from django.db import DatabaseError
from rest_framework import exceptions as drf_exceptions
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from .observability import metrics

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors raised by the service layer."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = 'Internal server error'

    def __init__(self, message=None, details=None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationError(ServiceError):
    """Malformed or missing required input."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Invalid input'


class Unauthorized(ServiceError):
    """No or invalid credential."""
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = 'Authentication required'


class Forbidden(ServiceError):
    """Authenticated but not entitled."""
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'You do not have permission to perform this action'


class NotFound(ServiceError):
    """Target absent or hidden by policy."""
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Not found'


class Conflict(ServiceError):
    """
    Optimistic concurrency check lost.

    ``current_version`` is the version the record actually points at, so the
    caller can re-merge and retry.
    """
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Record has been modified by another writer'

    def __init__(self, message=None, current_version=None):
        super().__init__(message)
        self.current_version = current_version


class InternalError(ServiceError):
    """Storage or infrastructure failure. Never carries internal detail to clients."""


class ImmutableEntryError(InternalError):
    """Raised when code tries to rewrite or remove an append-only row."""


def api_exception_handler(exc, context):
    """
    REST_FRAMEWORK['EXCEPTION_HANDLER'].

    - ServiceError subclasses -> their status code
    - DRF errors (401/403/404/400/405...) -> same status, {"error"} body
    - DatabaseError -> 500 without detail
    """
    view = context.get('view')
    location = view.__class__.__name__ if view else 'unknown'

    if isinstance(exc, ServiceError):
        if exc.status_code >= 500:
            logger.error(
                'Service error',
                exc_info=exc,
                extra={'event': 'service_error', 'error_type': exc.__class__.__name__, 'view': location}
            )
            metrics.exceptions_total.labels(
                exception_type=exc.__class__.__name__, location=location
            ).inc()
            return Response({'error': ServiceError.default_message}, status=exc.status_code)

        body = {'error': exc.message}
        if exc.details:
            body['details'] = exc.details
        return Response(body, status=exc.status_code)

    if isinstance(exc, DatabaseError):
        logger.error(
            'Database failure',
            exc_info=exc,
            extra={'event': 'database_error', 'view': location}
        )
        metrics.exceptions_total.labels(
            exception_type=exc.__class__.__name__, location=location
        ).inc()
        return Response(
            {'error': ServiceError.default_message},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, drf_exceptions.ValidationError):
        response.data = {'error': ValidationError.default_message, 'details': response.data}
    elif isinstance(response.data, dict) and 'detail' in response.data:
        response.data = {'error': str(response.data['detail'])}
    else:
        response.data = {'error': str(response.data)}
    return response
