"""
Health check endpoints.

Provides /healthz and /readyz endpoints for monitoring.
"""
import logging
from django.http import JsonResponse
from django.views import View
from django.db import DatabaseError, connection
from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


class HealthzView(View):
    """
    Liveness endpoint. Does not touch dependencies.
    """

    def get(self, request):
        health_data = {
            'status': 'ok',
            'service': 'clinical-record-store',
            'version': getattr(settings, 'VERSION', 'unknown'),
        }

        commit_hash = getattr(settings, 'COMMIT_HASH', None)
        if commit_hash:
            health_data['commit'] = commit_hash

        return JsonResponse(health_data, status=200)


class ReadyzView(View):
    """
    Readiness endpoint.

    Ready means the database answers and the configured relationship
    collaborator can be loaded. Either failing returns 503.
    """

    def get(self, request):
        checks = {
            'database': self._check_database(),
            'relationship_checker': self._check_relationship_checker(),
        }

        all_healthy = all(checks.values())

        return JsonResponse(
            {
                'status': 'ready' if all_healthy else 'not_ready',
                'checks': checks,
            },
            status=200 if all_healthy else 503
        )

    def _check_database(self):
        try:
            with connection.cursor() as cursor:
                cursor.execute('SELECT 1')
                return True
        except DatabaseError as e:
            logger.error(
                'Database health check failed',
                extra={
                    'event': 'health_check_failed',
                    'check': 'database',
                    'error': str(e)
                }
            )
            return False

    def _check_relationship_checker(self):
        path = settings.RECORDS_RELATIONSHIP_CHECKER
        try:
            import_string(path)
            return True
        except ImportError as e:
            logger.error(
                'Relationship checker cannot be loaded',
                extra={
                    'event': 'health_check_failed',
                    'check': 'relationship_checker',
                    'checker': path,
                    'error': str(e)
                }
            )
            return False
