"""
Metrics instrumentation wrapper around prometheus_client.
"""
from prometheus_client import Counter, Histogram


class MetricsRegistry:
    """
    Central metrics registry for the record store.

    Provides typed access to all application metrics.
    """

    def __init__(self):
        """Initialize metrics registry."""
        self._setup_metrics()

    def _create_counter(self, name, description, labels=None):
        """Create a counter metric."""
        return Counter(name, description, labels or [])

    def _create_histogram(self, name, description, labels=None, buckets=None):
        """Create a histogram metric."""
        if buckets:
            return Histogram(name, description, labels or [], buckets=buckets)
        return Histogram(name, description, labels or [])

    def _setup_metrics(self):
        """Setup all application metrics."""

        # ===================================================================
        # HTTP Metrics
        # ===================================================================
        self.http_requests_total = self._create_counter(
            'http_requests_total',
            'Total HTTP requests',
            ['path', 'method', 'status']
        )

        self.http_request_duration_seconds = self._create_histogram(
            'http_request_duration_seconds',
            'HTTP request duration in seconds',
            ['path', 'method'],
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
        )

        self.exceptions_total = self._create_counter(
            'exceptions_total',
            'Total exceptions',
            ['exception_type', 'location']
        )

        # ===================================================================
        # Record / Version Metrics
        # ===================================================================
        self.records_operations_total = self._create_counter(
            'records_operations_total',
            'Record store operations',
            ['operation', 'result']  # result: success|conflict|not_found|invalid
        )

        self.records_version_conflicts_total = self._create_counter(
            'records_version_conflicts_total',
            'UpdateRecord compare-and-swap attempts that lost the race'
        )

        self.records_version_append_duration_seconds = self._create_histogram(
            'records_version_append_duration_seconds',
            'Duration of the version append transaction',
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
        )

        # ===================================================================
        # Audit / Access Metrics
        # ===================================================================
        self.records_audit_entries_total = self._create_counter(
            'records_audit_entries_total',
            'Audit entries appended',
            ['action', 'actor_role']
        )

        self.records_access_denied_total = self._create_counter(
            'records_access_denied_total',
            'Access control gate denials',
            ['role', 'operation', 'outcome']  # outcome: forbidden|hidden
        )

        # ===================================================================
        # Backup / Export Metrics
        # ===================================================================
        self.records_backups_total = self._create_counter(
            'records_backups_total',
            'Backup requests',
            ['result']  # created|idempotent
        )

        self.records_exports_total = self._create_counter(
            'records_exports_total',
            'Patient export bundles assembled',
            ['include_history']
        )


# Global metrics instance
metrics = MetricsRegistry()
