"""
Domain events logging helpers.

Provides structured event logging for record store operations.
Record content never goes through these helpers.
"""
from typing import Dict, Optional
from .logging import get_sanitized_logger, sanitize_dict

logger = get_sanitized_logger(__name__)


def log_domain_event(
    event_name: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    entity_ids: Optional[Dict[str, str]] = None,
    result: str = 'success',
    **extra_fields
):
    """
    Log a domain event with structured data.

    Args:
        event_name: Name of the event (e.g., 'record.version_appended')
        entity_type: Type of entity (e.g., 'MedicalRecord', 'RecordBackup')
        entity_id: ID of primary entity
        entity_ids: Dictionary of related entity IDs
        result: Result of operation (success, failure, conflict, blocked...)
        **extra_fields: Additional fields to log (will be sanitized)

    Example:
        log_domain_event(
            'record.version_appended',
            entity_type='MedicalRecord',
            entity_id=str(record.id),
            entity_ids={'patient_id': str(record.patient_id)},
            result='success',
            version_number=3
        )
    """
    event_data = {
        'event': event_name,
        'result': result,
    }

    if entity_type:
        event_data['entity_type'] = entity_type

    if entity_id:
        event_data['entity_id'] = entity_id

    if entity_ids:
        event_data.update(entity_ids)

    # Sanitize extra fields
    sanitized_extra = sanitize_dict(extra_fields)
    event_data.update(sanitized_extra)

    # Log at appropriate level based on result
    if result in ['failure', 'error']:
        logger.error(f'Domain event: {event_name}', extra=event_data)
    elif result in ['warning', 'blocked', 'conflict', 'hidden']:
        logger.warning(f'Domain event: {event_name}', extra=event_data)
    else:
        logger.info(f'Domain event: {event_name}', extra=event_data)


def log_version_appended(record, version, duration_ms=None):
    """Log a successful version append (create or update)."""
    extra = {'version_number': version.version_number, 'content_size': version.content_size}
    if duration_ms is not None:
        extra['duration_ms'] = duration_ms

    log_domain_event(
        'record.version_appended',
        entity_type='MedicalRecord',
        entity_id=str(record.id),
        entity_ids={
            'patient_id': str(record.patient_id),
            'version_id': str(version.id),
        },
        result='success',
        **extra
    )


def log_version_conflict(record_id, expected_version_number, actual_version_number):
    """Log a lost compare-and-swap on UpdateRecord."""
    log_domain_event(
        'record.version_conflict',
        entity_type='MedicalRecord',
        entity_id=str(record_id),
        result='conflict',
        expected_version_number=expected_version_number,
        actual_version_number=actual_version_number
    )


def log_access_denied(actor, operation, hidden, target_id=None):
    """Log an access control gate denial (hidden = reported as not found)."""
    log_domain_event(
        'records.access_denied',
        entity_id=str(target_id) if target_id else None,
        result='hidden' if hidden else 'blocked',
        actor_id=str(actor.actor_id),
        actor_role=actor.role,
        operation=operation
    )


def log_record_state_changed(record, action, actor):
    """Log soft delete / restore of a record."""
    log_domain_event(
        f'record.{action}',
        entity_type='MedicalRecord',
        entity_id=str(record.id),
        entity_ids={'patient_id': str(record.patient_id)},
        result='success',
        actor_id=str(actor.actor_id),
        actor_role=actor.role
    )


def log_backup(backup, created):
    """Log a backup request (created or idempotent replay)."""
    log_domain_event(
        'record.backup',
        entity_type='RecordBackup',
        entity_id=str(backup.id),
        entity_ids={
            'record_id': str(backup.record_id),
            'patient_id': str(backup.patient_id),
        },
        result='success' if created else 'duplicate',
        version_number=backup.version_number,
        storage_size=backup.storage_size
    )


def log_export(patient_id, record_count, size_bytes, include_history):
    """Log assembly of a patient export bundle."""
    log_domain_event(
        'patient.export',
        entity_type='Patient',
        entity_id=str(patient_id),
        result='success',
        record_count=record_count,
        size_bytes=size_bytes,
        include_history=include_history
    )
