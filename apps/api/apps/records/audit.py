"""
Audit trail logger.

record_audit() appends one immutable entry. Callers performing a mutation
call it inside the same transaction.atomic() block, so a failed audit write
rolls the mutation back.
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.db import DatabaseError
from django.db.models import Count, Max
from django.utils import timezone

from apps.core.exceptions import InternalError, NotFound, ValidationError
from apps.core.observability import metrics

from .access import Operation, require
from .models import AuditActionChoices, MedicalRecord, RecordAuditEntry

logger = logging.getLogger(__name__)


def record_audit(actor, action, patient_id, record=None, metadata=None):
    """
    Append one audit entry.

    Args:
        actor: Actor who performed the action
        action: AuditActionChoices value
        patient_id: subject patient
        record: subject MedicalRecord (None for patient-scope actions)
        metadata: JSON-serialisable dict, never record content

    Returns:
        RecordAuditEntry

    Raises:
        InternalError: the entry could not be written
    """
    try:
        entry = RecordAuditEntry.objects.create(
            record_id=record.id if record is not None else None,
            patient_id=patient_id,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            action=action,
            metadata=metadata or {}
        )
    except DatabaseError as exc:
        logger.error(
            'Audit entry could not be written',
            exc_info=True,
            extra={
                'event': 'audit_write_failed',
                'action': action,
                'record_id': str(record.id) if record is not None else None,
                'patient_id': str(patient_id),
            }
        )
        raise InternalError('Audit trail unavailable') from exc

    metrics.records_audit_entries_total.labels(action=action, actor_role=actor.role).inc()
    return entry


def _clamp_limit(limit):
    if limit is None:
        return settings.RECORDS_AUDIT_LIMIT
    if limit < 1:
        raise ValidationError('limit must be a positive integer')
    return min(limit, settings.RECORDS_MAX_PAGE_SIZE)


def _parse_actions(actions):
    if not actions:
        return []
    valid = set(AuditActionChoices.values)
    unknown = [a for a in actions if a not in valid]
    if unknown:
        raise ValidationError(
            'Unknown audit action',
            details={'actions': unknown}
        )
    return list(actions)


def get_record_audit(actor, record_id, limit=None):
    """Entries for one record, newest first. Soft-deleted records keep their trail."""
    try:
        record = MedicalRecord.objects.get(pk=record_id)
    except MedicalRecord.DoesNotExist:
        raise NotFound('Record not found')

    actor = require(actor, Operation.VIEW_RECORD_AUDIT, record=record).acting_as(actor)
    return list(
        RecordAuditEntry.objects.filter(record_id=record.id)
        .order_by('-created_at', '-id')[:_clamp_limit(limit)]
    )


def get_patient_audit(actor, patient_id, actions=None, start_date=None, end_date=None, page=1, limit=None):
    """
    Entries across all of a patient's records, newest first.

    Args:
        actions: optional list of action kinds to keep
        start_date / end_date: optional inclusive date bounds
        page, limit: 1-based page number and page size

    Returns:
        dict with 'results' and 'pagination'
    """
    require(actor, Operation.VIEW_PATIENT_AUDIT, patient_id=patient_id)

    limit = _clamp_limit(limit)
    if page < 1:
        raise ValidationError('page must be a positive integer')
    if start_date and end_date and start_date > end_date:
        raise ValidationError('start_date must not be after end_date')

    qs = RecordAuditEntry.objects.filter(patient_id=patient_id)
    actions = _parse_actions(actions)
    if actions:
        qs = qs.filter(action__in=actions)
    if start_date:
        qs = qs.filter(created_at__date__gte=start_date)
    if end_date:
        qs = qs.filter(created_at__date__lte=end_date)

    total = qs.count()
    offset = (page - 1) * limit
    results = list(qs.order_by('-created_at', '-id')[offset:offset + limit])

    return {
        'results': results,
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'pages': (total + limit - 1) // limit,
        },
    }


def get_doctor_activity(actor, doctor_id, start_date=None, end_date=None, limit=None):
    """
    Entries performed by ``doctor_id`` plus a per-action summary.

    Defaults to the RECORDS_ACTIVITY_WINDOW_DAYS days ending at ``end_date``
    (today when no end date is given).

    Returns:
        dict with 'doctor_id', 'window', 'summary' and 'entries'
    """
    require(actor, Operation.VIEW_DOCTOR_ACTIVITY, doctor_id=doctor_id)

    limit = _clamp_limit(limit)
    if start_date is None:
        start_date = (end_date or timezone.localdate()) - timedelta(days=settings.RECORDS_ACTIVITY_WINDOW_DAYS)
    if end_date and start_date > end_date:
        raise ValidationError('start_date must not be after end_date')

    qs = RecordAuditEntry.objects.filter(actor_id=doctor_id, created_at__date__gte=start_date)
    if end_date:
        qs = qs.filter(created_at__date__lte=end_date)

    summary = list(
        qs.values('action')
        .annotate(count=Count('id'), last_performed=Max('created_at'))
        .order_by('-count', 'action')
    )

    return {
        'doctor_id': doctor_id,
        'window': {'start_date': start_date, 'end_date': end_date},
        'summary': summary,
        'entries': list(qs.order_by('-created_at', '-id')[:limit]),
    }
