"""
Version chain manager.

Owns the invariant that every record has a contiguous, gap-free chain of
immutable versions starting at 1 and a single current-version pointer.

UpdateRecord advances the pointer with a compare-and-swap on
MedicalRecord.current_version_number:

    UPDATE medical_record SET current_version_number = n + 1
    WHERE id = ? AND current_version_number = n AND is_deleted = false

Exactly one writer presenting ``n`` matches the row; the others update
nothing and get Conflict. The unique (record, version_number) constraint
on record_version backs this up at the storage level.

Every mutation and its audit entry commit in one transaction.atomic() block.
"""
import difflib
import json
import time

from django.conf import settings
from django.db import IntegrityError, connection, transaction
from django.db.models import Q
from django.utils import timezone

from apps.core.exceptions import Conflict, NotFound, ValidationError
from apps.core.observability import metrics
from apps.core.observability.events import (
    log_record_state_changed,
    log_version_appended,
    log_version_conflict,
)

from .access import Operation, require
from .audit import record_audit
from .models import AuditActionChoices, MedicalRecord, RecordVersion, compute_content_hash
from .relationships import get_relationship_checker


# ============================================================================
# Helpers
# ============================================================================

def _get_record_or_404(record_id):
    try:
        return MedicalRecord.objects.select_related('current_version').get(pk=record_id)
    except MedicalRecord.DoesNotExist:
        raise NotFound('Record not found')


def _clean_text(value, field, required=True, max_length=None):
    if value is None:
        value = ''
    if not isinstance(value, str):
        raise ValidationError(details={field: ['Must be a string.']})
    if required and not value.strip():
        raise ValidationError(details={field: ['This field may not be blank.']})
    if max_length and len(value) > max_length:
        raise ValidationError(details={field: [f'Ensure this field has no more than {max_length} characters.']})
    return value


def _clean_tags(tags):
    """Tags are a set of unique strings; input order of first occurrence is kept."""
    if tags is None:
        return []
    if not isinstance(tags, (list, tuple)):
        raise ValidationError(details={'tags': ['Expected a list of strings.']})
    cleaned = []
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            raise ValidationError(details={'tags': ['Tags must be non-empty strings.']})
        tag = tag.strip()
        if tag not in cleaned:
            cleaned.append(tag)
    return cleaned


def _new_version(record, version_number, content, change_description, doctor_id):
    return RecordVersion.objects.create(
        record=record,
        version_number=version_number,
        content=content,
        content_hash=compute_content_hash(content),
        content_size=len(content.encode('utf-8')),
        change_description=change_description,
        created_by_doctor_id=doctor_id
    )


def _raise_conflict(record_id, expected_version_number):
    """Report the version the record actually points at."""
    current = _get_record_or_404(record_id)
    if current.is_deleted:
        raise NotFound('Record not found')

    metrics.records_version_conflicts_total.inc()
    metrics.records_operations_total.labels(operation='update', result='conflict').inc()
    log_version_conflict(record_id, expected_version_number, current.current_version_number)

    raise Conflict(
        f'Record is at version {current.current_version_number}, '
        f'expected {expected_version_number}',
        current_version=current.current_version
    )


# ============================================================================
# Operations
# ============================================================================

def create_record(actor, patient_id, title, content, description='', tags=None,
                  change_description='Initial version'):
    """
    Create a record together with its version 1.

    Returns:
        (MedicalRecord, RecordVersion)

    Raises:
        ValidationError: empty title or content
        NotFound / Forbidden: access denied
    """
    require(actor, Operation.CREATE_RECORD, patient_id=patient_id)

    title = _clean_text(title, 'title', max_length=255)
    content = _clean_text(content, 'content')
    description = _clean_text(description, 'description', required=False)
    change_description = _clean_text(change_description, 'change_description', required=False, max_length=500)
    tags = _clean_tags(tags)

    started = time.monotonic()
    with transaction.atomic():
        record = MedicalRecord.objects.create(
            patient_id=patient_id,
            created_by_doctor_id=actor.actor_id,
            last_modified_by_doctor_id=actor.actor_id,
            title=title,
            description=description,
            tags=tags
        )
        version = _new_version(record, 1, content, change_description, actor.actor_id)

        record.current_version = version
        record.current_version_number = 1
        record.save(update_fields=['current_version', 'current_version_number', 'updated_at'])

        record_audit(
            actor,
            AuditActionChoices.CREATE,
            patient_id,
            record=record,
            metadata={'version_number': 1, 'content_size': version.content_size}
        )

    duration = time.monotonic() - started
    metrics.records_version_append_duration_seconds.observe(duration)
    metrics.records_operations_total.labels(operation='create', result='success').inc()
    log_version_appended(record, version, duration_ms=round(duration * 1000, 2))

    return record, version


def get_record(actor, record_id):
    """
    Record plus its current version.

    Patients get NotFound for soft-deleted records; doctors and admins may
    still read them.
    """
    record = _get_record_or_404(record_id)
    actor = require(actor, Operation.VIEW_RECORD, record=record).acting_as(actor)

    record_audit(
        actor,
        AuditActionChoices.VIEW,
        record.patient_id,
        record=record,
        metadata={'version_number': record.current_version_number}
    )
    return record


def update_record(actor, record_id, content, expected_version_number, change_description='',
                  title=None, description=None, tags=None):
    """
    Append version ``expected_version_number + 1`` and advance the pointer.

    Succeeds only if the record is still at ``expected_version_number`` at
    commit time.

    Returns:
        (MedicalRecord, RecordVersion)

    Raises:
        ValidationError: empty content, bad expected version or metadata
        NotFound: record missing, hidden or soft-deleted
        Conflict: the record moved on; carries the actual current version
    """
    record = _get_record_or_404(record_id)
    require(actor, Operation.UPDATE_RECORD, record=record)

    if record.is_deleted:
        raise NotFound('Record not found')

    if isinstance(expected_version_number, bool) or not isinstance(expected_version_number, int) \
            or expected_version_number < 1:
        raise ValidationError(details={'expected_version_number': ['Must be a positive integer.']})

    content = _clean_text(content, 'content')
    change_description = _clean_text(change_description, 'change_description', required=False, max_length=500)

    changes = {}
    if title is not None:
        changes['title'] = _clean_text(title, 'title', max_length=255)
    if description is not None:
        changes['description'] = _clean_text(description, 'description', required=False)
    if tags is not None:
        changes['tags'] = _clean_tags(tags)

    next_number = expected_version_number + 1
    started = time.monotonic()

    with transaction.atomic():
        now = timezone.now()
        claimed = MedicalRecord.objects.filter(
            pk=record.pk,
            current_version_number=expected_version_number,
            is_deleted=False
        ).update(
            current_version_number=next_number,
            last_modified_by_doctor_id=actor.actor_id,
            updated_at=now,
            **changes
        )
        if not claimed:
            _raise_conflict(record.pk, expected_version_number)

        try:
            with transaction.atomic():
                version = _new_version(record, next_number, content, change_description, actor.actor_id)
        except IntegrityError:
            _raise_conflict(record.pk, expected_version_number)

        MedicalRecord.objects.filter(pk=record.pk).update(current_version=version)

        record_audit(
            actor,
            AuditActionChoices.UPDATE,
            record.patient_id,
            record=record,
            metadata={
                'version_number': next_number,
                'previous_version_number': expected_version_number,
                'content_size': version.content_size,
                'metadata_changed': sorted(changes),
            }
        )

    duration = time.monotonic() - started
    metrics.records_version_append_duration_seconds.observe(duration)
    metrics.records_operations_total.labels(operation='update', result='success').inc()

    record = _get_record_or_404(record.pk)
    log_version_appended(record, version, duration_ms=round(duration * 1000, 2))
    return record, version


def _clamp_version_limit(limit, offset):
    if limit is None:
        limit = settings.RECORDS_VERSION_HISTORY_LIMIT
    if limit < 1 or offset < 0:
        raise ValidationError('limit must be positive and offset must not be negative')
    return min(limit, settings.RECORDS_MAX_PAGE_SIZE)


def list_versions(actor, record_id, limit=None, offset=0):
    """
    Versions ordered by version number descending.

    Returns:
        (MedicalRecord, QuerySet) where the queryset is a lazy slice
        [offset:offset + limit] without the content column loaded. Calling
        again with a larger offset continues where the previous page ended.
    """
    record = _get_record_or_404(record_id)
    actor = require(actor, Operation.VIEW_VERSIONS, record=record).acting_as(actor)
    limit = _clamp_version_limit(limit, offset)

    record_audit(
        actor,
        AuditActionChoices.VIEW,
        record.patient_id,
        record=record,
        metadata={'scope': 'versions', 'limit': limit, 'offset': offset}
    )

    versions = (
        RecordVersion.objects.filter(record=record)
        .defer('content')
        .order_by('-version_number')[offset:offset + limit]
    )
    return record, versions


def _get_version_or_404(record, version_number):
    try:
        return RecordVersion.objects.get(record=record, version_number=version_number)
    except RecordVersion.DoesNotExist:
        raise NotFound(f'Version {version_number} not found')


def get_version(actor, record_id, version_number):
    """Exact historical snapshot; NotFound when out of range."""
    record = _get_record_or_404(record_id)
    actor = require(actor, Operation.VIEW_VERSIONS, record=record).acting_as(actor)
    version = _get_version_or_404(record, version_number)

    record_audit(
        actor,
        AuditActionChoices.VIEW,
        record.patient_id,
        record=record,
        metadata={'version_number': version_number}
    )
    return version


def version_diff(actor, record_id, version_number):
    """
    Unified diff from version n-1 to version n (version 1 diffs against '').

    Returns:
        dict with 'record_id', 'from_version', 'to_version' and 'diff'
    """
    record = _get_record_or_404(record_id)
    actor = require(actor, Operation.VIEW_VERSIONS, record=record).acting_as(actor)
    version = _get_version_or_404(record, version_number)

    previous_content = ''
    if version_number > 1:
        previous_content = _get_version_or_404(record, version_number - 1).content

    diff = ''.join(difflib.unified_diff(
        previous_content.splitlines(keepends=True),
        version.content.splitlines(keepends=True),
        fromfile=f'v{version_number - 1}',
        tofile=f'v{version_number}'
    ))

    record_audit(
        actor,
        AuditActionChoices.VIEW,
        record.patient_id,
        record=record,
        metadata={'version_number': version_number, 'compared_to': version_number - 1}
    )

    return {
        'record_id': record.id,
        'from_version': version_number - 1,
        'to_version': version_number,
        'diff': diff,
    }


def delete_record(actor, record_id):
    """
    Soft delete. Versions, backups and audit entries are retained.

    Raises:
        Forbidden: actor is neither the authoring doctor nor an admin
        NotFound: record missing, hidden or already deleted
    """
    record = _get_record_or_404(record_id)
    require(actor, Operation.DELETE_RECORD, record=record)

    with transaction.atomic():
        deleted = MedicalRecord.objects.filter(pk=record.pk, is_deleted=False).update(
            is_deleted=True,
            deleted_at=timezone.now(),
            deleted_by_id=actor.actor_id
        )
        if not deleted:
            raise NotFound('Record not found')

        record_audit(
            actor,
            AuditActionChoices.DELETE,
            record.patient_id,
            record=record,
            metadata={'version_number': record.current_version_number}
        )

    metrics.records_operations_total.labels(operation='delete', result='success').inc()
    record.refresh_from_db()
    log_record_state_changed(record, 'deleted', actor)
    return record


def restore_record(actor, record_id):
    """
    Reverse a soft delete.

    Raises:
        NotFound: record missing, hidden or not deleted
    """
    record = _get_record_or_404(record_id)
    require(actor, Operation.RESTORE_RECORD, record=record)

    with transaction.atomic():
        restored = MedicalRecord.objects.filter(pk=record.pk, is_deleted=True).update(
            is_deleted=False,
            deleted_at=None,
            deleted_by_id=None
        )
        if not restored:
            raise NotFound('Record is not deleted')

        record_audit(
            actor,
            AuditActionChoices.RESTORE,
            record.patient_id,
            record=record,
            metadata={'version_number': record.current_version_number}
        )

    metrics.records_operations_total.labels(operation='restore', result='success').inc()
    record.refresh_from_db()
    log_record_state_changed(record, 'restored', actor)
    return record


def list_patient_records(actor, patient_id, page=1, page_size=20, include_deleted=False):
    """
    Patient records, newest-updated first.

    ``include_deleted`` is honoured for doctors and admins only.

    Returns:
        dict with 'results' (records with current_version loaded) and 'pagination'
    """
    actor = require(actor, Operation.LIST_RECORDS, patient_id=patient_id).acting_as(actor)

    if page < 1 or page_size < 1:
        raise ValidationError('page and page_size must be positive integers')
    page_size = min(page_size, settings.RECORDS_MAX_PAGE_SIZE)

    qs = MedicalRecord.objects.filter(patient_id=patient_id).select_related('current_version')
    if not (include_deleted and actor.is_staff):
        qs = qs.filter(is_deleted=False)

    total = qs.count()
    offset = (page - 1) * page_size
    results = list(qs.order_by('-updated_at', '-created_at')[offset:offset + page_size])

    record_audit(
        actor,
        AuditActionChoices.VIEW,
        patient_id,
        metadata={'scope': 'patient_records', 'page': page, 'count': len(results)}
    )

    return {
        'results': results,
        'pagination': {
            'page': page,
            'page_size': page_size,
            'total': total,
            'pages': (total + page_size - 1) // page_size,
        },
    }


def _tag_filter(tag):
    if connection.features.supports_json_field_contains:
        return Q(tags__contains=[tag])
    # No JSON containment (SQLite): match the encoded string in the array text
    return Q(tags__icontains=json.dumps(tag))


def search_records(actor, query=None, patient_id=None, tags=None, date_from=None, date_to=None,
                   page=1, limit=None):
    """
    Doctor-only search over active records the doctor may read.

    Scope is every record the doctor authored plus the records of patients
    they have an active relationship with, or a single related patient when
    ``patient_id`` is given.

    Args:
        query: case-insensitive match on title or description
        tags: any-of tag filter
        date_from, date_to: inclusive creation date bounds
        page, limit: limit defaults to 10 and is capped at RECORDS_MAX_PAGE_SIZE

    Returns:
        dict with 'results', 'pagination' and 'filters' (names of applied filters)
    """
    require(actor, Operation.SEARCH_RECORDS, patient_id=patient_id)

    limit = 10 if limit is None else limit
    if page < 1 or limit < 1:
        raise ValidationError('page and limit must be positive integers')
    limit = min(limit, settings.RECORDS_MAX_PAGE_SIZE)
    if date_from and date_to and date_from > date_to:
        raise ValidationError('date_from must not be after date_to')

    qs = MedicalRecord.objects.filter(is_deleted=False).select_related('current_version')
    if patient_id is not None:
        qs = qs.filter(patient_id=patient_id)
    else:
        related = get_relationship_checker().related_patient_ids(actor.actor_id)
        qs = qs.filter(Q(created_by_doctor_id=actor.actor_id) | Q(patient_id__in=related))

    filters = []
    query = (query or '').strip()
    if query:
        qs = qs.filter(Q(title__icontains=query) | Q(description__icontains=query))
        filters.append('query')
    tags = _clean_tags(tags) if tags else []
    if tags:
        tag_q = Q()
        for tag in tags:
            tag_q |= _tag_filter(tag)
        qs = qs.filter(tag_q)
        filters.append('tags')
    if patient_id is not None:
        filters.append('patient_id')
    if date_from:
        qs = qs.filter(created_at__date__gte=date_from)
        filters.append('date_from')
    if date_to:
        qs = qs.filter(created_at__date__lte=date_to)
        filters.append('date_to')

    total = qs.count()
    offset = (page - 1) * limit
    results = list(qs.order_by('-updated_at', '-created_at')[offset:offset + limit])

    filters.sort()

    # One view entry per patient whose records were returned; never the query text
    by_patient = {}
    for record in results:
        by_patient.setdefault(record.patient_id, []).append(str(record.id))
    with transaction.atomic():
        for result_patient_id, record_ids in by_patient.items():
            record_audit(
                actor,
                AuditActionChoices.VIEW,
                result_patient_id,
                metadata={'scope': 'search', 'filters': filters, 'record_ids': record_ids}
            )

    metrics.records_operations_total.labels(operation='search', result='success').inc()

    return {
        'results': results,
        'filters': filters,
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'pages': (total + limit - 1) // limit,
        },
    }
