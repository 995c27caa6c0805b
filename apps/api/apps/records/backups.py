"""
Backup & export engine.

Backups are immutable JSON snapshots of one record version, unique per
(record, version_number). Exports are assembled on demand and only leave
an audit entry behind.
"""
import json
import uuid

from django.db import IntegrityError, transaction
from django.db.models import Count, Max, Min, Sum
from django.utils import timezone

from apps.core.exceptions import NotFound
from apps.core.observability import metrics
from apps.core.observability.events import log_backup, log_export

from .access import Operation, require
from .audit import record_audit
from .models import AuditActionChoices, MedicalRecord, RecordBackup, RecordVersion


SNAPSHOT_FORMAT_VERSION = 1


# ============================================================================
# Serialisation helpers
# ============================================================================

def _iso(value):
    return value.isoformat() if value else None


def record_metadata(record):
    """JSON-ready record metadata (no content)."""
    return {
        'id': str(record.id),
        'patient_id': str(record.patient_id),
        'created_by_doctor_id': str(record.created_by_doctor_id),
        'title': record.title,
        'description': record.description,
        'tags': list(record.tags),
        'current_version_number': record.current_version_number,
        'created_at': _iso(record.created_at),
        'updated_at': _iso(record.updated_at),
    }


def version_document(version):
    """JSON-ready version including its content."""
    return {
        'id': str(version.id),
        'version_number': version.version_number,
        'content': version.content,
        'content_hash': version.content_hash,
        'content_size': version.content_size,
        'change_description': version.change_description,
        'created_by_doctor_id': str(version.created_by_doctor_id),
        'created_at': _iso(version.created_at),
    }


def _json_size(document):
    return len(json.dumps(document, sort_keys=True).encode('utf-8'))


# ============================================================================
# Backups
# ============================================================================

def _get_backup_target(record_id):
    try:
        return MedicalRecord.objects.select_related('current_version').get(pk=record_id)
    except MedicalRecord.DoesNotExist:
        raise NotFound('Record not found')


def backup_record(actor, record_id):
    """
    Snapshot the record's current version.

    Idempotent per (record, version_number): when the current version is
    already backed up the existing backup is returned. Every call is
    audited; the entry's metadata says whether a backup was created.

    Returns:
        (RecordBackup, created)
    """
    record = _get_backup_target(record_id)
    require(actor, Operation.BACKUP_RECORD, record=record)

    with transaction.atomic():
        # Pin the version that is current inside this transaction
        record = _get_backup_target(record_id)
        if record.is_deleted:
            raise NotFound('Record not found')
        version = record.current_version

        backup = RecordBackup.objects.filter(
            record=record, version_number=version.version_number
        ).first()
        created = backup is None

        if created:
            backup_id = uuid.uuid4()
            now = timezone.now()
            snapshot = {
                'backup': {
                    'id': str(backup_id),
                    'created_at': _iso(now),
                    'created_by_id': str(actor.actor_id),
                    'format_version': SNAPSHOT_FORMAT_VERSION,
                },
                'record': record_metadata(record),
                'version': version_document(version),
            }
            try:
                with transaction.atomic():
                    backup = RecordBackup.objects.create(
                        id=backup_id,
                        record=record,
                        patient_id=record.patient_id,
                        version=version,
                        version_number=version.version_number,
                        snapshot=snapshot,
                        storage_size=_json_size(snapshot),
                        content_hash=version.content_hash,
                        created_by_id=actor.actor_id
                    )
            except IntegrityError:
                # A concurrent request captured the same version first
                backup = RecordBackup.objects.get(record=record, version_number=version.version_number)
                created = False

        record_audit(
            actor,
            AuditActionChoices.BACKUP,
            record.patient_id,
            record=record,
            metadata={
                'backup_id': str(backup.id),
                'version_number': backup.version_number,
                'storage_size': backup.storage_size,
                'created': created,
            }
        )

    metrics.records_backups_total.labels(result='created' if created else 'idempotent').inc()
    log_backup(backup, created)
    return backup, created


def list_patient_backups(actor, patient_id):
    """
    All backups across a patient's records, newest first.

    Backups of soft-deleted records are visible to doctors and admins only.
    """
    actor = require(actor, Operation.LIST_BACKUPS, patient_id=patient_id).acting_as(actor)

    qs = RecordBackup.objects.filter(patient_id=patient_id).defer('snapshot')
    if actor.is_patient:
        qs = qs.filter(record__is_deleted=False)
    return list(qs.order_by('-created_at', '-version_number'))


def get_backup(actor, backup_id):
    """One backup including its snapshot; same visibility as list_patient_backups."""
    try:
        backup = RecordBackup.objects.select_related('record').get(pk=backup_id)
    except RecordBackup.DoesNotExist:
        raise NotFound('Backup not found')

    actor = require(actor, Operation.LIST_BACKUPS, patient_id=backup.patient_id).acting_as(actor)
    if actor.is_patient and backup.record.is_deleted:
        raise NotFound('Backup not found')
    return backup


# ============================================================================
# Export
# ============================================================================

def export_patient_records(actor, patient_id, include_history=False):
    """
    Assemble the export bundle for a patient.

    Each non-deleted record is read at its own current version; there is no
    cross-record snapshot isolation. One ``export`` audit entry is written.

    Returns:
        dict bundle: {'export': {...}, 'records': [{'record', 'current_version'[, 'versions']}]}

    Raises:
        NotFound: patient has no active records (or is hidden from the actor)
    """
    require(actor, Operation.EXPORT_RECORDS, patient_id=patient_id)

    records = list(
        MedicalRecord.objects.filter(patient_id=patient_id, is_deleted=False)
        .select_related('current_version')
        .order_by('created_at', 'id')
    )
    if not records:
        raise NotFound('No records found for patient')

    entries = []
    for record in records:
        entry = {
            'record': record_metadata(record),
            'current_version': version_document(record.current_version),
        }
        if include_history:
            entry['versions'] = [
                version_document(v)
                for v in RecordVersion.objects.filter(record=record).order_by('-version_number')
            ]
        entries.append(entry)

    bundle = {
        'export': {
            'patient_id': str(patient_id),
            'exported_at': _iso(timezone.now()),
            'exported_by': str(actor.actor_id),
            'record_count': len(entries),
            'include_history': include_history,
        },
        'records': entries,
    }
    size_bytes = _json_size(bundle)

    record_audit(
        actor,
        AuditActionChoices.EXPORT,
        patient_id,
        metadata={
            'record_count': len(entries),
            'record_ids': [e['record']['id'] for e in entries],
            'include_history': include_history,
            'size_bytes': size_bytes,
        }
    )

    metrics.records_exports_total.labels(include_history=str(include_history).lower()).inc()
    log_export(patient_id, len(entries), size_bytes, include_history)
    return bundle


# ============================================================================
# Admin statistics
# ============================================================================

def admin_backup_stats(actor, patient_id):
    """Aggregate backup counts for a patient (admin only, read-only)."""
    require(actor, Operation.BACKUP_STATS, patient_id=patient_id)

    stats = RecordBackup.objects.filter(patient_id=patient_id).aggregate(
        total_backups=Count('id'),
        total_bytes=Sum('storage_size'),
        records_backed_up=Count('record', distinct=True),
        oldest_backup_at=Min('created_at'),
        newest_backup_at=Max('created_at'),
    )

    return {
        'patient_id': patient_id,
        'total_backups': stats['total_backups'],
        'total_bytes': stats['total_bytes'] or 0,
        'records_backed_up': stats['records_backed_up'],
        'oldest_backup_at': stats['oldest_backup_at'],
        'newest_backup_at': stats['newest_backup_at'],
    }
