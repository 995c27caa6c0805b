"""
Records models: medical_record, record_version, record_audit_entry, record_backup

Versions, audit entries and backups are append-only: rows are inserted,
never updated or deleted. The record itself carries the only mutable state
(metadata, soft-delete flag and the current version pointer).
"""
import hashlib
import uuid
from django.db import models

from apps.core.exceptions import ImmutableEntryError


# ============================================================================
# Enums
# ============================================================================

class ActorRoleChoices(models.TextChoices):
    """Role an actor held when an audited action was performed."""
    DOCTOR = 'doctor', 'Doctor'
    PATIENT = 'patient', 'Patient'
    ADMIN = 'admin', 'Admin'


class AuditActionChoices(models.TextChoices):
    """Kinds of audited actions."""
    CREATE = 'create', 'Create'
    VIEW = 'view', 'View'
    UPDATE = 'update', 'Update'
    DELETE = 'delete', 'Delete'
    RESTORE = 'restore', 'Restore'
    BACKUP = 'backup', 'Backup'
    EXPORT = 'export', 'Export'
    DENIED = 'denied', 'Denied'


def compute_content_hash(content):
    """SHA-256 hex digest of the UTF-8 encoded content."""
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


# ============================================================================
# Append-only base
# ============================================================================

class AppendOnlyQuerySet(models.QuerySet):
    """QuerySet that refuses bulk rewrites and removals."""

    def update(self, **kwargs):
        raise ImmutableEntryError(f'{self.model.__name__} rows are append-only')

    def delete(self):
        raise ImmutableEntryError(f'{self.model.__name__} rows are append-only')


class AppendOnlyModel(models.Model):
    """
    Abstract base for immutable rows.

    save() only inserts; saving an already persisted instance or deleting
    one raises ImmutableEntryError.
    """

    objects = AppendOnlyQuerySet.as_manager()

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableEntryError(f'{self.__class__.__name__} rows are append-only')
        kwargs['force_insert'] = True
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableEntryError(f'{self.__class__.__name__} rows are append-only')


# ============================================================================
# Record / Version
# ============================================================================

class MedicalRecord(models.Model):
    """
    Clinical document shell owned by a patient.

    Holds metadata and a pointer to its current version. The pointer and
    current_version_number only move forward through the compare-and-swap
    in services.update_record.

    Fields:
    - id: UUID PK
    - patient_id / created_by_doctor_id / last_modified_by_doctor_id: user ids
    - title, description, tags (unique strings)
    - current_version: FK -> record_version (null only inside the create transaction)
    - current_version_number: CAS counter, equals current_version.version_number
    - is_deleted, deleted_at, deleted_by_id: soft delete
    - created_at, updated_at
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient_id = models.UUIDField(help_text='Owning patient (user id)')
    created_by_doctor_id = models.UUIDField(help_text='Doctor who created the record')
    last_modified_by_doctor_id = models.UUIDField(
        null=True,
        blank=True,
        help_text='Doctor who authored the current version'
    )

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    tags = models.JSONField(default=list, blank=True)

    current_version = models.ForeignKey(
        'RecordVersion',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='+'
    )
    current_version_number = models.PositiveIntegerField(default=0)

    # Soft delete
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(null=True, blank=True)
    deleted_by_id = models.UUIDField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'medical_record'
        verbose_name = 'Medical Record'
        verbose_name_plural = 'Medical Records'
        indexes = [
            models.Index(fields=['patient_id', 'is_deleted'], name='idx_record_patient_deleted'),
            models.Index(fields=['created_by_doctor_id'], name='idx_record_created_by'),
            models.Index(fields=['-updated_at'], name='idx_record_updated'),
        ]

    def __str__(self):
        return f"Record {self.id} (v{self.current_version_number})"


class RecordVersion(AppendOnlyModel):
    """
    Immutable content snapshot within a record's chain.

    (record, version_number) is unique; numbers start at 1 and are
    contiguous per record.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    record = models.ForeignKey(
        MedicalRecord,
        on_delete=models.PROTECT,
        related_name='versions'
    )
    version_number = models.PositiveIntegerField()
    content = models.TextField()
    content_hash = models.CharField(max_length=64)
    content_size = models.PositiveIntegerField(help_text='Content size in bytes (UTF-8)')
    change_description = models.CharField(max_length=500, blank=True, default='')
    created_by_doctor_id = models.UUIDField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'record_version'
        verbose_name = 'Record Version'
        verbose_name_plural = 'Record Versions'
        ordering = ['record', '-version_number']
        constraints = [
            models.UniqueConstraint(
                fields=['record', 'version_number'],
                name='uniq_record_version_number'
            ),
        ]
        indexes = [
            models.Index(fields=['created_by_doctor_id'], name='idx_version_author'),
        ]

    def __str__(self):
        return f"{self.record_id} v{self.version_number}"

    def verify_integrity(self):
        """True when the stored hash still matches the stored content."""
        return compute_content_hash(self.content) == self.content_hash


# ============================================================================
# Audit trail
# ============================================================================

class RecordAuditEntry(AppendOnlyModel):
    """
    Append-only compliance log entry.

    record_id is null for patient-scope actions (export, patient listing).
    metadata never carries record content.
    """
    id = models.BigAutoField(primary_key=True)
    record_id = models.UUIDField(null=True, blank=True)
    patient_id = models.UUIDField()
    actor_id = models.UUIDField()
    actor_role = models.CharField(max_length=10, choices=ActorRoleChoices.choices)
    action = models.CharField(max_length=10, choices=AuditActionChoices.choices)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'record_audit_entry'
        verbose_name = 'Record Audit Entry'
        verbose_name_plural = 'Record Audit Entries'
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['record_id', '-created_at'], name='idx_audit_record'),
            models.Index(fields=['patient_id', '-created_at'], name='idx_audit_patient'),
            models.Index(fields=['actor_id', '-created_at'], name='idx_audit_actor'),
            models.Index(fields=['action'], name='idx_audit_action'),
        ]

    def __str__(self):
        return f"{self.action} by {self.actor_role} {self.actor_id}"


# ============================================================================
# Backups
# ============================================================================

class RecordBackup(AppendOnlyModel):
    """
    Point-in-time snapshot of one record version.

    Unique per (record, version_number): a repeated backup request for the
    same version returns the existing row.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    record = models.ForeignKey(
        MedicalRecord,
        on_delete=models.PROTECT,
        related_name='backups'
    )
    patient_id = models.UUIDField()
    version = models.ForeignKey(
        RecordVersion,
        on_delete=models.PROTECT,
        related_name='backups'
    )
    version_number = models.PositiveIntegerField()
    snapshot = models.JSONField(help_text='Record metadata and captured version content')
    storage_size = models.PositiveIntegerField(help_text='Serialized snapshot size in bytes')
    content_hash = models.CharField(max_length=64)
    created_by_id = models.UUIDField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'record_backup'
        verbose_name = 'Record Backup'
        verbose_name_plural = 'Record Backups'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['record', 'version_number'],
                name='uniq_backup_record_version'
            ),
        ]
        indexes = [
            models.Index(fields=['patient_id', '-created_at'], name='idx_backup_patient'),
        ]

    def __str__(self):
        return f"Backup {self.id} of {self.record_id} v{self.version_number}"
