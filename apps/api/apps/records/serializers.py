"""
Records serializers.

Output serializers render models; input serializers only check shape.
Business validation (blank content, version numbers, access) lives in
services.py / backups.py.
"""
from rest_framework import serializers

from .models import MedicalRecord, RecordAuditEntry, RecordBackup, RecordVersion


# ============================================================================
# Output
# ============================================================================

class RecordVersionSerializer(serializers.ModelSerializer):
    """Full version including content and an integrity check."""
    integrity_valid = serializers.SerializerMethodField()

    class Meta:
        model = RecordVersion
        fields = [
            'id',
            'record',
            'version_number',
            'content',
            'content_hash',
            'content_size',
            'change_description',
            'created_by_doctor_id',
            'created_at',
            'integrity_valid',
        ]
        read_only_fields = fields

    def get_integrity_valid(self, obj):
        return obj.verify_integrity()


class RecordVersionSummarySerializer(serializers.ModelSerializer):
    """Version history row without content."""

    class Meta:
        model = RecordVersion
        fields = [
            'id',
            'version_number',
            'content_hash',
            'content_size',
            'change_description',
            'created_by_doctor_id',
            'created_at',
        ]
        read_only_fields = fields


class MedicalRecordSerializer(serializers.ModelSerializer):
    """Record metadata with the current version embedded."""
    current_version = RecordVersionSerializer(read_only=True)

    class Meta:
        model = MedicalRecord
        fields = [
            'id',
            'patient_id',
            'created_by_doctor_id',
            'last_modified_by_doctor_id',
            'title',
            'description',
            'tags',
            'current_version_number',
            'current_version',
            'is_deleted',
            'deleted_at',
            'deleted_by_id',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class MedicalRecordListSerializer(serializers.ModelSerializer):
    """Listing row: record metadata and current version summary."""
    current_version = RecordVersionSummarySerializer(read_only=True)

    class Meta:
        model = MedicalRecord
        fields = [
            'id',
            'patient_id',
            'created_by_doctor_id',
            'title',
            'description',
            'tags',
            'current_version_number',
            'current_version',
            'is_deleted',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class RecordAuditEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = RecordAuditEntry
        fields = [
            'id',
            'record_id',
            'patient_id',
            'actor_id',
            'actor_role',
            'action',
            'metadata',
            'created_at',
        ]
        read_only_fields = fields


class RecordBackupSerializer(serializers.ModelSerializer):
    class Meta:
        model = RecordBackup
        fields = [
            'id',
            'record',
            'patient_id',
            'version',
            'version_number',
            'storage_size',
            'content_hash',
            'created_by_id',
            'created_at',
        ]
        read_only_fields = fields


class RecordBackupDetailSerializer(RecordBackupSerializer):
    class Meta(RecordBackupSerializer.Meta):
        fields = RecordBackupSerializer.Meta.fields + ['snapshot']
        read_only_fields = fields


class ActivitySummarySerializer(serializers.Serializer):
    action = serializers.CharField()
    count = serializers.IntegerField()
    last_performed = serializers.DateTimeField()


class BackupStatsSerializer(serializers.Serializer):
    patient_id = serializers.UUIDField()
    total_backups = serializers.IntegerField()
    total_bytes = serializers.IntegerField()
    records_backed_up = serializers.IntegerField()
    oldest_backup_at = serializers.DateTimeField(allow_null=True)
    newest_backup_at = serializers.DateTimeField(allow_null=True)


# ============================================================================
# Input
# ============================================================================

class RecordCreateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    content = serializers.CharField(trim_whitespace=False)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    tags = serializers.ListField(
        child=serializers.CharField(max_length=100),
        required=False,
        default=list
    )
    change_description = serializers.CharField(
        required=False,
        allow_blank=True,
        max_length=500,
        default='Initial version'
    )


class RecordUpdateSerializer(serializers.Serializer):
    content = serializers.CharField(trim_whitespace=False)
    expected_version_number = serializers.IntegerField(min_value=1)
    change_description = serializers.CharField(required=False, allow_blank=True, max_length=500, default='')
    title = serializers.CharField(required=False, max_length=255)
    description = serializers.CharField(required=False, allow_blank=True)
    tags = serializers.ListField(child=serializers.CharField(max_length=100), required=False)


class ExportRequestSerializer(serializers.Serializer):
    include_history = serializers.BooleanField(required=False, default=False)
