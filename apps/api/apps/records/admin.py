from django.contrib import admin
from .models import MedicalRecord, RecordVersion, RecordAuditEntry, RecordBackup


class ReadOnlyAdmin(admin.ModelAdmin):
    """Append-only rows: browsable, never editable from the admin site."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(MedicalRecord)
class MedicalRecordAdmin(ReadOnlyAdmin):
    list_display = ['id', 'patient_id', 'created_by_doctor_id', 'current_version_number', 'is_deleted', 'updated_at']
    list_filter = ['is_deleted']
    search_fields = ['id', 'patient_id', 'created_by_doctor_id']
    readonly_fields = ['id', 'current_version', 'current_version_number', 'created_at', 'updated_at', 'deleted_at']


@admin.register(RecordVersion)
class RecordVersionAdmin(ReadOnlyAdmin):
    list_display = ['record', 'version_number', 'content_size', 'created_by_doctor_id', 'created_at']
    search_fields = ['record__id']
    exclude = ['content']


@admin.register(RecordAuditEntry)
class RecordAuditEntryAdmin(ReadOnlyAdmin):
    list_display = ['created_at', 'action', 'actor_role', 'actor_id', 'patient_id', 'record_id']
    list_filter = ['action', 'actor_role']
    search_fields = ['actor_id', 'patient_id', 'record_id']


@admin.register(RecordBackup)
class RecordBackupAdmin(ReadOnlyAdmin):
    list_display = ['id', 'record', 'version_number', 'storage_size', 'created_at']
    search_fields = ['record__id', 'patient_id']
    exclude = ['snapshot']
