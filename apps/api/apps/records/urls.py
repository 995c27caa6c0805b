"""URL configuration for records app (mounted under /api/v1/)."""
from django.urls import path
from .views import (
    AdminBackupStatsView,
    BackupDetailView,
    DoctorActivityView,
    PatientAuditView,
    PatientBackupsView,
    PatientExportView,
    PatientRecordsView,
    RecordAuditView,
    RecordBackupView,
    RecordDetailView,
    RecordRestoreView,
    RecordSearchView,
    RecordVersionDetailView,
    RecordVersionDiffView,
    RecordVersionListView,
)

app_name = 'records'

urlpatterns = [
    # Patient scope
    path('patients/<uuid:patient_id>/records', PatientRecordsView.as_view(), name='patient-records'),
    path('patients/<uuid:patient_id>/audit', PatientAuditView.as_view(), name='patient-audit'),
    path('patients/<uuid:patient_id>/backups', PatientBackupsView.as_view(), name='patient-backups'),
    path('patients/<uuid:patient_id>/export', PatientExportView.as_view(), name='patient-export'),

    # Record scope
    path('records/search', RecordSearchView.as_view(), name='record-search'),
    path('records/<uuid:record_id>', RecordDetailView.as_view(), name='record-detail'),
    path('records/<uuid:record_id>/restore', RecordRestoreView.as_view(), name='record-restore'),
    path('records/<uuid:record_id>/versions', RecordVersionListView.as_view(), name='record-versions'),
    path(
        'records/<uuid:record_id>/versions/<int:version_number>',
        RecordVersionDetailView.as_view(),
        name='record-version-detail'
    ),
    path(
        'records/<uuid:record_id>/versions/<int:version_number>/diff',
        RecordVersionDiffView.as_view(),
        name='record-version-diff'
    ),
    path('records/<uuid:record_id>/audit', RecordAuditView.as_view(), name='record-audit'),
    path('records/<uuid:record_id>/backup', RecordBackupView.as_view(), name='record-backup'),

    # Oversight
    path('doctors/<uuid:doctor_id>/activity', DoctorActivityView.as_view(), name='doctor-activity'),
    path('backups/<uuid:backup_id>', BackupDetailView.as_view(), name='backup-detail'),
    path('admin/backup-stats/<uuid:patient_id>', AdminBackupStatsView.as_view(), name='admin-backup-stats'),
]
