"""
Records API views.

Service errors propagate to apps.core.exceptions.api_exception_handler;
only Conflict is rendered here so the 409 body can carry the current
version.
"""
import uuid

from django.utils.dateparse import parse_date
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.authz.permissions import HasRecordsRole
from apps.core.exceptions import Conflict, ValidationError
from apps.core.observability.correlation import bind_user

from . import audit, backups, services
from .access import Actor
from .serializers import (
    ActivitySummarySerializer,
    BackupStatsSerializer,
    ExportRequestSerializer,
    MedicalRecordListSerializer,
    MedicalRecordSerializer,
    RecordAuditEntrySerializer,
    RecordBackupDetailSerializer,
    RecordBackupSerializer,
    RecordCreateSerializer,
    RecordUpdateSerializer,
    RecordVersionSerializer,
    RecordVersionSummarySerializer,
)


# ============================================================================
# Helpers
# ============================================================================

def _int_param(request, name, default=None):
    raw = request.query_params.get(name)
    if raw in (None, ''):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(details={name: ['A valid integer is required.']})


def _date_param(request, name):
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        value = parse_date(raw)
    except ValueError:
        value = None
    if value is None:
        raise ValidationError(details={name: ['Expected a date in YYYY-MM-DD format.']})
    return value


def _uuid_param(request, name):
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise ValidationError(details={name: ['Must be a valid UUID.']})


def _bool_param(request, name):
    return request.query_params.get(name, '').lower() in ('1', 'true', 'yes')


class RecordsAPIView(APIView):
    """Base view: authenticated users holding a records role; sets self.actor."""
    permission_classes = [IsAuthenticated, HasRecordsRole]

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        bind_user(request.user)
        self.actor = Actor.from_user(request.user)


# ============================================================================
# Records
# ============================================================================

class PatientRecordsView(RecordsAPIView):
    """
    POST /api/v1/patients/{patient_id}/records  - CreateRecord (doctor)
    GET  /api/v1/patients/{patient_id}/records  - ListPatientRecords

    Query params (GET):
        - page, page_size
        - include_deleted: staff only
    """

    def post(self, request, patient_id):
        serializer = RecordCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        record, _ = services.create_record(
            self.actor,
            patient_id,
            **serializer.validated_data
        )
        return Response(MedicalRecordSerializer(record).data, status=status.HTTP_201_CREATED)

    def get(self, request, patient_id):
        page = services.list_patient_records(
            self.actor,
            patient_id,
            page=_int_param(request, 'page', 1),
            page_size=_int_param(request, 'page_size', 20),
            include_deleted=_bool_param(request, 'include_deleted')
        )
        return Response({
            'results': MedicalRecordListSerializer(page['results'], many=True).data,
            'pagination': page['pagination'],
        })


class RecordSearchView(RecordsAPIView):
    """
    GET /api/v1/records/search (doctors only)

    Query params:
        - q: matches title or description, case-insensitive
        - patient_id: restrict to one related patient
        - tags: comma separated, any match
        - date_from, date_to: YYYY-MM-DD creation date bounds, inclusive
        - page, limit
    """

    def get(self, request):
        tags = request.query_params.get('tags')
        page = services.search_records(
            self.actor,
            query=request.query_params.get('q'),
            patient_id=_uuid_param(request, 'patient_id'),
            tags=[t.strip() for t in tags.split(',') if t.strip()] if tags else None,
            date_from=_date_param(request, 'date_from'),
            date_to=_date_param(request, 'date_to'),
            page=_int_param(request, 'page', 1),
            limit=_int_param(request, 'limit')
        )
        return Response({
            'results': MedicalRecordListSerializer(page['results'], many=True).data,
            'filters': page['filters'],
            'pagination': page['pagination'],
        })


class RecordDetailView(RecordsAPIView):
    """
    GET    /api/v1/records/{record_id}  - GetRecord
    PUT    /api/v1/records/{record_id}  - UpdateRecord (optimistic concurrency)
    DELETE /api/v1/records/{record_id}  - DeleteRecord (soft delete)

    PUT body must carry expected_version_number. When another writer got
    there first the response is 409 with the current version attached.
    """

    def get(self, request, record_id):
        record = services.get_record(self.actor, record_id)
        return Response(MedicalRecordSerializer(record).data)

    def put(self, request, record_id):
        serializer = RecordUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            record, _ = services.update_record(self.actor, record_id, **serializer.validated_data)
        except Conflict as e:
            current = e.current_version
            return Response(
                {
                    'error': e.message,
                    'current_version_number': current.version_number if current else None,
                    'current_version': RecordVersionSerializer(current).data if current else None,
                },
                status=status.HTTP_409_CONFLICT
            )

        return Response(MedicalRecordSerializer(record).data)

    def delete(self, request, record_id):
        record = services.delete_record(self.actor, record_id)
        return Response({
            'message': 'Record deleted',
            'record': MedicalRecordSerializer(record).data,
        })


class RecordRestoreView(RecordsAPIView):
    """POST /api/v1/records/{record_id}/restore - RestoreRecord"""

    def post(self, request, record_id):
        record = services.restore_record(self.actor, record_id)
        return Response({
            'message': 'Record restored',
            'record': MedicalRecordSerializer(record).data,
        })


# ============================================================================
# Versions
# ============================================================================

class RecordVersionListView(RecordsAPIView):
    """
    GET /api/v1/records/{record_id}/versions?limit&offset

    Newest first, without content. next_offset is null on the last page.
    """

    def get(self, request, record_id):
        offset = _int_param(request, 'offset', 0)
        record, versions = services.list_versions(
            self.actor,
            record_id,
            limit=_int_param(request, 'limit'),
            offset=offset
        )
        results = RecordVersionSummarySerializer(versions, many=True).data
        next_offset = offset + len(results)

        return Response({
            'record_id': record.id,
            'current_version_number': record.current_version_number,
            'results': results,
            'next_offset': next_offset if next_offset < record.current_version_number else None,
        })


class RecordVersionDetailView(RecordsAPIView):
    """GET /api/v1/records/{record_id}/versions/{version_number}"""

    def get(self, request, record_id, version_number):
        version = services.get_version(self.actor, record_id, version_number)
        return Response(RecordVersionSerializer(version).data)


class RecordVersionDiffView(RecordsAPIView):
    """GET /api/v1/records/{record_id}/versions/{version_number}/diff"""

    def get(self, request, record_id, version_number):
        return Response(services.version_diff(self.actor, record_id, version_number))


# ============================================================================
# Audit
# ============================================================================

class RecordAuditView(RecordsAPIView):
    """GET /api/v1/records/{record_id}/audit?limit"""

    def get(self, request, record_id):
        entries = audit.get_record_audit(self.actor, record_id, limit=_int_param(request, 'limit'))
        return Response({
            'record_id': record_id,
            'results': RecordAuditEntrySerializer(entries, many=True).data,
        })


class PatientAuditView(RecordsAPIView):
    """
    GET /api/v1/patients/{patient_id}/audit

    Query params:
        - actions: comma separated action kinds
        - start_date, end_date: YYYY-MM-DD, inclusive
        - page, limit
    """

    def get(self, request, patient_id):
        actions = request.query_params.get('actions')
        page = audit.get_patient_audit(
            self.actor,
            patient_id,
            actions=[a.strip() for a in actions.split(',') if a.strip()] if actions else None,
            start_date=_date_param(request, 'start_date'),
            end_date=_date_param(request, 'end_date'),
            page=_int_param(request, 'page', 1),
            limit=_int_param(request, 'limit')
        )
        return Response({
            'results': RecordAuditEntrySerializer(page['results'], many=True).data,
            'pagination': page['pagination'],
        })


class DoctorActivityView(RecordsAPIView):
    """GET /api/v1/doctors/{doctor_id}/activity?start_date&end_date&limit"""

    def get(self, request, doctor_id):
        activity = audit.get_doctor_activity(
            self.actor,
            doctor_id,
            start_date=_date_param(request, 'start_date'),
            end_date=_date_param(request, 'end_date'),
            limit=_int_param(request, 'limit')
        )
        return Response({
            'doctor_id': activity['doctor_id'],
            'window': activity['window'],
            'summary': ActivitySummarySerializer(activity['summary'], many=True).data,
            'entries': RecordAuditEntrySerializer(activity['entries'], many=True).data,
        })


# ============================================================================
# Backups / Export
# ============================================================================

class RecordBackupView(RecordsAPIView):
    """
    POST /api/v1/records/{record_id}/backup

    201 when a new backup was stored, 200 when the current version was
    already backed up (same backup id returned).
    """

    def post(self, request, record_id):
        backup, created = backups.backup_record(self.actor, record_id)
        return Response(
            {
                'created': created,
                'backup': RecordBackupSerializer(backup).data,
            },
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK
        )


class PatientBackupsView(RecordsAPIView):
    """GET /api/v1/patients/{patient_id}/backups"""

    def get(self, request, patient_id):
        items = backups.list_patient_backups(self.actor, patient_id)
        return Response({
            'patient_id': patient_id,
            'count': len(items),
            'results': RecordBackupSerializer(items, many=True).data,
        })


class BackupDetailView(RecordsAPIView):
    """GET /api/v1/backups/{backup_id}"""

    def get(self, request, backup_id):
        backup = backups.get_backup(self.actor, backup_id)
        return Response(RecordBackupDetailSerializer(backup).data)


class PatientExportView(RecordsAPIView):
    """
    POST /api/v1/patients/{patient_id}/export

    Body: {"include_history": false}
    """

    def post(self, request, patient_id):
        serializer = ExportRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        bundle = backups.export_patient_records(
            self.actor,
            patient_id,
            include_history=serializer.validated_data['include_history']
        )
        return Response(bundle, status=status.HTTP_200_OK)


class AdminBackupStatsView(RecordsAPIView):
    """GET /api/v1/admin/backup-stats/{patient_id} (admin only)"""

    def get(self, request, patient_id):
        stats = backups.admin_backup_stats(self.actor, patient_id)
        return Response(BackupStatsSerializer(stats).data)
