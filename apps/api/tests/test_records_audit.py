"""
Tests for the audit trail logger.

Critical behaviour:
- Every successful create/update/delete/backup/export writes exactly one entry
- A failing audit write rolls the paired mutation back (InternalError)
- Audit entries are append-only
"""
from datetime import timedelta

import pytest
from django.db import DatabaseError
from django.utils import timezone

from apps.core.exceptions import Conflict, Forbidden, ImmutableEntryError, InternalError, NotFound, ValidationError
from apps.records import audit, backups, services
from apps.records.models import MedicalRecord, RecordAuditEntry, RecordBackup, RecordVersion


def _actions(**filters):
    return list(RecordAuditEntry.objects.filter(**filters).order_by('id').values_list('action', flat=True))


@pytest.fixture
def failing_audit(monkeypatch):
    """Make every audit insert fail as if storage were unavailable."""
    def _fail(self, *args, **kwargs):
        raise DatabaseError('audit storage unavailable')
    monkeypatch.setattr(RecordAuditEntry, 'save', _fail)


@pytest.mark.django_db
class TestAuditCompleteness:

    def test_each_mutation_writes_exactly_one_entry(self, doctor, patient_user, record):
        services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=1)
        backups.backup_record(doctor, record.id)
        backups.export_patient_records(doctor, patient_user.id)
        services.delete_record(doctor, record.id)

        assert _actions(record_id=record.id) == ['create', 'update', 'backup', 'delete']
        assert _actions(patient_id=patient_user.id, record_id=None) == ['export']

    def test_entries_carry_actor_and_version(self, doctor, record):
        services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=1)

        entry = RecordAuditEntry.objects.get(record_id=record.id, action='update')
        assert entry.actor_id == doctor.actor_id
        assert entry.actor_role == 'doctor'
        assert entry.patient_id == record.patient_id
        assert entry.metadata['version_number'] == 2
        assert entry.metadata['previous_version_number'] == 1

    def test_entries_never_carry_content(self, doctor, record):
        services.update_record(doctor, record.id, 'very private finding', expected_version_number=1)

        for entry in RecordAuditEntry.objects.filter(record_id=record.id):
            assert 'very private finding' not in str(entry.metadata)
            assert 'BP 120/80' not in str(entry.metadata)

    def test_reads_are_audited_as_views(self, patient, record):
        services.get_record(patient, record.id)
        services.get_version(patient, record.id, 1)
        services.list_versions(patient, record.id)

        views = RecordAuditEntry.objects.filter(record_id=record.id, action='view')
        assert views.count() == 3
        assert set(views.values_list('actor_role', flat=True)) == {'patient'}

    def test_lost_conflict_writes_no_entry(self, doctor, record):
        services.update_record(doctor, record.id, 'v2', expected_version_number=1)
        before = RecordAuditEntry.objects.count()

        with pytest.raises(Conflict):
            services.update_record(doctor, record.id, 'lost', expected_version_number=1)

        assert RecordAuditEntry.objects.count() == before


@pytest.mark.django_db
class TestAuditFailureRollsBack:

    def test_create_is_rolled_back(self, doctor, patient_user, failing_audit):
        with pytest.raises(InternalError):
            services.create_record(doctor, patient_user.id, 'Annual Physical', 'BP 120/80')

        assert MedicalRecord.objects.count() == 0
        assert RecordVersion.objects.count() == 0

    def test_update_is_rolled_back(self, doctor, record, failing_audit):
        with pytest.raises(InternalError):
            services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=1)

        record.refresh_from_db()
        assert record.current_version_number == 1
        assert RecordVersion.objects.filter(record=record).count() == 1

    def test_delete_is_rolled_back(self, doctor, record, failing_audit):
        with pytest.raises(InternalError):
            services.delete_record(doctor, record.id)

        record.refresh_from_db()
        assert record.is_deleted is False

    def test_backup_is_rolled_back(self, doctor, record, failing_audit):
        with pytest.raises(InternalError):
            backups.backup_record(doctor, record.id)

        assert RecordBackup.objects.count() == 0


@pytest.mark.django_db
class TestRecordAudit:

    def test_newest_first_with_limit(self, doctor, record):
        for n in range(1, 4):
            services.update_record(doctor, record.id, f'v{n + 1}', expected_version_number=n)

        entries = audit.get_record_audit(doctor, record.id, limit=2)

        assert [e.metadata['version_number'] for e in entries] == [4, 3]

    def test_patient_reads_own_record_audit(self, patient, record):
        entries = audit.get_record_audit(patient, record.id)

        assert [e.action for e in entries] == ['create']

    def test_audit_entries_are_append_only(self, record):
        entry = RecordAuditEntry.objects.get(record_id=record.id)

        with pytest.raises(ImmutableEntryError):
            entry.delete()
        with pytest.raises(ImmutableEntryError):
            RecordAuditEntry.objects.all().update(action='view')


@pytest.mark.django_db
class TestPatientAudit:

    def test_filters_by_action_and_paginates(self, doctor, patient_user, make_record):
        first, _ = make_record(title='First')
        make_record(title='Second')
        services.update_record(doctor, first.id, 'v2', expected_version_number=1)

        page = audit.get_patient_audit(doctor, patient_user.id, actions=['create'], limit=1)

        assert len(page['results']) == 1
        assert page['results'][0].action == 'create'
        assert page['pagination']['total'] == 2
        assert page['pagination']['pages'] == 2

    def test_filters_by_date_range(self, doctor, patient_user, record):
        today = timezone.localdate()

        assert audit.get_patient_audit(doctor, patient_user.id, start_date=today)['pagination']['total'] == 1
        assert audit.get_patient_audit(
            doctor, patient_user.id, end_date=today - timedelta(days=1)
        )['pagination']['total'] == 0

    def test_unknown_action_is_rejected(self, doctor, patient_user):
        with pytest.raises(ValidationError):
            audit.get_patient_audit(doctor, patient_user.id, actions=['erase'])

    def test_admin_reads_patient_audit(self, admin, patient_user, record):
        assert audit.get_patient_audit(admin, patient_user.id)['pagination']['total'] == 1

    def test_patient_cannot_read_patient_audit(self, patient, patient_user):
        with pytest.raises(Forbidden):
            audit.get_patient_audit(patient, patient_user.id)


@pytest.mark.django_db
class TestDoctorActivity:

    def test_summary_counts_actions(self, doctor, make_record):
        first, _ = make_record(title='First')
        make_record(title='Second')
        services.update_record(doctor, first.id, 'v2', expected_version_number=1)

        activity = audit.get_doctor_activity(doctor, doctor.actor_id)

        summary = {row['action']: row['count'] for row in activity['summary']}
        assert summary == {'create': 2, 'update': 1}
        assert len(activity['entries']) == 3
        assert all(e.actor_id == doctor.actor_id for e in activity['entries'])

    def test_admin_may_view_any_doctor(self, admin, doctor, record):
        activity = audit.get_doctor_activity(admin, doctor.actor_id)

        assert [row['action'] for row in activity['summary']] == ['create']

    def test_other_doctor_is_forbidden(self, other_doctor, doctor):
        with pytest.raises(Forbidden):
            audit.get_doctor_activity(other_doctor, doctor.actor_id)

    def test_window_excludes_future_start(self, doctor, record):
        tomorrow = timezone.localdate() + timedelta(days=1)

        activity = audit.get_doctor_activity(doctor, doctor.actor_id, start_date=tomorrow)

        assert activity['entries'] == []
        assert activity['summary'] == []

    def test_default_window_ends_at_end_date(self, doctor, record, settings):
        end_date = timezone.localdate() - timedelta(days=60)

        activity = audit.get_doctor_activity(doctor, doctor.actor_id, end_date=end_date)

        assert activity['window'] == {
            'start_date': end_date - timedelta(days=settings.RECORDS_ACTIVITY_WINDOW_DAYS),
            'end_date': end_date,
        }
        assert activity['entries'] == []

    def test_default_window_covers_today(self, doctor, record, settings):
        activity = audit.get_doctor_activity(doctor, doctor.actor_id)

        today = timezone.localdate()
        assert activity['window']['start_date'] == today - timedelta(days=settings.RECORDS_ACTIVITY_WINDOW_DAYS)
        assert [e.action for e in activity['entries']] == ['create']


@pytest.mark.django_db
class TestDeniedAttempts:

    def test_hidden_denial_is_audited(self, other_patient, record):
        with pytest.raises(NotFound):
            services.get_record(other_patient, record.id)

        entry = RecordAuditEntry.objects.get(action='denied')
        assert entry.record_id == record.id
        assert entry.patient_id == record.patient_id
        assert entry.actor_id == other_patient.actor_id
        assert entry.metadata == {
            'success': False,
            'operation': 'view_record',
            'outcome': 'hidden',
            'reason': 'Patient does not own the target',
        }

    def test_forbidden_patient_scope_denial_is_audited(self, patient, patient_user):
        with pytest.raises(Forbidden):
            audit.get_patient_audit(patient, patient_user.id)

        entry = RecordAuditEntry.objects.get(action='denied')
        assert entry.record_id is None
        assert entry.patient_id == patient_user.id
        assert entry.metadata['outcome'] == 'forbidden'
        assert entry.metadata['operation'] == 'view_patient_audit'

    def test_denial_without_patient_subject_writes_nothing(self, other_doctor, doctor):
        with pytest.raises(Forbidden):
            audit.get_doctor_activity(other_doctor, doctor.actor_id)

        assert not RecordAuditEntry.objects.filter(action='denied').exists()

    def test_denials_are_filterable_in_patient_audit(self, doctor, other_doctor, patient_user, record):
        with pytest.raises(NotFound):
            services.update_record(other_doctor, record.id, 'intrusion', expected_version_number=1)

        page = audit.get_patient_audit(doctor, patient_user.id, actions=['denied'])

        assert [e.actor_id for e in page['results']] == [other_doctor.actor_id]
        assert 'intrusion' not in str(page['results'][0].metadata)
