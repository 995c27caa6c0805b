"""
Tests for the version chain manager.

Critical behaviour:
- CreateRecord produces the record and version 1 in one unit
- UpdateRecord appends n+1 only if the record is still at n (CAS)
- A lost CAS returns Conflict carrying the actual current version
- Versions never change once written, even after later updates
- Soft delete hides the record from patients but keeps the history
"""
import pytest

from apps.core.exceptions import Conflict, ImmutableEntryError, NotFound, ValidationError
from apps.records import services
from apps.records.models import MedicalRecord, RecordVersion, compute_content_hash


@pytest.mark.django_db
class TestCreateRecord:

    def test_creates_record_with_version_one(self, make_record):
        record, version = make_record(title='Annual Physical', content='BP 120/80', tags=['cardio', 'cardio', 'annual'])

        record.refresh_from_db()
        assert version.version_number == 1
        assert record.current_version_id == version.id
        assert record.current_version_number == 1
        assert record.tags == ['cardio', 'annual']
        assert version.content == 'BP 120/80'
        assert version.content_size == len('BP 120/80'.encode('utf-8'))
        assert version.content_hash == compute_content_hash('BP 120/80')
        assert RecordVersion.objects.filter(record=record).count() == 1

    def test_content_size_counts_bytes_not_characters(self, make_record):
        _, version = make_record(content='Température 38°C')

        assert version.content_size == len('Température 38°C'.encode('utf-8'))
        assert version.content_size > len('Température 38°C')

    @pytest.mark.parametrize('title,content', [
        ('', 'BP 120/80'),
        ('   ', 'BP 120/80'),
        ('Annual Physical', ''),
        ('Annual Physical', '  \n'),
    ])
    def test_empty_title_or_content_is_rejected(self, make_record, title, content):
        with pytest.raises(ValidationError):
            make_record(title=title, content=content)

        assert MedicalRecord.objects.count() == 0
        assert RecordVersion.objects.count() == 0


@pytest.mark.django_db
class TestUpdateRecord:

    def test_update_appends_next_version(self, doctor, record):
        updated, version = services.update_record(
            doctor, record.id, 'BP 118/76', expected_version_number=1,
            change_description='Follow-up reading'
        )

        assert version.version_number == 2
        assert updated.current_version_id == version.id
        assert updated.current_version_number == 2
        assert updated.last_modified_by_doctor_id == doctor.actor_id
        assert list(
            RecordVersion.objects.filter(record=record).order_by('version_number')
            .values_list('version_number', flat=True)
        ) == [1, 2]

    def test_update_can_change_metadata(self, doctor, record):
        updated, _ = services.update_record(
            doctor, record.id, 'BP 118/76', expected_version_number=1,
            title='Annual Physical 2024', tags=['annual']
        )

        assert updated.title == 'Annual Physical 2024'
        assert updated.tags == ['annual']

    def test_identical_content_still_appends_version(self, doctor, record):
        _, version = services.update_record(doctor, record.id, 'BP 120/80', expected_version_number=1)

        assert version.version_number == 2

    def test_stale_expected_version_conflicts_with_current_version(self, doctor, record):
        """Doctor B updates first; doctor A still presenting 1 gets Conflict with v2 attached."""
        services.update_record(doctor, record.id, 'BP 118/76 (B)', expected_version_number=1)

        with pytest.raises(Conflict) as exc_info:
            services.update_record(doctor, record.id, 'BP 118/76 (A)', expected_version_number=1)

        current = exc_info.value.current_version
        assert current.version_number == 2
        assert current.content == 'BP 118/76 (B)'
        assert RecordVersion.objects.filter(record=record).count() == 2

    def test_expected_version_ahead_of_record_conflicts(self, doctor, record):
        with pytest.raises(Conflict):
            services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=5)

        record.refresh_from_db()
        assert record.current_version_number == 1

    @pytest.mark.parametrize('expected', [0, -1, None, '1', True])
    def test_invalid_expected_version_is_rejected(self, doctor, record, expected):
        with pytest.raises(ValidationError):
            services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=expected)

    def test_empty_content_is_rejected(self, doctor, record):
        with pytest.raises(ValidationError):
            services.update_record(doctor, record.id, '', expected_version_number=1)

    def test_update_of_deleted_record_is_not_found(self, doctor, record):
        services.delete_record(doctor, record.id)

        with pytest.raises(NotFound):
            services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=1)

    def test_numbers_stay_contiguous_across_updates_and_conflicts(self, doctor, record):
        services.update_record(doctor, record.id, 'v2', expected_version_number=1)
        with pytest.raises(Conflict):
            services.update_record(doctor, record.id, 'lost', expected_version_number=1)
        services.update_record(doctor, record.id, 'v3', expected_version_number=2)
        with pytest.raises(Conflict):
            services.update_record(doctor, record.id, 'lost', expected_version_number=2)

        numbers = list(
            RecordVersion.objects.filter(record=record).order_by('version_number')
            .values_list('version_number', flat=True)
        )
        assert numbers == [1, 2, 3]


@pytest.mark.django_db
class TestVersionHistory:

    def test_list_versions_newest_first_without_content(self, doctor, record):
        for n in range(1, 4):
            services.update_record(doctor, record.id, f'content {n + 1}', expected_version_number=n)

        _, versions = services.list_versions(doctor, record.id, limit=10)
        versions = list(versions)

        assert [v.version_number for v in versions] == [4, 3, 2, 1]
        assert 'content' in versions[0].get_deferred_fields()

    def test_list_versions_restarts_by_offset(self, doctor, record):
        for n in range(1, 5):
            services.update_record(doctor, record.id, f'content {n + 1}', expected_version_number=n)

        _, first_page = services.list_versions(doctor, record.id, limit=2)
        _, second_page = services.list_versions(doctor, record.id, limit=2, offset=2)
        _, last_page = services.list_versions(doctor, record.id, limit=2, offset=4)

        assert [v.version_number for v in first_page] == [5, 4]
        assert [v.version_number for v in second_page] == [3, 2]
        assert [v.version_number for v in last_page] == [1]

    def test_list_versions_default_limit(self, doctor, record, settings):
        settings.RECORDS_VERSION_HISTORY_LIMIT = 2
        services.update_record(doctor, record.id, 'v2', expected_version_number=1)
        services.update_record(doctor, record.id, 'v3', expected_version_number=2)

        _, versions = services.list_versions(doctor, record.id)

        assert len(list(versions)) == 2

    def test_get_version_is_immutable_across_updates(self, doctor, record):
        before = services.get_version(doctor, record.id, 1)
        services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=1)
        after = services.get_version(doctor, record.id, 1)

        assert (after.id, after.content, after.created_by_doctor_id) == \
            (before.id, before.content, before.created_by_doctor_id)
        assert after.verify_integrity()

    def test_get_version_out_of_range(self, doctor, record):
        with pytest.raises(NotFound):
            services.get_version(doctor, record.id, 2)
        with pytest.raises(NotFound):
            services.get_version(doctor, record.id, 0)

    def test_version_diff(self, doctor, record):
        services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=1)

        diff = services.version_diff(doctor, record.id, 2)

        assert diff['from_version'] == 1
        assert diff['to_version'] == 2
        assert '-BP 120/80' in diff['diff']
        assert '+BP 118/76' in diff['diff']

    def test_first_version_diffs_against_empty_document(self, doctor, record):
        diff = services.version_diff(doctor, record.id, 1)

        assert diff['from_version'] == 0
        assert '+BP 120/80' in diff['diff']


@pytest.mark.django_db
class TestImmutableRows:

    def test_version_cannot_be_saved_again(self, record):
        version = record.current_version
        version.content = 'tampered'

        with pytest.raises(ImmutableEntryError):
            version.save()

    def test_version_cannot_be_deleted(self, record):
        with pytest.raises(ImmutableEntryError):
            record.current_version.delete()

    def test_bulk_update_and_delete_are_refused(self, record):
        with pytest.raises(ImmutableEntryError):
            RecordVersion.objects.filter(record=record).update(content='tampered')
        with pytest.raises(ImmutableEntryError):
            RecordVersion.objects.filter(record=record).delete()

        assert RecordVersion.objects.get(record=record).content == 'BP 120/80'


@pytest.mark.django_db
class TestSoftDelete:

    def test_delete_hides_record_from_patient_but_keeps_history(self, doctor, patient, admin, record):
        services.update_record(doctor, record.id, 'BP 118/76', expected_version_number=1)

        services.delete_record(doctor, record.id)

        with pytest.raises(NotFound):
            services.get_record(patient, record.id)

        assert services.get_record(doctor, record.id).is_deleted is True
        _, versions = services.list_versions(admin, record.id)
        assert [v.version_number for v in versions] == [2, 1]
        assert services.get_version(admin, record.id, 1).content == 'BP 120/80'

    def test_delete_twice_is_not_found(self, doctor, record):
        services.delete_record(doctor, record.id)

        with pytest.raises(NotFound):
            services.delete_record(doctor, record.id)

    def test_restore_reverses_soft_delete(self, doctor, patient, record):
        services.delete_record(doctor, record.id)

        restored = services.restore_record(doctor, record.id)

        assert restored.is_deleted is False
        assert restored.deleted_at is None
        assert services.get_record(patient, record.id).id == record.id

    def test_restore_of_active_record_is_not_found(self, doctor, record):
        with pytest.raises(NotFound):
            services.restore_record(doctor, record.id)


@pytest.mark.django_db
class TestListPatientRecords:

    def test_newest_updated_first_and_paginated(self, doctor, patient_user, make_record):
        first, _ = make_record(title='First')
        second, _ = make_record(title='Second')
        services.update_record(doctor, first.id, 'updated', expected_version_number=1)

        page = services.list_patient_records(doctor, patient_user.id, page=1, page_size=1)

        assert [r.id for r in page['results']] == [first.id]
        assert page['pagination'] == {'page': 1, 'page_size': 1, 'total': 2, 'pages': 2}

        page = services.list_patient_records(doctor, patient_user.id, page=2, page_size=1)
        assert [r.id for r in page['results']] == [second.id]

    def test_deleted_records_only_for_staff_on_request(self, doctor, patient, patient_user, make_record):
        kept, _ = make_record(title='Kept')
        gone, _ = make_record(title='Gone')
        services.delete_record(doctor, gone.id)

        assert {r.id for r in services.list_patient_records(doctor, patient_user.id)['results']} == {kept.id}
        assert {r.id for r in services.list_patient_records(
            doctor, patient_user.id, include_deleted=True)['results']} == {kept.id, gone.id}
        assert {r.id for r in services.list_patient_records(
            patient, patient_user.id, include_deleted=True)['results']} == {kept.id}

    def test_invalid_page_is_rejected(self, doctor, patient_user):
        with pytest.raises(ValidationError):
            services.list_patient_records(doctor, patient_user.id, page=0)
