"""
Tests for the access control gate.

Policy:
- Patients: read-only, own records only; other patients' data is hidden (404)
- Doctors: authored records or active relationship; unrelated is hidden (404)
- Admins: read-only plus soft delete/restore; never content mutation
- Staff who are also patients read their own chart as patients, read-only
"""
import pytest

from apps.authz.models import CareRelationship, RoleChoices
from apps.core.exceptions import Forbidden, NotFound
from apps.records import audit, backups, services
from apps.records.access import Actor, Decision, Operation, authorize


@pytest.mark.django_db
class TestActorResolution:

    def test_doctor_role_wins_over_patient(self, doctor_user):
        from apps.authz.models import Role, UserRole
        patient_role, _ = Role.objects.get_or_create(name=RoleChoices.PATIENT)
        UserRole.objects.create(user=doctor_user, role=patient_role)

        assert Actor.from_user(doctor_user).role == RoleChoices.DOCTOR

    def test_user_without_role_is_forbidden(self, roleless_user):
        with pytest.raises(Forbidden):
            Actor.from_user(roleless_user)


@pytest.mark.django_db
class TestPatientPolicy:

    def test_patient_reads_own_record(self, patient, record):
        assert services.get_record(patient, record.id).id == record.id
        assert services.get_version(patient, record.id, 1).version_number == 1

    def test_patient_cannot_mutate_own_record(self, patient, record):
        with pytest.raises(Forbidden):
            services.update_record(patient, record.id, 'patient edit', expected_version_number=1)
        with pytest.raises(Forbidden):
            services.delete_record(patient, record.id)
        with pytest.raises(Forbidden):
            backups.backup_record(patient, record.id)

    def test_other_patients_record_is_hidden(self, other_patient, record):
        with pytest.raises(NotFound):
            services.get_record(other_patient, record.id)
        with pytest.raises(NotFound):
            services.list_versions(other_patient, record.id)

    def test_other_patients_listing_is_hidden(self, other_patient, patient_user, record):
        with pytest.raises(NotFound):
            services.list_patient_records(other_patient, patient_user.id)

    def test_patient_audit_is_staff_only(self, patient, patient_user):
        decision = authorize(patient, Operation.VIEW_PATIENT_AUDIT, patient_id=patient_user.id)

        assert decision == Decision(allowed=False, reason='Patients have read-only access')

    def test_patient_cannot_export_own_records(self, patient, patient_user, record):
        with pytest.raises(Forbidden):
            backups.export_patient_records(patient, patient_user.id)

    def test_patient_cannot_see_backup_stats(self, patient, patient_user):
        with pytest.raises(Forbidden):
            backups.admin_backup_stats(patient, patient_user.id)


@pytest.mark.django_db
class TestDoctorPolicy:

    def test_unrelated_doctor_gets_not_found(self, other_doctor, record):
        with pytest.raises(NotFound):
            services.get_record(other_doctor, record.id)
        with pytest.raises(NotFound):
            services.update_record(other_doctor, record.id, 'x', expected_version_number=1)

    def test_unrelated_doctor_cannot_create_for_patient(self, other_doctor, patient_user):
        with pytest.raises(NotFound):
            services.create_record(other_doctor, patient_user.id, 'Note', 'content')

    def test_related_doctor_may_update_but_not_delete(self, other_doctor_user, other_doctor, patient_user, record):
        CareRelationship.objects.create(doctor=other_doctor_user, patient=patient_user)

        _, version = services.update_record(other_doctor, record.id, 'second opinion', expected_version_number=1)
        assert version.version_number == 2

        with pytest.raises(Forbidden):
            services.delete_record(other_doctor, record.id)

    def test_related_doctor_cannot_read_record_audit_of_others(self, other_doctor_user, other_doctor,
                                                              patient_user, record):
        CareRelationship.objects.create(doctor=other_doctor_user, patient=patient_user)

        decision = authorize(other_doctor, Operation.VIEW_RECORD_AUDIT, record=record)

        assert not decision.allowed
        assert not decision.hidden

    def test_ended_relationship_no_longer_grants_access(self, other_doctor_user, other_doctor,
                                                        patient_user, record):
        CareRelationship.objects.create(doctor=other_doctor_user, patient=patient_user, is_active=False)

        with pytest.raises(NotFound):
            services.get_record(other_doctor, record.id)

    def test_author_keeps_access_after_relationship_ends(self, doctor, care_relationship, record):
        care_relationship.is_active = False
        care_relationship.save()

        assert services.get_record(doctor, record.id).id == record.id

    def test_doctor_activity_is_self_only(self, doctor, other_doctor):
        assert authorize(doctor, Operation.VIEW_DOCTOR_ACTIVITY, doctor_id=doctor.actor_id).allowed

        decision = authorize(doctor, Operation.VIEW_DOCTOR_ACTIVITY, doctor_id=other_doctor.actor_id)
        assert not decision.allowed
        assert not decision.hidden

    def test_relationship_checker_is_pluggable(self, other_doctor, patient_user, record, settings):
        settings.RECORDS_RELATIONSHIP_CHECKER = 'test_records_access.AlwaysRelated'

        assert services.get_record(other_doctor, record.id).id == record.id


class AlwaysRelated:
    def has_active_relationship(self, doctor_id, patient_id):
        return True


@pytest.mark.django_db
class TestAdminPolicy:

    def test_admin_reads_records_and_versions(self, admin, record):
        assert services.get_record(admin, record.id).id == record.id
        assert services.get_version(admin, record.id, 1).version_number == 1

    def test_admin_has_no_content_mutation(self, admin, patient_user, record):
        with pytest.raises(Forbidden):
            services.create_record(admin, patient_user.id, 'Note', 'content')
        with pytest.raises(Forbidden):
            services.update_record(admin, record.id, 'admin edit', expected_version_number=1)
        with pytest.raises(Forbidden):
            backups.backup_record(admin, record.id)
        with pytest.raises(Forbidden):
            backups.export_patient_records(admin, patient_user.id)

    def test_admin_may_soft_delete_and_restore(self, admin, record):
        assert services.delete_record(admin, record.id).is_deleted is True
        assert services.restore_record(admin, record.id).is_deleted is False

    def test_unknown_role_is_denied(self, record):
        stranger = Actor(actor_id=record.patient_id, role='nurse')

        assert not authorize(stranger, Operation.VIEW_RECORD, record=record).allowed


@pytest.fixture
def doctor_as_patient(doctor, doctor_user, other_doctor_user):
    """other_doctor_user also holds the patient role and is treated by doctor_user."""
    from apps.authz.models import Role, UserRole
    patient_role, _ = Role.objects.get_or_create(name=RoleChoices.PATIENT)
    UserRole.objects.create(user=other_doctor_user, role=patient_role)
    CareRelationship.objects.create(doctor=doctor_user, patient=other_doctor_user)

    own_record, _ = services.create_record(doctor, other_doctor_user.id, 'Own chart', 'BP 110/70')
    return Actor.from_user(other_doctor_user), own_record


@pytest.mark.django_db
class TestMultiRoleUsers:

    def test_actor_keeps_all_roles(self, doctor_as_patient):
        actor, _ = doctor_as_patient

        assert actor.role == RoleChoices.DOCTOR
        assert actor.roles == {'doctor', 'patient'}

    def test_doctor_reads_own_record_as_patient(self, doctor_as_patient):
        actor, own_record = doctor_as_patient

        decision = authorize(actor, Operation.VIEW_RECORD, record=own_record)

        assert decision.allowed
        assert decision.acting_role == RoleChoices.PATIENT
        assert services.get_record(actor, own_record.id).id == own_record.id
        assert [e.actor_role for e in audit.get_record_audit(actor, own_record.id)] == ['patient', 'doctor']

    def test_own_record_stays_read_only(self, doctor_as_patient):
        actor, own_record = doctor_as_patient

        with pytest.raises(NotFound):
            services.update_record(actor, own_record.id, 'self edit', expected_version_number=1)

    def test_own_listing_hides_deleted_records(self, doctor, doctor_as_patient):
        actor, own_record = doctor_as_patient
        services.delete_record(doctor, own_record.id)

        page = services.list_patient_records(actor, actor.actor_id, include_deleted=True)

        assert page['results'] == []

    def test_staff_decision_is_kept_when_allowed(self, doctor, record):
        decision = authorize(doctor, Operation.VIEW_RECORD, record=record)

        assert decision.acting_role == ''
        assert decision.acting_as(doctor) is doctor
