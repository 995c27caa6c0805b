"""
Global test fixtures for pytest.

Provides reusable fixtures for record store testing:
- Users per role (doctor, patient, admin) and matching Actors
- Authenticated API clients by role
- Care relationships and a record factory
"""
import pytest
from rest_framework.test import APIClient
from apps.authz.models import User, Role, UserRole, RoleChoices, CareRelationship
from apps.core.observability.correlation import clear_request_context
from apps.records.access import Actor
from apps.records import services


def _create_user_with_role(email, role_name, **extra):
    user = User.objects.create_user(
        email=email,
        password='testpass123',
        is_active=True,
        **extra
    )

    # Create role if not exists
    role, _ = Role.objects.get_or_create(
        name=role_name,
        defaults={'name': role_name}
    )

    # Assign role to user
    UserRole.objects.create(user=user, role=role)
    return user


def _client_for(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture(autouse=True)
def _reset_request_context():
    """Correlation context is thread-local; do not leak it between tests."""
    yield
    clear_request_context()


# ============================================================================
# Users
# ============================================================================

@pytest.fixture
def doctor_user(db):
    """Doctor with an active care relationship to patient_user."""
    return _create_user_with_role('doctor@test.com', RoleChoices.DOCTOR)


@pytest.fixture
def other_doctor_user(db):
    """Doctor with no relationship to anyone."""
    return _create_user_with_role('other.doctor@test.com', RoleChoices.DOCTOR)


@pytest.fixture
def patient_user(db):
    return _create_user_with_role('patient@test.com', RoleChoices.PATIENT)


@pytest.fixture
def other_patient_user(db):
    return _create_user_with_role('other.patient@test.com', RoleChoices.PATIENT)


@pytest.fixture
def admin_user(db):
    return _create_user_with_role('admin@test.com', RoleChoices.ADMIN, is_staff=True)


@pytest.fixture
def roleless_user(db):
    """Authenticated user without any records role."""
    return User.objects.create_user(email='nobody@test.com', password='testpass123')


@pytest.fixture
def care_relationship(doctor_user, patient_user):
    return CareRelationship.objects.create(doctor=doctor_user, patient=patient_user)


# ============================================================================
# Actors (service-level callers)
# ============================================================================

@pytest.fixture
def doctor(doctor_user, care_relationship):
    return Actor(actor_id=doctor_user.id, role=RoleChoices.DOCTOR)


@pytest.fixture
def other_doctor(other_doctor_user):
    return Actor(actor_id=other_doctor_user.id, role=RoleChoices.DOCTOR)


@pytest.fixture
def patient(patient_user):
    return Actor(actor_id=patient_user.id, role=RoleChoices.PATIENT)


@pytest.fixture
def other_patient(other_patient_user):
    return Actor(actor_id=other_patient_user.id, role=RoleChoices.PATIENT)


@pytest.fixture
def admin(admin_user):
    return Actor(actor_id=admin_user.id, role=RoleChoices.ADMIN)


# ============================================================================
# API Clients
# ============================================================================

@pytest.fixture
def api_client():
    """Unauthenticated DRF API client."""
    return APIClient()


@pytest.fixture
def doctor_client(doctor_user, care_relationship):
    return _client_for(doctor_user)


@pytest.fixture
def other_doctor_client(other_doctor_user):
    return _client_for(other_doctor_user)


@pytest.fixture
def patient_client(patient_user):
    return _client_for(patient_user)


@pytest.fixture
def other_patient_client(other_patient_user):
    return _client_for(other_patient_user)


@pytest.fixture
def admin_client(admin_user):
    return _client_for(admin_user)


@pytest.fixture
def roleless_client(roleless_user):
    return _client_for(roleless_user)


# ============================================================================
# Records
# ============================================================================

@pytest.fixture
def make_record(doctor, patient_user):
    """
    Factory creating a record (with version 1) for patient_user by doctor.

    Usage:
        record, version = make_record(title='Annual Physical', content='BP 120/80')
    """
    def _make(title='Annual Physical', content='BP 120/80', **kwargs):
        actor = kwargs.pop('actor', doctor)
        patient_id = kwargs.pop('patient_id', patient_user.id)
        return services.create_record(actor, patient_id, title, content, **kwargs)
    return _make


@pytest.fixture
def record(make_record):
    record, _ = make_record()
    return record
