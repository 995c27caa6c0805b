"""
Access control gate for the record store.

One decision function, authorize(), evaluates whether an actor may perform
an operation on a record or a patient's records. Every service function
calls require() before touching data.

Policy:
- Patient: read-only (view/list/versions/record audit/backups), own data only.
- Doctor: full access to records they authored or whose patient they have an
  active clinical relationship with. Delete/restore and record audit are
  limited to the authoring doctor. Activity only for themselves. Search
  covers the same records and is available to doctors only.
- Admin: read-only access to records, audit trails and backup statistics,
  plus soft delete / restore. No content mutation.

When the actor has no relationship at all to the target, the denial is
reported as NotFound so the response does not reveal whether it exists.
"""
from dataclasses import dataclass, field, replace
from enum import Enum

from apps.authz.models import RoleChoices
from apps.authz.permissions import get_user_role_names
from apps.core.exceptions import Forbidden, NotFound
from apps.core.observability import metrics
from apps.core.observability.events import log_access_denied

from .models import AuditActionChoices, MedicalRecord
from .relationships import get_relationship_checker


class Operation(str, Enum):
    CREATE_RECORD = 'create_record'
    VIEW_RECORD = 'view_record'
    UPDATE_RECORD = 'update_record'
    DELETE_RECORD = 'delete_record'
    RESTORE_RECORD = 'restore_record'
    LIST_RECORDS = 'list_records'
    VIEW_VERSIONS = 'view_versions'
    VIEW_RECORD_AUDIT = 'view_record_audit'
    VIEW_PATIENT_AUDIT = 'view_patient_audit'
    VIEW_DOCTOR_ACTIVITY = 'view_doctor_activity'
    BACKUP_RECORD = 'backup_record'
    LIST_BACKUPS = 'list_backups'
    EXPORT_RECORDS = 'export_records'
    BACKUP_STATS = 'backup_stats'
    SEARCH_RECORDS = 'search_records'


PATIENT_OPERATIONS = {
    Operation.VIEW_RECORD,
    Operation.LIST_RECORDS,
    Operation.VIEW_VERSIONS,
    Operation.VIEW_RECORD_AUDIT,
    Operation.LIST_BACKUPS,
}

ADMIN_OPERATIONS = {
    Operation.VIEW_RECORD,
    Operation.LIST_RECORDS,
    Operation.VIEW_VERSIONS,
    Operation.VIEW_RECORD_AUDIT,
    Operation.VIEW_PATIENT_AUDIT,
    Operation.VIEW_DOCTOR_ACTIVITY,
    Operation.LIST_BACKUPS,
    Operation.BACKUP_STATS,
    Operation.DELETE_RECORD,
    Operation.RESTORE_RECORD,
}

# Doctor operations restricted to the authoring doctor
AUTHOR_ONLY_OPERATIONS = {
    Operation.DELETE_RECORD,
    Operation.RESTORE_RECORD,
    Operation.VIEW_RECORD_AUDIT,
}

SEARCH_DENIED = 'Only doctors can search records'

# A user holding several roles acts with the first one found here; see
# authorize() for the patient fallback
ROLE_PRECEDENCE = (RoleChoices.DOCTOR, RoleChoices.ADMIN, RoleChoices.PATIENT)


@dataclass(frozen=True)
class Actor:
    """Identity and effective role of the caller."""
    actor_id: object
    role: str
    # Every records role the user holds, including the effective one
    roles: frozenset = field(default_factory=frozenset)

    @property
    def is_patient(self):
        return self.role == RoleChoices.PATIENT

    @property
    def is_doctor(self):
        return self.role == RoleChoices.DOCTOR

    @property
    def is_admin(self):
        return self.role == RoleChoices.ADMIN

    @property
    def is_staff(self):
        return self.role in (RoleChoices.DOCTOR, RoleChoices.ADMIN)

    def as_role(self, role):
        return replace(self, role=str(role))

    @classmethod
    def from_user(cls, user):
        """Build an Actor from an authenticated user; Forbidden without a known role."""
        roles = get_user_role_names(user)
        for role in ROLE_PRECEDENCE:
            if role in roles:
                return cls(actor_id=user.id, role=str(role), roles=frozenset(str(r) for r in roles))
        raise Forbidden('User has no role in the record store')


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ''
    # Deny as "not found" instead of "forbidden"
    hidden: bool = False
    # Set when the decision was reached under another role the actor holds
    acting_role: str = ''

    def acting_as(self, actor):
        """The actor the operation should proceed as."""
        if self.acting_role and self.acting_role != actor.role:
            return actor.as_role(self.acting_role)
        return actor

    def raise_for_denial(self):
        if self.allowed:
            return
        if self.hidden:
            raise NotFound()
        raise Forbidden(self.reason or None)


ALLOW = Decision(allowed=True)


def _deny(reason):
    return Decision(allowed=False, reason=reason)


def _hide(reason):
    return Decision(allowed=False, reason=reason, hidden=True)


def _doctor_related_to_patient(doctor_id, patient_id):
    """Active relationship, or authored at least one of the patient's records."""
    if get_relationship_checker().has_active_relationship(doctor_id, patient_id):
        return True
    return MedicalRecord.objects.filter(
        patient_id=patient_id,
        created_by_doctor_id=doctor_id
    ).exists()


def _authorize_patient(actor, operation, record, patient_id, doctor_id):
    if operation == Operation.SEARCH_RECORDS:
        return _deny(SEARCH_DENIED)

    if operation in (Operation.VIEW_DOCTOR_ACTIVITY, Operation.BACKUP_STATS):
        return _deny('Patients cannot access this resource')

    owner_id = record.patient_id if record is not None else patient_id
    if owner_id != actor.actor_id:
        return _hide('Patient does not own the target')

    if record is not None and record.is_deleted:
        return _hide('Record is deleted')

    if operation not in PATIENT_OPERATIONS:
        return _deny('Patients have read-only access')

    return ALLOW


def _authorize_doctor(actor, operation, record, patient_id, doctor_id):
    if operation == Operation.VIEW_DOCTOR_ACTIVITY:
        if doctor_id != actor.actor_id:
            return _deny('Doctors may only view their own activity')
        return ALLOW

    if operation == Operation.BACKUP_STATS:
        return _deny('Backup statistics are restricted to admins')

    if record is not None:
        is_author = record.created_by_doctor_id == actor.actor_id
        related = is_author or get_relationship_checker().has_active_relationship(
            actor.actor_id, record.patient_id
        )
        if not related:
            return _hide('No clinical relationship with the record')
        if operation in AUTHOR_ONLY_OPERATIONS and not is_author:
            return _deny('Only the authoring doctor may perform this action')
        return ALLOW

    # Unscoped search; results are limited to related records by the query
    if operation == Operation.SEARCH_RECORDS and patient_id is None:
        return ALLOW

    if not _doctor_related_to_patient(actor.actor_id, patient_id):
        return _hide('No clinical relationship with the patient')
    return ALLOW


def _authorize_admin(actor, operation, record, patient_id, doctor_id):
    if operation == Operation.SEARCH_RECORDS:
        return _deny(SEARCH_DENIED)
    if operation not in ADMIN_OPERATIONS:
        return _deny('Admins have no content mutation rights')
    return ALLOW


_ROLE_POLICIES = {
    RoleChoices.PATIENT: _authorize_patient,
    RoleChoices.DOCTOR: _authorize_doctor,
    RoleChoices.ADMIN: _authorize_admin,
}


def authorize(actor, operation, record=None, patient_id=None, doctor_id=None):
    """
    Decide whether ``actor`` may perform ``operation``.

    Args:
        actor: Actor performing the request
        operation: Operation member
        record: MedicalRecord for record-scope operations
        patient_id: target patient for patient-scope operations
        doctor_id: target doctor for VIEW_DOCTOR_ACTIVITY

    Returns:
        Decision; acting_role is set when only the patient fallback allowed it
    """
    policy = _ROLE_POLICIES.get(actor.role)
    if policy is None:
        return _deny('Unknown role')
    operation = Operation(operation)
    decision = policy(actor, operation, record, patient_id, doctor_id)

    # Staff who are also patients still read their own records as patients
    if not decision.allowed and not actor.is_patient and RoleChoices.PATIENT in actor.roles:
        as_patient = _authorize_patient(actor.as_role(RoleChoices.PATIENT), operation, record, patient_id, doctor_id)
        if as_patient.allowed:
            return replace(as_patient, acting_role=str(RoleChoices.PATIENT))
    return decision


def _audit_denial(actor, operation, decision, record, patient_id):
    """Write the refused attempt to the subject patient's trail, when there is one."""
    # audit imports this module
    from .audit import record_audit

    subject_id = record.patient_id if record is not None else patient_id
    if subject_id is None:
        return
    record_audit(
        actor,
        AuditActionChoices.DENIED,
        subject_id,
        record=record,
        metadata={
            'success': False,
            'operation': operation.value,
            'outcome': 'hidden' if decision.hidden else 'forbidden',
            'reason': decision.reason,
        }
    )


def require(actor, operation, record=None, patient_id=None, doctor_id=None):
    """
    authorize() and raise Forbidden / NotFound on denial.

    Denials are counted, logged and appended to the audit trail of the
    patient they concern before the error is raised.
    """
    decision = authorize(actor, operation, record=record, patient_id=patient_id, doctor_id=doctor_id)
    if not decision.allowed:
        operation = Operation(operation)
        target_id = record.id if record is not None else (patient_id or doctor_id)
        metrics.records_access_denied_total.labels(
            role=actor.role,
            operation=operation.value,
            outcome='hidden' if decision.hidden else 'forbidden'
        ).inc()
        log_access_denied(actor, operation.value, decision.hidden, target_id=target_id)
        _audit_denial(actor, operation, decision, record, patient_id)
        decision.raise_for_denial()
    return decision
