"""
Clinical relationship collaborator.

The access gate asks "does this doctor have an active treatment
relationship with this patient?" through the object configured in
settings.RECORDS_RELATIONSHIP_CHECKER. A checker exposes:

    has_active_relationship(doctor_id, patient_id) -> bool
    related_patient_ids(doctor_id) -> iterable of patient ids

The second method is only needed by record search, which has to list the
doctor's patients up front instead of checking one patient at a time.
"""
from django.conf import settings
from django.utils.module_loading import import_string

from apps.authz.models import CareRelationship


class CareRelationshipChecker:
    """Default checker backed by the authz care_relationship table."""

    def _active(self, doctor_id):
        return CareRelationship.objects.filter(doctor_id=doctor_id, is_active=True)

    def has_active_relationship(self, doctor_id, patient_id):
        return self._active(doctor_id).filter(patient_id=patient_id).exists()

    def related_patient_ids(self, doctor_id):
        return list(self._active(doctor_id).values_list('patient_id', flat=True))


def get_relationship_checker():
    """Instantiate the configured relationship checker."""
    return import_string(settings.RECORDS_RELATIONSHIP_CHECKER)()
