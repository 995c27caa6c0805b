"""
Authz permissions shared by the records API.
"""
from rest_framework import permissions
from apps.authz.models import RoleChoices


RECORD_ROLES = {RoleChoices.ADMIN, RoleChoices.DOCTOR, RoleChoices.PATIENT}


def get_user_role_names(user):
    """Return the set of role names held by ``user``."""
    return set(user.user_roles.values_list('role__name', flat=True))


class HasRecordsRole(permissions.BasePermission):
    """
    Allows authenticated users holding at least one of admin/doctor/patient.

    Anonymous requests are left to the authentication layer (401);
    authenticated users without a recognised role get 403.
    """
    message = 'User has no role in the record store'

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        return bool(get_user_role_names(request.user) & RECORD_ROLES)
