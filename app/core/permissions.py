"""
Role to capability table
"""
import enum
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional


class UserRole(str, enum.Enum):
    """User role enumeration"""
    SUPER_ADMIN = "super_admin"
    DOCTOR = "doctor"
    NURSE = "nurse"
    RECEPTIONIST = "receptionist"


class Capability(str, enum.Enum):
    """Capability flags carried by a PermissionSet"""
    VIEW_MEDICAL_CHART = "canViewMedicalChart"
    EDIT_MEDICAL_CHART = "canEditMedicalChart"
    MANAGE_PATIENT_PROFILES = "canManagePatientProfiles"
    MANAGE_USERS = "canManageUsers"
    LOGIN_AS_OTHERS = "canLoginAsOthers"
    DELETE_USERS = "canDeleteUsers"
    RESET_PASSWORDS = "canResetPasswords"


@dataclass(frozen=True)
class PermissionSet:
    can_view_medical_chart: bool = False
    can_edit_medical_chart: bool = False
    can_manage_patient_profiles: bool = False
    can_manage_users: bool = False
    can_login_as_others: bool = False
    can_delete_users: bool = False
    can_reset_passwords: bool = False

    def allows(self, capability: Capability) -> bool:
        return getattr(self, _FLAG_FIELDS[capability])

    def to_dict(self) -> Dict[str, bool]:
        """Serialize using the capability names the front end expects"""
        return {capability.value: self.allows(capability) for capability in Capability}


_FLAG_FIELDS = {
    Capability.VIEW_MEDICAL_CHART: "can_view_medical_chart",
    Capability.EDIT_MEDICAL_CHART: "can_edit_medical_chart",
    Capability.MANAGE_PATIENT_PROFILES: "can_manage_patient_profiles",
    Capability.MANAGE_USERS: "can_manage_users",
    Capability.LOGIN_AS_OTHERS: "can_login_as_others",
    Capability.DELETE_USERS: "can_delete_users",
    Capability.RESET_PASSWORDS: "can_reset_passwords",
}

NO_PERMISSIONS = PermissionSet()

ROLE_PERMISSIONS: Dict[UserRole, PermissionSet] = {
    UserRole.SUPER_ADMIN: PermissionSet(**{f.name: True for f in fields(PermissionSet)}),
    UserRole.DOCTOR: PermissionSet(
        can_view_medical_chart=True,
        can_edit_medical_chart=True,
    ),
    UserRole.NURSE: PermissionSet(
        can_view_medical_chart=True,
        can_edit_medical_chart=True,
    ),
    UserRole.RECEPTIONIST: PermissionSet(
        can_view_medical_chart=True,
        can_manage_patient_profiles=True,
    ),
}


def parse_role(value: Any) -> Optional[UserRole]:
    """Coerce a stored role value into a UserRole, None if unrecognized"""
    if isinstance(value, UserRole):
        return value
    try:
        return UserRole(value)
    except (ValueError, TypeError):
        return None


def get_permissions(role: Any) -> PermissionSet:
    """
    Look up the permission set for a role

    Unknown or malformed roles resolve to an all-false set.
    """
    parsed = parse_role(role)
    if parsed is None:
        return NO_PERMISSIONS
    return ROLE_PERMISSIONS[parsed]
