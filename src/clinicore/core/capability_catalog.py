"""
Capability Catalog

Static table of clinic capabilities and the role bindings compiled into the
process. The catalog is immutable at runtime; administrator edits live in
the override table (see data.repos.overrides).

The admin bypass is NOT encoded here. Admin is bound to every capability
for display purposes only; the resolver grants admin unconditionally.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from .auth.actor import Role
from ..errors import UnknownCapability


class CapabilityCategory:
    """Grouping used by the permissions screen"""
    DASHBOARD = "dashboard"
    APPOINTMENTS = "appointments"
    PATIENTS = "patients"
    DOCTORS = "doctors"
    RECORDS = "records"
    REPORTS = "reports"
    USERS = "users"
    SETTINGS = "settings"
    NOTIFICATIONS = "notifications"


@dataclass(frozen=True)
class CapabilityDefinition:
    """A named permission controlling whether an action is allowed"""
    name: str
    category: str
    description: str = ""


BUILTIN_CAPABILITIES: tuple = (
    CapabilityDefinition("view_dashboard", CapabilityCategory.DASHBOARD, "Open the dashboard and statistics"),
    CapabilityDefinition("view_appointments", CapabilityCategory.APPOINTMENTS, "See all appointments"),
    CapabilityDefinition("create_appointments", CapabilityCategory.APPOINTMENTS, "Book new appointments"),
    CapabilityDefinition("edit_appointments", CapabilityCategory.APPOINTMENTS, "Update appointment status and details"),
    CapabilityDefinition("delete_appointments", CapabilityCategory.APPOINTMENTS, "Cancel and delete appointments"),
    CapabilityDefinition("view_patients", CapabilityCategory.PATIENTS, "Access patient data"),
    CapabilityDefinition("create_patients", CapabilityCategory.PATIENTS, "Register new patients"),
    CapabilityDefinition("edit_patients", CapabilityCategory.PATIENTS, "Update patient data"),
    CapabilityDefinition("delete_patients", CapabilityCategory.PATIENTS, "Remove patient files"),
    CapabilityDefinition("view_doctors", CapabilityCategory.DOCTORS, "See the doctor list"),
    CapabilityDefinition("manage_doctors", CapabilityCategory.DOCTORS, "Add and edit doctors"),
    CapabilityDefinition("view_medical_records", CapabilityCategory.RECORDS, "Access medical records"),
    CapabilityDefinition("create_medical_records", CapabilityCategory.RECORDS, "Add medical records"),
    CapabilityDefinition("edit_medical_records", CapabilityCategory.RECORDS, "Update medical records"),
    CapabilityDefinition("view_reports", CapabilityCategory.REPORTS, "Access reports and statistics"),
    CapabilityDefinition("export_reports", CapabilityCategory.REPORTS, "Download reports as files"),
    CapabilityDefinition("manage_users", CapabilityCategory.USERS, "Add and edit users"),
    CapabilityDefinition("manage_permissions", CapabilityCategory.USERS, "Assign role permissions"),
    CapabilityDefinition("manage_settings", CapabilityCategory.SETTINGS, "Update system settings"),
    CapabilityDefinition("view_notifications", CapabilityCategory.NOTIFICATIONS, "Read notifications"),
    CapabilityDefinition("send_notifications", CapabilityCategory.NOTIFICATIONS, "Send notifications to users"),
    CapabilityDefinition("manage_waiting_list", CapabilityCategory.APPOINTMENTS, "Manage the waiting list"),
)

# Default role bindings. Admin is listed for completeness only.
DEFAULT_ROLE_GRANTS: Dict[Role, FrozenSet[str]] = {
    Role.ADMIN: frozenset(c.name for c in BUILTIN_CAPABILITIES),
    Role.DOCTOR: frozenset({
        "view_dashboard",
        "view_appointments",
        "edit_appointments",
        "view_patients",
        "create_patients",
        "edit_patients",
        "view_medical_records",
        "create_medical_records",
        "edit_medical_records",
        "view_reports",
        "view_notifications",
    }),
    Role.RECEPTIONIST: frozenset({
        "view_dashboard",
        "view_appointments",
        "create_appointments",
        "edit_appointments",
        "view_patients",
        "create_patients",
        "edit_patients",
        "view_doctors",
        "view_notifications",
        "manage_waiting_list",
    }),
    Role.PATIENT: frozenset({
        "view_dashboard",
        "view_appointments",
        "view_notifications",
    }),
}


class CapabilityCatalog:
    """
    Immutable capability table.

    Example:
        catalog = CapabilityCatalog.default()
        catalog.is_known("create_appointments")       # True
        catalog.allows(Role.RECEPTIONIST, "create_appointments")  # True
    """

    def __init__(
        self,
        definitions: Iterable[CapabilityDefinition],
        role_grants: Optional[Mapping[Role, Iterable[str]]] = None,
    ):
        defs = {d.name: d for d in definitions}
        self._definitions: Mapping[str, CapabilityDefinition] = MappingProxyType(defs)

        grants: Dict[Role, FrozenSet[str]] = {}
        for role, names in (role_grants or {}).items():
            names = frozenset(names)
            unknown = names - defs.keys()
            if unknown:
                raise ValueError(f"Role {role.value} bound to unknown capabilities: {sorted(unknown)}")
            grants[role] = names
        self._grants: Mapping[Role, FrozenSet[str]] = MappingProxyType(grants)

    @classmethod
    def default(cls) -> "CapabilityCatalog":
        """Catalog with the built-in clinic capabilities and role defaults"""
        return cls(BUILTIN_CAPABILITIES, DEFAULT_ROLE_GRANTS)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def is_known(self, name: str) -> bool:
        return name in self._definitions

    def require(self, name: str) -> CapabilityDefinition:
        """Return the definition or raise UnknownCapability"""
        try:
            return self._definitions[name]
        except (KeyError, TypeError):
            raise UnknownCapability(str(name)) from None

    def get(self, name: str) -> Optional[CapabilityDefinition]:
        return self._definitions.get(name)

    def names(self) -> FrozenSet[str]:
        return frozenset(self._definitions)

    def by_category(self) -> Dict[str, List[CapabilityDefinition]]:
        grouped: Dict[str, List[CapabilityDefinition]] = {}
        for definition in self._definitions.values():
            grouped.setdefault(definition.category, []).append(definition)
        return grouped

    def default_grants(self, role: Role) -> FrozenSet[str]:
        """Static binding for a role (empty if the role has none)"""
        return self._grants.get(role, frozenset())

    def allows(self, role: Role, name: str) -> bool:
        """Static binding lookup; no admin bypass and no overrides"""
        return name in self._grants.get(role, frozenset())
