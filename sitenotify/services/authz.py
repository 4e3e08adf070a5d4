from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sitenotify.core.errors import AccessDeniedError


class Role(str, Enum):
    WORKER = "worker"
    DRIVER = "driver"
    SUPERVISOR = "supervisor"
    COMPANY_ADMIN = "company_admin"
    ADMIN = "admin"


class Capability(str, Enum):
    CREATE_NOTIFICATION = "create_notification"
    READ_OWN_NOTIFICATIONS = "read_own_notifications"
    READ_ALL_NOTIFICATIONS = "read_all_notifications"
    ACKNOWLEDGE_NOTIFICATION = "acknowledge_notification"
    VIEW_AUDIT = "view_audit"
    VIEW_HEALTH = "view_health"
    VIEW_ERROR_STATISTICS = "view_error_statistics"
    MANAGE_CIRCUIT_BREAKERS = "manage_circuit_breakers"
    MANAGE_ADMIN_ALERTS = "manage_admin_alerts"
    VIEW_ESCALATION_STATS = "view_escalation_stats"
    TRIGGER_ESCALATION = "trigger_escalation"
    MANAGE_ESCALATION_CONTACTS = "manage_escalation_contacts"


_FIELD_CAPABILITIES = frozenset({Capability.READ_OWN_NOTIFICATIONS, Capability.ACKNOWLEDGE_NOTIFICATION})
_SUPERVISOR_CAPABILITIES = _FIELD_CAPABILITIES | {
    Capability.CREATE_NOTIFICATION,
    Capability.READ_ALL_NOTIFICATIONS,
    Capability.VIEW_AUDIT,
    Capability.VIEW_HEALTH,
    Capability.VIEW_ESCALATION_STATS,
}

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.WORKER: _FIELD_CAPABILITIES,
    Role.DRIVER: _FIELD_CAPABILITIES,
    Role.SUPERVISOR: frozenset(_SUPERVISOR_CAPABILITIES),
    Role.COMPANY_ADMIN: frozenset(
        _SUPERVISOR_CAPABILITIES
        | {
            Capability.VIEW_ERROR_STATISTICS,
            Capability.TRIGGER_ESCALATION,
            Capability.MANAGE_ESCALATION_CONTACTS,
        }
    ),
    Role.ADMIN: frozenset(Capability),
}


def parse_role(value: str) -> Role:
    # Reject unknown role strings at the boundary instead of comparing raw strings later.
    normalized = (value or "").strip().lower()
    try:
        return Role(normalized)
    except ValueError as exc:
        raise AccessDeniedError(f"unknown role: {value!r}") from exc


@dataclass(frozen=True)
class AccessContext:
    user_id: str
    role: Role
    company_id: str | None = None

    @property
    def capabilities(self) -> frozenset[Capability]:
        return ROLE_CAPABILITIES[self.role]

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        if not self.has(capability):
            raise AccessDeniedError(f"role {self.role.value} lacks {capability.value}")

    @property
    def can_create_notification(self) -> bool:
        return self.has(Capability.CREATE_NOTIFICATION)

    @property
    def can_read_all_notifications(self) -> bool:
        return self.has(Capability.READ_ALL_NOTIFICATIONS)

    @property
    def can_view_health(self) -> bool:
        return self.has(Capability.VIEW_HEALTH)

    @property
    def is_platform_admin(self) -> bool:
        # Platform admins read across companies; everyone else stays inside their own company.
        return self.role is Role.ADMIN
