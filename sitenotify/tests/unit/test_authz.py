from __future__ import annotations

import pytest

from sitenotify.core.errors import AccessDeniedError
from sitenotify.services.authz import AccessContext, Capability, Role, parse_role


def test_parse_role_accepts_known_roles_case_insensitively() -> None:
    assert parse_role("Supervisor") is Role.SUPERVISOR
    assert parse_role(" company_admin ") is Role.COMPANY_ADMIN
    with pytest.raises(AccessDeniedError):
        parse_role("superuser")


@pytest.mark.parametrize(
    ("role", "create", "read_all", "health", "stats", "breakers"),
    [
        (Role.WORKER, False, False, False, False, False),
        (Role.DRIVER, False, False, False, False, False),
        (Role.SUPERVISOR, True, True, True, False, False),
        (Role.COMPANY_ADMIN, True, True, True, True, False),
        (Role.ADMIN, True, True, True, True, True),
    ],
)
def test_role_capabilities(role, create, read_all, health, stats, breakers) -> None:
    actor = AccessContext(user_id="u-1", role=role, company_id="c-1")
    assert actor.can_create_notification is create
    assert actor.can_read_all_notifications is read_all
    assert actor.can_view_health is health
    assert actor.has(Capability.VIEW_ERROR_STATISTICS) is stats
    assert actor.has(Capability.MANAGE_CIRCUIT_BREAKERS) is breakers
    assert actor.has(Capability.ACKNOWLEDGE_NOTIFICATION) is True


def test_require_raises_for_missing_capability() -> None:
    actor = AccessContext(user_id="w-1", role=Role.WORKER)
    with pytest.raises(AccessDeniedError):
        actor.require(Capability.CREATE_NOTIFICATION)
    actor.require(Capability.READ_OWN_NOTIFICATIONS)
    assert actor.is_platform_admin is False
    assert AccessContext(user_id="a-1", role=Role.ADMIN).is_platform_admin is True


@pytest.mark.parametrize(
    ("role", "view_stats", "trigger", "contacts"),
    [
        (Role.WORKER, False, False, False),
        (Role.SUPERVISOR, True, False, False),
        (Role.COMPANY_ADMIN, True, True, True),
        (Role.ADMIN, True, True, True),
    ],
)
def test_escalation_capabilities(role, view_stats, trigger, contacts) -> None:
    actor = AccessContext(user_id="u-1", role=role, company_id="c-1")
    assert actor.has(Capability.VIEW_ESCALATION_STATS) is view_stats
    assert actor.has(Capability.TRIGGER_ESCALATION) is trigger
    assert actor.has(Capability.MANAGE_ESCALATION_CONTACTS) is contacts
