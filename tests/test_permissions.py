import pytest

from helpdesk.security.identity import Role
from helpdesk.security.permissions import (
    ROLE_PERMISSIONS,
    TICKETS_ASSIGN,
    TICKETS_CLOSE,
    TICKETS_DELETE_ALL,
    TICKETS_VIEW_ALL,
    Action,
    Permission,
    Resource,
    Scope,
    has_permission,
    permissions_for,
)


def test_parse_round_trips_string_form():
    permission = Permission.parse("tickets.view.own")

    assert permission == Permission(Resource.TICKETS, Action.VIEW, Scope.OWN)
    assert str(permission) == "tickets.view.own"
    assert str(Permission.parse("tickets.*")) == "tickets.*"


@pytest.mark.parametrize("value", ["tickets", "tickets.view.own.extra", "tickets.fly", "robots.view"])
def test_parse_rejects_malformed_values(value):
    with pytest.raises(ValueError):
        Permission.parse(value)


def test_wildcard_cannot_carry_scope():
    with pytest.raises(ValueError):
        Permission(Resource.TICKETS, Action.ANY, Scope.ALL)


def test_wildcard_grants_every_action_on_its_resource_only():
    wildcard = Permission.parse("tickets.*")

    assert wildcard.grants(TICKETS_DELETE_ALL)
    assert wildcard.grants(Permission.parse("tickets.view.own"))
    assert not wildcard.grants(Permission.parse("users.view"))


def test_scoped_permission_does_not_imply_wider_scope():
    assert not Permission.parse("tickets.view.own").grants(TICKETS_VIEW_ALL)


def test_member_capabilities():
    assert has_permission(Role.MEMBER, "tickets.create")
    assert has_permission(Role.MEMBER, "tickets.view.own")
    assert has_permission(Role.MEMBER, "tickets.delete.own")
    assert not has_permission(Role.MEMBER, TICKETS_VIEW_ALL)
    assert not has_permission(Role.MEMBER, TICKETS_CLOSE)
    assert not has_permission(Role.MEMBER, TICKETS_ASSIGN)


def test_staff_capabilities():
    assert has_permission(Role.STAFF, TICKETS_VIEW_ALL)
    assert has_permission(Role.STAFF, TICKETS_ASSIGN)
    assert has_permission(Role.STAFF, TICKETS_CLOSE)
    assert has_permission(Role.STAFF, "analytics.view")
    assert not has_permission(Role.STAFF, TICKETS_DELETE_ALL)
    assert not has_permission(Role.STAFF, "system.admin")


def test_senior_staff_holds_ticket_wildcard():
    assert has_permission(Role.SENIOR_STAFF, TICKETS_DELETE_ALL)
    assert has_permission(Role.SENIOR_STAFF, "tickets.edit.all")
    assert has_permission(Role.SENIOR_STAFF, "users.delete.all")
    assert has_permission(Role.SENIOR_STAFF, "system.admin")
    assert not has_permission(Role.SENIOR_STAFF, "system.manage")


def test_role_table_is_read_only():
    with pytest.raises(TypeError):
        ROLE_PERMISSIONS[Role.MEMBER] = frozenset()  # type: ignore[index]

    assert isinstance(permissions_for(Role.MEMBER), frozenset)
