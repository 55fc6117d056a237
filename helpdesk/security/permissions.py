"""Capability evaluator mapping roles to structured permissions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping

from .identity import Role


class Resource(str, Enum):
    TICKETS = "tickets"
    USERS = "users"
    ANALYTICS = "analytics"
    SYSTEM = "system"
    CATEGORIES = "categories"


class Action(str, Enum):
    ANY = "*"
    CREATE = "create"
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    ASSIGN = "assign"
    CLOSE = "close"
    ADMIN = "admin"
    MANAGE = "manage"


class Scope(str, Enum):
    NONE = ""
    OWN = "own"
    ALL = "all"


@dataclass(frozen=True, slots=True)
class Permission:
    """A capability on a resource class.

    ``Action.ANY`` is the wildcard case: it covers every action and scope on the
    same resource, which is what ``tickets.*`` means in string form.
    """

    resource: Resource
    action: Action
    scope: Scope = Scope.NONE

    def __post_init__(self) -> None:
        if self.action is Action.ANY and self.scope is not Scope.NONE:
            raise ValueError("Wildcard permissions cannot carry a scope")

    @classmethod
    def parse(cls, value: str) -> "Permission":
        parts = value.strip().split(".")
        if len(parts) not in (2, 3):
            raise ValueError(f"Malformed permission string: {value!r}")
        scope = Scope(parts[2]) if len(parts) == 3 else Scope.NONE
        return cls(Resource(parts[0]), Action(parts[1]), scope)

    def grants(self, requested: "Permission") -> bool:
        if self.resource is not requested.resource:
            return False
        if self.action is Action.ANY:
            return True
        return self.action is requested.action and self.scope is requested.scope

    def __str__(self) -> str:
        parts = [self.resource.value, self.action.value]
        if self.scope is not Scope.NONE:
            parts.append(self.scope.value)
        return ".".join(parts)


TICKETS_CREATE = Permission(Resource.TICKETS, Action.CREATE)
TICKETS_VIEW_OWN = Permission(Resource.TICKETS, Action.VIEW, Scope.OWN)
TICKETS_VIEW_ALL = Permission(Resource.TICKETS, Action.VIEW, Scope.ALL)
TICKETS_EDIT_OWN = Permission(Resource.TICKETS, Action.EDIT, Scope.OWN)
TICKETS_EDIT_ALL = Permission(Resource.TICKETS, Action.EDIT, Scope.ALL)
TICKETS_DELETE_OWN = Permission(Resource.TICKETS, Action.DELETE, Scope.OWN)
TICKETS_DELETE_ALL = Permission(Resource.TICKETS, Action.DELETE, Scope.ALL)
TICKETS_ASSIGN = Permission(Resource.TICKETS, Action.ASSIGN)
TICKETS_CLOSE = Permission(Resource.TICKETS, Action.CLOSE)


def _permission_set(values: Iterable[str]) -> frozenset[Permission]:
    return frozenset(Permission.parse(value) for value in values)


# Built once at import; there is no runtime mutation path.
ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = MappingProxyType(
    {
        Role.MEMBER: _permission_set(
            (
                "tickets.create",
                "tickets.view.own",
                "tickets.edit.own",
                "tickets.delete.own",
            )
        ),
        Role.STAFF: _permission_set(
            (
                "tickets.create",
                "tickets.view.own",
                "tickets.view.all",
                "tickets.edit.own",
                "tickets.edit.all",
                "tickets.assign",
                "tickets.close",
                "users.view",
                "analytics.view",
            )
        ),
        Role.SENIOR_STAFF: _permission_set(
            (
                "tickets.*",
                "users.*",
                "analytics.*",
                "system.admin",
                "categories.manage",
            )
        ),
    }
)


def permissions_for(role: Role) -> frozenset[Permission]:
    """Return the static permission set granted to ``role``."""

    return ROLE_PERMISSIONS.get(role, frozenset())


def has_permission(role: Role, permission: Permission | str) -> bool:
    """Return whether ``role`` holds ``permission`` directly or through a wildcard."""

    requested = Permission.parse(permission) if isinstance(permission, str) else permission
    granted = permissions_for(role)
    if requested in granted:
        return True
    return any(entry.grants(requested) for entry in granted)
