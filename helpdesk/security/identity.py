"""Resolved identities consumed by the workflow engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Supported actor roles."""

    MEMBER = "member"
    STAFF = "staff"
    SENIOR_STAFF = "senior_staff"


class UserStatus(str, Enum):
    """Account states reported by the identity provider."""

    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"
    LOCKED = "locked"


STAFF_ROLES: frozenset[Role] = frozenset({Role.STAFF, Role.SENIOR_STAFF})


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated identity performing an operation.

    The engine never verifies credentials; it trusts the identity context that
    built this value.
    """

    id: str
    role: Role
    status: UserStatus = UserStatus.ACTIVE

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


SYSTEM_ACTOR = Actor(id="system", role=Role.SENIOR_STAFF)
