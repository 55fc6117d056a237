from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from helpdesk.security.identity import STAFF_ROLES, UserStatus

from .errors import InvalidAssignee
from .models import CATEGORY_POLICIES, Ticket, TicketStatus, Urgency, UserRecord
from .repository import UserDirectory
from .state import TicketStateMachine

_AUTO_ASSIGN_URGENCIES = frozenset({Urgency.HIGH, Urgency.CRITICAL})


def qualifies_for_auto_assignment(ticket: Ticket) -> bool:
    """High-impact categories at high or critical urgency are routed immediately."""

    policy = CATEGORY_POLICIES.get(ticket.category)
    return bool(policy and policy.high_impact) and ticket.urgency in _AUTO_ASSIGN_URGENCIES


@dataclass(slots=True)
class AssignmentPlan:
    """Validated assignment ready to be written."""

    assignee: UserRecord | None
    changes: dict[str, Any] = field(default_factory=dict)

    @property
    def assignee_name(self) -> str | None:
        return self.assignee.username if self.assignee else None


class AssignmentEngine:
    """Validate assignees and derive the coupled assignment/status change."""

    def __init__(self, users: UserDirectory) -> None:
        self._users = users

    async def resolve_assignee(self, assignee_id: str | None) -> UserRecord | None:
        if assignee_id is None:
            return None
        user = await self._users.find_by_id(assignee_id)
        if user is None:
            raise InvalidAssignee(assignee_id, "user not found")
        if user.role not in STAFF_ROLES:
            raise InvalidAssignee(assignee_id, "tickets can only be assigned to staff")
        if user.status is not UserStatus.ACTIVE:
            raise InvalidAssignee(assignee_id, "user is not active")
        return user

    async def plan(self, ticket: Ticket, assignee_id: str | None) -> AssignmentPlan:
        assignee = await self.resolve_assignee(assignee_id)
        # Assignment drives status: an owner means work is in progress, none means open.
        status = TicketStatus.IN_PROGRESS if assignee else TicketStatus.OPEN
        changes: dict[str, Any] = {
            "assigned_to": assignee.id if assignee else None,
            "status": status,
        }
        changes.update(TicketStateMachine.reopen_changes(ticket))
        return AssignmentPlan(assignee=assignee, changes=changes)

    async def pick_auto_assignee(self, ticket: Ticket) -> UserRecord | None:
        if not qualifies_for_auto_assignment(ticket):
            return None
        return await self._users.most_recently_active_staff()
