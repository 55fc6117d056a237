"""Persistence contracts consumed by the ticket workflow engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Protocol, Sequence

from .models import Attachment, Category, Comment, Ticket, TicketStatus, Urgency, UserRecord

UNASSIGNED = "unassigned"


@dataclass(frozen=True, slots=True)
class TicketFilters:
    """Filters applied when listing tickets.

    ``assigned_to`` accepts the ``UNASSIGNED`` sentinel to select tickets
    without an assignee.
    """

    statuses: frozenset[TicketStatus] = frozenset()
    categories: frozenset[Category] = frozenset()
    urgencies: frozenset[Urgency] = frozenset()
    assigned_to: str | None = None
    created_by: str | None = None
    search: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int = 50
    offset: int = 0

    def matches(self, ticket: Ticket) -> bool:
        if self.statuses and ticket.status not in self.statuses:
            return False
        if self.categories and ticket.category not in self.categories:
            return False
        if self.urgencies and ticket.urgency not in self.urgencies:
            return False
        if self.assigned_to == UNASSIGNED:
            if ticket.assigned_to is not None:
                return False
        elif self.assigned_to is not None and ticket.assigned_to != self.assigned_to:
            return False
        if self.created_by is not None and ticket.created_by != self.created_by:
            return False
        if self.created_after is not None and ticket.created_at < self.created_after:
            return False
        if self.created_before is not None and ticket.created_at > self.created_before:
            return False
        if self.search:
            needle = self.search.lower()
            haystacks = (ticket.title, ticket.description, ticket.ticket_number)
            if not any(needle in value.lower() for value in haystacks):
                return False
        return True


class TicketRepository(Protocol):
    async def find_by_id(self, ticket_id: str) -> Ticket | None:
        ...

    async def insert(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket; raises ``DuplicateTicketNumber`` on collision."""
        ...

    async def patch_by_id(
        self,
        ticket_id: str,
        expected_version: int,
        changes: Mapping[str, Any],
        *,
        updated_at: datetime,
    ) -> Ticket:
        """Apply ``changes`` only if the stored version still equals ``expected_version``.

        Raises ``NotFound`` for an absent ticket and ``ConcurrencyConflict`` when
        another writer got there first.
        """
        ...

    async def list(self, filters: TicketFilters) -> Sequence[Ticket]:
        ...

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        ...


class CommentRepository(Protocol):
    async def insert(self, comment: Comment) -> Comment:
        ...

    async def find_by_id(self, comment_id: str) -> Comment | None:
        ...

    async def patch_by_id(self, comment_id: str, changes: Mapping[str, Any]) -> Comment:
        ...

    async def list_for_ticket(self, ticket_id: str) -> Sequence[Comment]:
        ...


class AttachmentRepository(Protocol):
    async def find_by_id(self, attachment_id: str) -> Attachment | None:
        ...


class UserDirectory(Protocol):
    async def find_by_id(self, user_id: str) -> UserRecord | None:
        ...

    async def most_recently_active_staff(self) -> UserRecord | None:
        """Return the active staff member with the latest login, if any."""
        ...
