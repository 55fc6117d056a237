"""Process-local storage implementing the persistence contracts.

Used for tests and single-process development. Writes are serialized by one
shared ``asyncio.Lock`` and every read hands out a copy, so callers hold
snapshots exactly as they would against a database.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from helpdesk.security.identity import STAFF_ROLES, UserStatus

from .errors import ConcurrencyConflict, DuplicateTicketNumber, NotFound
from .models import Attachment, Comment, Ticket, UserRecord, apply_changes
from .repository import TicketFilters


class InMemoryTicketRepository:
    def __init__(self, lock: asyncio.Lock) -> None:
        self._lock = lock
        self._rows: dict[str, Ticket] = {}
        self._numbers: set[str] = set()

    async def find_by_id(self, ticket_id: str) -> Ticket | None:
        ticket = self._rows.get(ticket_id)
        return copy.deepcopy(ticket) if ticket is not None else None

    async def insert(self, ticket: Ticket) -> Ticket:
        async with self._lock:
            if ticket.ticket_number in self._numbers:
                raise DuplicateTicketNumber(ticket.ticket_number)
            self._rows[ticket.id] = copy.deepcopy(ticket)
            self._numbers.add(ticket.ticket_number)
            return copy.deepcopy(ticket)

    async def patch_by_id(
        self,
        ticket_id: str,
        expected_version: int,
        changes: Mapping[str, Any],
        *,
        updated_at: datetime,
    ) -> Ticket:
        async with self._lock:
            current = self._rows.get(ticket_id)
            if current is None:
                raise NotFound(f"Ticket {ticket_id} not found")
            if current.version != expected_version:
                raise ConcurrencyConflict(ticket_id)
            updated = apply_changes(current, changes, updated_at=updated_at)
            self._rows[ticket_id] = updated
            return copy.deepcopy(updated)

    async def list(self, filters: TicketFilters) -> Sequence[Ticket]:
        matched = [ticket for ticket in self._rows.values() if filters.matches(ticket)]
        matched.sort(key=lambda ticket: ticket.created_at, reverse=True)
        window = matched[filters.offset : filters.offset + filters.limit]
        return [copy.deepcopy(ticket) for ticket in window]

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        return sum(1 for ticket in self._rows.values() if start <= ticket.created_at < end)


class InMemoryCommentRepository:
    def __init__(self, lock: asyncio.Lock) -> None:
        self._lock = lock
        self._rows: dict[str, Comment] = {}

    async def insert(self, comment: Comment) -> Comment:
        async with self._lock:
            self._rows[comment.id] = copy.deepcopy(comment)
            return copy.deepcopy(comment)

    async def find_by_id(self, comment_id: str) -> Comment | None:
        comment = self._rows.get(comment_id)
        return copy.deepcopy(comment) if comment is not None else None

    async def patch_by_id(self, comment_id: str, changes: Mapping[str, Any]) -> Comment:
        async with self._lock:
            current = self._rows.get(comment_id)
            if current is None:
                raise NotFound(f"Comment {comment_id} not found")
            updated = replace(current, **dict(changes))
            self._rows[comment_id] = updated
            return copy.deepcopy(updated)

    async def list_for_ticket(self, ticket_id: str) -> Sequence[Comment]:
        comments = [comment for comment in self._rows.values() if comment.ticket_id == ticket_id]
        comments.sort(key=lambda comment: comment.created_at)
        return [copy.deepcopy(comment) for comment in comments]


class InMemoryAttachmentRepository:
    def __init__(self, attachments: Iterable[Attachment] = ()) -> None:
        self._rows: dict[str, Attachment] = {item.id: item for item in attachments}

    def add(self, attachment: Attachment) -> None:
        self._rows[attachment.id] = copy.deepcopy(attachment)

    async def find_by_id(self, attachment_id: str) -> Attachment | None:
        attachment = self._rows.get(attachment_id)
        return copy.deepcopy(attachment) if attachment is not None else None


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[UserRecord] = ()) -> None:
        self._rows: dict[str, UserRecord] = {user.id: user for user in users}

    def add(self, user: UserRecord) -> None:
        self._rows[user.id] = copy.deepcopy(user)

    async def find_by_id(self, user_id: str) -> UserRecord | None:
        user = self._rows.get(user_id)
        return copy.deepcopy(user) if user is not None else None

    async def most_recently_active_staff(self) -> UserRecord | None:
        candidates = [
            user
            for user in self._rows.values()
            if user.role in STAFF_ROLES and user.status is UserStatus.ACTIVE
        ]
        if not candidates:
            return None
        # Users who never logged in sort last.
        candidates.sort(
            key=lambda user: (user.last_login is not None, user.last_login or datetime.min),
            reverse=True,
        )
        return copy.deepcopy(candidates[0])


class InMemoryTicketStore:
    """Bundle of in-memory repositories sharing one write lock."""

    def __init__(
        self,
        *,
        users: Iterable[UserRecord] = (),
        attachments: Iterable[Attachment] = (),
    ) -> None:
        lock = asyncio.Lock()
        self.tickets = InMemoryTicketRepository(lock)
        self.comments = InMemoryCommentRepository(lock)
        self.attachments = InMemoryAttachmentRepository(attachments)
        self.users = InMemoryUserDirectory(users)
