"""Activity audit: internal comments narrating every workflow mutation."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping

from .errors import StorageError
from .models import Comment, Ticket, TicketStatus
from .repository import CommentRepository

logger = logging.getLogger(__name__)


class TrackedField(str, Enum):
    """Ticket fields whose changes are narrated in the activity history."""

    TITLE = "title"
    URGENCY = "urgency"
    CATEGORY = "category"


@dataclass(frozen=True, slots=True)
class FieldChange:
    field: TrackedField
    old: str
    new: str

    def describe(self) -> str:
        if self.field is TrackedField.TITLE:
            return f'Title changed to "{self.new}"'
        if self.field is TrackedField.URGENCY:
            return f"Priority changed to {self.new}"
        return f"Category changed to {self.new}"


def _text(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def diff_tracked_fields(before: Ticket, changes: Mapping[str, Any]) -> list[FieldChange]:
    """Return one descriptor per tracked field that ``changes`` actually alters."""

    diffs: list[FieldChange] = []
    for tracked in TrackedField:
        if tracked.value not in changes:
            continue
        old = _text(getattr(before, tracked.value))
        new = _text(changes[tracked.value])
        if old != new:
            diffs.append(FieldChange(tracked, old, new))
    return diffs


def describe_field_changes(diffs: list[FieldChange]) -> str | None:
    if not diffs:
        return None
    return "Ticket updated: " + ", ".join(change.describe() for change in diffs)


def describe_status_change(
    previous: TicketStatus, current: TicketStatus, resolution_notes: str | None = None
) -> str:
    message = f"Status changed from {previous.value} to {current.value}"
    if resolution_notes:
        message += f". Resolution: {resolution_notes}"
    return message


def describe_assignment(assignee_name: str | None, reason: str | None = None) -> str:
    message = f"Ticket assigned to {assignee_name}" if assignee_name else "Ticket unassigned"
    if reason:
        message += f". Reason: {reason}"
    return message


class ActivityRecorder:
    """Append system-authored internal comments to a ticket's history.

    The recorded state change is authoritative: a failed insert is logged and
    swallowed so that it never undoes the mutation it describes.
    """

    def __init__(self, comments: CommentRepository, *, clock: Callable[[], datetime]) -> None:
        self._comments = comments
        self._clock = clock

    async def record(self, ticket_id: str, actor_id: str, content: str) -> Comment | None:
        now = self._clock()
        comment = Comment(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            author=actor_id,
            content=content,
            is_internal=True,
            created_at=now,
            updated_at=now,
        )
        try:
            return await self._comments.insert(comment)
        except StorageError:
            logger.exception("Failed to record activity for ticket %s: %s", ticket_id, content)
            return None
