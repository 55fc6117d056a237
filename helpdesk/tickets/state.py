from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping

from .errors import InvalidTransition, ValidationError
from .models import Ticket, TicketStatus

RESOLUTION_NOTES_MAX_LENGTH = 2000
SATISFACTION_COMMENT_MAX_LENGTH = 1000


@dataclass(frozen=True, slots=True)
class TransitionOptions:
    """Caller-supplied values accompanying a status change."""

    resolution_notes: str | None = None
    satisfaction_rating: int | None = None
    satisfaction_comment: str | None = None


def elapsed_hours(start: datetime, end: datetime) -> int:
    """Whole hours between two instants, halves rounded up."""

    return int(math.floor((end - start) / timedelta(hours=1) + 0.5))


class TicketStateMachine:
    """Validate ticket lifecycle transitions and derive their side effects."""

    _TRANSITIONS: Mapping[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.OPEN: frozenset(
            {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED}
        ),
        TicketStatus.IN_PROGRESS: frozenset(
            {TicketStatus.OPEN, TicketStatus.RESOLVED, TicketStatus.CLOSED}
        ),
        TicketStatus.RESOLVED: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.CLOSED}),
        TicketStatus.CLOSED: frozenset({TicketStatus.IN_PROGRESS}),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @classmethod
    def allowed_targets(cls, current: TicketStatus) -> frozenset[TicketStatus]:
        return cls._TRANSITIONS.get(current, frozenset())

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls.allowed_targets(current)

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise InvalidTransition(current.value, new.value)

    @classmethod
    def reopen_changes(cls, ticket: Ticket) -> dict[str, Any]:
        """Clear completion stamps when a ticket moves back to active work."""

        changes: dict[str, Any] = {}
        if ticket.resolved_at is not None:
            changes["resolved_at"] = None
        if ticket.closed_at is not None:
            changes["closed_at"] = None
        return changes

    @classmethod
    def plan(
        cls,
        ticket: Ticket,
        target: TicketStatus,
        now: datetime,
        options: TransitionOptions | None = None,
    ) -> dict[str, Any]:
        """Validate ``ticket.status -> target`` and return the fields to write."""

        options = options or TransitionOptions()
        cls.assert_transition(ticket.status, target)

        if target is not TicketStatus.CLOSED and (
            options.satisfaction_rating is not None or options.satisfaction_comment is not None
        ):
            raise ValidationError(
                "satisfaction_rating", "satisfaction can only be recorded when closing a ticket"
            )

        changes: dict[str, Any] = {"status": target}

        if target is TicketStatus.RESOLVED:
            notes = (options.resolution_notes or "").strip()
            if not notes:
                raise ValidationError("resolution_notes", "resolution notes are required to resolve a ticket")
            if len(notes) > RESOLUTION_NOTES_MAX_LENGTH:
                raise ValidationError(
                    "resolution_notes", f"must be at most {RESOLUTION_NOTES_MAX_LENGTH} characters"
                )
            resolved_at = ticket.resolved_at or now
            changes["resolved_at"] = resolved_at
            changes["resolution_notes"] = notes
            changes["actual_resolution_hours"] = elapsed_hours(ticket.created_at, resolved_at)
        elif target is TicketStatus.CLOSED:
            changes["closed_at"] = ticket.closed_at or now
            if options.satisfaction_rating is not None:
                rating = options.satisfaction_rating
                if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                    raise ValidationError("satisfaction_rating", "must be an integer between 1 and 5")
                changes["satisfaction_rating"] = rating
            if options.satisfaction_comment is not None:
                if len(options.satisfaction_comment) > SATISFACTION_COMMENT_MAX_LENGTH:
                    raise ValidationError(
                        "satisfaction_comment",
                        f"must be at most {SATISFACTION_COMMENT_MAX_LENGTH} characters",
                    )
                changes["satisfaction_comment"] = options.satisfaction_comment
        else:
            changes.update(cls.reopen_changes(ticket))

        return changes
