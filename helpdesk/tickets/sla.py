"""Service-level computations derived purely from a ticket snapshot and a clock."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Mapping

from .models import FINISHED_STATUSES, Ticket, Urgency
from .state import elapsed_hours

ESCALATION_UNASSIGNED_AFTER = timedelta(hours=4)
ESCALATION_OVERDUE_BY = timedelta(hours=12)
STALE_AFTER = timedelta(hours=48)

URGENCY_SCORES: Mapping[Urgency, int] = MappingProxyType(
    {
        Urgency.LOW: 1,
        Urgency.MEDIUM: 2,
        Urgency.HIGH: 3,
        Urgency.CRITICAL: 4,
    }
)

_ESCALATING_URGENCIES = frozenset({Urgency.HIGH, Urgency.CRITICAL})


def ticket_age(ticket: Ticket, now: datetime) -> timedelta:
    return now - ticket.created_at


def due_at(ticket: Ticket) -> datetime | None:
    if not ticket.estimated_resolution_hours:
        return None
    return ticket.created_at + timedelta(hours=ticket.estimated_resolution_hours)


def is_overdue(ticket: Ticket, now: datetime) -> bool:
    deadline = due_at(ticket)
    if deadline is None or ticket.status in FINISHED_STATUSES:
        return False
    return now > deadline


def overdue_by(ticket: Ticket, now: datetime) -> timedelta:
    """How far past its estimate an overdue ticket is; zero otherwise."""

    if not is_overdue(ticket, now):
        return timedelta(0)
    return ticket_age(ticket, now) - timedelta(hours=ticket.estimated_resolution_hours or 0)


def needs_escalation(
    ticket: Ticket,
    now: datetime,
    *,
    unassigned_after: timedelta = ESCALATION_UNASSIGNED_AFTER,
    overdue_threshold: timedelta = ESCALATION_OVERDUE_BY,
) -> bool:
    # Two independent triggers: urgent and unowned for too long, or far past the estimate.
    unattended = (
        ticket.urgency in _ESCALATING_URGENCIES
        and ticket.assigned_to is None
        and ticket_age(ticket, now) >= unassigned_after
    )
    far_overdue = is_overdue(ticket, now) and overdue_by(ticket, now) >= overdue_threshold
    return unattended or far_overdue


def priority_score(ticket: Ticket, now: datetime) -> int:
    """Sorting score for work queues; never used to drive transitions."""

    score = URGENCY_SCORES.get(ticket.urgency, 1)
    if is_overdue(ticket, now):
        score += 2
    if ticket_age(ticket, now) > STALE_AFTER:
        score += 1
    return score


@dataclass(frozen=True, slots=True)
class SlaSnapshot:
    age_hours: int
    resolution_hours: int | None
    due_at: datetime | None
    is_overdue: bool
    needs_escalation: bool
    priority_score: int


def evaluate(
    ticket: Ticket,
    now: datetime,
    *,
    unassigned_after: timedelta = ESCALATION_UNASSIGNED_AFTER,
    overdue_threshold: timedelta = ESCALATION_OVERDUE_BY,
) -> SlaSnapshot:
    return SlaSnapshot(
        age_hours=elapsed_hours(ticket.created_at, now),
        resolution_hours=(
            elapsed_hours(ticket.created_at, ticket.resolved_at) if ticket.resolved_at else None
        ),
        due_at=due_at(ticket),
        is_overdue=is_overdue(ticket, now),
        needs_escalation=needs_escalation(
            ticket,
            now,
            unassigned_after=unassigned_after,
            overdue_threshold=overdue_threshold,
        ),
        priority_score=priority_score(ticket, now),
    )
