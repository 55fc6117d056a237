"""Ownership-aware visibility rules for tickets, comments and attachments."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from helpdesk.tickets.models import (
    FINISHED_STATUSES,
    Attachment,
    Comment,
    ScanStatus,
    Ticket,
    TicketStatus,
)

from .identity import Actor
from .permissions import (
    TICKETS_ASSIGN,
    TICKETS_CLOSE,
    TICKETS_DELETE_ALL,
    TICKETS_DELETE_OWN,
    TICKETS_EDIT_ALL,
    TICKETS_EDIT_OWN,
    TICKETS_VIEW_ALL,
    TICKETS_VIEW_OWN,
    has_permission,
)

COMMENT_EDIT_WINDOW = timedelta(hours=24)

OWNER_EDITABLE_FIELDS: frozenset[str] = frozenset({"title", "description", "urgency"})
PRIVILEGED_EDITABLE_FIELDS: frozenset[str] = OWNER_EDITABLE_FIELDS | {
    "category",
    "status",
    "assigned_to",
    "resolution_notes",
}


class DownloadDecision(str, Enum):
    """Outcome of an attachment download check."""

    ALLOWED = "allowed"
    PENDING = "pending"
    DENIED = "denied"


def is_owner(actor: Actor, ticket: Ticket) -> bool:
    return ticket.created_by == actor.id


def is_assignee(actor: Actor, ticket: Ticket) -> bool:
    return ticket.assigned_to is not None and ticket.assigned_to == actor.id


def can_view(actor: Actor, ticket: Ticket) -> bool:
    return (
        is_owner(actor, ticket)
        or has_permission(actor.role, TICKETS_VIEW_ALL)
        or is_assignee(actor, ticket)
    )


def can_edit(actor: Actor, ticket: Ticket) -> bool:
    if has_permission(actor.role, TICKETS_EDIT_ALL):
        return True
    if is_owner(actor, ticket) and has_permission(actor.role, TICKETS_EDIT_OWN):
        return ticket.status not in FINISHED_STATUSES
    return False


def can_comment(actor: Actor, ticket: Ticket) -> bool:
    if has_permission(actor.role, TICKETS_VIEW_ALL):
        return True
    return is_owner(actor, ticket) and has_permission(actor.role, TICKETS_VIEW_OWN)


def can_transition(actor: Actor, ticket: Ticket, target: TicketStatus) -> bool:
    """Whether ``actor`` may move ``ticket`` to ``target``.

    Editors of all tickets may request any transition. Closing is also open to
    holders of the close capability and to the ticket owner, who is the one
    rating the resolution.
    """

    if has_permission(actor.role, TICKETS_EDIT_ALL):
        return True
    if target is not TicketStatus.CLOSED:
        return False
    return has_permission(actor.role, TICKETS_CLOSE) or is_owner(actor, ticket)


def can_assign(actor: Actor) -> bool:
    return has_permission(actor.role, TICKETS_ASSIGN)


def can_delete(actor: Actor, ticket: Ticket) -> bool:
    if has_permission(actor.role, TICKETS_DELETE_ALL):
        return True
    if is_owner(actor, ticket) and has_permission(actor.role, TICKETS_DELETE_OWN):
        return ticket.status not in FINISHED_STATUSES
    return False


def allowed_update_fields(actor: Actor, ticket: Ticket) -> frozenset[str]:
    """Return the ticket fields ``actor`` may change through a field update."""

    if has_permission(actor.role, TICKETS_EDIT_ALL):
        return PRIVILEGED_EDITABLE_FIELDS
    if not is_owner(actor, ticket) or not has_permission(actor.role, TICKETS_EDIT_OWN):
        return frozenset()
    if ticket.status in FINISHED_STATUSES:
        return frozenset()
    return OWNER_EDITABLE_FIELDS


def can_view_comment(actor: Actor, ticket: Ticket, comment: Comment) -> bool:
    if comment.is_internal:
        return has_permission(actor.role, TICKETS_VIEW_ALL)
    return can_view(actor, ticket)


def can_edit_comment(
    actor: Actor,
    comment: Comment,
    now: datetime,
    *,
    window: timedelta = COMMENT_EDIT_WINDOW,
) -> bool:
    if has_permission(actor.role, TICKETS_EDIT_ALL):
        return True
    if comment.author != actor.id:
        return False
    return now - comment.created_at <= window


def download_decision(actor: Actor, attachment: Attachment, ticket: Ticket) -> DownloadDecision:
    """Decide whether ``actor`` may download ``attachment``.

    Parties to the ticket learn that a pending scan is not yet available;
    everyone else gets a plain denial.
    """

    party = (
        attachment.uploaded_by == actor.id
        or is_owner(actor, ticket)
        or is_assignee(actor, ticket)
        or has_permission(actor.role, TICKETS_VIEW_ALL)
    )
    if not party:
        return DownloadDecision.DENIED
    if attachment.virus_scan_status is ScanStatus.PENDING:
        return DownloadDecision.PENDING
    if attachment.virus_scan_status is ScanStatus.CLEAN:
        return DownloadDecision.ALLOWED
    return DownloadDecision.DENIED


def can_download(actor: Actor, attachment: Attachment, ticket: Ticket) -> bool:
    return download_decision(actor, attachment, ticket) is DownloadDecision.ALLOWED
