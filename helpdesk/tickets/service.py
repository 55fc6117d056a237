from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, NoReturn, Protocol, Sequence, TypeVar

from opentelemetry import trace

from helpdesk.security.identity import SYSTEM_ACTOR, Actor
from helpdesk.security.permissions import TICKETS_CREATE, TICKETS_VIEW_ALL, has_permission
from helpdesk.security.visibility import (
    COMMENT_EDIT_WINDOW,
    DownloadDecision,
    allowed_update_fields,
    can_assign,
    can_comment,
    can_delete,
    can_edit,
    can_edit_comment,
    can_transition,
    can_view,
    can_view_comment,
    download_decision,
    is_owner,
)

from . import sla
from .sla import SlaSnapshot
from .assignment import AssignmentEngine, AssignmentPlan, qualifies_for_auto_assignment
from .audit import (
    ActivityRecorder,
    describe_assignment,
    describe_field_changes,
    describe_status_change,
    diff_tracked_fields,
)
from .errors import ConcurrencyConflict, Forbidden, NotFound, TicketServiceError, ValidationError
from .models import (
    ACTIVE_STATUSES,
    Category,
    Comment,
    Ticket,
    TicketStatus,
    Urgency,
    default_resolution_hours,
)
from .numbering import TicketNumberAllocator
from .repository import (
    AttachmentRepository,
    CommentRepository,
    TicketFilters,
    TicketRepository,
    UserDirectory,
)
from .state import RESOLUTION_NOTES_MAX_LENGTH, TicketStateMachine, TransitionOptions

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

E = TypeVar("E", bound=Enum)

TITLE_MIN_LENGTH, TITLE_MAX_LENGTH = 10, 500
DESCRIPTION_MIN_LENGTH, DESCRIPTION_MAX_LENGTH = 20, 5000
COMMENT_MAX_LENGTH = 5000
TAG_MIN_LENGTH, TAG_MAX_LENGTH = 2, 50
MAX_TAGS = 10
MAX_ESTIMATED_RESOLUTION_HOURS = 720
QUEUE_SCAN_LIMIT = 500
AUTO_ASSIGN_REASON = "Auto-assigned based on category and urgency"
SENSITIVE_METADATA_KEYS = frozenset({"ip_address", "user_agent"})
# Written only by delete_ticket.
DELETION_METADATA_KEYS = frozenset({"deleted", "deleted_by", "deleted_at", "deletion_reason"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Request details recorded in the ticket metadata at creation."""

    ip_address: str | None = None
    user_agent: str | None = None
    created_via: str = "web_portal"


@dataclass(frozen=True, slots=True)
class StatusHistoryEntry:
    timestamp: datetime
    description: str
    actor_id: str


@dataclass(slots=True)
class TicketStatistics:
    sla: SlaSnapshot
    comment_count: int
    status_history: list[StatusHistoryEntry] = field(default_factory=list)


class TicketNotifier(Protocol):
    """Collaborator told about status and assignment changes after they commit."""

    async def status_changed(self, ticket: Ticket, previous: TicketStatus) -> None:
        ...

    async def assignment_changed(self, ticket: Ticket, previous_assignee: str | None) -> None:
        ...


class LoggingNotifier:
    """Notifier that only records that a notification is due."""

    async def status_changed(self, ticket: Ticket, previous: TicketStatus) -> None:
        logger.info(
            "Status update notification needed for ticket %s (%s -> %s)",
            ticket.ticket_number,
            previous.value,
            ticket.status.value,
        )

    async def assignment_changed(self, ticket: Ticket, previous_assignee: str | None) -> None:
        logger.info(
            "Assignment notification needed for ticket %s (old=%s new=%s)",
            ticket.ticket_number,
            previous_assignee,
            ticket.assigned_to,
        )


def safe_metadata(ticket: Ticket) -> dict[str, Any]:
    """Ticket metadata without request fingerprints."""

    return {key: value for key, value in ticket.metadata.items() if key not in SENSITIVE_METADATA_KEYS}


def _parse_enum(enum_type: type[E], value: Any, field_name: str) -> E:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError as exc:
        choices = ", ".join(member.value for member in enum_type)
        raise ValidationError(field_name, f"must be one of: {choices}") from exc


def _validate_text(field_name: str, value: Any, minimum: int, maximum: int) -> str:
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    text = value.strip()
    if len(text) < minimum:
        raise ValidationError(field_name, f"must be at least {minimum} characters")
    if len(text) > maximum:
        raise ValidationError(field_name, f"must be at most {maximum} characters")
    return text


def _validate_tag(tag: Any) -> str:
    return _validate_text("tags", tag, TAG_MIN_LENGTH, TAG_MAX_LENGTH).lower()


def _normalize_tags(tags: Sequence[str] | None) -> list[str]:
    normalized: list[str] = []
    for tag in tags or ():
        value = _validate_tag(tag)
        if value not in normalized:
            normalized.append(value)
    if len(normalized) > MAX_TAGS:
        raise ValidationError("tags", f"at most {MAX_TAGS} tags are allowed")
    return normalized


def _caller_metadata(values: Mapping[str, Any] | None) -> dict[str, Any]:
    metadata = dict(values or {})
    reserved = sorted(DELETION_METADATA_KEYS.intersection(metadata))
    if reserved:
        raise ValidationError("metadata", f"reserved keys cannot be set: {', '.join(reserved)}")
    return metadata


class TicketService:
    """High level orchestration for the ticket workflow.

    Every mutation follows the same path: check capabilities against the
    caller's snapshot, derive the field changes, write them with a conditional
    update keyed on the snapshot's version, then narrate the change through the
    activity recorder and inform the notifier without waiting for it.
    """

    def __init__(
        self,
        tickets: TicketRepository,
        comments: CommentRepository,
        users: UserDirectory,
        *,
        attachments: AttachmentRepository | None = None,
        allocator: TicketNumberAllocator | None = None,
        notifier: TicketNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
        comment_edit_window: timedelta = COMMENT_EDIT_WINDOW,
        escalation_unassigned_after: timedelta = sla.ESCALATION_UNASSIGNED_AFTER,
        escalation_overdue_threshold: timedelta = sla.ESCALATION_OVERDUE_BY,
        auto_assign: bool = True,
    ) -> None:
        self._tickets = tickets
        self._comments = comments
        self._attachments = attachments
        self._clock = clock or _utcnow
        self._allocator = allocator or TicketNumberAllocator(tickets)
        self._assignment = AssignmentEngine(users)
        self._audit = ActivityRecorder(comments, clock=self._clock)
        self._notifier = notifier or LoggingNotifier()
        self._comment_edit_window = comment_edit_window
        self._escalation_unassigned_after = escalation_unassigned_after
        self._escalation_overdue_threshold = escalation_overdue_threshold
        self._auto_assign = auto_assign
        self._pending_notifications: set[asyncio.Future[None]] = set()

    # Reads

    async def get_ticket(self, ticket_id: str, actor: Actor) -> Ticket:
        ticket = await self._tickets.find_by_id(ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        self._require_view(actor, ticket)
        return ticket

    async def list_tickets(self, actor: Actor, filters: TicketFilters | None = None) -> Sequence[Ticket]:
        filters = filters or TicketFilters()
        if not has_permission(actor.role, TICKETS_VIEW_ALL):
            filters = replace(filters, created_by=actor.id)
        return await self._tickets.list(filters)

    def sla_snapshot(self, ticket: Ticket, now: datetime | None = None) -> SlaSnapshot:
        return sla.evaluate(
            ticket,
            now or self._clock(),
            unassigned_after=self._escalation_unassigned_after,
            overdue_threshold=self._escalation_overdue_threshold,
        )

    async def list_overdue(self, actor: Actor) -> list[Ticket]:
        now = self._clock()
        return [ticket for ticket in await self._active_queue(actor) if sla.is_overdue(ticket, now)]

    async def list_needing_escalation(self, actor: Actor) -> list[Ticket]:
        now = self._clock()
        return [
            ticket
            for ticket in await self._active_queue(actor)
            if sla.needs_escalation(
                ticket,
                now,
                unassigned_after=self._escalation_unassigned_after,
                overdue_threshold=self._escalation_overdue_threshold,
            )
        ]

    async def work_queue(self, actor: Actor) -> list[Ticket]:
        """Active tickets ordered by priority score, oldest first within a score."""

        now = self._clock()
        tickets = await self._active_queue(actor)
        return sorted(tickets, key=lambda ticket: (-sla.priority_score(ticket, now), ticket.created_at))

    async def ticket_statistics(self, ticket: Ticket, actor: Actor) -> TicketStatistics:
        self._require_view(actor, ticket)
        comments = await self._comments.list_for_ticket(ticket.id)
        history = [
            StatusHistoryEntry(timestamp=comment.created_at, description=comment.content, actor_id=comment.author)
            for comment in comments
            if comment.is_internal
            and comment.content.startswith("Status changed")
            and can_view_comment(actor, ticket, comment)
        ]
        return TicketStatistics(
            sla=self.sla_snapshot(ticket),
            comment_count=len(comments),
            status_history=history,
        )

    # Creation

    async def create_ticket(
        self,
        creator: Actor,
        *,
        title: str,
        description: str,
        category: Category | str,
        urgency: Urgency | str | None = None,
        metadata: Mapping[str, Any] | None = None,
        tags: Sequence[str] | None = None,
        estimated_resolution_hours: int | None = None,
        context: RequestContext | None = None,
    ) -> Ticket:
        if not has_permission(creator.role, TICKETS_CREATE):
            self._deny(creator, "tickets.create", None)

        title = _validate_text("title", title, TITLE_MIN_LENGTH, TITLE_MAX_LENGTH)
        description = _validate_text("description", description, DESCRIPTION_MIN_LENGTH, DESCRIPTION_MAX_LENGTH)
        parsed_category = _parse_enum(Category, category, "category")
        parsed_urgency = _parse_enum(Urgency, urgency or Urgency.MEDIUM, "urgency")
        if estimated_resolution_hours is not None and (
            isinstance(estimated_resolution_hours, bool)
            or not isinstance(estimated_resolution_hours, int)
            or not 1 <= estimated_resolution_hours <= MAX_ESTIMATED_RESOLUTION_HOURS
        ):
            raise ValidationError(
                "estimated_resolution_hours",
                f"must be an integer between 1 and {MAX_ESTIMATED_RESOLUTION_HOURS}",
            )
        estimate = estimated_resolution_hours or default_resolution_hours(parsed_category)
        normalized_tags = _normalize_tags(tags)

        context = context or RequestContext()
        ticket_metadata: dict[str, Any] = {**_caller_metadata(metadata), "created_via": context.created_via}
        if context.ip_address:
            ticket_metadata["ip_address"] = context.ip_address
        if context.user_agent:
            ticket_metadata["user_agent"] = context.user_agent

        now = self._clock()

        async def insert(ticket_number: str) -> Ticket:
            return await self._tickets.insert(
                Ticket(
                    id=str(uuid.uuid4()),
                    ticket_number=ticket_number,
                    title=title,
                    description=description,
                    category=parsed_category,
                    urgency=parsed_urgency,
                    status=TicketStateMachine.initial_state(),
                    created_by=creator.id,
                    created_at=now,
                    updated_at=now,
                    estimated_resolution_hours=estimate,
                    tags=normalized_tags,
                    metadata=ticket_metadata,
                )
            )

        with tracer.start_as_current_span("tickets.create"):
            ticket = await self._allocator.create_with_number(now, insert)
            await self._audit.record(ticket.id, creator.id, "Ticket created")

        logger.info(
            "Ticket created: %s (category=%s urgency=%s created_by=%s)",
            ticket.ticket_number,
            ticket.category.value,
            ticket.urgency.value,
            creator.id,
        )

        if self._auto_assign and qualifies_for_auto_assignment(ticket):
            ticket = await self._auto_assign_ticket(ticket)
        return ticket

    async def _auto_assign_ticket(self, ticket: Ticket) -> Ticket:
        try:
            candidate = await self._assignment.pick_auto_assignee(ticket)
            if candidate is None:
                logger.info("No staff available to auto-assign ticket %s", ticket.ticket_number)
                await self._audit.record(
                    ticket.id,
                    SYSTEM_ACTOR.id,
                    "Auto-assignment attempted: no eligible staff member available",
                )
                return ticket
            return await self.assign(ticket, SYSTEM_ACTOR, candidate.id, reason=AUTO_ASSIGN_REASON)
        except TicketServiceError:
            logger.exception("Auto-assignment failed for ticket %s", ticket.ticket_number)
            await self._audit.record(ticket.id, SYSTEM_ACTOR.id, "Auto-assignment attempted: assignment failed")
            return ticket

    # Workflow mutations

    async def transition_status(
        self,
        ticket: Ticket,
        actor: Actor,
        new_status: TicketStatus | str,
        *,
        resolution_notes: str | None = None,
        satisfaction_rating: int | None = None,
        satisfaction_comment: str | None = None,
    ) -> Ticket:
        target = _parse_enum(TicketStatus, new_status, "status")
        self._require_view(actor, ticket)
        if not can_transition(actor, ticket, target):
            self._deny(actor, "tickets.transition", ticket)

        options = TransitionOptions(
            resolution_notes=resolution_notes,
            satisfaction_rating=satisfaction_rating,
            satisfaction_comment=satisfaction_comment,
        )
        changes = TicketStateMachine.plan(ticket, target, self._clock(), options)

        with tracer.start_as_current_span("tickets.transition"):
            updated = await self._write(ticket, changes)
            await self._audit.record(
                ticket.id,
                actor.id,
                describe_status_change(ticket.status, target, changes.get("resolution_notes")),
            )

        logger.info(
            "Ticket status updated: %s (%s -> %s by %s)",
            ticket.ticket_number,
            ticket.status.value,
            target.value,
            actor.id,
        )
        if target is TicketStatus.RESOLVED:
            logger.info(
                "Ticket resolved: %s in %s hours (estimated %s)",
                updated.ticket_number,
                updated.actual_resolution_hours,
                updated.estimated_resolution_hours,
            )
        self._dispatch(self._notifier.status_changed(updated, ticket.status), "status change")
        return updated

    async def update_fields(self, ticket: Ticket, actor: Actor, fields: Mapping[str, Any]) -> Ticket:
        if not fields:
            raise ValidationError("fields", "no fields supplied")
        self._require_view(actor, ticket)

        rejected = sorted(set(fields) - allowed_update_fields(actor, ticket))
        if rejected:
            self._deny(actor, "tickets.edit", ticket, f"You cannot update: {', '.join(rejected)}")
        if "status" in fields and "assigned_to" in fields:
            raise ValidationError("assigned_to", "change the status and the assignee in separate updates")

        changes = self._validated_field_changes(fields)
        now = self._clock()
        status_target: TicketStatus | None = None
        plan: AssignmentPlan | None = None

        if "status" in fields:
            target = _parse_enum(TicketStatus, fields["status"], "status")
            if target is not ticket.status:
                options = TransitionOptions(resolution_notes=changes.get("resolution_notes"))
                changes.update(TicketStateMachine.plan(ticket, target, now, options))
                status_target = target
        if "assigned_to" in fields and fields["assigned_to"] != ticket.assigned_to:
            plan = await self._assignment.plan(ticket, fields["assigned_to"])
            changes.update(plan.changes)

        effective = {key: value for key, value in changes.items() if getattr(ticket, key) != value}
        if not effective:
            return ticket

        with tracer.start_as_current_span("tickets.update"):
            updated = await self._write(ticket, effective)
            summary = describe_field_changes(diff_tracked_fields(ticket, effective))
            if summary:
                await self._audit.record(ticket.id, actor.id, summary)
            if status_target is not None:
                await self._audit.record(
                    ticket.id,
                    actor.id,
                    describe_status_change(ticket.status, status_target, effective.get("resolution_notes")),
                )
            if plan is not None:
                await self._audit.record(ticket.id, actor.id, describe_assignment(plan.assignee_name))

        logger.info(
            "Ticket updated: %s by %s (fields=%s)",
            ticket.ticket_number,
            actor.id,
            ", ".join(sorted(effective)),
        )
        if updated.status is not ticket.status:
            self._dispatch(self._notifier.status_changed(updated, ticket.status), "status change")
        if plan is not None:
            self._dispatch(self._notifier.assignment_changed(updated, ticket.assigned_to), "assignment change")
        return updated

    async def assign(
        self,
        ticket: Ticket,
        actor: Actor,
        assignee_id: str | None,
        reason: str | None = None,
    ) -> Ticket:
        if not can_assign(actor):
            self._deny(actor, "tickets.assign", ticket)
        plan = await self._assignment.plan(ticket, assignee_id)

        with tracer.start_as_current_span("tickets.assign"):
            updated = await self._write(ticket, plan.changes)
            await self._audit.record(ticket.id, actor.id, describe_assignment(plan.assignee_name, reason))

        logger.info(
            "Ticket assignment changed: %s (old=%s new=%s by %s)",
            ticket.ticket_number,
            ticket.assigned_to,
            updated.assigned_to,
            actor.id,
        )
        self._dispatch(self._notifier.assignment_changed(updated, ticket.assigned_to), "assignment change")
        if updated.status is not ticket.status:
            self._dispatch(self._notifier.status_changed(updated, ticket.status), "status change")
        return updated

    async def delete_ticket(self, ticket: Ticket, actor: Actor, reason: str | None = None) -> Ticket:
        """Soft-delete: close the ticket and leave a tombstone in its metadata."""

        if not can_delete(actor, ticket):
            self._deny(actor, "tickets.delete", ticket)
        if ticket.is_deleted:
            raise ValidationError("ticket", "ticket is already deleted")

        now = self._clock()
        changes: dict[str, Any] = {}
        if ticket.status is not TicketStatus.CLOSED:
            changes.update(TicketStateMachine.plan(ticket, TicketStatus.CLOSED, now))
        changes["metadata"] = {
            **ticket.metadata,
            "deleted": True,
            "deleted_by": actor.id,
            "deleted_at": now.isoformat(),
            "deletion_reason": reason or "",
        }

        updated = await self._write(ticket, changes)
        message = "Ticket deleted"
        if reason:
            message += f". Reason: {reason}"
        await self._audit.record(ticket.id, actor.id, message)
        logger.info("Ticket deleted: %s by %s", ticket.ticket_number, actor.id)
        if updated.status is not ticket.status:
            self._dispatch(self._notifier.status_changed(updated, ticket.status), "status change")
        return updated

    async def add_tag(self, ticket: Ticket, actor: Actor, tag: str) -> Ticket:
        self._require_edit(actor, ticket)
        value = _validate_tag(tag)
        if value in ticket.tags:
            return ticket
        if len(ticket.tags) >= MAX_TAGS:
            raise ValidationError("tags", f"at most {MAX_TAGS} tags are allowed")
        return await self._write(ticket, {"tags": [*ticket.tags, value]})

    async def remove_tag(self, ticket: Ticket, actor: Actor, tag: str) -> Ticket:
        self._require_edit(actor, ticket)
        value = _validate_tag(tag)
        if value not in ticket.tags:
            return ticket
        return await self._write(ticket, {"tags": [item for item in ticket.tags if item != value]})

    async def update_metadata(self, ticket: Ticket, actor: Actor, values: Mapping[str, Any]) -> Ticket:
        self._require_edit(actor, ticket)
        values = _caller_metadata(values)
        if not values:
            return ticket
        return await self._write(ticket, {"metadata": {**ticket.metadata, **values}})

    # Comments and attachments

    async def add_comment(
        self,
        ticket: Ticket,
        actor: Actor,
        content: str,
        *,
        is_internal: bool = False,
        parent_comment_id: str | None = None,
    ) -> Comment:
        if not can_comment(actor, ticket):
            self._deny(actor, "tickets.comment", ticket, "You can only comment on your own tickets")
        content = _validate_text("content", content, 1, COMMENT_MAX_LENGTH)
        privileged = has_permission(actor.role, TICKETS_VIEW_ALL)
        if ticket.status is TicketStatus.CLOSED and not privileged:
            raise ValidationError("ticket", "comments cannot be added to closed tickets")
        if parent_comment_id is not None:
            parent = await self._comments.find_by_id(parent_comment_id)
            if parent is None or parent.ticket_id != ticket.id:
                raise ValidationError("parent_comment_id", "parent comment does not belong to this ticket")

        now = self._clock()
        comment = await self._comments.insert(
            Comment(
                id=str(uuid.uuid4()),
                ticket_id=ticket.id,
                author=actor.id,
                content=content,
                is_internal=is_internal and privileged,
                created_at=now,
                updated_at=now,
                parent_comment_id=parent_comment_id,
            )
        )
        if privileged and not comment.is_internal and not is_owner(actor, ticket):
            await self._stamp_first_response(ticket.id, now)
        return comment

    async def _stamp_first_response(self, ticket_id: str, now: datetime, attempts: int = 3) -> None:
        for _ in range(attempts):
            current = await self._tickets.find_by_id(ticket_id)
            if current is None or current.first_response_at is not None:
                return
            try:
                await self._write(current, {"first_response_at": now})
                return
            except ConcurrencyConflict:
                continue
        logger.warning("Could not record first response for ticket %s", ticket_id)

    async def edit_comment(self, comment_id: str, actor: Actor, content: str) -> Comment:
        comment = await self._comments.find_by_id(comment_id)
        if comment is None:
            raise NotFound(f"Comment {comment_id} not found")
        ticket = await self._tickets.find_by_id(comment.ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {comment.ticket_id} not found")
        if not can_view_comment(actor, ticket, comment):
            self._deny(actor, "comments.view", ticket)
        now = self._clock()
        if not can_edit_comment(actor, comment, now, window=self._comment_edit_window):
            self._deny(actor, "comments.edit", ticket, "Comments can only be edited by their author within 24 hours")
        content = _validate_text("content", content, 1, COMMENT_MAX_LENGTH)
        return await self._comments.patch_by_id(
            comment_id,
            {"content": content, "is_edited": True, "updated_at": now},
        )

    async def list_comments(self, ticket: Ticket, actor: Actor) -> list[Comment]:
        self._require_view(actor, ticket)
        comments = await self._comments.list_for_ticket(ticket.id)
        return [comment for comment in comments if can_view_comment(actor, ticket, comment)]

    async def attachment_download(self, attachment_id: str, actor: Actor) -> DownloadDecision:
        if self._attachments is None:
            raise NotFound(f"Attachment {attachment_id} not found")
        attachment = await self._attachments.find_by_id(attachment_id)
        if attachment is None:
            raise NotFound(f"Attachment {attachment_id} not found")
        ticket = await self._tickets.find_by_id(attachment.ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {attachment.ticket_id} not found")
        decision = download_decision(actor, attachment, ticket)
        if decision is DownloadDecision.DENIED:
            logger.warning("Download denied: actor=%s attachment=%s", actor.id, attachment_id)
        return decision

    async def drain_notifications(self) -> None:
        """Wait for notifications already dispatched; used on shutdown."""

        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    # Helpers

    async def _write(self, ticket: Ticket, changes: Mapping[str, Any]) -> Ticket:
        try:
            return await self._tickets.patch_by_id(
                ticket.id,
                ticket.version,
                changes,
                updated_at=self._clock(),
            )
        except ConcurrencyConflict:
            logger.warning(
                "Concurrent modification of ticket %s (version %d)", ticket.ticket_number, ticket.version
            )
            raise

    async def _active_queue(self, actor: Actor) -> Sequence[Ticket]:
        if not has_permission(actor.role, TICKETS_VIEW_ALL):
            self._deny(actor, "tickets.view.all", None)
        return await self._tickets.list(TicketFilters(statuses=ACTIVE_STATUSES, limit=QUEUE_SCAN_LIMIT))

    def _validated_field_changes(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if "title" in fields:
            changes["title"] = _validate_text("title", fields["title"], TITLE_MIN_LENGTH, TITLE_MAX_LENGTH)
        if "description" in fields:
            changes["description"] = _validate_text(
                "description", fields["description"], DESCRIPTION_MIN_LENGTH, DESCRIPTION_MAX_LENGTH
            )
        if "urgency" in fields:
            changes["urgency"] = _parse_enum(Urgency, fields["urgency"], "urgency")
        if "category" in fields:
            changes["category"] = _parse_enum(Category, fields["category"], "category")
        if "resolution_notes" in fields:
            notes = fields["resolution_notes"]
            changes["resolution_notes"] = (
                None
                if notes is None
                else _validate_text("resolution_notes", notes, 0, RESOLUTION_NOTES_MAX_LENGTH)
            )
        return changes

    def _require_view(self, actor: Actor, ticket: Ticket) -> None:
        if not can_view(actor, ticket):
            self._deny(actor, "tickets.view", ticket)

    def _require_edit(self, actor: Actor, ticket: Ticket) -> None:
        if not can_edit(actor, ticket):
            self._deny(actor, "tickets.edit", ticket)

    def _deny(
        self,
        actor: Actor,
        action: str,
        ticket: Ticket | None,
        message: str = "Insufficient permissions",
    ) -> NoReturn:
        logger.warning(
            "Permission denied: actor=%s role=%s action=%s ticket=%s",
            actor.id,
            actor.role.value,
            action,
            ticket.id if ticket else None,
        )
        raise Forbidden(message)

    def _dispatch(self, notification: Awaitable[None], description: str) -> None:
        task = asyncio.ensure_future(notification)
        self._pending_notifications.add(task)
        task.add_done_callback(functools.partial(self._notification_done, description))

    def _notification_done(self, description: str, task: asyncio.Future[None]) -> None:
        self._pending_notifications.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Notification for %s failed", description, exc_info=error)
