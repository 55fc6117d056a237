from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from helpdesk.security.identity import Role, UserStatus
from helpdesk.security.visibility import DownloadDecision
from helpdesk.tickets.errors import (
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from helpdesk.tickets.memory import InMemoryTicketStore
from helpdesk.tickets.models import Attachment, ScanStatus, TicketStatus, Urgency, UserRecord
from helpdesk.tickets.repository import TicketFilters
from helpdesk.tickets.service import AUTO_ASSIGN_REASON, RequestContext, TicketService, safe_metadata

from conftest import BASE_TIME


async def _create(service, actor, **overrides):
    values = {
        "title": "Cannot download certificate",
        "description": "The certificate download button does nothing when clicked.",
        "category": "user-interface",
    }
    values.update(overrides)
    return await service.create_ticket(actor, **values)


async def _history(store, ticket):
    return [comment.content for comment in await store.comments.list_for_ticket(ticket.id)]


@pytest.mark.asyncio
async def test_create_ticket_defaults(service, store, member):
    ticket = await _create(
        service,
        member,
        tags=["Certificates", "certificates"],
        context=RequestContext(ip_address="10.0.0.7", user_agent="pytest"),
    )

    assert ticket.status is TicketStatus.OPEN
    assert ticket.urgency is Urgency.MEDIUM
    assert ticket.ticket_number == "TPG-202603-0001"
    assert ticket.estimated_resolution_hours == 24
    assert ticket.tags == ["certificates"]
    assert ticket.metadata["created_via"] == "web_portal"
    assert safe_metadata(ticket) == {"created_via": "web_portal"}
    assert await _history(store, ticket) == ["Ticket created"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("field", "overrides"),
    [
        ("title", {"title": "Too short"}),
        ("description", {"description": "Way too short"}),
        ("category", {"category": "hardware"}),
        ("urgency", {"urgency": "whenever"}),
        ("estimated_resolution_hours", {"estimated_resolution_hours": 0}),
        ("estimated_resolution_hours", {"estimated_resolution_hours": 721}),
        ("tags", {"tags": ["x"]}),
        ("tags", {"tags": [f"tag-{index}" for index in range(11)]}),
        ("metadata", {"metadata": {"deleted": True}}),
        ("metadata", {"metadata": {"source": "email", "deleted_by": "member-1"}}),
    ],
)
async def test_create_ticket_validation(service, member, field, overrides):
    with pytest.raises(ValidationError) as excinfo:
        await _create(service, member, **overrides)

    assert excinfo.value.field == field


@pytest.mark.asyncio
async def test_payment_gateway_critical_ticket_is_auto_assigned(service, store, member):
    ticket = await _create(
        service,
        member,
        title="Card payments are failing",
        category="payment-gateway",
        urgency="critical",
    )

    assert ticket.estimated_resolution_hours == 24
    assert ticket.assigned_to == "staff-1"
    assert ticket.status is TicketStatus.IN_PROGRESS
    assert f"Ticket assigned to alice. Reason: {AUTO_ASSIGN_REASON}" in await _history(store, ticket)


@pytest.mark.asyncio
async def test_auto_assignment_without_staff_leaves_ticket_open(clock, member):
    store = InMemoryTicketStore(
        users=[UserRecord(id="member-1", username="mia", role=Role.MEMBER, status=UserStatus.ACTIVE)]
    )
    service = TicketService(store.tickets, store.comments, store.users, clock=clock)

    ticket = await _create(service, member, category="system-errors", urgency="high")

    assert ticket.assigned_to is None
    assert ticket.status is TicketStatus.OPEN
    assert "Auto-assignment attempted: no eligible staff member available" in await _history(store, ticket)


@pytest.mark.asyncio
async def test_concurrent_transitions_have_one_winner(service, store, member, staff):
    ticket = await _create(service, member)

    results = await asyncio.gather(
        service.transition_status(ticket, staff, "in-progress"),
        service.transition_status(ticket, staff, "closed"),
        return_exceptions=True,
    )

    conflicts = [result for result in results if isinstance(result, ConcurrencyConflict)]
    winners = [result for result in results if not isinstance(result, BaseException)]
    assert len(conflicts) == 1
    assert len(winners) == 1
    persisted = await store.tickets.find_by_id(ticket.id)
    assert persisted.status is winners[0].status
    assert persisted.version == ticket.version + 1


@pytest.mark.asyncio
async def test_owner_can_edit_until_resolved(service, member, staff):
    ticket = await _create(service, member)

    ticket = await service.update_fields(ticket, member, {"title": "Certificate download broken"})
    assert ticket.title == "Certificate download broken"

    ticket = await service.transition_status(ticket, staff, "resolved", resolution_notes="Fixed the link")

    with pytest.raises(Forbidden):
        await service.update_fields(ticket, member, {"title": "Certificate still broken"})


@pytest.mark.asyncio
async def test_owner_cannot_change_privileged_fields(service, member):
    ticket = await _create(service, member)

    with pytest.raises(Forbidden):
        await service.update_fields(ticket, member, {"category": "payment-gateway"})


@pytest.mark.asyncio
async def test_update_fields_narrates_changes(service, store, member, staff):
    ticket = await _create(service, member)

    await service.update_fields(ticket, staff, {"urgency": "high", "category": "system-errors"})

    assert (
        "Ticket updated: Priority changed to high, Category changed to system-errors"
        in await _history(store, ticket)
    )


@pytest.mark.asyncio
async def test_update_fields_status_and_assignee_are_exclusive(service, member, staff):
    ticket = await _create(service, member)

    with pytest.raises(ValidationError):
        await service.update_fields(ticket, staff, {"status": "in-progress", "assigned_to": "staff-1"})


@pytest.mark.asyncio
async def test_update_fields_status_goes_through_state_machine(service, store, member, staff):
    ticket = await _create(service, member)
    ticket = await service.update_fields(
        ticket, staff, {"status": "resolved", "resolution_notes": "Restarted the worker"}
    )

    assert ticket.status is TicketStatus.RESOLVED
    assert ticket.resolved_at == BASE_TIME
    assert "Status changed from open to resolved. Resolution: Restarted the worker" in await _history(
        store, ticket
    )

    with pytest.raises(InvalidTransition):
        await service.update_fields(ticket, staff, {"status": "open"})


@pytest.mark.asyncio
async def test_update_fields_without_effective_change_skips_write(service, member, staff):
    ticket = await _create(service, member)

    unchanged = await service.update_fields(ticket, staff, {"urgency": "medium"})

    assert unchanged.version == ticket.version


@pytest.mark.asyncio
async def test_member_may_only_close_own_ticket(service, member, staff):
    ticket = await _create(service, member)

    with pytest.raises(Forbidden):
        await service.transition_status(ticket, member, "in-progress")

    ticket = await service.transition_status(ticket, staff, "resolved", resolution_notes="Cleared cache")
    closed = await service.transition_status(
        ticket, member, "closed", satisfaction_rating=5, satisfaction_comment="Thanks"
    )
    assert closed.status is TicketStatus.CLOSED
    assert closed.satisfaction_rating == 5
    assert closed.closed_at == BASE_TIME


@pytest.mark.asyncio
async def test_resolve_after_reopen_measures_from_creation(service, clock, member, staff):
    ticket = await _create(service, member)
    clock.advance(hours=2)
    ticket = await service.transition_status(ticket, staff, "resolved", resolution_notes="Patched")
    clock.advance(hours=5)
    ticket = await service.transition_status(ticket, staff, "in-progress")
    assert ticket.resolved_at is None
    clock.advance(hours=1)

    ticket = await service.transition_status(ticket, staff, "resolved", resolution_notes="Patched again")

    assert ticket.actual_resolution_hours == 8


@pytest.mark.asyncio
async def test_visibility_of_tickets(service, store, member, other_member, staff):
    mine = await _create(service, member)
    theirs = await _create(service, other_member, title="Exam results are missing")

    with pytest.raises(Forbidden):
        await service.get_ticket(theirs.id, member)
    with pytest.raises(NotFound):
        await service.get_ticket("missing", staff)

    own_list = await service.list_tickets(member, TicketFilters(created_by=other_member.id))
    assert [ticket.id for ticket in own_list] == [mine.id]
    assert len(await service.list_tickets(staff)) == 2


@pytest.mark.asyncio
async def test_assign_and_unassign(service, store, member, staff):
    ticket = await _create(service, member)

    with pytest.raises(Forbidden):
        await service.assign(ticket, member, "staff-1")

    assigned = await service.assign(ticket, staff, "senior-1", reason="Escalated")
    assert assigned.status is TicketStatus.IN_PROGRESS
    cleared = await service.assign(assigned, staff, None)
    assert cleared.status is TicketStatus.OPEN
    assert cleared.assigned_to is None

    history = await _history(store, ticket)
    assert "Ticket assigned to bob. Reason: Escalated" in history
    assert "Ticket unassigned" in history


@pytest.mark.asyncio
async def test_comments_visibility_and_first_response(service, clock, store, member, staff):
    ticket = await _create(service, member)
    clock.advance(minutes=45)

    await service.add_comment(ticket, staff, "Looking into this now.")
    await service.add_comment(ticket, staff, "Suspect the CDN.", is_internal=True)
    await service.add_comment(ticket, member, "Thanks!", is_internal=True)

    persisted = await store.tickets.find_by_id(ticket.id)
    assert persisted.first_response_at == BASE_TIME.replace(minute=45)

    visible = [comment.content for comment in await service.list_comments(persisted, member)]
    assert visible == ["Looking into this now.", "Thanks!"]
    staff_visible = [comment.content for comment in await service.list_comments(persisted, staff)]
    assert "Suspect the CDN." in staff_visible


@pytest.mark.asyncio
async def test_members_cannot_comment_on_closed_or_foreign_tickets(service, member, other_member, staff):
    ticket = await _create(service, member)

    with pytest.raises(Forbidden):
        await service.add_comment(ticket, other_member, "Me too")

    closed = await service.transition_status(ticket, staff, "closed")
    with pytest.raises(ValidationError):
        await service.add_comment(closed, member, "Still broken")
    assert (await service.add_comment(closed, staff, "Closing note")).ticket_id == ticket.id


@pytest.mark.asyncio
async def test_comment_edit_window(service, clock, member):
    ticket = await _create(service, member)
    comment = await service.add_comment(ticket, member, "Happens on Firefox only.")

    clock.advance(hours=23)
    edited = await service.edit_comment(comment.id, member, "Happens on Firefox and Safari.")
    assert edited.is_edited is True

    clock.advance(hours=2)
    with pytest.raises(Forbidden):
        await service.edit_comment(comment.id, member, "Happens everywhere.")


@pytest.mark.asyncio
async def test_attachment_download_decisions(service, store, member, other_member, staff):
    ticket = await _create(service, member)
    for attachment_id, scan in (("clean", ScanStatus.CLEAN), ("pending", ScanStatus.PENDING)):
        store.attachments.add(
            Attachment(
                id=attachment_id,
                ticket_id=ticket.id,
                uploaded_by=member.id,
                filename="error.png",
                mime_type="image/png",
                file_size=1024,
                virus_scan_status=scan,
                created_at=BASE_TIME,
            )
        )

    assert await service.attachment_download("clean", member) is DownloadDecision.ALLOWED
    assert await service.attachment_download("pending", staff) is DownloadDecision.PENDING
    assert await service.attachment_download("pending", other_member) is DownloadDecision.DENIED
    with pytest.raises(NotFound):
        await service.attachment_download("missing", member)


@pytest.mark.asyncio
async def test_soft_delete(service, store, member, senior):
    ticket = await _create(service, member)

    deleted = await service.delete_ticket(ticket, member, "Opened by mistake")

    assert deleted.status is TicketStatus.CLOSED
    assert deleted.closed_at == BASE_TIME
    assert deleted.is_deleted
    assert deleted.metadata["deleted_by"] == member.id
    assert "Ticket deleted. Reason: Opened by mistake" in await _history(store, ticket)

    with pytest.raises(Forbidden):
        await service.delete_ticket(deleted, member)
    with pytest.raises(ValidationError):
        await service.delete_ticket(deleted, senior)


@pytest.mark.asyncio
async def test_deletion_marker_is_written_only_by_delete(service, store, member, staff, senior):
    ticket = await _create(service, member)

    with pytest.raises(ValidationError) as excinfo:
        await service.update_metadata(ticket, member, {"deleted": True})
    assert excinfo.value.field == "metadata"

    deleted = await service.delete_ticket(ticket, senior, "Duplicate")
    for values in ({"deleted": False}, {"deletion_reason": ""}, {"deleted_at": None}):
        with pytest.raises(ValidationError):
            await service.update_metadata(deleted, staff, values)

    stored = await store.tickets.find_by_id(ticket.id)
    assert stored.is_deleted
    assert stored.status is TicketStatus.CLOSED
    assert stored.version == deleted.version
    assert stored.metadata["deletion_reason"] == "Duplicate"


@pytest.mark.asyncio
async def test_tags_and_metadata(service, member, other_member):
    ticket = await _create(service, member)

    ticket = await service.add_tag(ticket, member, "Urgent")
    ticket = await service.add_tag(ticket, member, "urgent")
    assert ticket.tags == ["urgent"]
    ticket = await service.remove_tag(ticket, member, "URGENT")
    assert ticket.tags == []

    ticket = await service.update_metadata(ticket, member, {"browser": "firefox"})
    assert ticket.metadata["browser"] == "firefox"
    assert ticket.metadata["created_via"] == "web_portal"

    with pytest.raises(Forbidden):
        await service.add_tag(ticket, other_member, "spam")


@pytest.mark.asyncio
async def test_tag_limits(service, member):
    ticket = await _create(service, member, tags=[f"tag-{index}" for index in range(10)])

    with pytest.raises(ValidationError):
        await service.add_tag(ticket, member, "one-too-many")
    assert (await service.add_tag(ticket, member, "tag-3")).tags == ticket.tags

    ticket = await service.remove_tag(ticket, member, "tag-0")
    with pytest.raises(ValidationError):
        await service.add_tag(ticket, member, "x")
    ticket = await service.add_tag(ticket, member, "ok")
    assert len(ticket.tags) == 10


@pytest.mark.asyncio
async def test_queues(service, clock, member, staff):
    low = await _create(service, member, urgency="low")
    critical = await _create(service, member, urgency="critical", title="Whole dashboard is blank")
    high = await _create(service, member, urgency="high", title="Search is extremely slow")
    clock.advance(hours=5)

    queue = await service.work_queue(staff)
    assert [ticket.id for ticket in queue] == [critical.id, high.id, low.id]

    escalations = {ticket.id for ticket in await service.list_needing_escalation(staff)}
    assert escalations == {critical.id, high.id}
    assert await service.list_overdue(staff) == []

    clock.advance(hours=20)
    assert len(await service.list_overdue(staff)) == 3

    with pytest.raises(Forbidden):
        await service.work_queue(member)


@pytest.mark.asyncio
async def test_ticket_statistics(service, clock, member, staff):
    ticket = await _create(service, member)
    clock.advance(hours=3)
    ticket = await service.transition_status(ticket, staff, "in-progress")
    await service.add_comment(ticket, staff, "On it.")

    statistics = await service.ticket_statistics(ticket, staff)

    assert statistics.sla.age_hours == 3
    assert statistics.comment_count == 3
    assert [entry.description for entry in statistics.status_history] == [
        "Status changed from open to in-progress"
    ]


@pytest.mark.asyncio
async def test_notifications_are_dispatched_and_failures_contained(store, clock, member, staff):
    notifier = AsyncMock()
    notifier.status_changed = AsyncMock(side_effect=RuntimeError("smtp down"))
    service = TicketService(store.tickets, store.comments, store.users, notifier=notifier, clock=clock)
    ticket = await _create(service, member)

    updated = await service.transition_status(ticket, staff, "in-progress")
    await service.assign(updated, staff, "staff-1")
    await service.drain_notifications()

    notifier.status_changed.assert_awaited()
    notifier.assignment_changed.assert_awaited_once()
    assert (await store.tickets.find_by_id(ticket.id)).assigned_to == "staff-1"
