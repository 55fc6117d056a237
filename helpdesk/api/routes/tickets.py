from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field

from helpdesk.api.dependencies import CurrentActor, TicketServiceDep
from helpdesk.security.identity import Actor
from helpdesk.security.visibility import DownloadDecision
from helpdesk.tickets.errors import ConcurrencyConflict, Forbidden, ValidationError
from helpdesk.tickets.models import Category, Comment, Ticket, TicketStatus, Urgency
from helpdesk.tickets.repository import TicketFilters
from helpdesk.tickets.service import RequestContext, TicketService, TicketStatistics, safe_metadata
from helpdesk.tickets.sla import SlaSnapshot

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    title: str
    description: str
    category: Category
    urgency: Urgency = Urgency.MEDIUM
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    estimated_resolution_hours: int | None = Field(default=None, ge=1)


class TicketUpdateRequest(BaseModel):
    """Partial update; only the fields present in the body are applied."""

    title: str | None = None
    description: str | None = None
    urgency: Urgency | None = None
    category: Category | None = None
    status: TicketStatus | None = None
    assigned_to: str | None = None
    resolution_notes: str | None = None
    expected_version: int | None = None

    def changes(self) -> dict[str, Any]:
        fields = self.model_dump(exclude_unset=True, exclude={"expected_version"})
        if not fields:
            raise ValidationError("fields", "no fields supplied")
        return fields


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus
    resolution_notes: str | None = None
    satisfaction_rating: int | None = None
    satisfaction_comment: str | None = None
    expected_version: int | None = None


class TicketAssignRequest(BaseModel):
    assignee_id: str | None = None
    reason: str | None = Field(default=None, max_length=500)
    expected_version: int | None = None


class TagRequest(BaseModel):
    tag: str


class MetadataRequest(BaseModel):
    values: dict[str, Any]


class CommentCreateRequest(BaseModel):
    content: str
    is_internal: bool = False
    parent_comment_id: str | None = None


class CommentEditRequest(BaseModel):
    content: str


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_number: str
    title: str
    description: str
    category: Category
    urgency: Urgency
    status: TicketStatus
    created_by: str
    assigned_to: str | None
    estimated_resolution_hours: int | None
    actual_resolution_hours: int | None
    resolution_notes: str | None
    satisfaction_rating: int | None
    satisfaction_comment: str | None
    resolved_at: datetime | None
    closed_at: datetime | None
    first_response_at: datetime | None
    tags: list[str]
    metadata: dict[str, Any]
    version: int
    created_at: datetime
    updated_at: datetime


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author: str
    content: str
    is_internal: bool
    is_edited: bool
    parent_comment_id: str | None
    created_at: datetime
    updated_at: datetime


class SlaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    age_hours: int
    resolution_hours: int | None
    due_at: datetime | None
    is_overdue: bool
    needs_escalation: bool
    priority_score: int


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    description: str
    actor_id: str


class TicketStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sla: SlaResponse
    comment_count: int
    status_history: list[StatusHistoryResponse]


class DownloadResponse(BaseModel):
    attachment_id: str
    decision: DownloadDecision
    detail: str


def _to_response(ticket: Ticket) -> TicketResponse:
    response = TicketResponse.model_validate(ticket)
    response.metadata = safe_metadata(ticket)
    return response


def _to_comment_response(comment: Comment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def _to_sla_response(snapshot: SlaSnapshot) -> SlaResponse:
    return SlaResponse.model_validate(snapshot)


def _to_statistics_response(statistics: TicketStatistics) -> TicketStatisticsResponse:
    return TicketStatisticsResponse.model_validate(statistics)


async def _load(
    service: TicketService,
    ticket_id: str,
    actor: Actor,
    expected_version: int | None = None,
) -> Ticket:
    ticket = await service.get_ticket(ticket_id, actor)
    if expected_version is not None and expected_version != ticket.version:
        raise ConcurrencyConflict(ticket_id)
    return ticket


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    request: Request,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    context = RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    ticket = await service.create_ticket(
        actor,
        title=payload.title,
        description=payload.description,
        category=payload.category,
        urgency=payload.urgency,
        metadata=payload.metadata,
        tags=payload.tags,
        estimated_resolution_hours=payload.estimated_resolution_hours,
        context=context,
    )
    return _to_response(ticket)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    service: TicketServiceDep,
    actor: CurrentActor,
    status_filter: list[TicketStatus] | None = Query(default=None, alias="status"),
    category: list[Category] | None = Query(default=None),
    urgency: list[Urgency] | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[TicketResponse]:
    filters = TicketFilters(
        statuses=frozenset(status_filter or ()),
        categories=frozenset(category or ()),
        urgencies=frozenset(urgency or ()),
        assigned_to=assigned_to,
        search=search,
        limit=limit,
        offset=offset,
    )
    tickets = await service.list_tickets(actor, filters)
    return [_to_response(ticket) for ticket in tickets]


@router.get("/queue/work", response_model=list[TicketResponse])
async def work_queue(service: TicketServiceDep, actor: CurrentActor) -> list[TicketResponse]:
    return [_to_response(ticket) for ticket in await service.work_queue(actor)]


@router.get("/queue/overdue", response_model=list[TicketResponse])
async def overdue_tickets(service: TicketServiceDep, actor: CurrentActor) -> list[TicketResponse]:
    return [_to_response(ticket) for ticket in await service.list_overdue(actor)]


@router.get("/queue/escalation", response_model=list[TicketResponse])
async def escalation_queue(service: TicketServiceDep, actor: CurrentActor) -> list[TicketResponse]:
    return [_to_response(ticket) for ticket in await service.list_needing_escalation(actor)]


@router.get("/attachments/{attachment_id}/download", response_model=DownloadResponse)
async def attachment_download(
    attachment_id: str,
    response: Response,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> DownloadResponse:
    decision = await service.attachment_download(attachment_id, actor)
    if decision is DownloadDecision.DENIED:
        raise Forbidden()
    if decision is DownloadDecision.PENDING:
        response.status_code = status.HTTP_202_ACCEPTED
        detail = "File not yet available (virus scan pending)"
    else:
        detail = "File available for download"
    return DownloadResponse(attachment_id=attachment_id, decision=decision, detail=detail)


@router.patch("/comments/{comment_id}", response_model=CommentResponse)
async def edit_comment(
    comment_id: str,
    payload: CommentEditRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> CommentResponse:
    comment = await service.edit_comment(comment_id, actor, payload.content)
    return _to_comment_response(comment)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> TicketResponse:
    return _to_response(await service.get_ticket(ticket_id, actor))


@router.patch("/{ticket_id}", response_model=TicketResponse)
async def update_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    fields = payload.changes()
    ticket = await _load(service, ticket_id, actor, payload.expected_version)
    return _to_response(await service.update_fields(ticket, actor, fields))


@router.post("/{ticket_id}/status", response_model=TicketResponse)
async def change_ticket_status(
    ticket_id: str,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    ticket = await _load(service, ticket_id, actor, payload.expected_version)
    updated = await service.transition_status(
        ticket,
        actor,
        payload.status,
        resolution_notes=payload.resolution_notes,
        satisfaction_rating=payload.satisfaction_rating,
        satisfaction_comment=payload.satisfaction_comment,
    )
    return _to_response(updated)


@router.post("/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: str,
    payload: TicketAssignRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    ticket = await _load(service, ticket_id, actor, payload.expected_version)
    return _to_response(await service.assign(ticket, actor, payload.assignee_id, reason=payload.reason))


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    actor: CurrentActor,
    reason: str | None = Query(default=None, max_length=500),
) -> None:
    ticket = await _load(service, ticket_id, actor)
    await service.delete_ticket(ticket, actor, reason)


@router.post("/{ticket_id}/tags", response_model=TicketResponse)
async def add_tag(
    ticket_id: str,
    payload: TagRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    ticket = await _load(service, ticket_id, actor)
    return _to_response(await service.add_tag(ticket, actor, payload.tag))


@router.delete("/{ticket_id}/tags/{tag}", response_model=TicketResponse)
async def remove_tag(
    ticket_id: str,
    tag: str,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    ticket = await _load(service, ticket_id, actor)
    return _to_response(await service.remove_tag(ticket, actor, tag))


@router.patch("/{ticket_id}/metadata", response_model=TicketResponse)
async def update_metadata(
    ticket_id: str,
    payload: MetadataRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketResponse:
    ticket = await _load(service, ticket_id, actor)
    return _to_response(await service.update_metadata(ticket, actor, payload.values))


@router.get("/{ticket_id}/sla", response_model=SlaResponse)
async def ticket_sla(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> SlaResponse:
    ticket = await _load(service, ticket_id, actor)
    return _to_sla_response(service.sla_snapshot(ticket))


@router.get("/{ticket_id}/statistics", response_model=TicketStatisticsResponse)
async def ticket_statistics(
    ticket_id: str, service: TicketServiceDep, actor: CurrentActor
) -> TicketStatisticsResponse:
    ticket = await _load(service, ticket_id, actor)
    return _to_statistics_response(await service.ticket_statistics(ticket, actor))


@router.get("/{ticket_id}/comments", response_model=list[CommentResponse])
async def list_comments(
    ticket_id: str, service: TicketServiceDep, actor: CurrentActor
) -> list[CommentResponse]:
    ticket = await _load(service, ticket_id, actor)
    return [_to_comment_response(comment) for comment in await service.list_comments(ticket, actor)]


@router.post("/{ticket_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> CommentResponse:
    ticket = await _load(service, ticket_id, actor)
    comment = await service.add_comment(
        ticket,
        actor,
        payload.content,
        is_internal=payload.is_internal,
        parent_comment_id=payload.parent_comment_id,
    )
    return _to_comment_response(comment)
