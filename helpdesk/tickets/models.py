from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from helpdesk.security.identity import Role, UserStatus


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Category(str, Enum):
    CPD_POINTS = "cpd-points"
    LICENSE_MANAGEMENT = "license-management"
    PERFORMANCE_ISSUES = "performance-issues"
    PAYMENT_GATEWAY = "payment-gateway"
    USER_INTERFACE = "user-interface"
    DATA_INCONSISTENCIES = "data-inconsistencies"
    SYSTEM_ERRORS = "system-errors"


class ScanStatus(str, Enum):
    PENDING = "pending"
    CLEAN = "clean"
    INFECTED = "infected"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class CategoryPolicy:
    """Service-level defaults attached to a category."""

    default_resolution_hours: int
    high_impact: bool = False


CATEGORY_POLICIES: Mapping[Category, CategoryPolicy] = MappingProxyType(
    {
        Category.CPD_POINTS: CategoryPolicy(48),
        Category.LICENSE_MANAGEMENT: CategoryPolicy(72),
        Category.PERFORMANCE_ISSUES: CategoryPolicy(24, high_impact=True),
        Category.PAYMENT_GATEWAY: CategoryPolicy(24, high_impact=True),
        Category.USER_INTERFACE: CategoryPolicy(24),
        Category.DATA_INCONSISTENCIES: CategoryPolicy(48),
        Category.SYSTEM_ERRORS: CategoryPolicy(24, high_impact=True),
    }
)

ACTIVE_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.OPEN, TicketStatus.IN_PROGRESS})
FINISHED_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


def default_resolution_hours(category: Category) -> int:
    return CATEGORY_POLICIES[category].default_resolution_hours


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket."""

    id: str
    ticket_number: str
    title: str
    description: str
    category: Category
    urgency: Urgency
    status: TicketStatus
    created_by: str
    created_at: datetime
    updated_at: datetime
    assigned_to: str | None = None
    estimated_resolution_hours: int | None = None
    actual_resolution_hours: int | None = None
    resolution_notes: str | None = None
    satisfaction_rating: int | None = None
    satisfaction_comment: str | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    first_response_at: datetime | None = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 1

    @property
    def is_deleted(self) -> bool:
        return bool(self.metadata.get("deleted"))


# Columns a workflow operation may write; identity, ownership and creation time are immutable.
PATCHABLE_TICKET_FIELDS: frozenset[str] = frozenset(
    {
        "title",
        "description",
        "category",
        "urgency",
        "status",
        "assigned_to",
        "estimated_resolution_hours",
        "actual_resolution_hours",
        "resolution_notes",
        "satisfaction_rating",
        "satisfaction_comment",
        "resolved_at",
        "closed_at",
        "first_response_at",
        "tags",
        "metadata",
    }
)


def apply_changes(ticket: Ticket, changes: Mapping[str, Any], *, updated_at: datetime) -> Ticket:
    """Return a copy of ``ticket`` with ``changes`` applied and the version bumped."""

    unknown = set(changes) - PATCHABLE_TICKET_FIELDS
    if unknown:
        raise KeyError(f"Unpatchable ticket fields: {', '.join(sorted(unknown))}")
    values = dict(changes)
    if "tags" in values:
        values["tags"] = list(values["tags"])
    if "metadata" in values:
        values["metadata"] = dict(values["metadata"])
    return replace(ticket, **values, updated_at=updated_at, version=ticket.version + 1)


@dataclass(slots=True)
class Comment:
    """Comment attached to a ticket; audit entries are internal comments."""

    id: str
    ticket_id: str
    author: str
    content: str
    is_internal: bool
    created_at: datetime
    updated_at: datetime
    is_edited: bool = False
    parent_comment_id: str | None = None


@dataclass(slots=True)
class Attachment:
    id: str
    ticket_id: str
    uploaded_by: str
    filename: str
    mime_type: str
    file_size: int
    virus_scan_status: ScanStatus
    created_at: datetime
    comment_id: str | None = None


@dataclass(slots=True)
class UserRecord:
    """Directory entry for a user, read-only from the engine's point of view."""

    id: str
    username: str
    role: Role
    status: UserStatus
    last_login: datetime | None = None
