from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from helpdesk.security.identity import Actor, Role, UserStatus
from helpdesk.tickets.memory import InMemoryTicketStore
from helpdesk.tickets.models import Category, Ticket, TicketStatus, Urgency, UserRecord
from helpdesk.tickets.service import TicketService

BASE_TIME = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Deterministic clock injected wherever the engine asks for "now"."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def member() -> Actor:
    return Actor(id="member-1", role=Role.MEMBER)


@pytest.fixture
def other_member() -> Actor:
    return Actor(id="member-2", role=Role.MEMBER)


@pytest.fixture
def staff() -> Actor:
    return Actor(id="staff-1", role=Role.STAFF)


@pytest.fixture
def senior() -> Actor:
    return Actor(id="senior-1", role=Role.SENIOR_STAFF)


@pytest.fixture
def users() -> list[UserRecord]:
    return [
        UserRecord(id="member-1", username="mia", role=Role.MEMBER, status=UserStatus.ACTIVE),
        UserRecord(id="member-2", username="noah", role=Role.MEMBER, status=UserStatus.ACTIVE),
        UserRecord(
            id="staff-1",
            username="alice",
            role=Role.STAFF,
            status=UserStatus.ACTIVE,
            last_login=BASE_TIME - timedelta(hours=1),
        ),
        UserRecord(
            id="senior-1",
            username="bob",
            role=Role.SENIOR_STAFF,
            status=UserStatus.ACTIVE,
            last_login=BASE_TIME - timedelta(days=2),
        ),
        UserRecord(
            id="staff-suspended",
            username="carol",
            role=Role.STAFF,
            status=UserStatus.SUSPENDED,
            last_login=BASE_TIME,
        ),
    ]


@pytest.fixture
def store(users: list[UserRecord]) -> InMemoryTicketStore:
    return InMemoryTicketStore(users=users)


@pytest.fixture
def service(store: InMemoryTicketStore, clock: FrozenClock) -> TicketService:
    return TicketService(
        store.tickets,
        store.comments,
        store.users,
        attachments=store.attachments,
        clock=clock,
    )


@pytest.fixture
def make_ticket() -> Callable[..., Ticket]:
    def factory(**overrides: Any) -> Ticket:
        values: dict[str, Any] = {
            "id": "ticket-1",
            "ticket_number": "TPG-202603-0001",
            "title": "Cannot download certificate",
            "description": "The certificate download button does nothing.",
            "category": Category.USER_INTERFACE,
            "urgency": Urgency.MEDIUM,
            "status": TicketStatus.OPEN,
            "created_by": "member-1",
            "created_at": BASE_TIME,
            "updated_at": BASE_TIME,
            "estimated_resolution_hours": 24,
        }
        values.update(overrides)
        return Ticket(**values)

    return factory
