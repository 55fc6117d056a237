"""Error kinds raised by the ticket workflow engine."""

from __future__ import annotations


class TicketServiceError(RuntimeError):
    """Base error for ticket workflow issues."""


class ValidationError(TicketServiceError):
    """Raised when input is malformed or out of range."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InvalidTransition(TicketServiceError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot change status from {current} to {requested}")
        self.current = current
        self.requested = requested


class InvalidAssignee(TicketServiceError):
    """Raised when the assignment target is not eligible."""

    def __init__(self, assignee_id: str, reason: str) -> None:
        super().__init__(f"Cannot assign ticket to {assignee_id}: {reason}")
        self.assignee_id = assignee_id
        self.reason = reason


class Forbidden(TicketServiceError):
    """Raised when a capability or ownership check fails."""

    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(message)


class NotFound(TicketServiceError):
    """Raised when a ticket, comment or attachment does not exist."""


class ConcurrencyConflict(TicketServiceError):
    """Raised when a conditional write lost against a concurrent writer."""

    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Ticket {ticket_id} was modified concurrently; re-read and retry")
        self.ticket_id = ticket_id


class StorageError(TicketServiceError):
    """Raised when the persistence layer fails."""


class DuplicateTicketNumber(StorageError):
    """Raised when a ticket number collides with an existing row."""

    def __init__(self, ticket_number: str) -> None:
        super().__init__(f"Ticket number {ticket_number} already exists")
        self.ticket_number = ticket_number
