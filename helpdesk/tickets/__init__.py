"""Ticket domain models, errors and lifecycle rules."""

from .errors import (
    ConcurrencyConflict,
    Forbidden,
    InvalidAssignee,
    InvalidTransition,
    NotFound,
    StorageError,
    TicketServiceError,
    ValidationError,
)
from .models import Attachment, Category, Comment, ScanStatus, Ticket, TicketStatus, Urgency
from .state import TicketStateMachine, TransitionOptions

__all__ = [
    "Attachment",
    "Category",
    "Comment",
    "ConcurrencyConflict",
    "Forbidden",
    "InvalidAssignee",
    "InvalidTransition",
    "NotFound",
    "ScanStatus",
    "StorageError",
    "Ticket",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatus",
    "TransitionOptions",
    "Urgency",
    "ValidationError",
]
