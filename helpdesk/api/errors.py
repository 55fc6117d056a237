"""Translate workflow errors into HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from helpdesk.tickets.errors import (
    ConcurrencyConflict,
    Forbidden,
    InvalidAssignee,
    InvalidTransition,
    NotFound,
    StorageError,
    TicketServiceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_CODES: tuple[tuple[type[TicketServiceError], int], ...] = (
    (ValidationError, 422),
    (InvalidTransition, 409),
    (InvalidAssignee, 422),
    (Forbidden, 403),
    (NotFound, 404),
    (ConcurrencyConflict, 409),
    (StorageError, 503),
)


def status_code_for(error: TicketServiceError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def ticket_error_handler(request: Request, exc: TicketServiceError) -> JSONResponse:
    status_code = status_code_for(exc)
    content: dict[str, object] = {"detail": str(exc)}

    if isinstance(exc, ValidationError):
        content = {"detail": exc.message, "field": exc.field}
    elif isinstance(exc, StorageError):
        logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        content = {"detail": "Ticket storage is unavailable"}
    elif status_code == 500:
        logger.error("Unhandled ticket error on %s %s", request.method, request.url.path, exc_info=exc)
        content = {"detail": "Internal server error"}

    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TicketServiceError, ticket_error_handler)
