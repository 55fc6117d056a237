from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg
from fastapi import FastAPI

from helpdesk.api.errors import register_exception_handlers
from helpdesk.api.middleware import IdentityMiddleware
from helpdesk.api.routes import tickets
from helpdesk.core.config import Settings, get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.tickets.memory import InMemoryTicketStore
from helpdesk.tickets.numbering import TicketNumberAllocator
from helpdesk.tickets.postgres import PostgresTicketStore
from helpdesk.tickets.service import TicketService

logger = logging.getLogger(__name__)


def build_ticket_service(
    store: PostgresTicketStore | InMemoryTicketStore, settings: Settings
) -> TicketService:
    allocator = TicketNumberAllocator(
        store.tickets,
        prefix=settings.ticket_number_prefix,
        tz=settings.tzinfo,
        max_attempts=settings.ticket_number_max_attempts,
    )
    return TicketService(
        store.tickets,
        store.comments,
        store.users,
        attachments=store.attachments,
        allocator=allocator,
        comment_edit_window=settings.comment_edit_window,
        escalation_unassigned_after=settings.escalation_unassigned_after,
        escalation_overdue_threshold=settings.escalation_overdue_threshold,
        auto_assign=settings.auto_assign_enabled,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider

    pool: asyncpg.Pool | None = None
    app.state.ticket_service = None
    try:
        pool = await asyncpg.create_pool(
            dsn=settings.postgres_dsn,
            min_size=settings.postgres_min_pool_size,
            max_size=settings.postgres_max_pool_size,
        )
        store = PostgresTicketStore(pool)
        await store.ensure_schema()
        app.state.ticket_service = build_ticket_service(store, settings)
    except (asyncpg.PostgresError, OSError):
        logger.exception("Ticket service unavailable: could not initialise Postgres")
        if pool is not None:
            await pool.close()
            pool = None

    try:
        yield
    finally:
        service: TicketService | None = app.state.ticket_service
        if service is not None:
            await service.drain_notifications()
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(IdentityMiddleware)
    register_exception_handlers(app)
    app.include_router(tickets.router)
    return app


app = create_app()
