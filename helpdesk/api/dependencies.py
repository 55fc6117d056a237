from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from helpdesk.security.identity import Actor
from helpdesk.tickets.service import TicketService


async def get_current_actor(request: Request) -> Actor:
    actor = getattr(request.state, "actor", None)
    if not isinstance(actor, Actor):
        raise HTTPException(status_code=401, detail="Authentication required")
    return actor


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
