"""Identity middleware populating ``request.state.actor``."""

from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from helpdesk.security.identity import Actor, Role, UserStatus

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"
USER_STATUS_HEADER = "X-User-Status"


class IdentityMiddleware(BaseHTTPMiddleware):
    """Build the acting identity from headers set by the authenticating proxy.

    Credentials are verified upstream; this layer only turns the forwarded
    identity into an ``Actor`` and refuses accounts that are not active.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request.state.actor = None
        user_id = request.headers.get(USER_ID_HEADER)

        if user_id:
            try:
                role = Role(request.headers.get(USER_ROLE_HEADER, Role.MEMBER.value))
                status = UserStatus(request.headers.get(USER_STATUS_HEADER, UserStatus.ACTIVE.value))
            except ValueError:
                return JSONResponse(status_code=401, content={"detail": "Invalid identity headers"})
            if status is not UserStatus.ACTIVE:
                return JSONResponse(status_code=403, content={"detail": "Account is not active"})
            request.state.actor = Actor(id=user_id, role=role, status=status)

        return await call_next(request)
