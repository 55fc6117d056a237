"""asyncpg-backed implementation of the persistence contracts."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Mapping, Sequence

import asyncpg

from helpdesk.security.identity import STAFF_ROLES, Role, UserStatus

from .errors import (
    ConcurrencyConflict,
    DuplicateTicketNumber,
    NotFound,
    StorageError,
    TicketServiceError,
)
from .models import (
    PATCHABLE_TICKET_FIELDS,
    Attachment,
    Category,
    Comment,
    ScanStatus,
    Ticket,
    TicketStatus,
    Urgency,
    UserRecord,
)
from .repository import UNASSIGNED, TicketFilters

_TICKET_COLUMNS = (
    "id, ticket_number, title, description, category, urgency, status, created_by, assigned_to, "
    "estimated_resolution_hours, actual_resolution_hours, resolution_notes, satisfaction_rating, "
    "satisfaction_comment, resolved_at, closed_at, first_response_at, tags, metadata, version, "
    "created_at, updated_at"
)
_COMMENT_COLUMNS = (
    "id, ticket_id, author, content, is_internal, is_edited, parent_comment_id, created_at, updated_at"
)
_PATCHABLE_COMMENT_FIELDS = frozenset({"content", "is_edited", "updated_at"})


@asynccontextmanager
async def _acquire(pool: asyncpg.Pool) -> AsyncIterator[Any]:
    """Acquire a connection, translating driver failures into ``StorageError``."""

    try:
        async with pool.acquire() as connection:
            yield connection
    except TicketServiceError:
        raise
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise StorageError(str(exc)) from exc


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _ensure_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return dict(json.loads(value))
    return dict(value)


class PostgresTicketRepository:
    """Data access for ticket rows with version-checked updates."""

    _INSERT_SQL = f"""
    INSERT INTO tickets ({_TICKET_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19::jsonb, $20, $21, $22)
    RETURNING {_TICKET_COLUMNS}
    """

    _SELECT_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _EXISTS_SQL = """
    SELECT 1 FROM tickets WHERE id = $1
    """

    _COUNT_BETWEEN_SQL = """
    SELECT COUNT(*) FROM tickets
    WHERE created_at >= $1 AND created_at < $2
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_by_id(self, ticket_id: str) -> Ticket | None:
        async with _acquire(self._pool) as connection:
            row = await connection.fetchrow(self._SELECT_SQL, ticket_id)
        return None if row is None else self._row_to_ticket(row)

    async def insert(self, ticket: Ticket) -> Ticket:
        async with _acquire(self._pool) as connection:
            try:
                row = await connection.fetchrow(
                    self._INSERT_SQL,
                    ticket.id,
                    ticket.ticket_number,
                    ticket.title,
                    ticket.description,
                    ticket.category.value,
                    ticket.urgency.value,
                    ticket.status.value,
                    ticket.created_by,
                    ticket.assigned_to,
                    ticket.estimated_resolution_hours,
                    ticket.actual_resolution_hours,
                    ticket.resolution_notes,
                    ticket.satisfaction_rating,
                    ticket.satisfaction_comment,
                    ticket.resolved_at,
                    ticket.closed_at,
                    ticket.first_response_at,
                    list(ticket.tags),
                    json.dumps(ticket.metadata),
                    ticket.version,
                    ticket.created_at,
                    ticket.updated_at,
                )
            except asyncpg.UniqueViolationError as exc:
                raise DuplicateTicketNumber(ticket.ticket_number) from exc
        if row is None:
            raise StorageError("Failed to insert ticket")
        return self._row_to_ticket(row)

    async def patch_by_id(
        self,
        ticket_id: str,
        expected_version: int,
        changes: Mapping[str, Any],
        *,
        updated_at: datetime,
    ) -> Ticket:
        unknown = set(changes) - PATCHABLE_TICKET_FIELDS
        if unknown:
            raise KeyError(f"Unpatchable ticket fields: {', '.join(sorted(unknown))}")

        assignments: list[str] = []
        values: list[Any] = [ticket_id, expected_version, updated_at]
        for name in sorted(changes):
            value = changes[name]
            placeholder = f"${len(values) + 1}"
            if name == "metadata":
                placeholder += "::jsonb"
                value = json.dumps(value)
            elif name == "tags":
                value = list(value)
            assignments.append(f"{name} = {placeholder}")
            values.append(_to_db(value))
        assignments.extend(("version = version + 1", "updated_at = $3"))

        sql = (
            f"UPDATE tickets SET {', '.join(assignments)} "
            f"WHERE id = $1 AND version = $2 RETURNING {_TICKET_COLUMNS}"
        )
        async with _acquire(self._pool) as connection:
            async with connection.transaction():
                row = await connection.fetchrow(sql, *values)
                if row is None:
                    exists = await connection.fetchval(self._EXISTS_SQL, ticket_id)
                    if exists is None:
                        raise NotFound(f"Ticket {ticket_id} not found")
                    raise ConcurrencyConflict(ticket_id)
        return self._row_to_ticket(row)

    async def list(self, filters: TicketFilters) -> Sequence[Ticket]:
        clauses: list[str] = []
        values: list[Any] = []

        def bind(value: Any) -> str:
            values.append(value)
            return f"${len(values)}"

        if filters.statuses:
            clauses.append(f"status = ANY({bind([item.value for item in filters.statuses])}::text[])")
        if filters.categories:
            clauses.append(f"category = ANY({bind([item.value for item in filters.categories])}::text[])")
        if filters.urgencies:
            clauses.append(f"urgency = ANY({bind([item.value for item in filters.urgencies])}::text[])")
        if filters.assigned_to == UNASSIGNED:
            clauses.append("assigned_to IS NULL")
        elif filters.assigned_to is not None:
            clauses.append(f"assigned_to = {bind(filters.assigned_to)}")
        if filters.created_by is not None:
            clauses.append(f"created_by = {bind(filters.created_by)}")
        if filters.created_after is not None:
            clauses.append(f"created_at >= {bind(filters.created_after)}")
        if filters.created_before is not None:
            clauses.append(f"created_at <= {bind(filters.created_before)}")
        if filters.search:
            pattern = bind(f"%{filters.search}%")
            clauses.append(
                f"(title ILIKE {pattern} OR description ILIKE {pattern} OR ticket_number ILIKE {pattern})"
            )

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = (
            f"SELECT {_TICKET_COLUMNS} FROM tickets {where} "
            f"ORDER BY created_at DESC LIMIT {bind(filters.limit)} OFFSET {bind(filters.offset)}"
        )
        async with _acquire(self._pool) as connection:
            rows = await connection.fetch(sql, *values)
        return [self._row_to_ticket(row) for row in rows]

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        async with _acquire(self._pool) as connection:
            count = await connection.fetchval(self._COUNT_BETWEEN_SQL, start, end)
        return int(count or 0)

    @staticmethod
    def _row_to_ticket(row: Any) -> Ticket:
        return Ticket(
            id=str(row["id"]),
            ticket_number=str(row["ticket_number"]),
            title=str(row["title"]),
            description=str(row["description"]),
            category=Category(row["category"]),
            urgency=Urgency(row["urgency"]),
            status=TicketStatus(row["status"]),
            created_by=str(row["created_by"]),
            assigned_to=row["assigned_to"],
            estimated_resolution_hours=row["estimated_resolution_hours"],
            actual_resolution_hours=row["actual_resolution_hours"],
            resolution_notes=row["resolution_notes"],
            satisfaction_rating=row["satisfaction_rating"],
            satisfaction_comment=row["satisfaction_comment"],
            resolved_at=_ensure_datetime(row["resolved_at"]),
            closed_at=_ensure_datetime(row["closed_at"]),
            first_response_at=_ensure_datetime(row["first_response_at"]),
            tags=list(row["tags"] or []),
            metadata=_load_json(row["metadata"]),
            version=int(row["version"]),
            created_at=_ensure_datetime(row["created_at"]),
            updated_at=_ensure_datetime(row["updated_at"]),
        )


class PostgresCommentRepository:
    _INSERT_SQL = f"""
    INSERT INTO ticket_comments ({_COMMENT_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
    RETURNING {_COMMENT_COLUMNS}
    """

    _SELECT_SQL = f"""
    SELECT {_COMMENT_COLUMNS}
    FROM ticket_comments
    WHERE id = $1
    """

    _LIST_FOR_TICKET_SQL = f"""
    SELECT {_COMMENT_COLUMNS}
    FROM ticket_comments
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def insert(self, comment: Comment) -> Comment:
        async with _acquire(self._pool) as connection:
            row = await connection.fetchrow(
                self._INSERT_SQL,
                comment.id,
                comment.ticket_id,
                comment.author,
                comment.content,
                comment.is_internal,
                comment.is_edited,
                comment.parent_comment_id,
                comment.created_at,
                comment.updated_at,
            )
        if row is None:
            raise StorageError("Failed to insert comment")
        return self._row_to_comment(row)

    async def find_by_id(self, comment_id: str) -> Comment | None:
        async with _acquire(self._pool) as connection:
            row = await connection.fetchrow(self._SELECT_SQL, comment_id)
        return None if row is None else self._row_to_comment(row)

    async def patch_by_id(self, comment_id: str, changes: Mapping[str, Any]) -> Comment:
        unknown = set(changes) - _PATCHABLE_COMMENT_FIELDS
        if unknown:
            raise KeyError(f"Unpatchable comment fields: {', '.join(sorted(unknown))}")
        names = sorted(changes)
        assignments = ", ".join(f"{name} = ${index}" for index, name in enumerate(names, start=2))
        sql = f"UPDATE ticket_comments SET {assignments} WHERE id = $1 RETURNING {_COMMENT_COLUMNS}"
        async with _acquire(self._pool) as connection:
            row = await connection.fetchrow(sql, comment_id, *(changes[name] for name in names))
        if row is None:
            raise NotFound(f"Comment {comment_id} not found")
        return self._row_to_comment(row)

    async def list_for_ticket(self, ticket_id: str) -> Sequence[Comment]:
        async with _acquire(self._pool) as connection:
            rows = await connection.fetch(self._LIST_FOR_TICKET_SQL, ticket_id)
        return [self._row_to_comment(row) for row in rows]

    @staticmethod
    def _row_to_comment(row: Any) -> Comment:
        return Comment(
            id=str(row["id"]),
            ticket_id=str(row["ticket_id"]),
            author=str(row["author"]),
            content=str(row["content"]),
            is_internal=bool(row["is_internal"]),
            is_edited=bool(row["is_edited"]),
            parent_comment_id=row["parent_comment_id"],
            created_at=_ensure_datetime(row["created_at"]),
            updated_at=_ensure_datetime(row["updated_at"]),
        )


class PostgresAttachmentRepository:
    _SELECT_SQL = """
    SELECT id, ticket_id, comment_id, uploaded_by, filename, mime_type, file_size, virus_scan_status, created_at
    FROM ticket_attachments
    WHERE id = $1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_by_id(self, attachment_id: str) -> Attachment | None:
        async with _acquire(self._pool) as connection:
            row = await connection.fetchrow(self._SELECT_SQL, attachment_id)
        if row is None:
            return None
        return Attachment(
            id=str(row["id"]),
            ticket_id=str(row["ticket_id"]),
            comment_id=row["comment_id"],
            uploaded_by=str(row["uploaded_by"]),
            filename=str(row["filename"]),
            mime_type=str(row["mime_type"]),
            file_size=int(row["file_size"]),
            virus_scan_status=ScanStatus(row["virus_scan_status"]),
            created_at=_ensure_datetime(row["created_at"]),
        )


class PostgresUserDirectory:
    _SELECT_SQL = """
    SELECT id, username, role, status, last_login
    FROM users
    WHERE id = $1
    """

    _MOST_RECENT_STAFF_SQL = """
    SELECT id, username, role, status, last_login
    FROM users
    WHERE role = ANY($1::text[]) AND status = 'active'
    ORDER BY last_login DESC NULLS LAST
    LIMIT 1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_by_id(self, user_id: str) -> UserRecord | None:
        async with _acquire(self._pool) as connection:
            row = await connection.fetchrow(self._SELECT_SQL, user_id)
        return None if row is None else self._row_to_user(row)

    async def most_recently_active_staff(self) -> UserRecord | None:
        roles = sorted(role.value for role in STAFF_ROLES)
        async with _acquire(self._pool) as connection:
            row = await connection.fetchrow(self._MOST_RECENT_STAFF_SQL, roles)
        return None if row is None else self._row_to_user(row)

    @staticmethod
    def _row_to_user(row: Any) -> UserRecord:
        return UserRecord(
            id=str(row["id"]),
            username=str(row["username"]),
            role=Role(row["role"]),
            status=UserStatus(row["status"]),
            last_login=_ensure_datetime(row["last_login"]),
        )


class PostgresTicketStore:
    """Bundle of asyncpg repositories sharing one pool, plus schema bootstrap."""

    _SCHEMA_SQL = (
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            username TEXT NOT NULL,
            role TEXT NOT NULL,
            status TEXT NOT NULL,
            last_login TIMESTAMPTZ NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS tickets (
            id TEXT PRIMARY KEY,
            ticket_number VARCHAR(20) NOT NULL UNIQUE,
            title VARCHAR(500) NOT NULL,
            description TEXT NOT NULL,
            category TEXT NOT NULL,
            urgency TEXT NOT NULL,
            status TEXT NOT NULL,
            created_by TEXT NOT NULL,
            assigned_to TEXT NULL,
            estimated_resolution_hours INTEGER NULL,
            actual_resolution_hours INTEGER NULL,
            resolution_notes TEXT NULL,
            satisfaction_rating SMALLINT NULL CHECK (satisfaction_rating BETWEEN 1 AND 5),
            satisfaction_comment TEXT NULL,
            resolved_at TIMESTAMPTZ NULL,
            closed_at TIMESTAMPTZ NULL,
            first_response_at TIMESTAMPTZ NULL,
            tags TEXT[] NOT NULL DEFAULT '{}',
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS ticket_comments (
            id TEXT PRIMARY KEY,
            ticket_id TEXT NOT NULL REFERENCES tickets(id),
            author TEXT NOT NULL,
            content TEXT NOT NULL,
            is_internal BOOLEAN NOT NULL DEFAULT FALSE,
            is_edited BOOLEAN NOT NULL DEFAULT FALSE,
            parent_comment_id TEXT NULL REFERENCES ticket_comments(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS ticket_attachments (
            id TEXT PRIMARY KEY,
            ticket_id TEXT NOT NULL REFERENCES tickets(id),
            comment_id TEXT NULL REFERENCES ticket_comments(id) ON DELETE SET NULL,
            uploaded_by TEXT NOT NULL,
            filename TEXT NOT NULL,
            mime_type TEXT NOT NULL,
            file_size BIGINT NOT NULL,
            virus_scan_status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_tickets_created_at ON tickets (created_at)",
        "CREATE INDEX IF NOT EXISTS ix_tickets_status ON tickets (status)",
        "CREATE INDEX IF NOT EXISTS ix_ticket_comments_ticket ON ticket_comments (ticket_id, created_at)",
    )

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self.tickets = PostgresTicketRepository(pool)
        self.comments = PostgresCommentRepository(pool)
        self.attachments = PostgresAttachmentRepository(pool)
        self.users = PostgresUserDirectory(pool)

    async def ensure_schema(self) -> None:
        async with _acquire(self._pool) as connection:
            for statement in self._SCHEMA_SQL:
                await connection.execute(statement)
