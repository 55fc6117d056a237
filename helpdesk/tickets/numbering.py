"""Human-readable ticket number allocation."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Awaitable, Callable, TypeVar

from .errors import DuplicateTicketNumber, StorageError
from .repository import TicketRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PREFIX = "TPG"
SEQUENCE_WIDTH = 4


class TicketNumberAllocator:
    """Allocate ``{PREFIX}-{YYYY}{MM}-{NNNN}`` numbers, unique per day.

    The sequence is the count of tickets created since local midnight plus one.
    Allocation and insertion run under a lock keyed by the local day so that
    creators in this process never read the same count; the persistence-level
    unique constraint plus retry covers writers in other processes.
    """

    def __init__(
        self,
        repository: TicketRepository,
        *,
        prefix: str = DEFAULT_PREFIX,
        tz: tzinfo = timezone.utc,
        max_attempts: int = 5,
    ) -> None:
        self._repository = repository
        self._prefix = prefix
        self._tz = tz
        self._max_attempts = max(1, max_attempts)
        self._locks: dict[date, asyncio.Lock] = {}

    def format_number(self, moment: datetime, sequence: int) -> str:
        local = moment.astimezone(self._tz)
        return f"{self._prefix}-{local.year:04d}{local.month:02d}-{sequence:0{SEQUENCE_WIDTH}d}"

    def day_bounds(self, moment: datetime) -> tuple[datetime, datetime]:
        """Return the local-day window containing ``moment`` as aware datetimes."""

        local_day = moment.astimezone(self._tz).date()
        start = datetime.combine(local_day, time.min, tzinfo=self._tz)
        return start, start + timedelta(days=1)

    def _lock_for(self, day: date) -> asyncio.Lock:
        lock = self._locks.get(day)
        if lock is None:
            # Earlier days can no longer be allocated against.
            self._locks = {key: value for key, value in self._locks.items() if key >= day}
            lock = self._locks[day] = asyncio.Lock()
        return lock

    async def next_number(self, now: datetime) -> str:
        start, end = self.day_bounds(now)
        count = await self._repository.count_created_between(start, end)
        return self.format_number(now, count + 1)

    async def create_with_number(self, now: datetime, insert: Callable[[str], Awaitable[T]]) -> T:
        """Allocate a number and run ``insert`` with it, retrying on collisions."""

        start, end = self.day_bounds(now)
        async with self._lock_for(start.date()):
            last_sequence = 0
            for attempt in range(1, self._max_attempts + 1):
                count = await self._repository.count_created_between(start, end)
                sequence = max(count + 1, last_sequence + 1)
                last_sequence = sequence
                number = self.format_number(now, sequence)
                try:
                    return await insert(number)
                except DuplicateTicketNumber:
                    logger.warning(
                        "Ticket number %s already taken (attempt %d/%d)",
                        number,
                        attempt,
                        self._max_attempts,
                    )
        raise StorageError(f"Could not allocate a unique ticket number after {self._max_attempts} attempts")
