# core/rate_limit.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from core import credential_store as store
from core.database import utcnow
from telemetry.logger import get_logger

logger = get_logger(__name__)


def otp_identifier(employee_id: str, ip_address: str) -> str:
    return f"otp:{employee_id}:{ip_address}"


class SlidingWindowLimiter:
    """
    Fixed-length windows persisted in the database: 'max_requests' per
    'window_minutes', counted per identifier. A window restarts once
    'window_minutes' have elapsed since it began.
    """

    def __init__(
        self,
        max_requests: int,
        window_minutes: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_requests = max_requests
        self.window = timedelta(minutes=window_minutes)
        self.clock = clock

    def _cutoff(self) -> datetime:
        return self.clock() - self.window

    async def check(self, session: AsyncSession, identifier: str) -> bool:
        """True if another request is allowed. Does not count the request."""
        record = await store.get_live_window(session, identifier, self._cutoff())
        if record and record.request_count >= self.max_requests:
            logger.warning(
                "otp_rate_limit_exceeded",
                identifier=identifier,
                request_count=record.request_count,
            )
            return False
        return True

    async def increment(self, session: AsyncSession, identifier: str) -> int:
        now = self.clock()
        return await store.increment_window(session, identifier, now, now - self.window)

    async def remaining(self, session: AsyncSession, identifier: str) -> int:
        record = await store.get_live_window(session, identifier, self._cutoff())
        if record is None:
            return self.max_requests
        return max(0, self.max_requests - record.request_count)

    async def cleanup(self, session: AsyncSession) -> int:
        deleted = await store.purge_rate_limits(session, self._cutoff())
        logger.debug("rate_limit_cleanup", deleted=deleted)
        return deleted
