# core/otp.py
from __future__ import annotations

import enum
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core import credential_store as store
from core.database import utcnow
from core.rate_limit import SlidingWindowLimiter
from models.otp_code import OtpState
from settings import MAX_OTP_FAILED_ATTEMPTS, OTP_CODE_LENGTH, Settings
from telemetry.logger import get_logger

logger = get_logger(__name__)


class OtpStatus(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MAX_ATTEMPTS = "max_attempts"
    INVALID_CODE = "invalid_code"


@dataclass(frozen=True)
class OtpResult:
    status: OtpStatus
    attempts_remaining: Optional[int] = None

    @property
    def valid(self) -> bool:
        return self.status is OtpStatus.VALID


@dataclass(frozen=True)
class IssuedOtp:
    code: str
    expires_at: datetime


def generate_code() -> str:
    """Uniform over every 6-digit string, 000000 through 999999."""
    return str(secrets.randbelow(10**OTP_CODE_LENGTH)).zfill(OTP_CODE_LENGTH)


class OtpEngine:
    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.clock = clock
        self.max_attempts = MAX_OTP_FAILED_ATTEMPTS
        self.limiter = SlidingWindowLimiter(
            max_requests=settings.otp_max_requests,
            window_minutes=settings.rate_limit_window_minutes,
            clock=clock,
        )

    # ---------------------------------------------------------------
    # Issue / verify
    # ---------------------------------------------------------------
    async def create_otp(
        self,
        session: AsyncSession,
        user_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedOtp:
        now = self.clock()
        code = generate_code()
        expires_at = now + timedelta(minutes=self.settings.otp_expiry_minutes)

        otp = await store.insert_otp(session, user_id, code, expires_at, now, ip_address, user_agent)
        logger.info("otp_created", user_id=user_id, otp_id=otp.id)

        if self.settings.debug_echo_otp:
            logger.warning("dev_otp_code", user_id=user_id, code=code)

        return IssuedOtp(code=code, expires_at=expires_at)

    async def verify_otp(self, session: AsyncSession, user_id: int, code: str) -> OtpResult:
        now = self.clock()
        otp = await store.latest_live_otp(session, user_id, now)

        if otp is None:
            # A code locked by failed guesses stays locked, even for the right code
            last = await store.latest_unexpired_otp(session, user_id, now)
            if last is not None and last.state(now, self.max_attempts) is OtpState.LOCKED:
                logger.warning("otp_locked", user_id=user_id, otp_id=last.id)
                return OtpResult(OtpStatus.MAX_ATTEMPTS)
            logger.warning("otp_not_found", user_id=user_id)
            return OtpResult(OtpStatus.EXPIRED)

        otp_id = otp.id
        seen = otp.failed_attempts or 0
        if seen >= self.max_attempts:
            await store.retire_otp(session, otp_id)
            logger.warning("otp_locked", user_id=user_id, failed_attempts=seen)
            return OtpResult(OtpStatus.MAX_ATTEMPTS)

        if otp.code != code:
            new_count = await store.record_failed_attempt(session, otp_id, seen, self.max_attempts)
            if new_count is None:
                # Lost a race with another submission; the row moved on without us
                logger.warning("otp_concurrent_attempt", user_id=user_id, otp_id=otp_id)
                return OtpResult(OtpStatus.EXPIRED)

            remaining = self.max_attempts - new_count
            logger.warning(
                "otp_invalid_attempt",
                user_id=user_id,
                failed_attempts=new_count,
                attempts_remaining=remaining,
            )
            if new_count >= self.max_attempts:
                return OtpResult(OtpStatus.MAX_ATTEMPTS)
            return OtpResult(OtpStatus.INVALID_CODE, attempts_remaining=remaining)

        if not await store.consume_otp(session, otp_id, user_id, seen):
            logger.warning("otp_concurrent_attempt", user_id=user_id, otp_id=otp_id)
            return OtpResult(OtpStatus.EXPIRED)

        logger.info("otp_verified", user_id=user_id, otp_id=otp_id)
        return OtpResult(OtpStatus.VALID)

    # ---------------------------------------------------------------
    # Request rate limiting
    # ---------------------------------------------------------------
    async def check_rate_limit(self, session: AsyncSession, identifier: str) -> bool:
        return await self.limiter.check(session, identifier)

    async def increment_rate_limit(self, session: AsyncSession, identifier: str) -> int:
        return await self.limiter.increment(session, identifier)

    async def remaining_requests(self, session: AsyncSession, identifier: str) -> int:
        return await self.limiter.remaining(session, identifier)

    # ---------------------------------------------------------------
    # Cleanup
    # ---------------------------------------------------------------
    async def cleanup_expired(self, session: AsyncSession) -> int:
        deleted = await store.purge_expired_otps(session, self.clock())
        logger.debug("otp_cleanup", deleted=deleted)
        return deleted

    async def cleanup_rate_limits(self, session: AsyncSession) -> int:
        return await self.limiter.cleanup(session)
