# core/tokens.py
from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from jwt import ExpiredSignatureError, PyJWTError
from sqlalchemy.ext.asyncio import AsyncSession

from core import credential_store as store
from core.database import utcnow
from models.refresh_token import RefreshToken
from models.user import User
from settings import ACCESS_TOKEN_EXPIRE_MINUTES, Settings
from telemetry.logger import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_BYTES = 64  # 512 bits


@dataclass(frozen=True)
class AccessClaims:
    account_id: int
    employee_id: str
    role: str


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    expires_at: datetime


def hash_refresh_token(raw: str, pepper: str) -> str:
    # Keyed hash: a leaked table alone can't be used to test guesses offline
    return hmac.new(pepper.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()


class TokenEngine:
    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.clock = clock
        self.algorithm = settings.jwt_algorithm
        self.access_ttl = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        self.refresh_ttl = timedelta(days=settings.refresh_token_days)
        self.retention = timedelta(days=settings.revoked_token_retention_days)

    # ---------------------------------------------------------------
    # Access tokens (stateless JWT)
    # ---------------------------------------------------------------
    def issue_access_token(self, user: User) -> str:
        now = self.clock().replace(tzinfo=timezone.utc)
        payload = {
            "sub": str(user.id),
            "userId": user.id,
            "employeeId": user.employee.employee_id,
            "role": user.role,
            "type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_ttl).timestamp()),
        }
        return jwt.encode(payload, self.settings.access_token_secret, algorithm=self.algorithm)

    def decode_access_token(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Decoded payload, or None for anything that isn't a live access token.
        The reason only ever reaches the log.
        """
        now = self.clock().replace(tzinfo=timezone.utc)
        try:
            # exp/iat are checked against the engine clock, not the wall clock
            payload = jwt.decode(
                token,
                self.settings.access_token_secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False, "require": ["exp", "sub"]},
            )
            if payload["exp"] <= int(now.timestamp()):
                raise ExpiredSignatureError("Signature has expired")
        except ExpiredSignatureError:
            logger.debug("access_token_expired")
            return None
        except PyJWTError as exc:
            logger.debug("access_token_invalid", error=str(exc))
            return None

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            logger.warning("access_token_type_mismatch", token_type=payload.get("type"))
            return None
        return payload

    def verify_access_token(self, token: str) -> Optional[AccessClaims]:
        payload = self.decode_access_token(token)
        if payload is None:
            return None
        try:
            return AccessClaims(
                account_id=int(payload["userId"]),
                employee_id=str(payload["employeeId"]),
                role=str(payload["role"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("access_token_malformed_claims")
            return None

    # ---------------------------------------------------------------
    # Refresh tokens (random secret, hash at rest)
    # ---------------------------------------------------------------
    def _hash(self, raw: str) -> str:
        return hash_refresh_token(raw, self.settings.refresh_token_secret)

    async def issue_refresh_token(
        self,
        session: AsyncSession,
        user_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedRefreshToken:
        raw = secrets.token_hex(REFRESH_TOKEN_BYTES)
        now = self.clock()
        expires_at = now + self.refresh_ttl
        await store.insert_refresh_token(
            session, user_id, self._hash(raw), expires_at, now, ip_address, user_agent
        )
        logger.info("refresh_token_created", user_id=user_id)
        return IssuedRefreshToken(token=raw, expires_at=expires_at)

    async def verify_refresh_token(self, session: AsyncSession, raw: str) -> Optional[RefreshToken]:
        if not raw:
            return None
        record = await store.find_live_refresh_token(session, self._hash(raw), self.clock())
        if record is None:
            logger.warning("refresh_token_invalid")
            return None
        if not record.user.is_active:
            logger.warning("refresh_token_inactive_user", user_id=record.user_id)
            return None
        return record

    async def revoke_refresh_token(self, session: AsyncSession, raw: str) -> bool:
        changed = await store.revoke_refresh_token(session, self._hash(raw), self.clock())
        logger.info("refresh_token_revoked", changes=changed)
        return changed > 0

    async def revoke_all_for_account(self, session: AsyncSession, user_id: int) -> int:
        revoked = await store.revoke_all_refresh_tokens(session, user_id, self.clock())
        logger.info("refresh_tokens_revoked_all", user_id=user_id, revoked=revoked)
        return revoked

    async def active_token_count(self, session: AsyncSession, user_id: int) -> int:
        return await store.count_active_refresh_tokens(session, user_id, self.clock())

    async def cleanup_expired(self, session: AsyncSession) -> int:
        deleted = await store.purge_expired_refresh_tokens(session, self.clock())
        logger.debug("refresh_token_cleanup_expired", deleted=deleted)
        return deleted

    async def cleanup_revoked(self, session: AsyncSession) -> int:
        deleted = await store.purge_revoked_refresh_tokens(session, self.clock() - self.retention)
        logger.debug("refresh_token_cleanup_revoked", deleted=deleted)
        return deleted
