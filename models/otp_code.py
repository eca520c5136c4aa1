# models/otp_code.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from core.database import Base, utcnow


class OtpState(str, enum.Enum):
    PENDING = "pending"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    LOCKED = "locked"


class OtpCode(Base):
    __tablename__ = "otp_codes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(6), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    used = Column(Boolean, nullable=False, default=False)
    failed_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Audit only
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    def state(self, now: datetime, max_attempts: int) -> OtpState:
        # Locked codes are also flagged used, so check the counter first
        if self.failed_attempts >= max_attempts:
            return OtpState.LOCKED
        if self.used:
            return OtpState.CONSUMED
        if self.expires_at <= now:
            return OtpState.EXPIRED
        return OtpState.PENDING
