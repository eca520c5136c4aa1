# models/rate_limit.py
from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String

from core.database import Base


class OtpRateLimit(Base):
    __tablename__ = "otp_rate_limits"

    id = Column(Integer, primary_key=True, index=True)
    # "otp:<employee id>:<ip>"
    identifier = Column(String(255), nullable=False, unique=True, index=True)
    request_count = Column(Integer, nullable=False, default=1)
    window_start = Column(DateTime, nullable=False)
