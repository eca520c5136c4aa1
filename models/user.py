# models/user.py
from __future__ import annotations

import enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from core.database import Base, utcnow


class Role(str, enum.Enum):
    ADMIN = "admin"
    STAFF = "staff"
    VIEWER = "viewer"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("role IN ('admin', 'staff', 'viewer')", name="ck_users_role"),
    )

    id = Column(Integer, primary_key=True, index=True)
    # One account per employee
    employee_pk = Column(
        "employee_id", Integer, ForeignKey("employees.id"), nullable=False, unique=True, index=True
    )
    role = Column(String(16), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    last_login_at = Column(DateTime, nullable=True)

    employee = relationship("Employee", lazy="joined")
    creator = relationship("User", remote_side=[id], lazy="joined", join_depth=1)
