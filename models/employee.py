# models/employee.py
from __future__ import annotations

from sqlalchemy import Column, Integer, String

from core.database import Base


class Employee(Base):
    """A person eligible to log in. Owned by the asset side of the system."""

    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    # Business identifier typed in at login, not the primary key
    employee_id = Column(String(50), nullable=False, unique=True, index=True)
    employee_name = Column(String(200), nullable=False)
    email = Column(String(254), nullable=False)
    office_college = Column(String(200), nullable=True)
