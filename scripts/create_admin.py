#!/usr/bin/env python3
"""Create the first admin account.

Usage:
    # List employees that have no account yet
    python scripts/create_admin.py

    # Link employee (internal id 1) as admin
    python scripts/create_admin.py 1

Reads DATABASE_URL (and the rest of the settings) from the environment / .env.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from core import credential_store as store  # noqa: E402
from core.database import build_engine, build_sessionmaker, init_models  # noqa: E402
from models.user import Role  # noqa: E402
from settings import Settings  # noqa: E402


async def list_available(session) -> int:
    employees = await store.list_unbound_employees(session)
    if not employees:
        print("\nNo available employees found (all may already be linked to users).")
        users = await store.list_users(session)
        if users:
            print("\nCurrent users:")
            for u in users:
                print(f"  - {u.employee.employee_name} ({u.employee.email}) - {u.role}")
        return 0

    print("\nAvailable employees to link as admin:\n")
    print(f"{'ID':<6}{'Employee ID':<16}{'Name':<30}Email")
    print("-" * 80)
    for emp in employees[:20]:
        print(f"{emp.id:<6}{emp.employee_id:<16}{emp.employee_name[:28]:<30}{emp.email}")
    print("\nUsage: python scripts/create_admin.py <employee.id>")
    return 0


async def create_admin(session, employee_pk: int) -> int:
    employee = await store.get_employee(session, employee_pk)
    if employee is None:
        print(f"\nError: Employee with ID {employee_pk} not found.", file=sys.stderr)
        await list_available(session)
        return 1

    existing = await store.get_user_by_employee_pk(session, employee_pk)
    if existing is not None:
        print(f'\nError: Employee "{employee.employee_name}" already has a user account.', file=sys.stderr)
        print(f"  Role: {existing.role}")
        print(f"  Active: {'Yes' if existing.is_active else 'No'}")
        return 1

    user = await store.create_user(session, employee_pk, Role.ADMIN.value, created_by=None)
    print("\nAdmin user created successfully!")
    print(f"  User ID: {user.id}")
    print(f"  Name: {employee.employee_name}")
    print(f"  Employee ID: {employee.employee_id}")
    print(f"  Email: {employee.email}")
    print("\nThey can now log in with their employee ID and an emailed OTP.")
    return 0


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Link an employee as the initial admin account")
    parser.add_argument("employee_pk", nargs="?", type=int, help="internal employee id (employees.id)")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    engine = build_engine(settings)
    try:
        await init_models(engine)
        async with build_sessionmaker(engine)() as session:
            if args.employee_pk is None:
                return await list_available(session)
            return await create_admin(session, args.employee_pk)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
