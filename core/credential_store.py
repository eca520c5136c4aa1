# core/credential_store.py
"""
Row-level access to accounts, OTP codes, rate-limit windows and refresh tokens.

Every function here takes the session explicitly and commits its own writes.
Policy (ceilings, lifetimes, what counts as "valid") belongs to the callers
in core/otp.py, core/rate_limit.py and core/tokens.py.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, delete, func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.employee import Employee
from models.otp_code import OtpCode
from models.rate_limit import OtpRateLimit
from models.refresh_token import RefreshToken
from models.user import User


# -------------------------------------------------------------------
# Accounts / employees
# -------------------------------------------------------------------
async def get_employee_by_business_id(session: AsyncSession, employee_id: str) -> Optional[Employee]:
    result = await session.execute(select(Employee).where(Employee.employee_id == employee_id))
    return result.scalars().first()


async def get_employee(session: AsyncSession, pk: int) -> Optional[Employee]:
    return await session.get(Employee, pk)


async def get_active_user_by_employee_id(session: AsyncSession, employee_id: str) -> Optional[User]:
    result = await session.execute(
        select(User)
        .join(Employee, User.employee_pk == Employee.id)
        .where(Employee.employee_id == employee_id, User.is_active.is_(True))
    )
    return result.scalars().first()


async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    result = await session.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_user_by_employee_pk(session: AsyncSession, employee_pk: int) -> Optional[User]:
    result = await session.execute(select(User).where(User.employee_pk == employee_pk))
    return result.scalars().first()


async def list_users(session: AsyncSession) -> List[User]:
    result = await session.execute(select(User).order_by(User.created_at.desc(), User.id.desc()))
    return list(result.scalars().all())


async def list_unbound_employees(session: AsyncSession) -> List[Employee]:
    result = await session.execute(
        select(Employee)
        .outerjoin(User, User.employee_pk == Employee.id)
        .where(User.id.is_(None))
        .order_by(Employee.employee_name)
    )
    return list(result.scalars().all())


async def create_user(
    session: AsyncSession, employee_pk: int, role: str, created_by: Optional[int]
) -> User:
    user = User(employee_pk=employee_pk, role=role, is_active=True, created_by=created_by)
    session.add(user)
    await session.commit()
    return await get_user(session, user.id)


async def update_user(session: AsyncSession, user_id: int, **fields) -> int:
    result = await session.execute(update(User).where(User.id == user_id).values(**fields))
    await session.commit()
    return result.rowcount


async def touch_last_login(session: AsyncSession, user_id: int, now: datetime) -> None:
    await session.execute(update(User).where(User.id == user_id).values(last_login_at=now))
    await session.commit()


# -------------------------------------------------------------------
# OTP codes
# -------------------------------------------------------------------
async def insert_otp(
    session: AsyncSession,
    user_id: int,
    code: str,
    expires_at: datetime,
    now: datetime,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> OtpCode:
    otp = OtpCode(
        user_id=user_id,
        code=code,
        expires_at=expires_at,
        created_at=now,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(otp)
    await session.commit()
    return otp


async def latest_live_otp(session: AsyncSession, user_id: int, now: datetime) -> Optional[OtpCode]:
    result = await session.execute(
        select(OtpCode)
        .where(OtpCode.user_id == user_id, OtpCode.used.is_(False), OtpCode.expires_at > now)
        .order_by(OtpCode.created_at.desc(), OtpCode.id.desc())
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def latest_unexpired_otp(session: AsyncSession, user_id: int, now: datetime) -> Optional[OtpCode]:
    result = await session.execute(
        select(OtpCode)
        .where(OtpCode.user_id == user_id, OtpCode.expires_at > now)
        .order_by(OtpCode.created_at.desc(), OtpCode.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def retire_otp(session: AsyncSession, otp_id: int) -> None:
    await session.execute(update(OtpCode).where(OtpCode.id == otp_id).values(used=True))
    await session.commit()


async def record_failed_attempt(
    session: AsyncSession, otp_id: int, seen_attempts: int, max_attempts: int
) -> Optional[int]:
    """
    Compare-and-set increment of the failure counter. Reaching max_attempts
    retires the code in the same statement. Returns the new counter, or None
    if another request changed the row first.
    """
    new_count = seen_attempts + 1
    result = await session.execute(
        update(OtpCode)
        .where(
            OtpCode.id == otp_id,
            OtpCode.used.is_(False),
            OtpCode.failed_attempts == seen_attempts,
        )
        .values(failed_attempts=new_count, used=new_count >= max_attempts)
    )
    await session.commit()
    return new_count if result.rowcount == 1 else None


async def consume_otp(session: AsyncSession, otp_id: int, user_id: int, seen_attempts: int) -> bool:
    """
    Mark the code used and retire every other unused code for the account,
    in one transaction. False means a concurrent request got there first.
    """
    result = await session.execute(
        update(OtpCode)
        .where(
            OtpCode.id == otp_id,
            OtpCode.used.is_(False),
            OtpCode.failed_attempts == seen_attempts,
        )
        .values(used=True)
    )
    if result.rowcount != 1:
        # End the transaction without expiring loaded instances
        await session.commit()
        return False

    await session.execute(
        update(OtpCode).where(OtpCode.user_id == user_id, OtpCode.used.is_(False)).values(used=True)
    )
    await session.commit()
    return True


async def purge_expired_otps(session: AsyncSession, now: datetime) -> int:
    result = await session.execute(delete(OtpCode).where(OtpCode.expires_at < now))
    await session.commit()
    return result.rowcount


# -------------------------------------------------------------------
# Rate-limit windows
# -------------------------------------------------------------------
async def get_live_window(
    session: AsyncSession, identifier: str, cutoff: datetime
) -> Optional[OtpRateLimit]:
    result = await session.execute(
        select(OtpRateLimit)
        .where(OtpRateLimit.identifier == identifier, OtpRateLimit.window_start > cutoff)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def increment_window(
    session: AsyncSession, identifier: str, now: datetime, cutoff: datetime
) -> int:
    """
    Atomic increment-or-create. A window older than cutoff restarts at 1.
    Returns the count after the increment.
    """
    dialect = session.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert

    stmt = insert_fn(OtpRateLimit).values(identifier=identifier, request_count=1, window_start=now)
    stale = OtpRateLimit.window_start <= cutoff
    stmt = stmt.on_conflict_do_update(
        index_elements=[OtpRateLimit.identifier],
        set_={
            "request_count": case((stale, 1), else_=OtpRateLimit.request_count + 1),
            "window_start": case((stale, stmt.excluded.window_start), else_=OtpRateLimit.window_start),
        },
    )
    await session.execute(stmt)
    await session.commit()

    count = await session.execute(
        select(OtpRateLimit.request_count).where(OtpRateLimit.identifier == identifier)
    )
    return int(count.scalar_one())


async def purge_rate_limits(session: AsyncSession, cutoff: datetime) -> int:
    result = await session.execute(delete(OtpRateLimit).where(OtpRateLimit.window_start < cutoff))
    await session.commit()
    return result.rowcount


# -------------------------------------------------------------------
# Refresh tokens
# -------------------------------------------------------------------
async def insert_refresh_token(
    session: AsyncSession,
    user_id: int,
    token_hash: str,
    expires_at: datetime,
    now: datetime,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> RefreshToken:
    rt = RefreshToken(
        user_id=user_id,
        token_hash=token_hash,
        expires_at=expires_at,
        created_at=now,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(rt)
    await session.commit()
    return rt


async def find_live_refresh_token(
    session: AsyncSession, token_hash: str, now: datetime
) -> Optional[RefreshToken]:
    result = await session.execute(
        select(RefreshToken)
        .where(
            RefreshToken.token_hash == token_hash,
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > now,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def revoke_refresh_token(session: AsyncSession, token_hash: str, now: datetime) -> int:
    result = await session.execute(
        update(RefreshToken)
        .where(RefreshToken.token_hash == token_hash, RefreshToken.revoked.is_(False))
        .values(revoked=True, revoked_at=now)
    )
    await session.commit()
    return result.rowcount


async def revoke_all_refresh_tokens(session: AsyncSession, user_id: int, now: datetime) -> int:
    result = await session.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
        .values(revoked=True, revoked_at=now)
    )
    await session.commit()
    return result.rowcount


async def count_active_refresh_tokens(session: AsyncSession, user_id: int, now: datetime) -> int:
    result = await session.execute(
        select(func.count(RefreshToken.id)).where(
            RefreshToken.user_id == user_id,
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > now,
        )
    )
    return int(result.scalar_one())


async def purge_expired_refresh_tokens(session: AsyncSession, now: datetime) -> int:
    result = await session.execute(delete(RefreshToken).where(RefreshToken.expires_at < now))
    await session.commit()
    return result.rowcount


async def purge_revoked_refresh_tokens(session: AsyncSession, cutoff: datetime) -> int:
    result = await session.execute(
        delete(RefreshToken).where(RefreshToken.revoked.is_(True), RefreshToken.revoked_at < cutoff)
    )
    await session.commit()
    return result.rowcount
