# core/database.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from settings import Settings


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    # Naive UTC everywhere: SQLite drops tzinfo on the way back out
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_engine(settings: Settings) -> AsyncEngine:
    engine = create_async_engine(settings.database_url, echo=settings.database_echo)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    # Import for side effects: registers every table on Base.metadata
    import models.employee  # noqa: F401
    import models.otp_code  # noqa: F401
    import models.rate_limit  # noqa: F401
    import models.refresh_token  # noqa: F401
    import models.user  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_async_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.sessionmaker() as session:
        yield session
