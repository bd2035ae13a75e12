# taxflow/db.py
from __future__ import annotations

import os
import pathlib
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from sqlalchemy.types import TypeDecorator

from taxflow.config import settings

logger = logging.getLogger("uvicorn.error")

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamps are always stored and returned as aware UTC datetimes.
    SQLite drops tzinfo on the way in, so it is re-attached on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _sqlite_file(dsn: str) -> Optional[pathlib.Path]:
    if "///" not in dsn:
        return None
    tail = dsn.split("///", 1)[1]
    if not tail or ":memory:" in tail:
        return None
    return pathlib.Path(tail).resolve()


def _resolve_dsn() -> str:
    """Job ledger DSN: DATABASE_URL, else a SQLite file under ./data/."""
    dsn = settings.DATABASE_URL or os.getenv("DATABASE_URL") or "sqlite+aiosqlite:///./data/taxflow.db"

    if dsn.startswith("sqlite"):
        try:
            db_file = _sqlite_file(dsn)
            if db_file is not None:
                db_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("[DB] cannot create directory for %s: %s", dsn, e)

    return dsn


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use together with its sessionmaker."""
    global _engine, _sessionmaker
    if _engine is None:
        dsn = _resolve_dsn()
        if dsn.startswith("sqlite"):
            # One connection per checkout; keeps SQLite usable from several event loops
            _engine = create_async_engine(
                dsn,
                echo=False,
                poolclass=NullPool,
                connect_args={"timeout": 30},
            )
        else:
            _engine = create_async_engine(
                dsn,
                echo=False,
                pool_pre_ping=True,
            )
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("[DB] engine initialized for %s", dsn.split("@")[-1])
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def init_db() -> None:
    """
    Ensure the engine is created and all tables exist.
    """
    # Register mappers on Base.metadata before create_all
    from taxflow.models import jobs, integrations  # noqa: F401

    eng = get_engine()
    try:
        async with eng.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("[DB] initial connect failed: %s", e)
        raise


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
