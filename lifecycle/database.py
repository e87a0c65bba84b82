"""
Database engine and session management (SQLAlchemy 2.0 async).

All database access goes through async sessions. Engine components receive
an ``async_sessionmaker`` and open one session per unit of work, so that
commit/rollback boundaries line up with the atomicity each operation needs
(one request transition, one anonymization, one retention policy).

Design decisions:
- All models import Base from here to keep metadata centralized
- JSON columns use JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests)
- Timestamps always come back timezone-aware UTC, whatever the backend stores
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import JSON, DateTime, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from sqlalchemy.types import TypeDecorator

from lifecycle.config import Settings, get_settings

log = structlog.get_logger(__name__)

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware DateTime that normalises every value to UTC.

    SQLite drops tzinfo on the way back; PostgreSQL returns it in the session
    time zone. Both come out as UTC-aware datetimes here.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime bound to a UTC column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for all ORM models.

    Centralizing the metadata here ensures Alembic can discover all tables
    by importing this module.
    """

    type_annotation_map: dict[Any, Any] = {
        datetime: UTCDateTime(),
        dict[str, Any]: JSONType,
    }


def build_engine(
    database_url: str,
    *,
    echo: bool = False,
    null_pool: bool = False,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Uses NullPool for SQLite and when ``null_pool`` is set (tests, migrations)
    so every session gets its own connection.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if null_pool or database_url.startswith("sqlite"):
        kwargs["poolclass"] = NullPool
    else:
        kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
                "pool_recycle": 300,  # Recycle connections every 5 minutes
            }
        )
    engine = create_async_engine(database_url, **kwargs)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Avoid lazy-load issues after commit
        autoflush=True,
    )


# Module-level engine, initialized in lifespan or by the CLI
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(settings: Settings | None = None, *, null_pool: bool = False) -> None:
    """Initialize the database engine and session factory.

    Called once during application startup (or CLI bootstrap).
    """
    global _engine, _session_factory
    cfg = settings or get_settings()
    _engine = build_engine(cfg.database_url, echo=cfg.db_echo_sql, null_pool=null_pool)
    _session_factory = build_session_factory(_engine)
    log.info("database.initialized", url=cfg.database_url.split("@")[-1])


async def close_db() -> None:
    """Dispose the engine and release all connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        log.info("database.closed")
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the initialized session factory (raises if not initialized)."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
