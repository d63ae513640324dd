"""Async SQLAlchemy engine for the erasure stores.

The document, blob, table and saga stores all share the session factory built
by ``init_db``. Each store call opens its own short transaction.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from erasure.config import Settings, get_settings

log = structlog.get_logger(__name__)

# One worker process steps a handful of sagas at a time.
_WORKER_POOL_OPTIONS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 5,
    "pool_pre_ping": True,
    "pool_recycle": 300,
}


class Base(DeclarativeBase):
    """Metadata shared by the erasure ORM records and the alembic migrations."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _redact(url: str) -> str:
    return url.rsplit("@", 1)[-1]


def init_db(settings: Settings | None = None, *, for_test: bool = False) -> None:
    """Build the engine and session factory.

    ``for_test`` swaps the worker pool for a NullPool so every test opens
    fresh connections on its own event loop.
    """
    global _engine, _session_factory
    cfg = settings or get_settings()
    pool_options: dict[str, Any] = {"poolclass": NullPool} if for_test else dict(_WORKER_POOL_OPTIONS)
    _engine = create_async_engine(cfg.database_url, echo=cfg.db_echo_sql, **pool_options)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    log.info("database.engine_ready", url=_redact(cfg.database_url), for_test=for_test)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    log.info("database.engine_disposed")


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("init_db() must run before the engine is used")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("init_db() must run before sessions are opened")
    return _session_factory


async def create_all() -> None:
    """Create the documents, blob_objects, table_entities and saga_instances tables."""
    import erasure.models  # noqa: F401  registers the tables

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("database.tables_created", tables=sorted(Base.metadata.tables))
