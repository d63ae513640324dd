"""Migrations for the erasure tables.

Online runs use the worker's own async engine settings; offline runs print
SQL for the same URL. Autogenerate only considers the erasure tables, so the
schema can live in a database shared with other services.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

import erasure.models  # noqa: F401  documents, blob_objects, table_entities, saga_instances
from erasure.config import get_settings
from erasure.database import Base

VERSION_TABLE = "erasure_alembic_version"

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)


def _include_name(name: str | None, type_: str, parent_names: object) -> bool:
    if type_ == "table":
        return name in Base.metadata.tables
    return True


def _configure(**kwargs: object) -> None:
    context.configure(
        target_metadata=Base.metadata,
        version_table=VERSION_TABLE,
        include_name=_include_name,
        compare_type=True,
        **kwargs,
    )


def _apply(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def _migrate(database_url: str) -> None:
    engine = create_async_engine(database_url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_apply)
    finally:
        await engine.dispose()


database_url = get_settings().database_url

if context.is_offline_mode():
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    asyncio.run(_migrate(database_url))
