"""Database initialization script.

Creates every erasure table from the ORM metadata. Use it for local
development and tests; deployed databases are migrated with alembic.

Usage:
    python -m scripts.init_db
    # or
    erasure init-db
"""

from __future__ import annotations

import asyncio

import structlog

from erasure.config import get_settings
from erasure.database import close_db, create_all, init_db
from erasure.telemetry.logging import configure_logging

log = structlog.get_logger(__name__)


async def main() -> None:
    settings = get_settings()
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    log.info("init_db.starting", db_url=settings.database_url.split("@")[-1])

    init_db(settings)
    try:
        await create_all()
    finally:
        await close_db()
    log.info("init_db.complete")


if __name__ == "__main__":
    asyncio.run(main())
