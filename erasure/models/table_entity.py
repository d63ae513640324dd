"""SQLAlchemy ORM model backing the partition/row key table store.

Hosts the authentication locks, the failed-request index and the
subscription feed, each under its own table_name.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from erasure.database import Base


class TableEntityRecord(Base):
    """A single table-store entity."""

    __tablename__ = "table_entities"

    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    partition_key: Mapped[str] = mapped_column(String(256), primary_key=True)
    row_key: Mapped[str] = mapped_column(String(256), primary_key=True)
    properties: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Entity properties other than the keys",
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
