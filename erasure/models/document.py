"""SQLAlchemy ORM model for the versioned document containers.

Every container (profiles, messages, message-status, notifications, ...) shares
one table. A row is addressed by (container, partition_key, id); versioned
models also carry the model_id/version pair so "all versions of X" and "last
version of X" are index lookups.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from erasure.database import Base


class DocumentRecord(Base):
    """One stored document (or one version of a versioned document)."""

    __tablename__ = "documents"
    __table_args__ = (
        Index("ix_documents_container_partition_id", "container", "partition_key", "id"),
        Index("ix_documents_container_model_version", "container", "model_id", "version"),
    )

    container: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Logical container, e.g. profiles or message-status",
    )
    partition_key: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="Partition the document lives in (fiscal code, message id, ...)",
    )
    id: Mapped[str] = mapped_column(
        String(256),
        primary_key=True,
        comment="Document id, unique within the partition",
    )
    model_id: Mapped[str | None] = mapped_column(
        String(256),
        nullable=True,
        comment="Identifier shared by all versions of a versioned model",
    )
    version: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Version number for versioned models",
    )
    body: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        comment="Document payload",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<DocumentRecord container={self.container} id={self.id}>"
