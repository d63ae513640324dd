"""SQLAlchemy ORM model backing the object store (backups, message content)."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from erasure.database import Base


class BlobObject(Base):
    """A named UTF-8 object inside a container."""

    __tablename__ = "blob_objects"

    container: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(
        String(512),
        primary_key=True,
        comment="Slash separated object path, e.g. <folder>/profile/<id>.json",
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
