"""SQLAlchemy ORM model for persisted deletion saga instances.

A row is the committed state of one saga: which step it is in, the context
accumulated by earlier steps, and when the scheduler should wake it next.
Each committed transition overwrites the row; the step history lives in the
structured logs and in the versioned request status documents.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from erasure.database import Base


class SagaInstanceRecord(Base):
    """Persistent state of one deletion saga."""

    __tablename__ = "saga_instances"
    __table_args__ = (Index("ix_saga_instances_due", "state", "wake_at"),)

    instance_id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="user-data-delete-<fiscalCode>",
    )
    state: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Current saga state (RECEIVED ... CLOSED | FAILED)",
    )
    input: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        comment="Validated deletion request the saga was started with",
    )
    context: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Values produced by earlier steps (profile, preferences, ...)",
    )
    wake_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the scheduler should step this instance next",
    )
    abort_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Arrival time of the abort signal, if any",
    )
    outcome: Mapped[str | None] = mapped_column(
        String(16),
        nullable=True,
        comment="DELETED | ABORTED once CLOSED",
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Number of steps executed",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
