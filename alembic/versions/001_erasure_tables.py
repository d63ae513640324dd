"""Create the document, blob, table-entity and saga tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Adds:
- documents: versioned document containers
  - (container, partition_key, id) PK
  - model_id / version for versioned models
  - body JSONB
- blob_objects: backup and message content objects
  - (container, name) PK
  - content TEXT
- table_entities: key-partitioned tables (locks, failed index, feed)
  - (table_name, partition_key, row_key) PK
  - properties JSONB
- saga_instances: persisted deletion sagas
  - instance_id PK, state, input/context JSONB, wake_at, abort_requested_at

Indexes:
- ix_documents_container_partition_id   (container, partition_key, id)
- ix_documents_container_model_version  (container, model_id, version)
- ix_saga_instances_due                 (state, wake_at)
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("container", sa.String(64), primary_key=True),
        sa.Column("partition_key", sa.String(128), primary_key=True),
        sa.Column("id", sa.String(256), primary_key=True),
        sa.Column("model_id", sa.String(256), nullable=True),
        sa.Column("version", sa.BigInteger(), nullable=True),
        sa.Column("body", postgresql.JSONB(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_documents_container_partition_id",
        "documents",
        ["container", "partition_key", "id"],
    )
    op.create_index(
        "ix_documents_container_model_version",
        "documents",
        ["container", "model_id", "version"],
    )

    op.create_table(
        "blob_objects",
        sa.Column("container", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(512), primary_key=True),
        sa.Column("content", sa.Text(), nullable=False),
        _timestamp("updated_at"),
    )

    op.create_table(
        "table_entities",
        sa.Column("table_name", sa.String(64), primary_key=True),
        sa.Column("partition_key", sa.String(256), primary_key=True),
        sa.Column("row_key", sa.String(256), primary_key=True),
        sa.Column(
            "properties",
            postgresql.JSONB(),
            nullable=False,
            server_default="{}",
        ),
        _timestamp("timestamp"),
    )

    op.create_table(
        "saga_instances",
        sa.Column("instance_id", sa.String(128), primary_key=True),
        sa.Column("state", sa.String(32), nullable=False),
        sa.Column("input", postgresql.JSONB(), nullable=False),
        sa.Column("context", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("wake_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("abort_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(16), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_saga_instances_due", "saga_instances", ["state", "wake_at"])


def downgrade() -> None:
    op.drop_index("ix_saga_instances_due", table_name="saga_instances")
    op.drop_table("saga_instances")
    op.drop_table("table_entities")
    op.drop_table("blob_objects")
    op.drop_index("ix_documents_container_model_version", table_name="documents")
    op.drop_index("ix_documents_container_partition_id", table_name="documents")
    op.drop_table("documents")
