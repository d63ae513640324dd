"""Table store contract (partition key + row key) and its SQL implementation.

Entities travel as plain dicts with ``partitionKey`` and ``rowKey`` entries
next to their properties; listed entities also carry the server-side
``timestamp``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from erasure.models.table_entity import TableEntityRecord
from erasure.storage.errors import (
    EntityAlreadyExists,
    EntityNotFound,
    TableTransactionError,
)

MAX_TRANSACTION_ITEMS = 100
TRANSACTION_ACCEPTED = 202


class TransactionOperation(StrEnum):
    DELETE = "delete"
    UPSERT = "upsert"


@dataclass(frozen=True)
class TableAction:
    operation: TransactionOperation
    entity: dict[str, Any]


@dataclass(frozen=True)
class TransactionResponse:
    status: int


class TableClient(Protocol):
    table_name: str

    def list_entities(self, partition_key: str) -> AsyncIterator[dict[str, Any]]: ...

    async def get_entity(self, partition_key: str, row_key: str) -> dict[str, Any] | None: ...

    async def upsert_entity(self, entity: dict[str, Any]) -> None: ...

    async def create_entity(self, entity: dict[str, Any]) -> None:
        """Insert ``entity``; raises EntityAlreadyExists on key conflict."""
        ...

    async def delete_entity(self, partition_key: str, row_key: str) -> None:
        """Delete one entity; raises EntityNotFound when it does not exist."""
        ...

    async def submit_transaction(self, actions: Sequence[TableAction]) -> TransactionResponse:
        """Apply ``actions`` atomically within a single partition."""
        ...


def _split_keys(entity: dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
    properties = {
        key: value
        for key, value in entity.items()
        if key not in ("partitionKey", "rowKey", "timestamp")
    }
    return entity["partitionKey"], entity["rowKey"], properties


def _to_entity(record: TableEntityRecord) -> dict[str, Any]:
    return {
        **record.properties,
        "partitionKey": record.partition_key,
        "rowKey": record.row_key,
        "timestamp": record.timestamp,
    }


class SqlTableClient:
    """TableClient over the ``table_entities`` table, scoped to one table name."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        table_name: str,
        *,
        page_size: int = 1000,
    ) -> None:
        self._session_factory = session_factory
        self.table_name = table_name
        self._page_size = page_size

    async def list_entities(self, partition_key: str) -> AsyncIterator[dict[str, Any]]:
        last_row_key: str | None = None
        while True:
            stmt = select(TableEntityRecord).where(
                TableEntityRecord.table_name == self.table_name,
                TableEntityRecord.partition_key == partition_key,
            )
            if last_row_key is not None:
                stmt = stmt.where(TableEntityRecord.row_key > last_row_key)
            stmt = stmt.order_by(TableEntityRecord.row_key).limit(self._page_size)

            async with self._session_factory() as session:
                records = list((await session.execute(stmt)).scalars())

            for record in records:
                yield _to_entity(record)
            if len(records) < self._page_size:
                return
            last_row_key = records[-1].row_key

    async def get_entity(self, partition_key: str, row_key: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            record = await session.get(
                TableEntityRecord, (self.table_name, partition_key, row_key)
            )
            return _to_entity(record) if record is not None else None

    async def upsert_entity(self, entity: dict[str, Any]) -> None:
        partition_key, row_key, properties = _split_keys(entity)
        async with self._session_factory() as session, session.begin():
            await session.merge(
                TableEntityRecord(
                    table_name=self.table_name,
                    partition_key=partition_key,
                    row_key=row_key,
                    properties=properties,
                    timestamp=datetime.now(UTC),
                )
            )

    async def create_entity(self, entity: dict[str, Any]) -> None:
        partition_key, row_key, properties = _split_keys(entity)
        async with self._session_factory() as session, session.begin():
            existing = await session.get(
                TableEntityRecord, (self.table_name, partition_key, row_key)
            )
            if existing is not None:
                raise EntityAlreadyExists(self.table_name, partition_key, row_key)
            session.add(
                TableEntityRecord(
                    table_name=self.table_name,
                    partition_key=partition_key,
                    row_key=row_key,
                    properties=properties,
                )
            )

    async def delete_entity(self, partition_key: str, row_key: str) -> None:
        async with self._session_factory() as session, session.begin():
            await self._delete(session, partition_key, row_key)

    async def submit_transaction(self, actions: Sequence[TableAction]) -> TransactionResponse:
        if len(actions) > MAX_TRANSACTION_ITEMS:
            raise TableTransactionError(
                400,
                f"a transaction accepts at most {MAX_TRANSACTION_ITEMS} actions, got {len(actions)}",
            )
        if len({action.entity["partitionKey"] for action in actions}) > 1:
            raise TableTransactionError(400, "all actions must target the same partition")

        try:
            async with self._session_factory() as session, session.begin():
                for action in actions:
                    partition_key, row_key, properties = _split_keys(action.entity)
                    if action.operation == TransactionOperation.DELETE:
                        await self._delete(session, partition_key, row_key)
                    else:
                        await session.merge(
                            TableEntityRecord(
                                table_name=self.table_name,
                                partition_key=partition_key,
                                row_key=row_key,
                                properties=properties,
                                timestamp=datetime.now(UTC),
                            )
                        )
        except EntityNotFound as exc:
            raise TableTransactionError(exc.status_code, str(exc)) from exc
        return TransactionResponse(status=TRANSACTION_ACCEPTED)

    async def _delete(self, session: AsyncSession, partition_key: str, row_key: str) -> None:
        result = await session.execute(
            delete(TableEntityRecord).where(
                TableEntityRecord.table_name == self.table_name,
                TableEntityRecord.partition_key == partition_key,
                TableEntityRecord.row_key == row_key,
            )
        )
        if result.rowcount == 0:
            raise EntityNotFound(self.table_name, partition_key, row_key)
