"""Document store contract and its SQLAlchemy implementation.

Documents are addressed by (container, partition key, id). Reads that may
return many documents are exposed as async iterators of pages; the
implementation paginates by keyset (``id > last_seen``) rather than by
offset, so a caller that deletes every document of a page before pulling
the next one still sees each remaining document exactly once.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from erasure.models.document import DocumentRecord
from erasure.storage.errors import DocumentNotFound

log = structlog.get_logger(__name__)


class DocumentStore(Protocol):
    """Read/write/delete/paginate contract over the document containers."""

    def pages(
        self,
        container: str,
        partition_key: str,
        *,
        model_id: str | None = None,
        page_size: int = 100,
    ) -> AsyncIterator[list[dict[str, Any]]]: ...

    async def find(
        self, container: str, partition_key: str, document_id: str
    ) -> dict[str, Any] | None: ...

    async def find_last_version(
        self, container: str, partition_key: str, model_id: str
    ) -> dict[str, Any] | None: ...

    async def upsert(
        self,
        container: str,
        partition_key: str,
        document: dict[str, Any],
        *,
        model_id: str | None = None,
        version: int | None = None,
    ) -> None: ...

    async def delete(self, container: str, partition_key: str, document_id: str) -> None: ...


class SqlDocumentStore:
    """DocumentStore backed by the ``documents`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def pages(
        self,
        container: str,
        partition_key: str,
        *,
        model_id: str | None = None,
        page_size: int = 100,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        last_id: str | None = None
        while True:
            stmt = select(DocumentRecord.body).where(
                DocumentRecord.container == container,
                DocumentRecord.partition_key == partition_key,
            )
            if model_id is not None:
                stmt = stmt.where(DocumentRecord.model_id == model_id)
            if last_id is not None:
                stmt = stmt.where(DocumentRecord.id > last_id)
            stmt = stmt.order_by(DocumentRecord.id).limit(page_size)

            async with self._session_factory() as session:
                page = [dict(body) for body in (await session.execute(stmt)).scalars()]

            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            last_id = page[-1]["id"]

    async def find(
        self, container: str, partition_key: str, document_id: str
    ) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            record = await session.get(DocumentRecord, (container, partition_key, document_id))
            return dict(record.body) if record is not None else None

    async def find_last_version(
        self, container: str, partition_key: str, model_id: str
    ) -> dict[str, Any] | None:
        stmt = (
            select(DocumentRecord.body)
            .where(
                DocumentRecord.container == container,
                DocumentRecord.partition_key == partition_key,
                DocumentRecord.model_id == model_id,
            )
            .order_by(DocumentRecord.version.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            body = (await session.execute(stmt)).scalar_one_or_none()
            return dict(body) if body is not None else None

    async def upsert(
        self,
        container: str,
        partition_key: str,
        document: dict[str, Any],
        *,
        model_id: str | None = None,
        version: int | None = None,
    ) -> None:
        async with self._session_factory() as session, session.begin():
            await session.merge(
                DocumentRecord(
                    container=container,
                    partition_key=partition_key,
                    id=document["id"],
                    model_id=model_id,
                    version=version,
                    body=document,
                )
            )

    async def delete(self, container: str, partition_key: str, document_id: str) -> None:
        stmt = delete(DocumentRecord).where(
            DocumentRecord.container == container,
            DocumentRecord.partition_key == partition_key,
            DocumentRecord.id == document_id,
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise DocumentNotFound(container, partition_key, document_id)
        log.debug("documents.deleted", container=container, document_id=document_id)
