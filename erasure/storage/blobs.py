"""Object store contract and its SQLAlchemy implementation."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from erasure.models.blob import BlobObject
from erasure.storage.errors import BlobNotFound


class BlobStore(Protocol):
    async def write(self, container: str, name: str, content: str) -> None:
        """Create or overwrite ``name`` in ``container``."""
        ...

    async def read(self, container: str, name: str) -> str | None: ...

    async def delete(self, container: str, name: str) -> None:
        """Delete ``name``; raises BlobNotFound when it does not exist."""
        ...


class SqlBlobStore:
    """BlobStore backed by the ``blob_objects`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def write(self, container: str, name: str, content: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.merge(BlobObject(container=container, name=name, content=content))

    async def read(self, container: str, name: str) -> str | None:
        async with self._session_factory() as session:
            blob = await session.get(BlobObject, (container, name))
            return blob.content if blob is not None else None

    async def delete(self, container: str, name: str) -> None:
        stmt = delete(BlobObject).where(
            BlobObject.container == container,
            BlobObject.name == name,
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise BlobNotFound(container, name)
