"""Backup-then-delete traversal over paginated entities.

``backup_and_delete`` is the single primitive every pipeline is built on:

    for each page (read one at a time):
        for each item of the page:
            process its children          (optional, recursive pipelines)
            write its backup              -> BlobFailure stops everything
            delete it                     -> DeleteFailure stops everything

Guarantees:
- an item is deleted only after its backup write returned
- an item's children are fully processed before the item is backed up
- the first failure stops the traversal; later items are never touched
- a page is requested only once the previous one is fully processed

Items of a page are handled one after the other. Running them concurrently
would let item k+1 be deleted while item k is failing, which breaks the
"nothing after the first failure" guarantee the saga relies on.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, Awaitable, Callable, Sequence
from typing import Any, TypeVar

import structlog

from erasure.backup.writer import BackupWriter, EntityFolder
from erasure.failures import DataFailure, DeleteFailure, QueryFailure
from erasure.storage.errors import BlobNotFound, DocumentNotFound

log = structlog.get_logger(__name__)

T = TypeVar("T")


def _default_serialize(item: Any) -> Any:
    to_backup = getattr(item, "to_backup", None)
    return to_backup() if callable(to_backup) else item


async def backup_and_delete(
    pages: AsyncIterable[Sequence[T]],
    *,
    writer: BackupWriter,
    entity: EntityFolder,
    name_of: Callable[[T], str],
    delete_one: Callable[[T], Awaitable[None]],
    children: Callable[[T], Awaitable[Any]] | None = None,
    serialize: Callable[[T], Any] = _default_serialize,
) -> list[T]:
    """Back up and delete every item yielded by ``pages``.

    Args:
        pages: Async iterable of pages; an empty page ends the traversal
        writer: Destination of the backups
        entity: Backup folder of this entity type
        name_of: Backup object name (without extension) for an item
        delete_one: Deletes exactly the given item
        children: Processes the item's children before it is backed up
        serialize: Turns an item into the JSON-able value written as backup

    Returns:
        Every processed item, in traversal order

    Raises:
        QueryFailure: reading a page failed
        BlobFailure: writing a backup failed
        DeleteFailure: deleting an item failed
    """
    processed: list[T] = []
    iterator = pages.__aiter__()

    while True:
        try:
            page = await iterator.__anext__()
        except StopAsyncIteration:
            break
        except DataFailure:
            raise
        except Exception as exc:
            raise QueryFailure(f"Reading {entity} failed: {exc}") from exc

        if not page:
            break

        for item in page:
            if children is not None:
                await children(item)

            name = name_of(item)
            await writer.save(entity, name, serialize(item))

            try:
                await delete_one(item)
            except (DocumentNotFound, BlobNotFound):
                # Re-delivered step: the item went away after its backup was written.
                log.info("backup.already_deleted", entity=str(entity), item=name)
            except DataFailure:
                raise
            except Exception as exc:
                log.error("backup.delete_failed", entity=str(entity), item=name, error=str(exc))
                raise DeleteFailure(f"Deleting {entity} {name} failed: {exc}") from exc

            processed.append(item)

    log.debug("backup.pipeline_done", entity=str(entity), processed=len(processed))
    return processed


async def single_page(item: T | None) -> AsyncIterable[Sequence[T]]:
    """Adapt a point lookup (zero or one item) to the paginated contract."""
    if item is not None:
        yield [item]
