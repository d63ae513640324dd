"""Writes serialized entities to the backup container.

Every backup lives under a folder scoped to one deletion run,
``<requestId>-<epoch millis>``, as ``<folder>/<entity>/<id>.json``. Writes
overwrite, so re-running a step rewrites the same objects instead of
creating duplicates.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog
from pydantic_core import to_json

from erasure.failures import BlobFailure
from erasure.storage.blobs import BlobStore

log = structlog.get_logger(__name__)


class EntityFolder(StrEnum):
    PROFILE = "profile"
    SERVICE_SETTINGS = "service-settings"
    MESSAGE = "message"
    MESSAGE_CONTENT = "message-content"
    MESSAGE_STATUS = "message-status"
    MESSAGE_VIEW = "message-view"
    NOTIFICATION = "notification"
    NOTIFICATION_STATUS = "notification-status"
    ACCESS = "access"


def make_backup_folder(user_data_processing_id: str, now: datetime) -> str:
    return f"{user_data_processing_id}-{int(now.timestamp() * 1000)}"


class BackupWriter:
    """Serializes entities into one run's backup folder."""

    def __init__(self, blobs: BlobStore, container: str, folder: str) -> None:
        self._blobs = blobs
        self.container = container
        self.folder = folder

    def blob_name(self, entity: EntityFolder | str, name: str) -> str:
        return f"{self.folder}/{entity}/{name}.json"

    async def save(self, entity: EntityFolder | str, name: str, data: Any) -> str:
        """Serialize ``data`` as JSON and write it; returns the blob name.

        Pydantic models are dumped by alias, so the backup uses the same
        field names as the stored document. A str is taken as an already
        serialized JSON document and written verbatim.

        Raises:
            BlobFailure: the write did not succeed
        """
        if isinstance(data, str):
            return await self.save_raw(entity, name, data)
        try:
            content = to_json(data, by_alias=True).decode("utf-8")
        except Exception as exc:
            raise BlobFailure(f"Cannot serialize {entity}/{name}: {exc}") from exc
        return await self.save_raw(entity, name, content)

    async def save_raw(self, entity: EntityFolder | str, name: str, content: str) -> str:
        blob_name = self.blob_name(entity, name)
        try:
            await self._blobs.write(self.container, blob_name, content)
        except Exception as exc:
            log.error("backup.write_failed", blob_name=blob_name, error=str(exc))
            raise BlobFailure(f"{exc} - {blob_name}") from exc
        log.debug("backup.written", blob_name=blob_name)
        return blob_name
