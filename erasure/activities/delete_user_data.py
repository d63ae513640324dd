"""Back up then delete every document, blob and lock row of a user."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from erasure.activities.base import (
    ActivityResultSuccess,
    BlobFailureResult,
    DeleteFailureResult,
    InvalidInputFailure,
    QueryFailureResult,
    decode_input,
)
from erasure.auth_locks import AuthenticationLockCleaner
from erasure.backup.pipelines import EntityPipelines
from erasure.backup.writer import BackupWriter
from erasure.failures import BlobFailure, DataFailure, DeleteFailure, QueryFailure
from erasure.schemas import CamelModel, FiscalCode, NonEmptyString
from erasure.storage.blobs import BlobStore
from erasure.storage.documents import DocumentStore
from erasure.storage.repositories import (
    MessageRepository,
    MessageStatusRepository,
    MessageViewRepository,
    NotificationRepository,
    NotificationStatusRepository,
    ProfileRepository,
    ServicePreferenceRepository,
)
from erasure.storage.tables import TableClient
from erasure.telemetry.logging import bind_activity_context

log = structlog.get_logger(__name__)


class DeleteUserDataInput(CamelModel):
    fiscal_code: FiscalCode
    backup_folder: NonEmptyString


DeleteUserDataResult = (
    ActivityResultSuccess
    | QueryFailureResult
    | BlobFailureResult
    | DeleteFailureResult
    | InvalidInputFailure
)


def to_failure_result(failure: DataFailure) -> QueryFailureResult | BlobFailureResult | DeleteFailureResult:
    match failure:
        case QueryFailure():
            return QueryFailureResult(reason=failure.reason, query=failure.query)
        case BlobFailure():
            return BlobFailureResult(reason=failure.reason)
        case DeleteFailure():
            return DeleteFailureResult(reason=failure.reason)
    raise TypeError(f"unknown failure kind: {failure.kind}")


class DeleteUserDataActivity:
    """Runs EntityPipelines into the backup folder chosen by the saga."""

    name = "DeleteUserDataActivity"

    def __init__(
        self,
        *,
        documents: DocumentStore,
        blobs: BlobStore,
        authentication_locks: TableClient,
        backup_container: str,
        message_content_container: str,
        page_size: int = 100,
    ) -> None:
        self._documents = documents
        self._blobs = blobs
        self._auth_locks = AuthenticationLockCleaner(authentication_locks)
        self._backup_container = backup_container
        self._message_content_container = message_content_container
        self._page_size = page_size

    def build_pipelines(self, backup_folder: str) -> EntityPipelines:
        kwargs = {"page_size": self._page_size}
        return EntityPipelines(
            writer=BackupWriter(self._blobs, self._backup_container, backup_folder),
            blobs=self._blobs,
            message_content_container=self._message_content_container,
            profiles=ProfileRepository(self._documents, **kwargs),
            messages=MessageRepository(self._documents, **kwargs),
            message_statuses=MessageStatusRepository(self._documents, **kwargs),
            message_views=MessageViewRepository(self._documents, **kwargs),
            notifications=NotificationRepository(self._documents, **kwargs),
            notification_statuses=NotificationStatusRepository(self._documents, **kwargs),
            service_preferences=ServicePreferenceRepository(self._documents, **kwargs),
            auth_locks=self._auth_locks,
        )

    async def __call__(self, raw_input: Mapping[str, Any]) -> DeleteUserDataResult:
        decoded = decode_input(self.name, DeleteUserDataInput, raw_input)
        if isinstance(decoded, InvalidInputFailure):
            return decoded

        bind_activity_context(self.name)
        pipelines = self.build_pipelines(decoded.backup_folder)
        try:
            summary = await pipelines.run(decoded.fiscal_code)
        except DataFailure as failure:
            log.error(
                "activity.delete_user_data.failed",
                kind=str(failure.kind),
                reason=failure.reason,
                query=failure.query,
            )
            return to_failure_result(failure)

        log.info(
            "activity.delete_user_data.completed",
            backup_folder=decoded.backup_folder,
            total=summary.total,
        )
        return ActivityResultSuccess()
