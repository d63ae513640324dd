"""Request status tracking and the failed-request index.

StatusTracker appends a new version of the user data processing request for
every transition; the latest version is the current status. It also keeps
the failed-request index in step: a FAILED transition flags the request, a
CLOSED transition clears the flag.

FailedRequestIndex is a point-lookup side table, partitioned by choice and
keyed by fiscal code, consulted once per saga run to decide whether the
grace period can be skipped.
"""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from erasure.failures import QueryFailure
from erasure.schemas import (
    FailedRequestRecord,
    UserDataProcessing,
    UserDataProcessingChoice,
    UserDataProcessingStatus,
)
from erasure.storage.errors import EntityNotFound
from erasure.storage.repositories import UserDataProcessingRepository
from erasure.storage.tables import TableClient

log = structlog.get_logger(__name__)


class FailedRequestIndex:
    def __init__(self, table: TableClient) -> None:
        self._table = table

    async def mark_failed(
        self,
        choice: UserDataProcessingChoice,
        fiscal_code: str,
        reason: str | None = None,
    ) -> None:
        record = FailedRequestRecord(partition_key=choice, row_key=fiscal_code, reason=reason)
        await self._table.upsert_entity(record.model_dump(mode="json", by_alias=True, exclude_none=True))
        log.info("failed_index.marked", choice=str(choice), fiscal_code=fiscal_code)

    async def clear(self, choice: UserDataProcessingChoice, fiscal_code: str) -> None:
        """Remove the flag; a request that was never flagged is not an error."""
        try:
            await self._table.delete_entity(str(choice), fiscal_code)
        except EntityNotFound:
            return
        log.info("failed_index.cleared", choice=str(choice), fiscal_code=fiscal_code)

    async def is_failed(self, choice: UserDataProcessingChoice, fiscal_code: str) -> bool:
        return await self._table.get_entity(str(choice), fiscal_code) is not None


class StatusTracker:
    """Append-only status transitions of user data processing requests."""

    def __init__(
        self,
        repository: UserDataProcessingRepository,
        failed_index: FailedRequestIndex,
    ) -> None:
        self._repository = repository
        self._failed_index = failed_index

    async def get_latest(
        self, choice: UserDataProcessingChoice, fiscal_code: str
    ) -> UserDataProcessing | None:
        return await self._repository.find_last(choice, fiscal_code)

    async def submit(
        self,
        choice: UserDataProcessingChoice,
        fiscal_code: str,
        *,
        now: datetime | None = None,
    ) -> UserDataProcessing:
        """Store a fresh PENDING request, as the user-facing API does."""
        latest = await self._repository.find_last(choice, fiscal_code)
        request = UserDataProcessing.new(fiscal_code, choice, now=now)
        if latest is not None:
            request = request.model_copy(update={"version": latest.version + 1})
        await self._store(request)
        return request

    async def transition(
        self,
        current: UserDataProcessing,
        next_status: UserDataProcessingStatus,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> UserDataProcessing:
        """Store a new version of ``current`` carrying ``next_status``.

        The version number follows the latest stored version, not the one
        of ``current``, so a caller holding an old copy still appends.

        Raises:
            QueryFailure: reading or writing the request failed
        """
        latest = await self._repository.find_last(current.choice, current.fiscal_code)
        next_version = latest.version + 1 if latest is not None else current.version
        updated = current.model_copy(
            update={
                "status": next_status,
                "reason": reason,
                "updated_at": now or datetime.now(UTC),
                "version": next_version,
            }
        )
        await self._store(updated)

        if next_status == UserDataProcessingStatus.FAILED:
            await self._failed_index.mark_failed(current.choice, current.fiscal_code, reason)
        elif next_status == UserDataProcessingStatus.CLOSED:
            await self._failed_index.clear(current.choice, current.fiscal_code)

        log.info(
            "status.transitioned",
            request_id=updated.user_data_processing_id,
            status=str(next_status),
            version=next_version,
        )
        return updated

    async def _store(self, request: UserDataProcessing) -> None:
        try:
            await self._repository.upsert(request)
        except Exception as exc:
            raise QueryFailure(
                f"Cannot save user data processing: {exc}",
                query="userDataProcessing.createOrUpdateByNewOne",
            ) from exc
