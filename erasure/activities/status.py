"""Activities reading and writing the status of user data processing requests."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

import structlog

from erasure.activities.base import (
    ActivityResultSuccess,
    GenericFailure,
    InvalidInputFailure,
    NotFoundFailure,
    QueryFailureResult,
    decode_input,
)
from erasure.failures import QueryFailure
from erasure.schemas import (
    CamelModel,
    FiscalCode,
    UserDataProcessing,
    UserDataProcessingChoice,
    UserDataProcessingStatus,
)
from erasure.status import FailedRequestIndex, StatusTracker

log = structlog.get_logger(__name__)


# ------------------------------------------------------------------ #
# SetUserDataProcessingStatus
# ------------------------------------------------------------------ #


class SetStatusInput(CamelModel):
    current_record: UserDataProcessing
    next_status: UserDataProcessingStatus
    failure_reason: str | None = None


class SetStatusSuccess(ActivityResultSuccess):
    value: UserDataProcessing


SetStatusResult = SetStatusSuccess | QueryFailureResult | InvalidInputFailure


class SetUserDataProcessingStatusActivity:
    name = "SetUserDataProcessingStatusActivity"

    def __init__(self, tracker: StatusTracker) -> None:
        self._tracker = tracker

    async def __call__(self, raw_input: Mapping[str, Any]) -> SetStatusResult:
        decoded = decode_input(self.name, SetStatusInput, raw_input)
        if isinstance(decoded, InvalidInputFailure):
            return decoded

        try:
            updated = await self._tracker.transition(
                decoded.current_record,
                decoded.next_status,
                decoded.failure_reason,
            )
        except QueryFailure as failure:
            log.error("activity.set_status.failed", reason=failure.reason)
            return QueryFailureResult(reason=failure.reason, query=failure.query)
        return SetStatusSuccess(value=updated)


# ------------------------------------------------------------------ #
# GetUserDataProcessing
# ------------------------------------------------------------------ #


class ChoiceAndFiscalCodeInput(CamelModel):
    choice: UserDataProcessingChoice
    fiscal_code: FiscalCode


class GetUserDataProcessingSuccess(ActivityResultSuccess):
    value: UserDataProcessing


GetUserDataProcessingResult = (
    GetUserDataProcessingSuccess | NotFoundFailure | QueryFailureResult | InvalidInputFailure
)


class GetUserDataProcessingActivity:
    """Return the current (latest) version of a request."""

    name = "GetUserDataProcessingActivity"

    def __init__(self, tracker: StatusTracker) -> None:
        self._tracker = tracker

    async def __call__(self, raw_input: Mapping[str, Any]) -> GetUserDataProcessingResult:
        decoded = decode_input(self.name, ChoiceAndFiscalCodeInput, raw_input)
        if isinstance(decoded, InvalidInputFailure):
            return decoded

        try:
            current = await self._tracker.get_latest(decoded.choice, decoded.fiscal_code)
        except QueryFailure as failure:
            return QueryFailureResult(
                reason=failure.reason, query="findOneUserDataProcessingById"
            )
        if current is None:
            return NotFoundFailure()
        return GetUserDataProcessingSuccess(value=current)


# ------------------------------------------------------------------ #
# IsFailedUserDataProcessing
# ------------------------------------------------------------------ #


class IsFailedSuccess(CamelModel):
    kind: Literal["SUCCESS"] = "SUCCESS"
    value: bool


IsFailedResult = IsFailedSuccess | GenericFailure | InvalidInputFailure


class IsFailedUserDataProcessingActivity:
    name = "IsFailedUserDataProcessingActivity"

    def __init__(self, failed_index: FailedRequestIndex) -> None:
        self._failed_index = failed_index

    async def __call__(self, raw_input: Mapping[str, Any]) -> IsFailedResult:
        decoded = decode_input(self.name, ChoiceAndFiscalCodeInput, raw_input)
        if isinstance(decoded, InvalidInputFailure):
            return decoded

        try:
            failed = await self._failed_index.is_failed(decoded.choice, decoded.fiscal_code)
        except Exception as exc:
            log.error("activity.is_failed.lookup_failed", error=str(exc))
            return GenericFailure(reason=f"ERROR|tableService.retrieveEntity|{exc}")
        return IsFailedSuccess(value=failed)
