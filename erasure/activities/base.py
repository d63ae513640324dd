"""Shared activity plumbing: input decoding and result types.

Activities are the side-effecting steps the deletion saga schedules. Each
one takes a plain mapping as input, decodes it (unknown fields are dropped,
missing or invalid ones yield INVALID_INPUT_FAILURE before any side effect)
and returns a result model tagged by ``kind``.

Expected business outcomes (not found, invalid input, a rejected request)
are returned. Infrastructure faults are raised, so the host retry policy
can engage.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal, Protocol, TypeVar

import structlog
from pydantic import ValidationError

from erasure.schemas import CamelModel

log = structlog.get_logger(__name__)

InputT = TypeVar("InputT", bound=CamelModel)


class Activity(Protocol):
    name: str

    async def __call__(self, raw_input: Mapping[str, Any]) -> Any: ...


# ------------------------------------------------------------------ #
# Result models
# ------------------------------------------------------------------ #


class ActivityResultSuccess(CamelModel):
    kind: Literal["SUCCESS"] = "SUCCESS"


class InvalidInputFailure(CamelModel):
    kind: Literal["INVALID_INPUT_FAILURE"] = "INVALID_INPUT_FAILURE"
    reason: str


class QueryFailureResult(CamelModel):
    kind: Literal["QUERY_FAILURE"] = "QUERY_FAILURE"
    reason: str
    query: str | None = None


class BlobFailureResult(CamelModel):
    kind: Literal["BLOB_FAILURE"] = "BLOB_FAILURE"
    reason: str


class DeleteFailureResult(CamelModel):
    kind: Literal["DELETE_FAILURE"] = "DELETE_FAILURE"
    reason: str


class NotFoundFailure(CamelModel):
    kind: Literal["NOT_FOUND_FAILURE"] = "NOT_FOUND_FAILURE"


class GenericFailure(CamelModel):
    kind: Literal["FAILURE"] = "FAILURE"
    reason: str


class BadApiRequestFailure(CamelModel):
    kind: Literal["BAD_API_REQUEST_FAILURE"] = "BAD_API_REQUEST_FAILURE"
    reason: str


def readable_report(exc: ValidationError | ValueError) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        )
    return str(exc)


def decode_input(
    activity_name: str, model: type[InputT], raw_input: Mapping[str, Any]
) -> InputT | InvalidInputFailure:
    try:
        return model.model_validate(raw_input)
    except ValidationError as exc:
        reason = readable_report(exc)
        log.error("activity.invalid_input", activity=activity_name, reason=reason)
        return InvalidInputFailure(reason=f"{activity_name}|Cannot decode input|ERROR={reason}")
