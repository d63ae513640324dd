"""Typed failures raised while reading, backing up or deleting user data.

Each failure carries a ``kind`` from a closed set so it can be turned into
an activity result (``to_result``) without inspecting the message. Anything
that is not a DataFailure reaching an activity boundary is unexpected and is
left to propagate so the retry policy engages.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class FailureKind(StrEnum):
    QUERY_FAILURE = "QUERY_FAILURE"
    BLOB_FAILURE = "BLOB_FAILURE"
    DELETE_FAILURE = "DELETE_FAILURE"


class DataFailure(Exception):
    """Base class for failures of the backup-then-delete traversal."""

    kind: FailureKind

    def __init__(self, reason: str, *, query: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.query = query

    def to_result(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": str(self.kind), "reason": self.reason}
        if self.query is not None:
            result["query"] = self.query
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}(reason={self.reason!r}, query={self.query!r})"


class QueryFailure(DataFailure):
    """A paginated read or a point read failed, or returned undecodable data."""

    kind = FailureKind.QUERY_FAILURE


class BlobFailure(DataFailure):
    """Writing a backup object failed; the source document was left in place."""

    kind = FailureKind.BLOB_FAILURE


class DeleteFailure(DataFailure):
    """Deleting a document (after its backup succeeded) failed."""

    kind = FailureKind.DELETE_FAILURE
