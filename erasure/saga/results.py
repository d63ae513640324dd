"""Outcomes of a deletion saga run."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter

from erasure.schemas import CamelModel


class SagaSuccess(CamelModel):
    kind: Literal["SUCCESS"] = "SUCCESS"
    type: Literal["DELETED", "ABORTED"]


class InvalidInputResult(CamelModel):
    kind: Literal["INVALID_INPUT"] = "INVALID_INPUT"
    reason: str


class UnhandledFailureResult(CamelModel):
    kind: Literal["UNHANDLED"] = "UNHANDLED"
    reason: str


class ActivityFailureResult(CamelModel):
    kind: Literal["ACTIVITY"] = "ACTIVITY"
    activity_name: str
    reason: str
    extra: dict[str, Any] = Field(default_factory=dict)


class SkippedResult(CamelModel):
    """A live saga already exists for this user; nothing was started."""

    kind: Literal["SKIPPED"] = "SKIPPED"


SagaFailure = InvalidInputResult | UnhandledFailureResult | ActivityFailureResult


class InvalidSagaInput(ValueError):
    """A persisted instance whose input no longer decodes as a deletion request."""

    def to_result(self) -> InvalidInputResult:
        return InvalidInputResult(reason=str(self))


class ActivityFailure(Exception):
    """An activity returned something other than the success the saga needs."""

    def __init__(
        self,
        activity_name: str,
        reason: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"{activity_name} failed: {reason}")
        self.activity_name = activity_name
        self.reason = reason
        self.extra = extra or {}

    def to_result(self) -> ActivityFailureResult:
        return ActivityFailureResult(
            activity_name=self.activity_name,
            reason=self.reason,
            extra=self.extra,
        )


SagaResult = Annotated[
    SagaSuccess | InvalidInputResult | UnhandledFailureResult | ActivityFailureResult | SkippedResult,
    Field(discriminator="kind"),
]
saga_result_adapter: TypeAdapter[
    SagaSuccess | InvalidInputResult | UnhandledFailureResult | ActivityFailureResult | SkippedResult
] = TypeAdapter(SagaResult)


def to_failure_result(error: BaseException) -> SagaFailure:
    if isinstance(error, (ActivityFailure, InvalidSagaInput)):
        return error.to_result()
    return UnhandledFailureResult(reason=str(error) or type(error).__name__)


def format_failure_reason(failure: SagaFailure) -> str:
    """``ACTIVITY(<name>)|<reason>`` for activity failures, ``<KIND>|<reason>`` otherwise."""
    if isinstance(failure, ActivityFailureResult):
        return f"{failure.kind}({failure.activity_name})|{failure.reason}"
    return f"{failure.kind}|{failure.reason}"
