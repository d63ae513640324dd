"""Deletion saga: persisted state machine, activity host and scheduler."""

from erasure.saga.host import (
    ActivityRetriesExhausted,
    ActivityRunner,
    RetryPolicy,
    SagaInstance,
    SagaNotFound,
    SagaState,
    SagaStore,
    SqlSagaStore,
)
from erasure.saga.orchestrator import ABORT_EVENT, DeletionSaga, make_instance_id
from erasure.saga.results import (
    ActivityFailure,
    ActivityFailureResult,
    InvalidInputResult,
    InvalidSagaInput,
    SagaSuccess,
    SkippedResult,
    UnhandledFailureResult,
)
from erasure.saga.scheduler import SagaScheduler

__all__ = [
    "ABORT_EVENT",
    "ActivityFailure",
    "ActivityFailureResult",
    "ActivityRetriesExhausted",
    "ActivityRunner",
    "DeletionSaga",
    "InvalidInputResult",
    "InvalidSagaInput",
    "RetryPolicy",
    "SagaInstance",
    "SagaNotFound",
    "SagaScheduler",
    "SagaState",
    "SagaStore",
    "SagaSuccess",
    "SkippedResult",
    "SqlSagaStore",
    "UnhandledFailureResult",
    "make_instance_id",
]
