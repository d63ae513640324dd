"""Activity invocation and retry policy for the deletion saga.

The saga never calls a collaborator directly: it asks the ActivityRunner to
run a named activity, with or without the retry policy. Retries only apply
to raised exceptions (infrastructure faults). A typed failure returned by an
activity is handed back to the saga untouched and is never retried here.

When the policy gives up, ActivityRetriesExhausted is raised; it is the
one error type that tells the saga "transient fault, retries spent" apart
from a business failure.

Saga instances are persisted through a SagaStore: each committed step
overwrites the instance row, and the scheduler wakes rows whose ``wake_at``
has passed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from erasure.activities.base import Activity
from erasure.config import Settings, get_settings
from erasure.models.saga_instance import SagaInstanceRecord
from erasure.telemetry.logging import bind_activity_context

log = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class UnknownActivity(LookupError):
    pass


# Programming errors fail the same way on every attempt.
NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (UnknownActivity, TypeError, AttributeError, NameError)


class ActivityRetriesExhausted(Exception):
    """An activity kept raising until the retry policy gave up."""

    def __init__(self, activity_name: str, attempts: int, cause: BaseException) -> None:
        super().__init__(f"{activity_name} failed after {attempts} attempts: {cause}")
        self.activity_name = activity_name
        self.attempts = attempts
        self.cause = cause


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed first interval, capped attempts, mild exponential growth.

    The n-th retry waits ``first_interval * backoff_coefficient ** (n - 1)``.
    """

    first_interval: timedelta = timedelta(seconds=5)
    max_attempts: int = 10
    backoff_coefficient: float = 1.5
    max_interval: timedelta = timedelta(hours=1)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryPolicy:
        cfg = settings or get_settings()
        return cls(
            first_interval=timedelta(seconds=cfg.activity_retry_first_interval_seconds),
            max_attempts=cfg.activity_retry_max_attempts,
            backoff_coefficient=cfg.activity_retry_backoff_coefficient,
        )

    def retrying(self, *, sleep: SleepFn = asyncio.sleep) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(NON_RETRYABLE_ERRORS),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.first_interval.total_seconds(),
                exp_base=self.backoff_coefficient,
                max=self.max_interval.total_seconds(),
            ),
            sleep=sleep,
            before_sleep=_log_retry,
            reraise=True,
        )


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    log.warning(
        "activity.retrying",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(outcome.exception()) if outcome is not None else None,
    )


class ActivityRunner:
    """Dispatches named activities, optionally under the retry policy."""

    def __init__(
        self,
        activities: Iterable[Activity],
        retry_policy: RetryPolicy | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._activities: dict[str, Activity] = {activity.name: activity for activity in activities}
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    @property
    def activity_names(self) -> list[str]:
        return sorted(self._activities)

    async def call_activity(self, name: str, payload: Mapping[str, Any]) -> Any:
        """Run ``name`` once; exceptions propagate to the caller."""
        try:
            activity = self._activities[name]
        except KeyError:
            raise UnknownActivity(f"no activity registered under {name!r}") from None

        bind_activity_context(name)
        log.debug("activity.started", activity=name)
        result = await activity(payload)
        log.debug("activity.completed", activity=name, kind=getattr(result, "kind", result))
        return result

    async def call_activity_with_retry(self, name: str, payload: Mapping[str, Any]) -> Any:
        """Run ``name`` under the retry policy.

        Raises:
            ActivityRetriesExhausted: every attempt raised
        """
        retrying = self._retry_policy.retrying(sleep=self._sleep)
        try:
            return await retrying(self.call_activity, name, payload)
        except NON_RETRYABLE_ERRORS:
            raise
        except Exception as exc:
            attempts = retrying.statistics.get("attempt_number", self._retry_policy.max_attempts)
            log.error("activity.retries_exhausted", activity=name, attempts=attempts, error=str(exc))
            raise ActivityRetriesExhausted(name, attempts, exc) from exc


# ------------------------------------------------------------------ #
# Persisted saga state
# ------------------------------------------------------------------ #


class SagaState(StrEnum):
    """The step an instance runs when it is next woken."""

    RECEIVED = "RECEIVED"
    WAITING_GRACE_PERIOD = "WAITING_GRACE_PERIOD"
    LOCKING = "LOCKING"
    MARKING_WIP = "MARKING_WIP"
    WAITING_PENDING_DOWNLOAD = "WAITING_PENDING_DOWNLOAD"
    DELETING = "DELETING"
    NOTIFYING = "NOTIFYING"
    UPDATING_FEED = "UPDATING_FEED"
    CLOSING = "CLOSING"
    UNLOCKING = "UNLOCKING"
    ABORTING = "ABORTING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({SagaState.CLOSED, SagaState.FAILED})


class SagaNotFound(LookupError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(f"no saga instance {instance_id!r}")
        self.instance_id = instance_id


@dataclass
class SagaInstance:
    instance_id: str
    state: SagaState
    input: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    context: dict[str, Any] = field(default_factory=dict)
    wake_at: datetime | None = None
    abort_requested_at: datetime | None = None
    outcome: str | None = None
    failure_reason: str | None = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_due(self, now: datetime) -> bool:
        return not self.is_terminal and self.wake_at is not None and self.wake_at <= now


class SagaStore(Protocol):
    async def get(self, instance_id: str) -> SagaInstance | None: ...

    async def save(self, instance: SagaInstance) -> None: ...

    async def claim_due(self, now: datetime, limit: int, lease: timedelta) -> list[SagaInstance]: ...

    async def request_abort(self, instance_id: str, at: datetime) -> SagaInstance: ...


def _to_instance(record: SagaInstanceRecord) -> SagaInstance:
    return SagaInstance(
        instance_id=record.instance_id,
        state=SagaState(record.state),
        input=dict(record.input),
        context=dict(record.context or {}),
        wake_at=record.wake_at,
        abort_requested_at=record.abort_requested_at,
        outcome=record.outcome,
        failure_reason=record.failure_reason,
        attempts=record.attempts,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class SqlSagaStore:
    """SagaStore backed by the ``saga_instances`` table.

    ``save`` never clears an abort request recorded concurrently by
    ``request_abort``: the stored arrival time wins over a missing one, and
    an instance saved into the grace period with a pending abort is due
    immediately.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, instance_id: str) -> SagaInstance | None:
        async with self._session_factory() as session:
            record = await session.get(SagaInstanceRecord, instance_id)
            return _to_instance(record) if record is not None else None

    async def save(self, instance: SagaInstance) -> None:
        async with self._session_factory() as session, session.begin():
            record = await session.get(SagaInstanceRecord, instance.instance_id, with_for_update=True)
            if record is None:
                record = SagaInstanceRecord(instance_id=instance.instance_id, created_at=instance.created_at)
                session.add(record)

            abort_at = instance.abort_requested_at or record.abort_requested_at
            wake_at = instance.wake_at
            if (
                abort_at is not None
                and instance.state == SagaState.WAITING_GRACE_PERIOD
                and (wake_at is None or abort_at < wake_at)
            ):
                wake_at = abort_at

            record.state = instance.state.value
            record.input = instance.input
            record.context = instance.context
            record.wake_at = wake_at
            record.abort_requested_at = abort_at
            record.outcome = instance.outcome
            record.failure_reason = instance.failure_reason
            record.attempts = instance.attempts
            record.updated_at = instance.updated_at

        instance.abort_requested_at = abort_at
        instance.wake_at = wake_at

    async def claim_due(self, now: datetime, limit: int, lease: timedelta) -> list[SagaInstance]:
        """Return up to ``limit`` due instances, oldest first, leased until ``now + lease``.

        Rows are selected ``FOR UPDATE SKIP LOCKED`` and their ``wake_at`` moves to
        the end of the lease in the same transaction, so two schedulers never
        claim the same instance. Stepping saves the next ``wake_at``; an instance
        whose worker died mid-step becomes due again when the lease runs out.
        The returned instances carry the ``wake_at`` they were due at.
        """
        stmt = (
            select(SagaInstanceRecord)
            .where(
                SagaInstanceRecord.state.not_in([state.value for state in TERMINAL_STATES]),
                SagaInstanceRecord.wake_at <= now,
            )
            .order_by(SagaInstanceRecord.wake_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        async with self._session_factory() as session, session.begin():
            records = list((await session.execute(stmt)).scalars())
            claimed = [_to_instance(record) for record in records]
            for record in records:
                record.wake_at = now + lease
        return claimed

    async def request_abort(self, instance_id: str, at: datetime) -> SagaInstance:
        """Record the abort signal; only the first arrival is kept.

        Raises:
            SagaNotFound: no instance with this id
        """
        async with self._session_factory() as session, session.begin():
            record = await session.get(SagaInstanceRecord, instance_id, with_for_update=True)
            if record is None:
                raise SagaNotFound(instance_id)
            if record.abort_requested_at is None:
                record.abort_requested_at = at
                if record.state == SagaState.WAITING_GRACE_PERIOD:
                    record.wake_at = at
                record.updated_at = at
            instance = _to_instance(record)

        log.info("saga.abort_recorded", instance_id=instance_id, state=str(instance.state))
        return instance
