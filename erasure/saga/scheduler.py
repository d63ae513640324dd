"""
Polling scheduler that wakes due deletion sagas.

Every poll lists the instances whose ``wake_at`` has passed and steps each
one until it is suspended again (waiting on a timer or an abort) or
terminal.

Design:
- A single coroutine; instances of one batch are stepped sequentially
- Due instances are claimed under a lease, so several scheduler processes
  can share one saga table without stepping the same instance twice
- The clock is injected, so tests drive time explicitly
- One instance failing to step is logged and does not stop the loop
- stop() sets an event the loop waits on, so shutdown does not wait for a
  full poll interval
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from erasure.config import Settings, get_settings
from erasure.saga.host import SagaStore
from erasure.saga.orchestrator import DeletionSaga
from erasure.telemetry.logging import clear_context

log = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class SagaScheduler:
    """Steps due saga instances on a fixed poll interval.

    Example usage:
        scheduler = SagaScheduler(saga, store, poll_interval_seconds=30)
        await scheduler.run_forever()   # until scheduler.stop()
    """

    def __init__(
        self,
        saga: DeletionSaga,
        store: SagaStore,
        *,
        clock: Clock = utc_now,
        poll_interval_seconds: float = 30.0,
        batch_size: int = 20,
        lease_seconds: float = 300.0,
    ) -> None:
        self._saga = saga
        self._store = store
        self._clock = clock
        self._poll_interval = poll_interval_seconds
        self._batch_size = batch_size
        self._lease = timedelta(seconds=lease_seconds)
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        saga: DeletionSaga,
        store: SagaStore,
        settings: Settings | None = None,
        *,
        clock: Clock = utc_now,
    ) -> SagaScheduler:
        cfg = settings or get_settings()
        return cls(
            saga,
            store,
            clock=clock,
            poll_interval_seconds=cfg.scheduler_poll_interval_seconds,
            batch_size=cfg.scheduler_batch_size,
            lease_seconds=cfg.scheduler_lease_seconds,
        )

    async def run_once(self) -> int:
        """Step every instance due now. Returns how many were stepped."""
        now = self._clock()
        due = await self._store.claim_due(now, self._batch_size, self._lease)
        stepped = 0
        for instance in due:
            try:
                result = await self._saga.run_until_suspended(instance, self._clock())
            except Exception:
                log.exception("scheduler.step_failed", instance_id=instance.instance_id)
                clear_context()
                continue
            stepped += 1
            if result is not None:
                log.info(
                    "scheduler.instance_finished",
                    instance_id=instance.instance_id,
                    kind=result.kind,
                )
        if due:
            log.info("scheduler.poll_complete", due=len(due), stepped=stepped)
        return stepped

    async def run_forever(self) -> None:
        self._stop_event.clear()
        log.info(
            "scheduler.started",
            poll_interval_seconds=self._poll_interval,
            batch_size=self._batch_size,
        )
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                log.exception("scheduler.poll_failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                continue
        log.info("scheduler.stopped")

    def stop(self) -> None:
        self._stop_event.set()
