"""The user data deletion saga.

A deletion request goes through these steps, each one a committed
transition of a persisted SagaInstance:

    RECEIVED                  read profile, preferences and failed flag,
                              compute the grace period
    WAITING_GRACE_PERIOD      race the grace timer against the abort signal
    LOCKING                   lock the user's sessions
    MARKING_WIP               request status -> WIP
    WAITING_PENDING_DOWNLOAD  postpone while a DOWNLOAD request is running
    DELETING                  back up then delete everything of the user
    NOTIFYING                 confirmation email (skipped for retried requests)
    UPDATING_FEED             record the unsubscription in the feed
    CLOSING                   request status -> CLOSED
    UNLOCKING                 unlock the user's sessions
    CLOSED                    outcome DELETED

An abort that arrives before the grace deadline moves the instance to
ABORTING, which closes the request (outcome ABORTED) without locking,
deleting or notifying.

Any failure after input validation ends in FAILED: the request status is
set to FAILED with a structured reason and the failure is returned. The
sessions locked before the failure stay locked.

Time always comes from the ``now`` argument; nothing here reads the clock.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from erasure.activities import (
    DeleteUserDataActivity,
    GetProfileActivity,
    GetServicesPreferencesActivity,
    GetUserDataProcessingActivity,
    IsFailedUserDataProcessingActivity,
    SendUserDataDeleteEmailActivity,
    SetUserDataProcessingStatusActivity,
    SetUserSessionLockActivity,
    UpdateSubscriptionsFeedActivity,
)
from erasure.activities.base import readable_report
from erasure.backup.writer import make_backup_folder
from erasure.config import Settings, get_settings
from erasure.saga.host import ActivityRunner, SagaInstance, SagaNotFound, SagaState, SagaStore
from erasure.saga.results import (
    ActivityFailure,
    InvalidInputResult,
    InvalidSagaInput,
    SagaFailure,
    SagaSuccess,
    SkippedResult,
    format_failure_reason,
    saga_result_adapter,
    to_failure_result,
)
from erasure.schemas import (
    ProcessableUserDataDelete,
    Profile,
    ServicePreference,
    UserDataProcessing,
    UserDataProcessingChoice,
    UserDataProcessingStatus,
)
from erasure.sessions import SessionLockAction
from erasure.subscription_feed import SubscriptionOperation
from erasure.telemetry.logging import bind_saga_context, clear_context

log = structlog.get_logger(__name__)

ABORT_EVENT = "user-data-processing-delete-abort"

_preferences_adapter = TypeAdapter(list[ServicePreference])


def make_instance_id(fiscal_code: str) -> str:
    return f"user-data-delete-{fiscal_code}"


def _kind_of(result: Any) -> str | None:
    if isinstance(result, str):
        return result
    return getattr(result, "kind", None)


def _epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _track(event: str, request: UserDataProcessing, **extra: Any) -> None:
    log.info(
        f"user_data_delete.{event}",
        user_data_processing_id=request.user_data_processing_id,
        **extra,
    )


class DeletionSaga:
    """Drives deletion requests through their persisted state machine.

    Args:
        runner: Dispatches activities, with or without retries
        store: Persists instances between steps
        grace_period: How long a request waits for an abort
        wait_for_download_interval: Delay between checks for a running DOWNLOAD
        instant_delete: Tells whether a fiscal code skips the grace period
    """

    def __init__(
        self,
        runner: ActivityRunner,
        store: SagaStore,
        *,
        grace_period: timedelta,
        wait_for_download_interval: timedelta = timedelta(hours=12),
        instant_delete: Callable[[str], bool] = lambda _: False,
    ) -> None:
        self._runner = runner
        self._store = store
        self._grace_period = grace_period
        self._wait_for_download_interval = wait_for_download_interval
        self._instant_delete = instant_delete
        self._handlers = {
            SagaState.RECEIVED: self._on_received,
            SagaState.WAITING_GRACE_PERIOD: self._on_waiting_grace_period,
            SagaState.LOCKING: self._on_locking,
            SagaState.MARKING_WIP: self._on_marking_wip,
            SagaState.WAITING_PENDING_DOWNLOAD: self._on_waiting_pending_download,
            SagaState.DELETING: self._on_deleting,
            SagaState.NOTIFYING: self._on_notifying,
            SagaState.UPDATING_FEED: self._on_updating_feed,
            SagaState.CLOSING: self._on_closing,
            SagaState.UNLOCKING: self._on_unlocking,
            SagaState.ABORTING: self._on_aborting,
        }

    @classmethod
    def from_settings(
        cls, runner: ActivityRunner, store: SagaStore, settings: Settings | None = None
    ) -> DeletionSaga:
        cfg = settings or get_settings()
        return cls(
            runner,
            store,
            grace_period=cfg.grace_period,
            wait_for_download_interval=cfg.wait_for_download_interval,
            instant_delete=cfg.is_user_eligible_for_instant_delete,
        )

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    async def start(
        self, raw_input: Any, now: datetime
    ) -> SagaInstance | InvalidInputResult | SkippedResult:
        """Validate a deletion request and persist a new RECEIVED instance.

        Invalid input is answered without persisting anything. A request for
        a user who already has a live saga is skipped; a terminal instance
        is replaced.
        """
        try:
            request = ProcessableUserDataDelete.validate_processable(raw_input)
        except (ValidationError, ValueError) as exc:
            reason = readable_report(exc)
            log.warning("saga.invalid_input", reason=reason)
            return InvalidInputResult(reason=reason)

        instance_id = make_instance_id(request.fiscal_code)
        existing = await self._store.get(instance_id)
        if existing is not None and not existing.is_terminal:
            log.info("saga.already_running", instance_id=instance_id, state=str(existing.state))
            return SkippedResult()

        instance = SagaInstance(
            instance_id=instance_id,
            state=SagaState.RECEIVED,
            input=request.model_dump(mode="json", by_alias=True),
            wake_at=now,
            created_at=now,
            updated_at=now,
        )
        await self._store.save(instance)
        _track("started", request, instance_id=instance_id)
        return instance

    async def raise_abort(self, instance_id: str, now: datetime) -> SagaInstance:
        """Deliver the abort signal to a saga.

        The abort only wins if it arrived before the grace deadline; a late
        abort is recorded and ignored.

        Raises:
            SagaNotFound: no instance with this id
        """
        instance = await self._store.request_abort(instance_id, now)
        log.info("saga.abort_requested", instance_id=instance_id, event=ABORT_EVENT)
        return instance

    async def load(self, instance_id: str) -> SagaInstance:
        instance = await self._store.get(instance_id)
        if instance is None:
            raise SagaNotFound(instance_id)
        return instance

    def result_of(self, instance: SagaInstance) -> SagaSuccess | SagaFailure | None:
        """The final result of a terminal instance, None while it is running."""
        if not instance.is_terminal:
            return None
        return saga_result_adapter.validate_python(instance.context["result"])

    # ------------------------------------------------------------------ #
    # Stepping
    # ------------------------------------------------------------------ #

    async def step(self, instance: SagaInstance, now: datetime) -> SagaSuccess | SagaFailure | None:
        """Run the step of the instance's current state and persist the outcome.

        Returns the final result when the instance reaches a terminal state.
        """
        if instance.is_terminal:
            return self.result_of(instance)

        handler = self._handlers[instance.state]
        request: UserDataProcessing | None = None
        bind_saga_context(instance.instance_id, instance.input.get("fiscalCode", ""))
        try:
            request = self._request_of(instance)
            log.debug("saga.step_started", state=str(instance.state))
            instance.attempts += 1
            await handler(instance, request, now)
        except Exception as exc:
            return await self._fail(instance, request, exc, now)
        finally:
            clear_context()

        instance.updated_at = now
        await self._store.save(instance)
        return self.result_of(instance)

    async def run_until_suspended(
        self, instance: SagaInstance, now: datetime
    ) -> SagaSuccess | SagaFailure | None:
        """Step the instance until it waits on a timer, an abort, or is terminal."""
        result = None
        while instance.is_due(now):
            result = await self.step(instance, now)
        return result

    def _request_of(self, instance: SagaInstance) -> UserDataProcessing:
        try:
            return UserDataProcessing.model_validate(instance.input)
        except ValidationError as exc:
            raise InvalidSagaInput(readable_report(exc)) from exc

    def _advance(self, instance: SagaInstance, state: SagaState, wake_at: datetime) -> None:
        log.info("saga.transition", from_state=str(instance.state), to_state=str(state))
        instance.state = state
        instance.wake_at = wake_at

    def _finish(self, instance: SagaInstance, result: SagaSuccess | SagaFailure) -> None:
        instance.wake_at = None
        instance.context["result"] = result.model_dump(mode="json")
        if isinstance(result, SagaSuccess):
            instance.state = SagaState.CLOSED
            instance.outcome = result.type
        else:
            instance.state = SagaState.FAILED

    def _profile_of(self, instance: SagaInstance) -> Profile:
        return Profile.model_validate(instance.context["profile"])

    # ------------------------------------------------------------------ #
    # State handlers
    # ------------------------------------------------------------------ #

    async def _on_received(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        profile = await self._get_profile(request.fiscal_code)
        preferences = await self._get_services_preferences(profile)
        is_failed = await self._is_failed(request)

        if is_failed or self._instant_delete(request.fiscal_code):
            grace_period = timedelta(0)
        else:
            grace_period = self._grace_period
        deadline = now + grace_period

        instance.context.update(
            profile=profile.model_dump(mode="json", by_alias=True),
            preferences=_preferences_adapter.dump_python(preferences, mode="json", by_alias=True),
            is_failed=is_failed,
            grace_deadline=deadline.isoformat(),
        )
        wake_at = now if instance.abort_requested_at is not None else deadline
        self._advance(instance, SagaState.WAITING_GRACE_PERIOD, wake_at)
        _track("paused", request, grace_period_days=grace_period / timedelta(days=1))

    async def _on_waiting_grace_period(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        deadline = datetime.fromisoformat(instance.context["grace_deadline"])
        aborted_at = instance.abort_requested_at
        if aborted_at is not None and aborted_at < deadline:
            log.info("saga.grace_period_aborted", aborted_at=aborted_at.isoformat())
            self._advance(instance, SagaState.ABORTING, now)
        elif now >= deadline:
            log.info("saga.grace_period_expired")
            self._advance(instance, SagaState.LOCKING, now)
        else:
            instance.wake_at = deadline

    async def _on_locking(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        await self._set_session_lock(SessionLockAction.LOCK, request.fiscal_code)
        self._advance(instance, SagaState.MARKING_WIP, now)

    async def _on_marking_wip(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        await self._set_status(request, UserDataProcessingStatus.WIP)
        self._advance(instance, SagaState.WAITING_PENDING_DOWNLOAD, now)

    async def _on_waiting_pending_download(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        if await self._has_pending_download(request.fiscal_code):
            wake_at = now + self._wait_for_download_interval
            instance.wake_at = wake_at
            _track("postponed", request, wake_at=wake_at.isoformat())
            return
        self._advance(instance, SagaState.DELETING, now)

    async def _on_deleting(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        if "backup_folder" not in instance.context:
            # Saved before the activity runs so a re-run reuses the same folder.
            instance.context["backup_folder"] = make_backup_folder(
                request.user_data_processing_id, now
            )
            await self._store.save(instance)

        await self._delete_user_data(request.fiscal_code, instance.context["backup_folder"])
        self._advance(instance, SagaState.NOTIFYING, now)

    async def _on_notifying(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        profile = self._profile_of(instance)
        if profile.can_receive_email and not instance.context.get("is_failed", False):
            await self._send_user_data_delete_email(profile)
        else:
            log.info("saga.email_skipped", is_failed=instance.context.get("is_failed", False))
        self._advance(instance, SagaState.UPDATING_FEED, now)

    async def _on_updating_feed(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        profile = self._profile_of(instance)
        preferences = _preferences_adapter.validate_python(instance.context.get("preferences", []))
        await self._update_subscriptions_feed(profile, preferences, now)
        self._advance(instance, SagaState.CLOSING, now)

    async def _on_closing(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        await self._set_status(request, UserDataProcessingStatus.CLOSED)
        self._advance(instance, SagaState.UNLOCKING, now)

    async def _on_unlocking(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        await self._set_session_lock(SessionLockAction.UNLOCK, request.fiscal_code)
        self._finish(instance, SagaSuccess(type="DELETED"))
        _track("deleted", request)

    async def _on_aborting(
        self, instance: SagaInstance, request: UserDataProcessing, now: datetime
    ) -> None:
        await self._set_status(request, UserDataProcessingStatus.CLOSED)
        self._finish(instance, SagaSuccess(type="ABORTED"))
        _track("aborted", request)

    async def _fail(
        self,
        instance: SagaInstance,
        request: UserDataProcessing | None,
        error: Exception,
        now: datetime,
    ) -> SagaFailure:
        failure = to_failure_result(error)
        failure_reason = format_failure_reason(failure)
        log.error(
            "user_data_delete.failed",
            instance_id=instance.instance_id,
            state=str(instance.state),
            failure_reason=failure_reason,
            exc_info=not isinstance(error, (ActivityFailure, InvalidSagaInput)),
        )

        instance.failure_reason = failure_reason
        instance.updated_at = now
        self._finish(instance, failure)
        try:
            if request is not None:
                await self._set_status(
                    request, UserDataProcessingStatus.FAILED, failure_reason=failure_reason
                )
        finally:
            await self._store.save(instance)
        return failure

    # ------------------------------------------------------------------ #
    # Activity calls
    # ------------------------------------------------------------------ #

    async def _get_profile(self, fiscal_code: str) -> Profile:
        name = GetProfileActivity.name
        result = await self._runner.call_activity(name, {"fiscalCode": fiscal_code})
        if _kind_of(result) != "SUCCESS":
            log.error("saga.get_profile_failed", kind=_kind_of(result))
            raise ActivityFailure(name, "GET_PROFILE_ACTIVITY_RESULT")
        return result.value

    async def _get_services_preferences(self, profile: Profile) -> list[ServicePreference]:
        if profile.is_legacy:
            return []
        result = await self._runner.call_activity_with_retry(
            GetServicesPreferencesActivity.name,
            {
                "fiscalCode": profile.fiscal_code,
                "settingsVersion": profile.service_preferences_settings.version,
            },
        )
        kind = _kind_of(result)
        if kind != "SUCCESS":
            raise RuntimeError(str(kind))
        return list(result.preferences)

    async def _is_failed(self, request: UserDataProcessing) -> bool:
        name = IsFailedUserDataProcessingActivity.name
        result = await self._runner.call_activity_with_retry(
            name, {"choice": request.choice, "fiscalCode": request.fiscal_code}
        )
        if _kind_of(result) != "SUCCESS":
            raise ActivityFailure(name, "IS_FAILED_USER_DATA_PROCESSING_ACTIVITY_RESULT")
        return bool(result.value)

    async def _set_session_lock(self, action: SessionLockAction, fiscal_code: str) -> None:
        name = SetUserSessionLockActivity.name
        result = await self._runner.call_activity_with_retry(
            name, {"action": action, "fiscalCode": fiscal_code}
        )
        if _kind_of(result) != "SUCCESS":
            log.error("saga.session_lock_failed", action=str(action), kind=_kind_of(result))
            raise ActivityFailure(name, "SET_USER_SESSION_LOCK", {"action": str(action)})

    async def _set_status(
        self,
        request: UserDataProcessing,
        next_status: UserDataProcessingStatus,
        *,
        failure_reason: str | None = None,
    ) -> UserDataProcessing:
        name = SetUserDataProcessingStatusActivity.name
        payload: dict[str, Any] = {
            "currentRecord": request.model_dump(mode="json", by_alias=True),
            "nextStatus": next_status,
        }
        if failure_reason is not None:
            payload["failureReason"] = failure_reason
        result = await self._runner.call_activity_with_retry(name, payload)
        if _kind_of(result) != "SUCCESS":
            raise ActivityFailure(
                name,
                "SET_USER_DATA_PROCESSING_STATUS_ACTIVITY_RESULT",
                {"status": str(next_status)},
            )
        return result.value

    async def _has_pending_download(self, fiscal_code: str) -> bool:
        name = GetUserDataProcessingActivity.name
        result = await self._runner.call_activity(
            name, {"choice": UserDataProcessingChoice.DOWNLOAD, "fiscalCode": fiscal_code}
        )
        match _kind_of(result):
            case "SUCCESS":
                return result.value.status in (
                    UserDataProcessingStatus.PENDING,
                    UserDataProcessingStatus.WIP,
                )
            case "NOT_FOUND_FAILURE":
                return False
            case "QUERY_FAILURE" | "INVALID_INPUT_FAILURE" as kind:
                raise ActivityFailure(name, kind)
            case _:
                raise ActivityFailure(name, "GET_USER_DATA_PROCESSING_ACTIVITY_RESULT")

    async def _delete_user_data(self, fiscal_code: str, backup_folder: str) -> None:
        name = DeleteUserDataActivity.name
        result = await self._runner.call_activity(
            name, {"fiscalCode": fiscal_code, "backupFolder": backup_folder}
        )
        if _kind_of(result) != "SUCCESS":
            log.error(
                "saga.delete_user_data_failed",
                kind=_kind_of(result),
                reason=getattr(result, "reason", None),
            )
            raise ActivityFailure(name, "DELETE_USER_DATA")

    async def _send_user_data_delete_email(self, profile: Profile) -> None:
        name = SendUserDataDeleteEmailActivity.name
        result = await self._runner.call_activity(
            name, {"fiscalCode": profile.fiscal_code, "toAddress": profile.email}
        )
        if _kind_of(result) != "SUCCESS":
            log.error("saga.send_email_failed", kind=_kind_of(result))
            raise ActivityFailure(name, "SEND_USER_DELETE_EMAIL_ACTIVITY_RESULT")

    async def _update_subscriptions_feed(
        self, profile: Profile, preferences: list[ServicePreference], now: datetime
    ) -> None:
        name = UpdateSubscriptionsFeedActivity.name
        payload: dict[str, Any] = {
            "fiscalCode": profile.fiscal_code,
            "operation": SubscriptionOperation.UNSUBSCRIBED,
            "subscriptionKind": "PROFILE",
            "updatedAt": _epoch_millis(now),
            "version": profile.version,
        }
        if not profile.is_legacy:
            payload["previousPreferences"] = _preferences_adapter.dump_python(
                preferences, mode="json", by_alias=True
            )
        result = await self._runner.call_activity_with_retry(name, payload)
        if result == "FAILURE":
            log.error("saga.update_subscriptions_feed_failed")
            raise ActivityFailure(name, "UPDATE_SUBSCRIPTIONS_FEED")


def describe(instance: SagaInstance) -> Mapping[str, Any]:
    """A JSON-friendly summary of an instance, as printed by the CLI."""
    return {
        "instanceId": instance.instance_id,
        "state": str(instance.state),
        "outcome": instance.outcome,
        "failureReason": instance.failure_reason,
        "wakeAt": instance.wake_at.isoformat() if instance.wake_at else None,
        "abortRequestedAt": (
            instance.abort_requested_at.isoformat() if instance.abort_requested_at else None
        ),
        "backupFolder": instance.context.get("backup_folder"),
        "attempts": instance.attempts,
    }
