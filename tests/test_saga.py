"""Tests for the deletion saga state machine.

Activities are stubbed; the saga runs against the in-memory saga store and
time is driven explicitly.

Coverage:
  - start: invalid input, already running, restart after completion
  - grace period: regular, zero for failed requests and instant-delete users
  - abort before the deadline, abort at the deadline
  - postponement while a DOWNLOAD request is pending
  - email and subscription feed payloads
  - failures: reason format, FAILED status write, sessions stay locked
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pytest

from erasure.activities.base import (
    ActivityResultSuccess,
    BadApiRequestFailure,
    DeleteFailureResult,
    NotFoundFailure,
    QueryFailureResult,
)
from erasure.activities.profile import GetProfileSuccess, GetServicesPreferencesSuccess
from erasure.activities.status import (
    GetUserDataProcessingSuccess,
    IsFailedSuccess,
    SetStatusSuccess,
)
from erasure.backup.writer import make_backup_folder
from erasure.saga import (
    ActivityFailure,
    ActivityFailureResult,
    ActivityRunner,
    DeletionSaga,
    InvalidInputResult,
    RetryPolicy,
    SagaInstance,
    SagaNotFound,
    SagaState,
    SagaSuccess,
    SkippedResult,
    UnhandledFailureResult,
    make_instance_id,
)
from erasure.saga.orchestrator import describe
from erasure.schemas import Profile, ServicePreference, UserDataProcessing
from tests.conftest import (
    FISCAL_CODE,
    make_profile,
    make_service_preference,
    make_user_data_processing,
)

GET_PROFILE = "GetProfileActivity"
GET_PREFERENCES = "GetServicesPreferencesActivity"
IS_FAILED = "IsFailedUserDataProcessingActivity"
GET_REQUEST = "GetUserDataProcessingActivity"
SET_STATUS = "SetUserDataProcessingStatusActivity"
SESSION_LOCK = "SetUserSessionLockActivity"
DELETE_DATA = "DeleteUserDataActivity"
SEND_EMAIL = "SendUserDataDeleteEmailActivity"
UPDATE_FEED = "UpdateSubscriptionsFeedActivity"

GRACE = timedelta(days=6)
INSTANCE_ID = make_instance_id(FISCAL_CODE)


class StubActivity:
    """Records its payloads; answers from a queue, the last answer repeats."""

    def __init__(self, name: str, calls: list[str], *answers: Any) -> None:
        self.name = name
        self._calls = calls
        self._answers = list(answers)
        self.payloads: list[dict[str, Any]] = []

    def answer(self, *answers: Any) -> None:
        self._answers = list(answers)

    async def __call__(self, payload: dict[str, Any]) -> Any:
        self._calls.append(self.name)
        self.payloads.append(dict(payload))
        answer = self._answers.pop(0) if len(self._answers) > 1 else self._answers[0]
        if callable(answer):
            answer = answer(payload)
        if isinstance(answer, Exception):
            raise answer
        return answer


def _echo_status(payload: dict[str, Any]) -> SetStatusSuccess:
    current = UserDataProcessing.model_validate(payload["currentRecord"])
    return SetStatusSuccess(
        value=current.model_copy(update={"status": payload["nextStatus"], "version": current.version + 1})
    )


def _profile(**kwargs: Any) -> GetProfileSuccess:
    return GetProfileSuccess(value=Profile.model_validate(make_profile(**kwargs)))


@pytest.fixture
def calls() -> list[str]:
    return []


@pytest.fixture
def stubs(calls) -> dict[str, StubActivity]:
    return {
        GET_PROFILE: StubActivity(GET_PROFILE, calls, _profile(version=4)),
        GET_PREFERENCES: StubActivity(GET_PREFERENCES, calls, GetServicesPreferencesSuccess(preferences=[])),
        IS_FAILED: StubActivity(IS_FAILED, calls, IsFailedSuccess(value=False)),
        GET_REQUEST: StubActivity(GET_REQUEST, calls, NotFoundFailure()),
        SET_STATUS: StubActivity(SET_STATUS, calls, _echo_status),
        SESSION_LOCK: StubActivity(SESSION_LOCK, calls, ActivityResultSuccess()),
        DELETE_DATA: StubActivity(DELETE_DATA, calls, ActivityResultSuccess()),
        SEND_EMAIL: StubActivity(SEND_EMAIL, calls, ActivityResultSuccess()),
        UPDATE_FEED: StubActivity(UPDATE_FEED, calls, "SUCCESS"),
    }


@pytest.fixture
def instant_users() -> set[str]:
    return set()


@pytest.fixture
def saga(stubs, saga_store, instant_users) -> DeletionSaga:
    async def no_sleep(_: float) -> None:
        return None

    runner = ActivityRunner(stubs.values(), RetryPolicy(max_attempts=3), sleep=no_sleep)
    return DeletionSaga(
        runner,
        saga_store,
        grace_period=GRACE,
        wait_for_download_interval=timedelta(hours=12),
        instant_delete=instant_users.__contains__,
    )


def _statuses(stubs: dict[str, StubActivity]) -> list[str]:
    return [payload["nextStatus"] for payload in stubs[SET_STATUS].payloads]


def _lock_actions(stubs: dict[str, StubActivity]) -> list[str]:
    return [payload["action"] for payload in stubs[SESSION_LOCK].payloads]


async def _start(saga: DeletionSaga, now: datetime) -> SagaInstance:
    instance = await saga.start(make_user_data_processing(), now)
    assert isinstance(instance, SagaInstance)
    return instance


async def _run_to_grace(saga: DeletionSaga, now: datetime) -> SagaInstance:
    instance = await _start(saga, now)
    assert await saga.run_until_suspended(instance, now) is None
    return instance


# ------------------------------------------------------------------ #
# Start
# ------------------------------------------------------------------ #


class TestStart:
    @pytest.mark.asyncio
    async def test_persists_received_instance(self, saga, saga_store, now):
        instance = await _start(saga, now)

        assert instance.instance_id == f"user-data-delete-{FISCAL_CODE}"
        assert instance.state == SagaState.RECEIVED
        assert instance.wake_at == now
        assert saga_store.instances[INSTANCE_ID].input["fiscalCode"] == FISCAL_CODE

    @pytest.mark.parametrize(
        "raw",
        [
            make_user_data_processing(status="WIP"),
            make_user_data_processing(choice="DOWNLOAD"),
            {"fiscalCode": FISCAL_CODE},
            {**make_user_data_processing(), "fiscalCode": "not-a-fiscal-code"},
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_input_is_rejected_without_side_effects(self, saga, saga_store, calls, now, raw):
        result = await saga.start(raw, now)

        assert isinstance(result, InvalidInputResult)
        assert result.kind == "INVALID_INPUT"
        assert saga_store.instances == {}
        assert calls == []

    @pytest.mark.asyncio
    async def test_second_start_while_running_is_skipped(self, saga, now):
        await _run_to_grace(saga, now)

        result = await saga.start(make_user_data_processing(), now + timedelta(hours=1))

        assert isinstance(result, SkippedResult)

    @pytest.mark.asyncio
    async def test_start_after_completed_saga_creates_new_instance(self, saga, instant_users, now):
        instant_users.add(FISCAL_CODE)
        first = await _start(saga, now)
        await saga.run_until_suspended(first, now)
        assert first.state == SagaState.CLOSED

        second = await saga.start(make_user_data_processing(version=3), now + timedelta(days=1))

        assert isinstance(second, SagaInstance)
        assert second.state == SagaState.RECEIVED
        assert second.attempts == 0


# ------------------------------------------------------------------ #
# Grace period
# ------------------------------------------------------------------ #


class TestGracePeriod:
    @pytest.mark.asyncio
    async def test_waits_for_the_configured_delay(self, saga, saga_store, calls, now):
        instance = await _run_to_grace(saga, now)

        assert instance.state == SagaState.WAITING_GRACE_PERIOD
        assert instance.wake_at == now + GRACE
        assert calls == [GET_PROFILE, IS_FAILED]
        assert saga_store.instances[INSTANCE_ID].context["grace_deadline"] == (now + GRACE).isoformat()

    @pytest.mark.asyncio
    async def test_nothing_happens_before_the_deadline(self, saga, calls, now):
        instance = await _run_to_grace(saga, now)
        calls.clear()

        result = await saga.run_until_suspended(instance, now + timedelta(days=5))

        assert result is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_full_deletion_after_the_deadline(self, saga, stubs, calls, saga_store, now):
        instance = await _run_to_grace(saga, now)
        calls.clear()

        result = await saga.run_until_suspended(instance, now + GRACE)

        assert result == SagaSuccess(type="DELETED")
        assert calls == [
            SESSION_LOCK,
            SET_STATUS,
            GET_REQUEST,
            DELETE_DATA,
            SEND_EMAIL,
            UPDATE_FEED,
            SET_STATUS,
            SESSION_LOCK,
        ]
        assert _statuses(stubs) == ["WIP", "CLOSED"]
        assert _lock_actions(stubs) == ["LOCK", "UNLOCK"]
        stored = saga_store.instances[INSTANCE_ID]
        assert stored.state == SagaState.CLOSED
        assert stored.outcome == "DELETED"
        assert stored.wake_at is None

    @pytest.mark.asyncio
    async def test_failed_request_has_no_grace_period_and_no_email(self, saga, stubs, calls, now):
        stubs[IS_FAILED].answer(IsFailedSuccess(value=True))
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert result == SagaSuccess(type="DELETED")
        assert SEND_EMAIL not in calls

    @pytest.mark.asyncio
    async def test_instant_delete_user_has_no_grace_period(self, saga, instant_users, calls, now):
        instant_users.add(FISCAL_CODE)
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert result == SagaSuccess(type="DELETED")
        assert SEND_EMAIL in calls


# ------------------------------------------------------------------ #
# Abort
# ------------------------------------------------------------------ #


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_during_grace_period_closes_without_deleting(self, saga, stubs, calls, now):
        await _run_to_grace(saga, now)
        calls.clear()

        await saga.raise_abort(INSTANCE_ID, now + timedelta(days=2))
        instance = await saga.load(INSTANCE_ID)
        assert instance.wake_at == now + timedelta(days=2)
        result = await saga.run_until_suspended(instance, now + timedelta(days=2))

        assert result == SagaSuccess(type="ABORTED")
        assert calls == [SET_STATUS]
        assert _statuses(stubs) == ["CLOSED"]
        assert instance.state == SagaState.CLOSED
        assert instance.outcome == "ABORTED"

    @pytest.mark.asyncio
    async def test_abort_before_first_step_wins(self, saga, calls, now):
        await _start(saga, now)

        await saga.raise_abort(INSTANCE_ID, now)
        instance = await saga.load(INSTANCE_ID)
        result = await saga.run_until_suspended(instance, now)

        assert result == SagaSuccess(type="ABORTED")
        assert SESSION_LOCK not in calls
        assert DELETE_DATA not in calls

    @pytest.mark.asyncio
    async def test_abort_at_the_deadline_is_ignored(self, saga, now):
        await _run_to_grace(saga, now)

        await saga.raise_abort(INSTANCE_ID, now + GRACE)
        instance = await saga.load(INSTANCE_ID)
        result = await saga.run_until_suspended(instance, now + GRACE)

        assert result == SagaSuccess(type="DELETED")

    @pytest.mark.asyncio
    async def test_abort_of_unknown_saga(self, saga, now):
        with pytest.raises(SagaNotFound):
            await saga.raise_abort(INSTANCE_ID, now)


# ------------------------------------------------------------------ #
# Pending download, notification and feed
# ------------------------------------------------------------------ #


class TestDeletionSteps:
    @pytest.mark.asyncio
    async def test_pending_download_postpones_deletion(self, saga, stubs, calls, instant_users, now):
        instant_users.add(FISCAL_CODE)
        download = UserDataProcessing.model_validate(make_user_data_processing(choice="DOWNLOAD", status="WIP"))
        stubs[GET_REQUEST].answer(GetUserDataProcessingSuccess(value=download))
        instance = await _start(saga, now)

        assert await saga.run_until_suspended(instance, now) is None
        assert instance.state == SagaState.WAITING_PENDING_DOWNLOAD
        assert instance.wake_at == now + timedelta(hours=12)
        assert DELETE_DATA not in calls

        stubs[GET_REQUEST].answer(
            GetUserDataProcessingSuccess(value=download.model_copy(update={"status": "CLOSED"}))
        )
        result = await saga.run_until_suspended(instance, now + timedelta(hours=12))

        assert result == SagaSuccess(type="DELETED")
        assert _statuses(stubs) == ["WIP", "CLOSED"]
        assert stubs[GET_REQUEST].payloads[0] == {"choice": "DOWNLOAD", "fiscalCode": FISCAL_CODE}

    @pytest.mark.asyncio
    async def test_backup_folder_is_chosen_once_and_passed_to_delete(self, saga, stubs, instant_users, now):
        instant_users.add(FISCAL_CODE)
        instance = await _start(saga, now)

        await saga.run_until_suspended(instance, now)

        expected = make_backup_folder(f"{FISCAL_CODE}-DELETE", now)
        assert instance.context["backup_folder"] == expected
        assert stubs[DELETE_DATA].payloads == [{"fiscalCode": FISCAL_CODE, "backupFolder": expected}]

    @pytest.mark.asyncio
    async def test_no_email_without_validated_address(self, saga, stubs, calls, instant_users, now):
        instant_users.add(FISCAL_CODE)
        stubs[GET_PROFILE].answer(_profile(validated=False))
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert result == SagaSuccess(type="DELETED")
        assert SEND_EMAIL not in calls

    @pytest.mark.asyncio
    async def test_email_is_sent_to_profile_address(self, saga, stubs, instant_users, now):
        instant_users.add(FISCAL_CODE)
        instance = await _start(saga, now)

        await saga.run_until_suspended(instance, now)

        assert stubs[SEND_EMAIL].payloads == [
            {"fiscalCode": FISCAL_CODE, "toAddress": "mario.rossi@example.com"}
        ]

    @pytest.mark.asyncio
    async def test_legacy_profile_feed_event_has_no_previous_preferences(self, saga, stubs, calls, instant_users, now):
        instant_users.add(FISCAL_CODE)
        instance = await _start(saga, now)

        await saga.run_until_suspended(instance, now)

        assert GET_PREFERENCES not in calls
        assert stubs[UPDATE_FEED].payloads == [
            {
                "fiscalCode": FISCAL_CODE,
                "operation": "UNSUBSCRIBED",
                "subscriptionKind": "PROFILE",
                "updatedAt": int(now.timestamp() * 1000),
                "version": 4,
            }
        ]

    @pytest.mark.asyncio
    async def test_non_legacy_profile_feed_event_retracts_preferences(self, saga, stubs, instant_users, now):
        instant_users.add(FISCAL_CODE)
        stubs[GET_PROFILE].answer(_profile(version=2, mode="AUTO", settings_version=1))
        preference = ServicePreference.model_validate(make_service_preference("agid", 1))
        stubs[GET_PREFERENCES].answer(GetServicesPreferencesSuccess(preferences=[preference]))
        instance = await _start(saga, now)

        await saga.run_until_suspended(instance, now)

        assert stubs[GET_PREFERENCES].payloads == [{"fiscalCode": FISCAL_CODE, "settingsVersion": 1}]
        feed_payload = stubs[UPDATE_FEED].payloads[0]
        assert feed_payload["version"] == 2
        assert [item["serviceId"] for item in feed_payload["previousPreferences"]] == ["agid"]


# ------------------------------------------------------------------ #
# Failures
# ------------------------------------------------------------------ #


def _last_status(stubs: dict[str, StubActivity]) -> dict[str, Any]:
    return stubs[SET_STATUS].payloads[-1]


class TestFailures:
    @pytest.mark.asyncio
    async def test_delete_failure_marks_request_failed(self, saga, stubs, saga_store, instant_users, now):
        instant_users.add(FISCAL_CODE)
        stubs[DELETE_DATA].answer(DeleteFailureResult(reason="conflict"))
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert result == ActivityFailureResult(
            activity_name=DELETE_DATA, reason="DELETE_USER_DATA"
        )
        assert _last_status(stubs)["nextStatus"] == "FAILED"
        assert _last_status(stubs)["failureReason"] == "ACTIVITY(DeleteUserDataActivity)|DELETE_USER_DATA"
        stored = saga_store.instances[INSTANCE_ID]
        assert stored.state == SagaState.FAILED
        assert stored.failure_reason == "ACTIVITY(DeleteUserDataActivity)|DELETE_USER_DATA"

    @pytest.mark.asyncio
    async def test_sessions_stay_locked_after_failure(self, saga, stubs, instant_users, now):
        instant_users.add(FISCAL_CODE)
        stubs[DELETE_DATA].answer(DeleteFailureResult(reason="conflict"))
        instance = await _start(saga, now)

        await saga.run_until_suspended(instance, now)

        assert _lock_actions(stubs) == ["LOCK"]

    @pytest.mark.asyncio
    async def test_profile_not_found(self, saga, stubs, now):
        stubs[GET_PROFILE].answer(NotFoundFailure())
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert result.kind == "ACTIVITY"
        assert result.reason == "GET_PROFILE_ACTIVITY_RESULT"
        assert _statuses(stubs) == ["FAILED"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_unhandled(self, saga, stubs, instant_users, now):
        instant_users.add(FISCAL_CODE)
        stubs[SESSION_LOCK].answer(RuntimeError("session manager unavailable"))
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert isinstance(result, UnhandledFailureResult)
        assert "session manager unavailable" in result.reason
        assert len(stubs[SESSION_LOCK].payloads) == 3
        assert _last_status(stubs)["failureReason"].startswith("UNHANDLED|SetUserSessionLockActivity failed after 3 attempts")

    @pytest.mark.asyncio
    async def test_bad_session_request_is_activity_failure_with_action(self, saga, stubs, instant_users, now):
        instant_users.add(FISCAL_CODE)
        stubs[SESSION_LOCK].answer(BadApiRequestFailure(reason="code: 401"))
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert result == ActivityFailureResult(
            activity_name=SESSION_LOCK, reason="SET_USER_SESSION_LOCK", extra={"action": "LOCK"}
        )

    @pytest.mark.asyncio
    async def test_preferences_failure_is_unhandled(self, saga, stubs, now):
        stubs[GET_PROFILE].answer(_profile(mode="MANUAL", settings_version=0))
        stubs[GET_PREFERENCES].answer(QueryFailureResult(reason="timeout"))
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert result == UnhandledFailureResult(reason="QUERY_FAILURE")

    @pytest.mark.asyncio
    async def test_feed_failure(self, saga, stubs, instant_users, now):
        instant_users.add(FISCAL_CODE)
        stubs[UPDATE_FEED].answer("FAILURE")
        instance = await _start(saga, now)

        result = await saga.run_until_suspended(instance, now)

        assert result.reason == "UPDATE_SUBSCRIPTIONS_FEED"
        assert _statuses(stubs) == ["WIP", "FAILED"]

    @pytest.mark.asyncio
    async def test_failed_status_write_propagates_after_saving(self, saga, stubs, saga_store, now):
        stubs[GET_PROFILE].answer(NotFoundFailure())
        stubs[SET_STATUS].answer(QueryFailureResult(reason="write refused"))
        instance = await _start(saga, now)

        with pytest.raises(ActivityFailure) as excinfo:
            await saga.step(instance, now)

        assert excinfo.value.extra == {"status": "FAILED"}
        assert saga_store.instances[INSTANCE_ID].state == SagaState.FAILED

    @pytest.mark.asyncio
    async def test_corrupted_instance_input_is_invalid_input(self, saga, stubs, saga_store, now):
        instance = await _start(saga, now)
        instance.input = {"fiscalCode": FISCAL_CODE}

        result = await saga.step(instance, now)

        assert isinstance(result, InvalidInputResult)
        assert stubs[SET_STATUS].payloads == []
        assert saga_store.instances[INSTANCE_ID].failure_reason.startswith("INVALID_INPUT|")


def test_describe_summarizes_instance(now):
    instance = SagaInstance(
        instance_id=INSTANCE_ID,
        state=SagaState.WAITING_GRACE_PERIOD,
        input={},
        created_at=now,
        updated_at=now,
        wake_at=now + GRACE,
    )

    summary = describe(instance)

    assert summary["state"] == "WAITING_GRACE_PERIOD"
    assert summary["wakeAt"] == (now + GRACE).isoformat()
    assert summary["backupFolder"] is None

