"""Tests for the per-entity deletion pipelines and the DeleteUserData activity.

Coverage:
  - full traversal of a user: backup count, child-before-parent order
  - optional message content and message view
  - authentication locks: one backup file, batched delete
  - first failure stops everything after it
  - undecodable documents surface as QUERY_FAILURE
  - invalid activity input
"""

from __future__ import annotations

import json

import pytest

from erasure.activities import DeleteUserDataActivity
from erasure.backup.writer import EntityFolder
from tests.conftest import FISCAL_CODE, seed_user

BACKUP = "user-data-backup"
FOLDER = "RSSMRA80A01H501U-DELETE-1772443800000"


@pytest.fixture
def lock_table(make_table):
    return make_table("LockedProfiles")


@pytest.fixture
def activity(documents, blobs, lock_table) -> DeleteUserDataActivity:
    return DeleteUserDataActivity(
        documents=documents,
        blobs=blobs,
        authentication_locks=lock_table,
        backup_container=BACKUP,
        message_content_container="message-content",
        page_size=2,
    )


def _input(folder: str = FOLDER) -> dict[str, str]:
    return {"fiscalCode": FISCAL_CODE, "backupFolder": folder}


def _backups(call_log: list[tuple[str, ...]]) -> list[str]:
    return [entry[2] for entry in call_log if entry[0] == "backup"]


class TestUserTraversal:
    @pytest.mark.asyncio
    async def test_every_document_is_backed_up_then_deleted(self, activity, documents, blobs, call_log):
        seed_user(documents)

        result = await activity(_input())

        assert result.kind == "SUCCESS"
        assert len(_backups(call_log)) == 8
        for container in ("profiles", "messages", "message-status", "notifications", "notification-status"):
            assert documents.count(container) == 0
        assert len(blobs.names(BACKUP)) == 8

    @pytest.mark.asyncio
    async def test_children_are_deleted_before_their_parent(self, activity, documents, call_log):
        seed_user(documents)

        await activity(_input())

        assert call_log == [
            ("backup", BACKUP, f"{FOLDER}/message-status/msg-1-0000000000000000.json"),
            ("delete", "message-status", "msg-1-0000000000000000"),
            ("backup", BACKUP, f"{FOLDER}/message-status/msg-1-0000000000000001.json"),
            ("delete", "message-status", "msg-1-0000000000000001"),
            ("backup", BACKUP, f"{FOLDER}/notification-status/ntf-1:EMAIL-0000000000000000.json"),
            ("delete", "notification-status", "ntf-1:EMAIL-0000000000000000"),
            ("backup", BACKUP, f"{FOLDER}/notification/ntf-1.json"),
            ("delete", "notifications", "ntf-1"),
            ("backup", BACKUP, f"{FOLDER}/message/msg-1.json"),
            ("delete", "messages", "msg-1"),
            ("backup", BACKUP, f"{FOLDER}/profile/{FISCAL_CODE}-0000000000000000.json"),
            ("delete", "profiles", f"{FISCAL_CODE}-0000000000000000"),
            ("backup", BACKUP, f"{FOLDER}/profile/{FISCAL_CODE}-0000000000000001.json"),
            ("delete", "profiles", f"{FISCAL_CODE}-0000000000000001"),
            ("backup", BACKUP, f"{FOLDER}/profile/{FISCAL_CODE}-0000000000000002.json"),
            ("delete", "profiles", f"{FISCAL_CODE}-0000000000000002"),
        ]

    @pytest.mark.asyncio
    async def test_backup_keeps_fields_this_service_does_not_read(self, activity, documents, blobs):
        seed_user(documents)

        await activity(_input())

        stored = json.loads(blobs.objects[(BACKUP, f"{FOLDER}/profile/{FISCAL_CODE}-0000000000000000.json")])
        assert stored["fiscalCode"] == FISCAL_CODE
        assert stored["acceptedTosVersion"] == 1

    @pytest.mark.asyncio
    async def test_message_content_and_view_are_included(self, activity, documents, blobs, call_log):
        seed_user(documents)
        blobs.objects[("message-content", "msg-1.json")] = '{"subject":"Tassa rifiuti"}'
        documents.add("message-view", FISCAL_CODE, {"id": "msg-1", "fiscalCode": FISCAL_CODE})

        result = await activity(_input())

        assert result.kind == "SUCCESS"
        backups = _backups(call_log)
        assert backups[0] == f"{FOLDER}/message-content/msg-1.json"
        assert backups.index(f"{FOLDER}/message-view/msg-1.json") < backups.index(f"{FOLDER}/message/msg-1.json")
        assert blobs.objects[(BACKUP, f"{FOLDER}/message-content/msg-1.json")] == '{"subject":"Tassa rifiuti"}'
        assert ("message-content", "msg-1.json") not in blobs.objects
        assert documents.count("message-view") == 0

    @pytest.mark.asyncio
    async def test_service_preferences_are_deleted_after_profile(self, activity, documents, call_log):
        seed_user(documents)
        documents.add(
            "services-preferences",
            FISCAL_CODE,
            {
                "id": f"{FISCAL_CODE}-agid-0000000000000000",
                "fiscalCode": FISCAL_CODE,
                "serviceId": "agid",
                "settingsVersion": 0,
            },
        )

        await activity(_input())

        backups = _backups(call_log)
        assert backups[-1] == f"{FOLDER}/service-settings/{FISCAL_CODE}-agid-0000000000000000.json"
        assert documents.count("services-preferences") == 0

    @pytest.mark.asyncio
    async def test_rerun_after_completion_is_a_no_op(self, activity, documents, call_log):
        seed_user(documents)
        await activity(_input())
        call_log.clear()

        result = await activity(_input())

        assert result.kind == "SUCCESS"
        assert call_log == []


class TestAuthenticationLocks:
    @pytest.mark.asyncio
    async def test_locks_are_backed_up_in_one_file_and_deleted_in_batches(
        self, activity, lock_table, blobs
    ):
        for index in range(150):
            lock_table.put(
                {
                    "partitionKey": FISCAL_CODE,
                    "rowKey": f"{index:06d}",
                    "CreatedAt": "2026-01-01T10:00:00Z",
                    "Released": False,
                }
            )

        result = await activity(_input())

        assert result.kind == "SUCCESS"
        backup = json.loads(blobs.objects[(BACKUP, f"{FOLDER}/access/authentication-locks.json")])
        assert len(backup) == 150
        assert backup[0]["partitionKey"] == FISCAL_CODE
        assert backup[0]["CreatedAt"].startswith("2026-01-01T10:00:00")
        assert [len(actions) for actions in lock_table.transactions] == [100, 50]
        assert lock_table.entities == {}

    @pytest.mark.asyncio
    async def test_no_locks_writes_no_backup(self, activity, blobs):
        result = await activity(_input())

        assert result.kind == "SUCCESS"
        assert blobs.names(BACKUP) == []

    @pytest.mark.asyncio
    async def test_rejected_batch_is_a_delete_failure(self, activity, lock_table):
        lock_table.put({"partitionKey": FISCAL_CODE, "rowKey": "1", "CreatedAt": "2026-01-01T10:00:00Z"})
        lock_table.transaction_statuses.append(500)

        result = await activity(_input())

        assert result.kind == "DELETE_FAILURE"
        assert result.reason == "Something went wrong deleting the records"

    @pytest.mark.asyncio
    async def test_undecodable_lock_is_a_query_failure(self, activity, lock_table, blobs):
        lock_table.put({"partitionKey": FISCAL_CODE, "rowKey": "1"})

        result = await activity(_input())

        assert result.kind == "QUERY_FAILURE"
        assert "CreatedAt" in result.reason
        assert result.query == "authenticationLock.listAll"
        assert blobs.names(BACKUP) == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_delete_failure_leaves_parents_and_profile_in_place(self, activity, documents):
        seed_user(documents)
        documents.fail_delete.add("msg-1-0000000000000001")

        result = await activity(_input())

        assert result.kind == "DELETE_FAILURE"
        assert documents.ids("message-status", "msg-1") == ["msg-1-0000000000000001"]
        assert documents.count("notifications") == 1
        assert documents.count("messages") == 1
        assert documents.count("profiles") == 3

    @pytest.mark.asyncio
    async def test_backup_failure_is_a_blob_failure(self, activity, documents, blobs):
        seed_user(documents)
        blobs.fail_write.add("/notification/ntf-1.json")

        result = await activity(_input())

        assert result.kind == "BLOB_FAILURE"
        assert documents.count("notifications") == 1
        assert documents.count("notification-status") == 0

    @pytest.mark.asyncio
    async def test_undecodable_message_is_a_query_failure(self, activity, documents, call_log):
        seed_user(documents)
        documents.add("messages", FISCAL_CODE, {"id": "msg-0", "senderServiceId": "agid"})

        result = await activity(_input())

        assert result.kind == "QUERY_FAILURE"
        assert result.reason == "Some elements are not typed correctly"
        assert result.query == "message.findMessages"
        assert call_log == []

    @pytest.mark.asyncio
    async def test_unreadable_container_is_a_query_failure(self, activity, documents):
        seed_user(documents)
        documents.fail_pages.add("message-status")

        result = await activity(_input())

        assert result.kind == "QUERY_FAILURE"
        assert result.query == "messageStatus.findAllVersionsByModelId"
        assert documents.count("messages") == 1


class TestInvalidInput:
    @pytest.mark.asyncio
    async def test_missing_backup_folder(self, activity, call_log):
        result = await activity({"fiscalCode": FISCAL_CODE})

        assert result.kind == "INVALID_INPUT_FAILURE"
        assert result.reason.startswith("DeleteUserDataActivity|Cannot decode input|ERROR=")
        assert call_log == []

    @pytest.mark.asyncio
    async def test_malformed_fiscal_code(self, activity):
        result = await activity({"fiscalCode": "not-a-fiscal-code", "backupFolder": FOLDER})

        assert result.kind == "INVALID_INPUT_FAILURE"


def test_entity_folders_match_backup_layout():
    assert {str(folder) for folder in EntityFolder} == {
        "profile",
        "service-settings",
        "message",
        "message-content",
        "message-status",
        "message-view",
        "notification",
        "notification-status",
        "access",
    }
