"""Ordered backup-then-delete pipelines over everything a user owns.

Traversal for one user:

    for each message of the user:
        message content           (blob, zero or one)
        message statuses          (every version)
        for each notification of the message:
            notification statuses (every channel, every version)
            notification
        message view              (zero or one)
        message
    profile                       (every version)
    service settings              (every service preference)
    authentication locks          (one backup file, batched delete)

Parents are always deleted after their children and the profile only after
every message subtree is gone. Pipelines run strictly one after the other.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from erasure.auth_locks import AuthenticationLockCleaner, AuthenticationLockDecodeError
from erasure.backup.engine import backup_and_delete, single_page
from erasure.backup.writer import BackupWriter, EntityFolder
from erasure.failures import DeleteFailure, QueryFailure
from erasure.schemas import Message, Notification
from erasure.storage.blobs import BlobStore
from erasure.storage.repositories import (
    MessageRepository,
    MessageStatusRepository,
    MessageViewRepository,
    NotificationRepository,
    NotificationStatusRepository,
    ProfileRepository,
    ServicePreferenceRepository,
)

log = structlog.get_logger(__name__)


@dataclass
class DeletionSummary:
    """Number of backed up and deleted items per entity folder."""

    counts: dict[str, int] = field(default_factory=dict)

    def add(self, entity: EntityFolder, count: int) -> None:
        self.counts[str(entity)] = self.counts.get(str(entity), 0) + count

    @property
    def total(self) -> int:
        return sum(self.counts.values())


@dataclass
class MessageContentItem:
    message_id: str
    content: str


class EntityPipelines:
    """Backs up and deletes all the data of one user, child-first."""

    def __init__(
        self,
        *,
        writer: BackupWriter,
        blobs: BlobStore,
        message_content_container: str,
        profiles: ProfileRepository,
        messages: MessageRepository,
        message_statuses: MessageStatusRepository,
        message_views: MessageViewRepository,
        notifications: NotificationRepository,
        notification_statuses: NotificationStatusRepository,
        service_preferences: ServicePreferenceRepository,
        auth_locks: AuthenticationLockCleaner,
    ) -> None:
        self._writer = writer
        self._blobs = blobs
        self._message_content_container = message_content_container
        self._profiles = profiles
        self._messages = messages
        self._message_statuses = message_statuses
        self._message_views = message_views
        self._notifications = notifications
        self._notification_statuses = notification_statuses
        self._service_preferences = service_preferences
        self._auth_locks = auth_locks
        self._summary = DeletionSummary()

    async def run(self, fiscal_code: str) -> DeletionSummary:
        """Back up and delete everything owned by ``fiscal_code``.

        Raises:
            DataFailure: the first failure met; nothing after it was touched
        """
        self._summary = DeletionSummary()
        await self.backup_and_delete_messages(fiscal_code)
        await self.backup_and_delete_profile(fiscal_code)
        log.info(
            "backup.user_data_deleted",
            folder=self._writer.folder,
            total=self._summary.total,
            counts=self._summary.counts,
        )
        return self._summary

    # ------------------------------------------------------------------ #
    # Messages
    # ------------------------------------------------------------------ #

    async def backup_and_delete_messages(self, fiscal_code: str) -> list[Message]:
        messages = await backup_and_delete(
            self._messages.find_by_fiscal_code(fiscal_code),
            writer=self._writer,
            entity=EntityFolder.MESSAGE,
            name_of=lambda message: message.id,
            delete_one=self._messages.delete,
            children=self._backup_and_delete_message_children,
        )
        self._summary.add(EntityFolder.MESSAGE, len(messages))
        return messages

    async def _backup_and_delete_message_children(self, message: Message) -> None:
        await self.backup_and_delete_message_content(message)
        await self.backup_and_delete_message_statuses(message)
        await self.backup_and_delete_notifications(message)
        await self.backup_and_delete_message_view(message)

    async def backup_and_delete_message_content(self, message: Message) -> None:
        """Content is optional: a message without a content blob is not an error."""
        blob_name = f"{message.id}.json"
        try:
            content = await self._blobs.read(self._message_content_container, blob_name)
        except Exception as exc:
            raise QueryFailure(
                f"Reading content of message {message.id} failed: {exc}",
                query="messageContent.read",
            ) from exc

        async def delete_content(item: MessageContentItem) -> None:
            await self._blobs.delete(self._message_content_container, f"{item.message_id}.json")

        items = await backup_and_delete(
            single_page(MessageContentItem(message.id, content) if content is not None else None),
            writer=self._writer,
            entity=EntityFolder.MESSAGE_CONTENT,
            name_of=lambda item: item.message_id,
            delete_one=delete_content,
            serialize=lambda item: item.content,
        )
        self._summary.add(EntityFolder.MESSAGE_CONTENT, len(items))

    async def backup_and_delete_message_statuses(self, message: Message) -> None:
        statuses = await backup_and_delete(
            self._message_statuses.find_all_versions(message.id),
            writer=self._writer,
            entity=EntityFolder.MESSAGE_STATUS,
            name_of=lambda status: status.id,
            delete_one=self._message_statuses.delete,
        )
        self._summary.add(EntityFolder.MESSAGE_STATUS, len(statuses))

    async def backup_and_delete_notifications(self, message: Message) -> None:
        notifications = await backup_and_delete(
            self._notifications.find_for_message(message.id),
            writer=self._writer,
            entity=EntityFolder.NOTIFICATION,
            name_of=lambda notification: notification.id,
            delete_one=self._notifications.delete,
            children=self.backup_and_delete_notification_statuses,
        )
        self._summary.add(EntityFolder.NOTIFICATION, len(notifications))

    async def backup_and_delete_notification_statuses(self, notification: Notification) -> None:
        statuses = await backup_and_delete(
            self._notification_statuses.find_for_notification(notification.id),
            writer=self._writer,
            entity=EntityFolder.NOTIFICATION_STATUS,
            name_of=lambda status: status.id,
            delete_one=self._notification_statuses.delete,
        )
        self._summary.add(EntityFolder.NOTIFICATION_STATUS, len(statuses))

    async def backup_and_delete_message_view(self, message: Message) -> None:
        """The view is optional: a message without a view is not an error."""
        view = await self._message_views.find_for_message(message)
        views = await backup_and_delete(
            single_page(view),
            writer=self._writer,
            entity=EntityFolder.MESSAGE_VIEW,
            name_of=lambda item: item.id,
            delete_one=self._message_views.delete,
        )
        self._summary.add(EntityFolder.MESSAGE_VIEW, len(views))

    # ------------------------------------------------------------------ #
    # Profile
    # ------------------------------------------------------------------ #

    async def backup_and_delete_profile(self, fiscal_code: str) -> None:
        profiles = await backup_and_delete(
            self._profiles.find_all_versions(fiscal_code),
            writer=self._writer,
            entity=EntityFolder.PROFILE,
            name_of=lambda profile: profile.id,
            delete_one=self._profiles.delete,
        )
        self._summary.add(EntityFolder.PROFILE, len(profiles))
        await self.backup_and_delete_service_preferences(fiscal_code)
        await self.backup_and_delete_authentication_locks(fiscal_code)

    async def backup_and_delete_service_preferences(self, fiscal_code: str) -> None:
        preferences = await backup_and_delete(
            self._service_preferences.find_by_fiscal_code(fiscal_code),
            writer=self._writer,
            entity=EntityFolder.SERVICE_SETTINGS,
            name_of=lambda preference: preference.id,
            delete_one=self._service_preferences.delete,
        )
        self._summary.add(EntityFolder.SERVICE_SETTINGS, len(preferences))

    async def backup_and_delete_authentication_locks(self, fiscal_code: str) -> None:
        """All lock rows go into a single backup file, then one batched delete."""
        try:
            records = await self._auth_locks.list_all(fiscal_code)
        except AuthenticationLockDecodeError as exc:
            raise QueryFailure(str(exc), query="authenticationLock.listAll") from exc
        except Exception as exc:
            raise QueryFailure(
                f"Listing authentication locks failed: {exc}",
                query="authenticationLock.listAll",
            ) from exc
        if not records:
            return

        await self._writer.save(EntityFolder.ACCESS, "authentication-locks", records)
        try:
            await self._auth_locks.delete_all(fiscal_code, [record.row_key for record in records])
        except Exception as exc:
            raise DeleteFailure(str(exc)) from exc
        self._summary.add(EntityFolder.ACCESS, len(records))
