"""Typed repositories over the document store.

Each repository knows which container its documents live in, how they are
partitioned and how they decode. Reads that fail, or that return documents
which do not decode, surface as QueryFailure naming the query that failed,
so the traversal engine can report them without knowing the store.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar

import structlog
from pydantic import TypeAdapter, ValidationError

from erasure.failures import QueryFailure
from erasure.schemas import (
    Message,
    MessageStatus,
    MessageView,
    Notification,
    NotificationStatus,
    Profile,
    ServicePreference,
    StoredDocument,
    UserDataProcessing,
    UserDataProcessingChoice,
    make_user_data_processing_id,
    make_version_id,
)
from erasure.storage.documents import DocumentStore

log = structlog.get_logger(__name__)

T = TypeVar("T", bound=StoredDocument)

NOT_TYPED_CORRECTLY = "Some elements are not typed correctly"


@dataclass(frozen=True)
class DocumentKey:
    partition_key: str
    model_id: str | None = None
    version: int | None = None


class DocumentRepository(Generic[T]):
    """Base class binding a container name to a document type."""

    container: ClassVar[str]
    document_type: ClassVar[type[StoredDocument]]

    def __init__(self, store: DocumentStore, *, page_size: int = 100) -> None:
        self._store = store
        self._page_size = page_size
        self._page_adapter = TypeAdapter(list[self.document_type])

    def key_of(self, document: T) -> DocumentKey:
        raise NotImplementedError

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def pages(
        self, partition_key: str, *, model_id: str | None = None, query: str
    ) -> AsyncIterator[list[T]]:
        """Yield decoded pages; the iterator ends after the last non-empty page."""
        iterator = self._store.pages(
            self.container,
            partition_key,
            model_id=model_id,
            page_size=self._page_size,
        ).__aiter__()
        while True:
            try:
                raw_page = await iterator.__anext__()
            except StopAsyncIteration:
                return
            except Exception as exc:
                raise QueryFailure(f"{query}: {exc}", query=query) from exc
            yield self._decode_page(raw_page, query)

    async def find(self, partition_key: str, document_id: str, *, query: str) -> T | None:
        try:
            raw = await self._store.find(self.container, partition_key, document_id)
        except Exception as exc:
            raise QueryFailure(f"{query}: {exc}", query=query) from exc
        return self._decode_one(raw, query) if raw is not None else None

    async def find_last_version(self, partition_key: str, model_id: str, *, query: str) -> T | None:
        try:
            raw = await self._store.find_last_version(self.container, partition_key, model_id)
        except Exception as exc:
            raise QueryFailure(f"{query}: {exc}", query=query) from exc
        return self._decode_one(raw, query) if raw is not None else None

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def upsert(self, document: T) -> None:
        key = self.key_of(document)
        await self._store.upsert(
            self.container,
            key.partition_key,
            document.to_backup(),
            model_id=key.model_id,
            version=key.version,
        )

    async def delete(self, document: T) -> None:
        """Delete exactly this document (this version, for versioned models)."""
        await self._store.delete(self.container, self.key_of(document).partition_key, document.id)

    # ------------------------------------------------------------------ #
    # Decoding
    # ------------------------------------------------------------------ #

    def _decode_page(self, raw_page: list[dict[str, Any]], query: str) -> list[T]:
        try:
            return self._page_adapter.validate_python(raw_page)
        except ValidationError as exc:
            log.warning(
                "documents.decode_failed",
                container=self.container,
                query=query,
                errors=exc.error_count(),
            )
            raise QueryFailure(NOT_TYPED_CORRECTLY, query=query) from exc

    def _decode_one(self, raw: dict[str, Any], query: str) -> T:
        try:
            return self.document_type.model_validate(raw)  # type: ignore[return-value]
        except ValidationError as exc:
            raise QueryFailure(NOT_TYPED_CORRECTLY, query=query) from exc


# ------------------------------------------------------------------ #
# Concrete repositories
# ------------------------------------------------------------------ #


class ProfileRepository(DocumentRepository[Profile]):
    container = "profiles"
    document_type = Profile

    def key_of(self, document: Profile) -> DocumentKey:
        return DocumentKey(document.fiscal_code, document.fiscal_code, document.version)

    def find_all_versions(self, fiscal_code: str) -> AsyncIterator[list[Profile]]:
        return self.pages(fiscal_code, model_id=fiscal_code, query="profile.findAllVersionsByModelId")

    async def find_last(self, fiscal_code: str) -> Profile | None:
        return await self.find_last_version(
            fiscal_code, fiscal_code, query="profile.findLastVersionByModelId"
        )


class MessageRepository(DocumentRepository[Message]):
    container = "messages"
    document_type = Message

    def key_of(self, document: Message) -> DocumentKey:
        return DocumentKey(document.fiscal_code)

    def find_by_fiscal_code(self, fiscal_code: str) -> AsyncIterator[list[Message]]:
        return self.pages(fiscal_code, query="message.findMessages")


class MessageStatusRepository(DocumentRepository[MessageStatus]):
    container = "message-status"
    document_type = MessageStatus

    def key_of(self, document: MessageStatus) -> DocumentKey:
        return DocumentKey(document.message_id, document.message_id, document.version)

    def find_all_versions(self, message_id: str) -> AsyncIterator[list[MessageStatus]]:
        return self.pages(message_id, model_id=message_id, query="messageStatus.findAllVersionsByModelId")


class MessageViewRepository(DocumentRepository[MessageView]):
    container = "message-view"
    document_type = MessageView

    def key_of(self, document: MessageView) -> DocumentKey:
        return DocumentKey(document.fiscal_code)

    async def find_for_message(self, message: Message) -> MessageView | None:
        return await self.find(message.fiscal_code, message.id, query="messageView.find")


class NotificationRepository(DocumentRepository[Notification]):
    container = "notifications"
    document_type = Notification

    def key_of(self, document: Notification) -> DocumentKey:
        return DocumentKey(document.message_id)

    def find_for_message(self, message_id: str) -> AsyncIterator[list[Notification]]:
        return self.pages(message_id, query="notification.findNotificationForMessage")


class NotificationStatusRepository(DocumentRepository[NotificationStatus]):
    container = "notification-status"
    document_type = NotificationStatus

    def key_of(self, document: NotificationStatus) -> DocumentKey:
        return DocumentKey(document.notification_id, document.status_id, document.version)

    def find_for_notification(self, notification_id: str) -> AsyncIterator[list[NotificationStatus]]:
        return self.pages(notification_id, query="notificationStatus.findAllVersionsByNotificationId")


class ServicePreferenceRepository(DocumentRepository[ServicePreference]):
    container = "services-preferences"
    document_type = ServicePreference

    def key_of(self, document: ServicePreference) -> DocumentKey:
        return DocumentKey(document.fiscal_code)

    def find_by_fiscal_code(self, fiscal_code: str) -> AsyncIterator[list[ServicePreference]]:
        return self.pages(fiscal_code, query="servicePreferences.findAllByFiscalCode")

    async def find_for_settings_version(
        self, fiscal_code: str, settings_version: int
    ) -> list[ServicePreference]:
        """Return the preferences written under ``settings_version``."""
        preferences: list[ServicePreference] = []
        async for page in self.find_by_fiscal_code(fiscal_code):
            preferences.extend(
                preference for preference in page if preference.settings_version == settings_version
            )
        return preferences


class UserDataProcessingRepository(DocumentRepository[UserDataProcessing]):  # type: ignore[type-var]
    """Append-only versions of user data processing requests."""

    container = "user-data-processing"
    document_type = UserDataProcessing  # type: ignore[assignment]

    def key_of(self, document: UserDataProcessing) -> DocumentKey:  # type: ignore[override]
        return DocumentKey(document.fiscal_code, document.user_data_processing_id, document.version)

    async def find_last(
        self, choice: UserDataProcessingChoice, fiscal_code: str
    ) -> UserDataProcessing | None:
        return await self.find_last_version(
            fiscal_code,
            make_user_data_processing_id(choice, fiscal_code),
            query="findOneUserDataProcessingById",
        )

    async def upsert(self, document: UserDataProcessing) -> None:  # type: ignore[override]
        key = self.key_of(document)
        body = document.model_dump(mode="json", by_alias=True)
        body["id"] = make_version_id(document.user_data_processing_id, document.version)
        await self._store.upsert(
            self.container,
            key.partition_key,
            body,
            model_id=key.model_id,
            version=key.version,
        )
