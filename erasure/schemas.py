"""Pydantic domain types shared by the stores, the activities and the saga.

Stored documents keep every field they were written with (``extra="allow"``)
so a backup is a faithful copy of what was in the store, not just of the
fields this service happens to read. Field names are exposed in camelCase on
the wire and snake_case in Python.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

FISCAL_CODE_PATTERN = (
    r"^[A-Z]{6}[0-9LMNPQRSTUV]{2}[ABCDEHLMPRST][0-9LMNPQRSTUV]{2}"
    r"[A-Z][0-9LMNPQRSTUV]{3}[A-Z]$"
)

FiscalCode = Annotated[str, StringConstraints(pattern=FISCAL_CODE_PATTERN)]
NonEmptyString = Annotated[str, StringConstraints(min_length=1)]


class UserDataProcessingChoice(StrEnum):
    DELETE = "DELETE"
    DOWNLOAD = "DOWNLOAD"


class UserDataProcessingStatus(StrEnum):
    PENDING = "PENDING"
    WIP = "WIP"
    CLOSED = "CLOSED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


class ServicesPreferencesMode(StrEnum):
    LEGACY = "LEGACY"
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class NotificationChannel(StrEnum):
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"


class CamelModel(BaseModel):
    """Base for wire-facing models: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class StoredDocument(CamelModel):
    """Base for documents read from the document store."""

    model_config = ConfigDict(extra="allow")

    id: NonEmptyString

    def to_backup(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ------------------------------------------------------------------ #
# User data processing (the deletion request)
# ------------------------------------------------------------------ #


def make_user_data_processing_id(
    choice: UserDataProcessingChoice, fiscal_code: str
) -> str:
    return f"{fiscal_code}-{choice}"


def make_version_id(model_id: str, version: int) -> str:
    return f"{model_id}-{version:016d}"


class UserDataProcessing(CamelModel):
    """One version of a user data processing request.

    Versions are append-only; the current status of a request is the one
    carried by its highest version.
    """

    fiscal_code: FiscalCode
    choice: UserDataProcessingChoice
    status: UserDataProcessingStatus
    user_data_processing_id: NonEmptyString
    created_at: datetime
    updated_at: datetime | None = None
    reason: str | None = None
    version: int = Field(default=0, ge=0)

    @classmethod
    def new(
        cls,
        fiscal_code: str,
        choice: UserDataProcessingChoice,
        *,
        now: datetime | None = None,
    ) -> UserDataProcessing:
        created = now or datetime.now(UTC)
        return cls(
            fiscal_code=fiscal_code,
            choice=choice,
            status=UserDataProcessingStatus.PENDING,
            user_data_processing_id=make_user_data_processing_id(choice, fiscal_code),
            created_at=created,
            updated_at=created,
        )

    @property
    def document_id(self) -> str:
        return make_version_id(self.user_data_processing_id, self.version)


class ProcessableUserDataDelete(UserDataProcessing):
    """The subset of requests a deletion saga may be started with."""

    @classmethod
    def validate_processable(cls, raw: Any) -> ProcessableUserDataDelete:
        request = cls.model_validate(raw)
        if request.choice != UserDataProcessingChoice.DELETE:
            raise ValueError(f"choice must be DELETE, got {request.choice}")
        if request.status != UserDataProcessingStatus.PENDING:
            raise ValueError(f"status must be PENDING, got {request.status}")
        return request


# ------------------------------------------------------------------ #
# Profile and service preferences
# ------------------------------------------------------------------ #


class ServicePreferencesSettings(CamelModel):
    mode: ServicesPreferencesMode = ServicesPreferencesMode.LEGACY
    version: int = Field(default=-1, ge=-1)


class Profile(StoredDocument):
    fiscal_code: FiscalCode
    version: int = Field(ge=0)
    email: str | None = None
    is_email_enabled: bool = True
    is_email_validated: bool = False
    is_inbox_enabled: bool = False
    is_webhook_enabled: bool = False
    service_preferences_settings: ServicePreferencesSettings = Field(
        default_factory=ServicePreferencesSettings
    )

    @property
    def can_receive_email(self) -> bool:
        return bool(self.email) and self.is_email_validated and self.is_email_enabled

    @property
    def is_legacy(self) -> bool:
        return self.service_preferences_settings.mode == ServicesPreferencesMode.LEGACY


class ServicePreference(StoredDocument):
    fiscal_code: FiscalCode
    service_id: NonEmptyString
    settings_version: int = Field(ge=0)
    is_email_enabled: bool = False
    is_inbox_enabled: bool = False
    is_webhook_enabled: bool = False


# ------------------------------------------------------------------ #
# Messages and notifications
# ------------------------------------------------------------------ #


class Message(StoredDocument):
    fiscal_code: FiscalCode
    sender_service_id: str | None = None
    created_at: datetime | None = None
    is_pending: bool | None = None


class MessageStatus(StoredDocument):
    message_id: NonEmptyString
    status: NonEmptyString
    version: int = Field(ge=0)
    updated_at: datetime | None = None


class MessageView(StoredDocument):
    """Read/archived projection of a message, keyed by the message id."""

    fiscal_code: FiscalCode
    service_id: str | None = None


class Notification(StoredDocument):
    fiscal_code: FiscalCode
    message_id: NonEmptyString
    channels: dict[NotificationChannel, dict[str, Any]] = Field(default_factory=dict)


class NotificationStatus(StoredDocument):
    notification_id: NonEmptyString
    message_id: NonEmptyString
    channel: NotificationChannel
    status: NonEmptyString
    status_id: NonEmptyString
    version: int = Field(ge=0)
    updated_at: datetime | None = None


# ------------------------------------------------------------------ #
# Table store records
# ------------------------------------------------------------------ #


class AuthenticationLockRecord(BaseModel):
    """A login lock row; the row key is the unlock code."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    partition_key: FiscalCode = Field(alias="partitionKey")
    row_key: NonEmptyString = Field(alias="rowKey")
    created_at: datetime = Field(alias="CreatedAt")
    released: bool | None = Field(default=None, alias="Released")
    timestamp: datetime | None = None


class FailedRequestRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    partition_key: UserDataProcessingChoice = Field(alias="partitionKey")
    row_key: FiscalCode = Field(alias="rowKey")
    reason: str | None = Field(default=None, alias="Reason")
