"""Day-partitioned feed of subscription and unsubscription events.

Each event is an (almost) empty entity whose keys carry the information:

    profile events:  P-<YYYY-MM-DD>-<S|U>-<hash>
    service events:  S-<YYYY-MM-DD>-<serviceId>-<S|U>-<hash>

where the date is the UTC day of the event, S marks a subscription, U an
unsubscription and hash is the hex SHA-256 of the fiscal code. For a given
day (and service) a user has either the S or the U entity, never both:
recording an event first removes the opposite one.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Literal

import structlog
from pydantic import Field, TypeAdapter, ValidationError

from erasure.schemas import CamelModel, FiscalCode, NonEmptyString, ServicePreference
from erasure.storage.errors import EntityAlreadyExists, EntityNotFound
from erasure.storage.tables import TableClient

log = structlog.get_logger(__name__)


class SubscriptionOperation(StrEnum):
    SUBSCRIBED = "SUBSCRIBED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class _FeedInputBase(CamelModel):
    fiscal_code: FiscalCode
    operation: SubscriptionOperation
    updated_at: int = Field(description="Event time, epoch milliseconds")
    version: int = Field(ge=0)


class ProfileFeedInput(_FeedInputBase):
    subscription_kind: Literal["PROFILE"] = "PROFILE"
    previous_preferences: list[ServicePreference] | None = None


class ServiceFeedInput(_FeedInputBase):
    subscription_kind: Literal["SERVICE"] = "SERVICE"
    service_id: NonEmptyString


FeedInput = Annotated[
    ProfileFeedInput | ServiceFeedInput,
    Field(discriminator="subscription_kind"),
]
feed_input_adapter: TypeAdapter[ProfileFeedInput | ServiceFeedInput] = TypeAdapter(FeedInput)


@dataclass(frozen=True)
class FeedEntityKey:
    partition_key: str
    row_key: str


def hash_fiscal_code(fiscal_code: str) -> str:
    return hashlib.sha256(fiscal_code.encode("utf-8")).hexdigest()


def utc_day(epoch_millis: int) -> str:
    return datetime.fromtimestamp(epoch_millis / 1000, tz=UTC).strftime("%Y-%m-%d")


def _key(partition_key: str, fiscal_code_hash: str) -> FeedEntityKey:
    return FeedEntityKey(partition_key, f"{partition_key}-{fiscal_code_hash}")


class SubscriptionFeed:
    """Records subscription events in the feed table."""

    def __init__(self, table: TableClient) -> None:
        self._table = table

    async def update(self, raw_input: object) -> Literal["SUCCESS", "FAILURE"]:
        """Record one event; ``FAILURE`` only when the input does not decode.

        Storage errors other than not-found (on delete) and conflict (on
        insert) are raised so the caller's retry policy engages.
        """
        try:
            event = feed_input_adapter.validate_python(raw_input)
        except ValidationError as exc:
            log.error("subscription_feed.invalid_input", errors=exc.error_count())
            return "FAILURE"

        day = utc_day(event.updated_at)
        fiscal_code_hash = hash_fiscal_code(event.fiscal_code)
        if isinstance(event, ServiceFeedInput):
            prefix = f"S-{day}-{event.service_id}"
        else:
            prefix = f"P-{day}"
        subscribed = _key(f"{prefix}-S", fiscal_code_hash)
        unsubscribed = _key(f"{prefix}-U", fiscal_code_hash)

        others: list[FeedEntityKey] = []
        if isinstance(event, ProfileFeedInput) and event.previous_preferences:
            for preference in event.previous_preferences:
                others.append(_key(f"S-{day}-{preference.service_id}-S", fiscal_code_hash))
                others.append(_key(f"S-{day}-{preference.service_id}-U", fiscal_code_hash))

        if event.operation == SubscriptionOperation.SUBSCRIBED:
            opposite, target = unsubscribed, subscribed
        else:
            opposite, target = subscribed, unsubscribed

        await self._record(
            version=event.version,
            delete_entity=opposite,
            delete_other_entities=others,
            insert_entity=target,
            allow_insert_if_deleted=not isinstance(event, ServiceFeedInput),
        )
        log.info(
            "subscription_feed.updated",
            operation=str(event.operation),
            kind=event.subscription_kind,
            retracted_services=len(others) // 2,
        )
        return "SUCCESS"

    async def _record(
        self,
        *,
        version: int,
        delete_entity: FeedEntityKey,
        delete_other_entities: Sequence[FeedEntityKey],
        insert_entity: FeedEntityKey,
        allow_insert_if_deleted: bool,
    ) -> None:
        results = await asyncio.gather(
            *(self._delete(key) for key in (delete_entity, *delete_other_entities)),
            return_exceptions=True,
        )

        # A same-day opposite event was cancelled: the day's delta is now empty.
        if not allow_insert_if_deleted and results[0] is None:
            return

        errors = [
            result
            for result in results
            if isinstance(result, BaseException) and not isinstance(result, EntityNotFound)
        ]
        if errors:
            log.error("subscription_feed.delete_failed", errors=[str(error) for error in errors])
            raise errors[0]

        try:
            await self._table.create_entity(
                {
                    "partitionKey": insert_entity.partition_key,
                    "rowKey": insert_entity.row_key,
                    "version": version,
                }
            )
        except EntityAlreadyExists:
            log.debug("subscription_feed.already_recorded", row_key=insert_entity.row_key)

    async def _delete(self, key: FeedEntityKey) -> None:
        await self._table.delete_entity(key.partition_key, key.row_key)
