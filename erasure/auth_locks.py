"""Authentication lock records of a user.

A user who locked their login has one row per unlock code in the
authentication lock table, partitioned by fiscal code. Deleting the user
removes every row, in table-store transactions of at most
MAX_TRANSACTION_ITEMS deletes each.
"""

from __future__ import annotations

from collections.abc import Sequence
from itertools import batched

import structlog
from pydantic import TypeAdapter, ValidationError

from erasure.schemas import AuthenticationLockRecord
from erasure.storage.tables import (
    MAX_TRANSACTION_ITEMS,
    TRANSACTION_ACCEPTED,
    TableAction,
    TableClient,
    TransactionOperation,
)

log = structlog.get_logger(__name__)

_records_adapter = TypeAdapter(list[AuthenticationLockRecord])


class AuthenticationLockError(Exception):
    """Base class for authentication lock errors."""


class AuthenticationLockDecodeError(AuthenticationLockError):
    """One or more stored rows do not decode; ``fields`` names the offenders."""

    def __init__(self, fields: Sequence[str]) -> None:
        super().__init__(f"Invalid authentication lock records, fields: {', '.join(fields)}")
        self.fields = list(fields)


class AuthenticationLockDeleteError(AuthenticationLockError):
    def __init__(self) -> None:
        super().__init__("Something went wrong deleting the records")


class AuthenticationLockCleaner:
    """Lists and batch-deletes the authentication locks of a user."""

    def __init__(self, table: TableClient) -> None:
        self._table = table

    async def list_all(self, fiscal_code: str) -> list[AuthenticationLockRecord]:
        """Return every lock row of ``fiscal_code``.

        Raises:
            AuthenticationLockDecodeError: a row does not validate
        """
        entities = [entity async for entity in self._table.list_entities(fiscal_code)]
        try:
            return _records_adapter.validate_python(entities)
        except ValidationError as exc:
            fields = sorted(
                {".".join(str(part) for part in error["loc"][1:]) or "<root>" for error in exc.errors()}
            )
            log.error("auth_locks.decode_failed", fields=fields)
            raise AuthenticationLockDecodeError(fields) from exc

    async def delete_all(self, fiscal_code: str, unlock_codes: Sequence[str]) -> bool:
        """Delete the given unlock codes of ``fiscal_code``.

        Issues one transaction per chunk of at most MAX_TRANSACTION_ITEMS
        codes, in order, and stops at the first chunk that is not accepted.
        Whatever made a chunk fail (including a row that no longer exists)
        is reported as the same generic error.

        Raises:
            AuthenticationLockDeleteError: a transaction was not accepted
        """
        for chunk_index, chunk in enumerate(batched(unlock_codes, MAX_TRANSACTION_ITEMS)):
            actions = [
                TableAction(
                    TransactionOperation.DELETE,
                    {"partitionKey": fiscal_code, "rowKey": unlock_code},
                )
                for unlock_code in chunk
            ]
            try:
                response = await self._table.submit_transaction(actions)
            except Exception as exc:
                log.error(
                    "auth_locks.delete_failed",
                    chunk=chunk_index,
                    size=len(actions),
                    error=str(exc),
                )
                raise AuthenticationLockDeleteError() from exc
            if response.status != TRANSACTION_ACCEPTED:
                log.error(
                    "auth_locks.delete_rejected",
                    chunk=chunk_index,
                    size=len(actions),
                    status=response.status,
                )
                raise AuthenticationLockDeleteError()

        log.info("auth_locks.deleted", count=len(unlock_codes))
        return True
