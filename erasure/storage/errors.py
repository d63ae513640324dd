"""Exceptions raised by the storage backends."""

from __future__ import annotations


class StorageError(Exception):
    """Base class for storage backend errors."""


class DocumentNotFound(StorageError):
    def __init__(self, container: str, partition_key: str, document_id: str) -> None:
        super().__init__(f"document {container}/{partition_key}/{document_id} not found")
        self.container = container
        self.partition_key = partition_key
        self.document_id = document_id


class BlobNotFound(StorageError):
    def __init__(self, container: str, name: str) -> None:
        super().__init__(f"blob {container}/{name} not found")
        self.container = container
        self.name = name


class EntityNotFound(StorageError):
    status_code = 404

    def __init__(self, table_name: str, partition_key: str, row_key: str) -> None:
        super().__init__(f"entity {table_name}({partition_key}, {row_key}) not found")
        self.table_name = table_name
        self.partition_key = partition_key
        self.row_key = row_key


class EntityAlreadyExists(StorageError):
    status_code = 409

    def __init__(self, table_name: str, partition_key: str, row_key: str) -> None:
        super().__init__(f"entity {table_name}({partition_key}, {row_key}) already exists")
        self.table_name = table_name
        self.partition_key = partition_key
        self.row_key = row_key


class TableTransactionError(StorageError):
    """A batch transaction was rejected as a whole."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
