"""Storage contracts (documents, blobs, tables) and their SQL implementations."""

from erasure.storage.blobs import BlobStore, SqlBlobStore
from erasure.storage.documents import DocumentStore, SqlDocumentStore
from erasure.storage.errors import (
    BlobNotFound,
    DocumentNotFound,
    EntityAlreadyExists,
    EntityNotFound,
    StorageError,
    TableTransactionError,
)
from erasure.storage.tables import (
    MAX_TRANSACTION_ITEMS,
    SqlTableClient,
    TableAction,
    TableClient,
    TransactionOperation,
    TransactionResponse,
)

__all__ = [
    "MAX_TRANSACTION_ITEMS",
    "BlobNotFound",
    "BlobStore",
    "DocumentNotFound",
    "DocumentStore",
    "EntityAlreadyExists",
    "EntityNotFound",
    "SqlBlobStore",
    "SqlDocumentStore",
    "SqlTableClient",
    "StorageError",
    "TableAction",
    "TableClient",
    "TableTransactionError",
    "TransactionOperation",
    "TransactionResponse",
]
