"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from erasure.models.blob import BlobObject
from erasure.models.document import DocumentRecord
from erasure.models.saga_instance import SagaInstanceRecord
from erasure.models.table_entity import TableEntityRecord

__all__ = [
    "BlobObject",
    "DocumentRecord",
    "SagaInstanceRecord",
    "TableEntityRecord",
]
