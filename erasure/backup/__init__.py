"""Backup-then-delete engine and the per-entity pipelines built on it."""

from erasure.backup.engine import backup_and_delete, single_page
from erasure.backup.pipelines import DeletionSummary, EntityPipelines
from erasure.backup.writer import BackupWriter, EntityFolder, make_backup_folder

__all__ = [
    "BackupWriter",
    "DeletionSummary",
    "EntityFolder",
    "EntityPipelines",
    "backup_and_delete",
    "make_backup_folder",
    "single_page",
]
