from __future__ import annotations

from typing import Protocol

from .models import Backup


class BackupStatusStore(Protocol):
    def update_backup_status(self, backup: Backup) -> Backup:
        ...


def write_status_if_changed(datastore: BackupStatusStore, existing: Backup, backup: Backup) -> bool:
    """Persist ``backup.status`` unless it equals the pre-image ``existing.status``.

    Returns whether a write was issued. Every store error propagates, including
    ``ConflictError``; each call site decides whether a conflict is benign.
    """
    if existing.status == backup.status:
        return False
    datastore.update_backup_status(backup)
    return True
