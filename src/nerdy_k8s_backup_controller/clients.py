"""Interfaces of the remote backup target and storage engine collaborators.

Concrete implementations live outside this package: the controller only needs to
encode backup URLs, inspect and delete remote backups, and start snapshot backups.
"""

from __future__ import annotations

from typing import Callable, Mapping, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .models import BackupInfo, BackupTarget, Engine


class BackupTargetInProgressError(RuntimeError):
    """Raised by target clients when the remote backup is still being written."""


class BackupTargetClient(Protocol):
    url: str
    credential: Mapping[str, str]

    def inspect_backup_config(self, backup_url: str) -> BackupInfo | None:
        ...

    def delete_backup(self, backup_url: str) -> None:
        ...


class EngineClient(Protocol):
    def snapshot_backup(
        self,
        backup_name: str,
        snapshot_name: str,
        backup_target_url: str,
        backing_image_name: str,
        backing_image_checksum: str,
        labels: Mapping[str, str],
        credential: Mapping[str, str],
    ) -> str:
        ...


BackupTargetClientFactory = Callable[[BackupTarget], BackupTargetClient]
EngineClientFactory = Callable[[Engine], EngineClient]


def encode_backup_url(backup_name: str, volume_name: str, backup_target_url: str) -> str:
    parts = urlsplit(backup_target_url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in {"backup", "volume"}
    ]
    query.extend([("backup", backup_name), ("volume", volume_name)])
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def is_in_progress_error(error: BaseException) -> bool:
    if isinstance(error, BackupTargetInProgressError):
        return True
    return "in progress" in str(error)
