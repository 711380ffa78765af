from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

BACKUP_VOLUME_LABEL = "backup-volume"
BACKUP_FINALIZER = "storage.nerdy.dev"


class BackupState(str, Enum):
    NONE = ""
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    ERROR = "Error"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str | None) -> BackupState:
        try:
            return cls(value or "")
        except ValueError as error:
            raise ValueError(f"unrecognized backup state {value!r}") from error


@dataclass
class BackupSpec:
    snapshot_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    sync_requested_at: datetime | None = None


@dataclass
class BackupStatus:
    owner_id: str = ""
    state: BackupState = BackupState.NONE
    url: str = ""
    snapshot_name: str = ""
    snapshot_created_at: str = ""
    backup_created_at: str = ""
    size: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    messages: dict[str, str] = field(default_factory=dict)
    volume_name: str = ""
    volume_size: str = ""
    volume_created: str = ""
    volume_backing_image_name: str = ""
    last_synced_at: datetime | None = None


@dataclass
class Backup:
    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime | None = None
    resource_version: str = ""
    spec: BackupSpec = field(default_factory=BackupSpec)
    status: BackupStatus = field(default_factory=BackupStatus)

    @classmethod
    def from_dict(cls, document: dict[str, Any]) -> Backup:
        metadata = document.get("metadata") or {}
        spec = document.get("spec") or {}
        status = document.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            labels=dict(metadata.get("labels") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=parse_time(metadata.get("deletionTimestamp")),
            resource_version=metadata.get("resourceVersion", ""),
            spec=BackupSpec(
                snapshot_name=spec.get("snapshotName") or "",
                labels=dict(spec.get("labels") or {}),
                sync_requested_at=parse_time(spec.get("syncRequestedAt")),
            ),
            status=BackupStatus(
                owner_id=status.get("ownerID") or "",
                state=BackupState.parse(status.get("state")),
                url=status.get("url") or "",
                snapshot_name=status.get("snapshotName") or "",
                snapshot_created_at=status.get("snapshotCreatedAt") or "",
                backup_created_at=status.get("backupCreatedAt") or "",
                size=status.get("size") or "",
                labels=dict(status.get("labels") or {}),
                messages=dict(status.get("messages") or {}),
                volume_name=status.get("volumeName") or "",
                volume_size=status.get("volumeSize") or "",
                volume_created=status.get("volumeCreated") or "",
                volume_backing_image_name=status.get("volumeBackingImageName") or "",
                last_synced_at=parse_time(status.get("lastSyncedAt")),
            ),
        )

    def status_dict(self) -> dict[str, Any]:
        status = self.status
        return {
            "ownerID": status.owner_id,
            "state": status.state.value,
            "url": status.url,
            "snapshotName": status.snapshot_name,
            "snapshotCreatedAt": status.snapshot_created_at,
            "backupCreatedAt": status.backup_created_at,
            "size": status.size,
            "labels": dict(status.labels),
            "messages": dict(status.messages),
            "volumeName": status.volume_name,
            "volumeSize": status.volume_size,
            "volumeCreated": status.volume_created,
            "volumeBackingImageName": status.volume_backing_image_name,
            "lastSyncedAt": format_time(status.last_synced_at),
        }


@dataclass
class BackupVolume:
    name: str
    deletion_timestamp: datetime | None = None
    resource_version: str = ""
    sync_requested_at: datetime | None = None
    last_backup_name: str = ""
    backing_image_checksum: str = ""

    @classmethod
    def from_dict(cls, document: dict[str, Any]) -> BackupVolume:
        metadata = document.get("metadata") or {}
        spec = document.get("spec") or {}
        status = document.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            deletion_timestamp=parse_time(metadata.get("deletionTimestamp")),
            resource_version=metadata.get("resourceVersion", ""),
            sync_requested_at=parse_time(spec.get("syncRequestedAt")),
            last_backup_name=status.get("lastBackupName") or "",
            backing_image_checksum=status.get("backingImageChecksum") or "",
        )


@dataclass
class BackupTarget:
    name: str
    backup_target_url: str = ""
    credential_secret: str = ""
    resource_version: str = ""
    sync_requested_at: datetime | None = None

    @classmethod
    def from_dict(cls, document: dict[str, Any]) -> BackupTarget:
        metadata = document.get("metadata") or {}
        spec = document.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            backup_target_url=spec.get("backupTargetURL") or "",
            credential_secret=spec.get("credentialSecret") or "",
            resource_version=metadata.get("resourceVersion", ""),
            sync_requested_at=parse_time(spec.get("syncRequestedAt")),
        )


@dataclass(frozen=True)
class Volume:
    name: str
    namespace: str = ""
    uid: str = ""
    backing_image: str = ""


@dataclass(frozen=True)
class BackingImage:
    name: str
    checksum: str = ""


@dataclass(frozen=True)
class TransferStatus:
    snapshot_name: str
    progress: int = 0
    error: str = ""
    backup_url: str = ""


@dataclass(frozen=True)
class Engine:
    name: str
    volume_name: str
    current_image: str = ""
    backup_status: tuple[TransferStatus, ...] = ()


@dataclass(frozen=True)
class BackupInfo:
    url: str = ""
    snapshot_name: str = ""
    snapshot_created: str = ""
    created: str = ""
    size: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    messages: dict[str, str] = field(default_factory=dict)
    volume_name: str = ""
    volume_size: str = ""
    volume_created: str = ""
    volume_backing_image_name: str = ""


def utc_now() -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0)


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
