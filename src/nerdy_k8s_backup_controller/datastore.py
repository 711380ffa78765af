from __future__ import annotations

from typing import Any, Callable, Iterator, TypeVar
import logging

from kubernetes import client, watch
from kubernetes.client import ApiException

from .k8s import format_api_exception_message
from .models import (
    BACKUP_FINALIZER,
    Backup,
    BackingImage,
    BackupTarget,
    BackupVolume,
    Engine,
    TransferStatus,
    Volume,
    format_time,
)

DEFAULT_GROUP = "storage.nerdy.dev"
DEFAULT_VERSION = "v1beta1"
WATCH_TIMEOUT_SECONDS = 300
T = TypeVar("T")

logger = logging.getLogger(__name__)


class DataStoreError(RuntimeError):
    """Raised when the resource store rejects or fails a request."""


class NotFoundError(DataStoreError):
    """Raised when the requested object does not exist."""


class ConflictError(DataStoreError):
    """Raised when a write is rejected because the object changed since it was read."""


class KubernetesDataStore:
    """Resource store backed by namespaced custom objects.

    Every write carries the resourceVersion the object was read with, so the API
    server rejects stale writes with 409, surfaced here as ``ConflictError``.
    """

    def __init__(
        self,
        *,
        custom_objects_api: client.CustomObjectsApi,
        namespace: str,
        group: str = DEFAULT_GROUP,
        version: str = DEFAULT_VERSION,
    ) -> None:
        self.custom_objects_api = custom_objects_api
        self.namespace = namespace
        self.group = group
        self.version = version

    def get_backup(self, name: str) -> Backup:
        return _backup_from_dict(self._get("backups", name))

    def update_backup_status(self, backup: Backup) -> Backup:
        body = {
            "apiVersion": f"{self.group}/{self.version}",
            "kind": "Backup",
            "metadata": {
                "name": backup.name,
                "namespace": backup.namespace or self.namespace,
                "resourceVersion": backup.resource_version,
            },
            "status": backup.status_dict(),
        }
        document = self._call(
            operation=f"update status of backup '{backup.name}'",
            func=lambda: self.custom_objects_api.replace_namespaced_custom_object_status(
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural="backups",
                name=backup.name,
                body=body,
            ),
        )
        return _backup_from_dict(document)

    def remove_finalizer_for_backup(self, backup: Backup) -> None:
        if BACKUP_FINALIZER not in backup.finalizers:
            return
        finalizers = [finalizer for finalizer in backup.finalizers if finalizer != BACKUP_FINALIZER]
        self._patch(
            "backups",
            backup.name,
            {"metadata": {"finalizers": finalizers, "resourceVersion": backup.resource_version}},
        )

    def get_backup_volume(self, name: str) -> BackupVolume:
        return BackupVolume.from_dict(self._get("backupvolumes", name))

    def update_backup_volume(self, backup_volume: BackupVolume) -> BackupVolume:
        document = self._patch(
            "backupvolumes",
            backup_volume.name,
            {
                "metadata": {"resourceVersion": backup_volume.resource_version},
                "spec": {"syncRequestedAt": format_time(backup_volume.sync_requested_at)},
            },
        )
        return BackupVolume.from_dict(document)

    def get_backup_target(self, name: str) -> BackupTarget:
        return BackupTarget.from_dict(self._get("backuptargets", name))

    def update_backup_target(self, backup_target: BackupTarget) -> BackupTarget:
        document = self._patch(
            "backuptargets",
            backup_target.name,
            {
                "metadata": {"resourceVersion": backup_target.resource_version},
                "spec": {"syncRequestedAt": format_time(backup_target.sync_requested_at)},
            },
        )
        return BackupTarget.from_dict(document)

    def get_setting_value(self, name: str) -> str:
        return str(self._get("settings", name).get("value") or "")

    def list_ready_nodes_with_ready_engine_image(self, image: str) -> list[str]:
        deployed = self._engine_image_node_map(image)
        return sorted(name for name in self._ready_node_names() if deployed.get(name))

    def check_engine_image_readiness(self, image: str, node_name: str) -> bool:
        if not node_name:
            return False
        if node_name not in self._ready_node_names():
            return False
        return bool(self._engine_image_node_map(image).get(node_name))

    def is_node_down_or_deleted(self, node_name: str) -> bool:
        try:
            node = self._get("nodes", node_name)
        except NotFoundError:
            return True
        return not _is_node_ready(node)

    def get_volume(self, name: str) -> Volume:
        document = self._get("volumes", name)
        metadata = document.get("metadata") or {}
        spec = document.get("spec") or {}
        return Volume(
            name=metadata.get("name", name),
            namespace=metadata.get("namespace", self.namespace),
            uid=metadata.get("uid", ""),
            backing_image=spec.get("backingImage") or "",
        )

    def get_backing_image(self, name: str) -> BackingImage:
        document = self._get("backingimages", name)
        status = document.get("status") or {}
        return BackingImage(name=name, checksum=status.get("checksum") or "")

    def get_volume_current_engine(self, volume_name: str) -> Engine:
        engines = self._list_volume_engines(volume_name)
        if not engines:
            raise NotFoundError(f"cannot find engine for volume '{volume_name}'")
        if len(engines) == 1:
            return _engine_from_dict(engines[0])

        active = [engine for engine in engines if (engine.get("spec") or {}).get("active")]
        if len(active) != 1:
            raise DataStoreError(
                f"volume '{volume_name}' has {len(engines)} engines and {len(active)} active engines"
            )
        return _engine_from_dict(active[0])

    def list_backup_transfer_status(self, volume_name: str) -> list[TransferStatus]:
        statuses: list[TransferStatus] = []
        for document in self._list_volume_engines(volume_name):
            statuses.extend(_engine_from_dict(document).backup_status)
        return statuses

    def stream_backup_events(self) -> Iterator[tuple[str, Backup]]:
        watcher = watch.Watch()
        for event in watcher.stream(
            self.custom_objects_api.list_namespaced_custom_object,
            group=self.group,
            version=self.version,
            namespace=self.namespace,
            plural="backups",
            timeout_seconds=WATCH_TIMEOUT_SECONDS,
        ):
            try:
                backup = _backup_from_dict(event["object"])
            except DataStoreError as error:
                logger.warning("Skipped %s event: %s", event["type"], error)
                continue
            yield event["type"], backup

    def _list_volume_engines(self, volume_name: str) -> list[dict[str, Any]]:
        return [
            engine
            for engine in self._list("engines")
            if (engine.get("spec") or {}).get("volumeName") == volume_name
        ]

    def _ready_node_names(self) -> set[str]:
        return {
            (node.get("metadata") or {}).get("name", "")
            for node in self._list("nodes")
            if _is_node_ready(node)
        }

    def _engine_image_node_map(self, image: str) -> dict[str, bool]:
        for engine_image in self._list("engineimages"):
            spec = engine_image.get("spec") or {}
            status = engine_image.get("status") or {}
            if spec.get("image") != image:
                continue
            if status.get("state") != "ready":
                return {}
            return dict(status.get("nodeDeploymentMap") or {})
        return {}

    def _get(self, plural: str, name: str) -> dict[str, Any]:
        return self._call(
            operation=f"get {plural} '{name}'",
            func=lambda: self.custom_objects_api.get_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural=plural,
                name=name,
            ),
        )

    def _list(self, plural: str) -> list[dict[str, Any]]:
        response = self._call(
            operation=f"list {plural}",
            func=lambda: self.custom_objects_api.list_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural=plural,
            ),
        )
        return list(response.get("items") or [])

    def _patch(self, plural: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        return self._call(
            operation=f"patch {plural} '{name}'",
            func=lambda: self.custom_objects_api.patch_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural=plural,
                name=name,
                body=body,
            ),
        )

    def _call(self, *, operation: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except ApiException as error:
            message = format_api_exception_message(operation=operation, error=error)
            if error.status == 404:
                raise NotFoundError(message) from error
            if error.status == 409:
                raise ConflictError(message) from error
            raise DataStoreError(message) from error


def _backup_from_dict(document: dict[str, Any]) -> Backup:
    try:
        return Backup.from_dict(document)
    except ValueError as error:
        name = (document.get("metadata") or {}).get("name", "")
        raise DataStoreError(f"cannot parse backup '{name}': {error}") from error


def _is_node_ready(node: dict[str, Any]) -> bool:
    conditions = (node.get("status") or {}).get("conditions") or []
    if isinstance(conditions, dict):
        conditions = list(conditions.values())
    for condition in conditions:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


def _engine_from_dict(document: dict[str, Any]) -> Engine:
    metadata = document.get("metadata") or {}
    spec = document.get("spec") or {}
    status = document.get("status") or {}

    raw_statuses = status.get("backupStatus") or {}
    if isinstance(raw_statuses, dict):
        raw_statuses = list(raw_statuses.values())

    backup_status = tuple(
        TransferStatus(
            snapshot_name=entry.get("snapshotName") or "",
            progress=int(entry.get("progress") or 0),
            error=entry.get("error") or "",
            backup_url=entry.get("backupURL") or "",
        )
        for entry in raw_statuses
        if entry
    )
    return Engine(
        name=metadata.get("name", ""),
        volume_name=spec.get("volumeName") or "",
        current_image=status.get("currentImage") or "",
        backup_status=backup_status,
    )
