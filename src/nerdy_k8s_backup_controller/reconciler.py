from __future__ import annotations

import copy
import logging
from typing import Callable, Protocol

from .clients import (
    BackupTargetClient,
    BackupTargetClientFactory,
    EngineClientFactory,
    encode_backup_url,
    is_in_progress_error,
)
from .datastore import ConflictError, DataStoreError, NotFoundError
from .events import EVENT_TYPE_NORMAL, EventRecorder
from .logs import FieldsAdapter, logger_with_fields
from .models import (
    BACKUP_VOLUME_LABEL,
    Backup,
    BackingImage,
    BackupState,
    BackupTarget,
    BackupVolume,
    Engine,
    Volume,
    utc_now,
)
from .monitor import MonitorDataStore, ProgressMonitor, TransferRequest
from .ownership import NodeReadiness, is_responsible_for
from .status import write_status_if_changed

SETTING_DEFAULT_ENGINE_IMAGE = "default-engine-image"
DEFAULT_BACKUP_TARGET_NAME = "default"

logger = logging.getLogger(__name__)


class BackupDataStore(MonitorDataStore, NodeReadiness, Protocol):
    def get_setting_value(self, name: str) -> str:
        ...

    def remove_finalizer_for_backup(self, backup: Backup) -> None:
        ...

    def get_volume(self, name: str) -> Volume:
        ...

    def get_backing_image(self, name: str) -> BackingImage:
        ...

    def get_volume_current_engine(self, volume_name: str) -> Engine:
        ...


class BackingImageChecksumMismatchError(RuntimeError):
    """Raised when a volume's backing image no longer matches the one already backed up."""


class BackupReconciler:
    """Drives a single Backup toward its desired state.

    ``reconcile`` returns normally when there is nothing to do or when another replica
    owns the backup; it raises only for failures worth retrying through the queue.
    """

    def __init__(
        self,
        *,
        datastore: BackupDataStore,
        controller_id: str,
        monitor: ProgressMonitor,
        event_recorder: EventRecorder,
        target_client_factory: BackupTargetClientFactory,
        engine_client_factory: EngineClientFactory,
        enqueue: Callable[[str], None],
        backup_target_name: str = DEFAULT_BACKUP_TARGET_NAME,
    ) -> None:
        self.datastore = datastore
        self.controller_id = controller_id
        self.monitor = monitor
        self.event_recorder = event_recorder
        self.target_client_factory = target_client_factory
        self.engine_client_factory = engine_client_factory
        self.enqueue = enqueue
        self.backup_target_name = backup_target_name

    def reconcile(self, backup_name: str) -> None:
        try:
            backup = self.datastore.get_backup(backup_name)
        except NotFoundError:
            return

        default_engine_image = self.datastore.get_setting_value(SETTING_DEFAULT_ENGINE_IMAGE)
        if not is_responsible_for(self.datastore, self.controller_id, backup, default_engine_image):
            return

        if backup.status.owner_id != self.controller_id:
            backup.status.owner_id = self.controller_id
            try:
                backup = self.datastore.update_backup_status(backup)
            except ConflictError:
                # another replica claimed it first
                return

        log = logger_with_fields(logger, backup=backup.name)

        try:
            backup_target = self.datastore.get_backup_target(self.backup_target_name)
        except NotFoundError:
            log.warning("Cannot find the %s backup target", self.backup_target_name)
            return

        backup_volume_name = backup.labels.get(BACKUP_VOLUME_LABEL)
        if not backup_volume_name:
            log.debug("Backup %s has no %s label", backup.name, BACKUP_VOLUME_LABEL)
            return

        if backup.deletion_timestamp is not None:
            self._cleanup_deleted_backup(backup, backup_volume_name, backup_target, log)
            return

        existing = copy.deepcopy(backup)

        if backup.spec.snapshot_name and backup.status.state is BackupState.NONE:
            self._start_backup_creation(backup, existing, backup_volume_name, backup_target, log)
            return

        if _is_synced(backup):
            return

        self._sync_from_backup_target(backup, backup_volume_name, backup_target, log)
        self._persist_status(existing, backup, log)

    def _cleanup_deleted_backup(
        self,
        backup: Backup,
        backup_volume_name: str,
        backup_target: BackupTarget,
        log: FieldsAdapter,
    ) -> None:
        try:
            backup_volume: BackupVolume | None = self.datastore.get_backup_volume(backup_volume_name)
        except NotFoundError:
            backup_volume = None

        if (
            _has_remote_backup(backup)
            and backup_target.backup_target_url
            and backup_volume is not None
            and backup_volume.deletion_timestamp is None
        ):
            target_client = self._target_client(backup_target, log)
            if target_client is None:
                return

            backup_url = encode_backup_url(backup.name, backup_volume_name, target_client.url)
            try:
                target_client.delete_backup(backup_url)
            except Exception as error:  # pylint: disable=broad-except
                log.error("Failed to delete remote backup %s: %s", backup_url, error)
                raise

        if backup_volume is not None and backup_volume.last_backup_name == backup.name:
            backup_volume.sync_requested_at = utc_now()
            try:
                self.datastore.update_backup_volume(backup_volume)
            except ConflictError:
                pass
            except DataStoreError as error:
                # the backup volume controller re-derives its status on its own schedule
                log.error("Failed to update backup volume %s spec: %s", backup_volume_name, error)

        self.datastore.remove_finalizer_for_backup(backup)

    def _start_backup_creation(
        self,
        backup: Backup,
        existing: Backup,
        backup_volume_name: str,
        backup_target: BackupTarget,
        log: FieldsAdapter,
    ) -> None:
        target_client = self._target_client(backup_target, log)
        if target_client is None:
            return

        engine = self.datastore.get_volume_current_engine(backup_volume_name)
        engine_client = self.engine_client_factory(engine)
        volume = self.datastore.get_volume(engine.volume_name or backup_volume_name)
        backing_image_checksum = self._backing_image_checksum(volume, backup_volume_name)

        backup.status.state = BackupState.IN_PROGRESS
        try:
            write_status_if_changed(self.datastore, existing, backup)
        except ConflictError:
            log.debug("Requeue %s due to conflict", backup.name)
            self.enqueue(backup.name)
            return

        self.event_recorder.event(
            volume,
            EVENT_TYPE_NORMAL,
            BackupState.IN_PROGRESS.value,
            f"Snapshot {backup.spec.snapshot_name} backup {backup.name} label {backup.spec.labels}",
        )
        request = TransferRequest.build(
            backup=backup,
            backup_volume_name=backup_volume_name,
            volume=volume,
            backup_target_url=target_client.url,
            credential=target_client.credential,
            backing_image_name=volume.backing_image,
            backing_image_checksum=backing_image_checksum,
        )
        log.info("Starting snapshot %s backup to %s", backup.spec.snapshot_name, target_client.url)
        self.monitor.launch(engine_client, request)

    def _backing_image_checksum(self, volume: Volume, backup_volume_name: str) -> str:
        if not volume.backing_image:
            return ""

        backing_image = self.datastore.get_backing_image(volume.backing_image)
        try:
            backup_volume = self.datastore.get_backup_volume(backup_volume_name)
        except NotFoundError:
            return backing_image.checksum

        if (
            backup_volume.backing_image_checksum
            and backing_image.checksum
            and backup_volume.backing_image_checksum != backing_image.checksum
        ):
            raise BackingImageChecksumMismatchError(
                f"the backing image {volume.backing_image} checksum {backup_volume.backing_image_checksum} "
                f"in the backup volume doesn't match the current checksum {backing_image.checksum}"
            )
        return backing_image.checksum

    def _sync_from_backup_target(
        self,
        backup: Backup,
        backup_volume_name: str,
        backup_target: BackupTarget,
        log: FieldsAdapter,
    ) -> None:
        sync_time = utc_now()
        target_client = self._target_client(backup_target, log)
        if target_client is None:
            return

        backup_url = encode_backup_url(backup.name, backup_volume_name, target_client.url)
        try:
            backup_info = target_client.inspect_backup_config(backup_url)
        except Exception as error:  # pylint: disable=broad-except
            if not is_in_progress_error(error):
                log.error("Failed to inspect backup config %s: %s", backup_url, error)
            return
        if backup_info is None:
            return

        status = backup.status
        status.state = BackupState.COMPLETED
        status.url = backup_info.url
        status.snapshot_name = backup_info.snapshot_name
        status.snapshot_created_at = backup_info.snapshot_created
        status.backup_created_at = backup_info.created
        status.size = backup_info.size
        status.labels = dict(backup_info.labels)
        status.messages = dict(backup_info.messages)
        status.volume_name = backup_info.volume_name
        status.volume_size = backup_info.volume_size
        status.volume_created = backup_info.volume_created
        status.volume_backing_image_name = backup_info.volume_backing_image_name
        status.last_synced_at = sync_time

    def _persist_status(self, existing: Backup, backup: Backup, log: FieldsAdapter) -> None:
        try:
            write_status_if_changed(self.datastore, existing, backup)
        except ConflictError:
            log.debug("Requeue %s due to conflict", backup.name)
            self.enqueue(backup.name)

    def _target_client(self, backup_target: BackupTarget, log: FieldsAdapter) -> BackupTargetClient | None:
        try:
            return self.target_client_factory(backup_target)
        except Exception as error:  # pylint: disable=broad-except
            log.error("Failed to initialize backup target client for %s: %s", backup_target.name, error)
            return None


def _is_synced(backup: Backup) -> bool:
    if backup.status.state is not BackupState.COMPLETED:
        return False
    last_synced_at = backup.status.last_synced_at
    if last_synced_at is None:
        return False
    sync_requested_at = backup.spec.sync_requested_at
    return sync_requested_at is None or sync_requested_at <= last_synced_at


def _has_remote_backup(backup: Backup) -> bool:
    return bool(backup.status.url) or backup.status.state is BackupState.COMPLETED
