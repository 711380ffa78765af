from __future__ import annotations

from dataclasses import dataclass
import copy
import logging
import threading
import time
from typing import Mapping, Protocol

from .clients import EngineClient
from .datastore import ConflictError, DataStoreError, NotFoundError
from .events import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING, EventRecorder
from .logs import FieldsAdapter, logger_with_fields
from .models import Backup, BackupState, BackupTarget, BackupVolume, TransferStatus, Volume, utc_now
from .status import write_status_if_changed

DEFAULT_POLL_INTERVAL_SECONDS = 2.0
COMPLETED_PROGRESS = 100

logger = logging.getLogger(__name__)


class MonitorDataStore(Protocol):
    def get_backup(self, name: str) -> Backup:
        ...

    def update_backup_status(self, backup: Backup) -> Backup:
        ...

    def list_backup_transfer_status(self, volume_name: str) -> list[TransferStatus]:
        ...

    def get_backup_volume(self, name: str) -> BackupVolume:
        ...

    def update_backup_volume(self, backup_volume: BackupVolume) -> BackupVolume:
        ...

    def get_backup_target(self, name: str) -> BackupTarget:
        ...

    def update_backup_target(self, backup_target: BackupTarget) -> BackupTarget:
        ...


@dataclass(frozen=True)
class TransferRequest:
    """Everything a monitor task needs, copied out of the reconciled backup."""

    backup_name: str
    snapshot_name: str
    backup_volume_name: str
    volume: Volume
    labels: tuple[tuple[str, str], ...]
    backup_target_url: str
    credential: tuple[tuple[str, str], ...]
    backing_image_name: str = ""
    backing_image_checksum: str = ""

    @classmethod
    def build(
        cls,
        *,
        backup: Backup,
        backup_volume_name: str,
        volume: Volume,
        backup_target_url: str,
        credential: Mapping[str, str],
        backing_image_name: str = "",
        backing_image_checksum: str = "",
    ) -> TransferRequest:
        return cls(
            backup_name=backup.name,
            snapshot_name=backup.spec.snapshot_name,
            backup_volume_name=backup_volume_name,
            volume=volume,
            labels=tuple(sorted(backup.spec.labels.items())),
            backup_target_url=backup_target_url,
            credential=tuple(sorted(credential.items())),
            backing_image_name=backing_image_name,
            backing_image_checksum=backing_image_checksum,
        )


class ProgressMonitor:
    def __init__(
        self,
        *,
        datastore: MonitorDataStore,
        event_recorder: EventRecorder,
        backup_target_name: str,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.datastore = datastore
        self.event_recorder = event_recorder
        self.backup_target_name = backup_target_name
        self.poll_interval_seconds = poll_interval_seconds

    def launch(self, engine_client: EngineClient, request: TransferRequest) -> threading.Thread:
        thread = threading.Thread(
            target=self.run,
            args=(engine_client, request),
            name=f"backup-monitor-{request.backup_name}",
            daemon=True,
        )
        thread.start()
        return thread

    def run(self, engine_client: EngineClient, request: TransferRequest) -> BackupState:
        log = logger_with_fields(
            logger,
            backup=request.backup_name,
            volume=request.volume.name,
            snapshot=request.snapshot_name,
        )
        state = BackupState.IN_PROGRESS
        try:
            state = self._monitor_transfer(engine_client, request, log)
        except Exception as error:  # pylint: disable=broad-except
            log.exception("Unexpected failure while monitoring backup %s", request.backup_name)
            state = BackupState.UNKNOWN
            self._record_event(request, state, _error_message(error))

        try:
            self._write_state(request, state, log)
            if state is BackupState.COMPLETED:
                self._request_sibling_sync(request, log)
        except Exception:  # pylint: disable=broad-except
            log.exception("Unexpected failure while finishing backup %s", request.backup_name)
        return state

    def _monitor_transfer(
        self,
        engine_client: EngineClient,
        request: TransferRequest,
        log: FieldsAdapter,
    ) -> BackupState:
        try:
            engine_client.snapshot_backup(
                request.backup_name,
                request.snapshot_name,
                request.backup_target_url,
                request.backing_image_name,
                request.backing_image_checksum,
                dict(request.labels),
                dict(request.credential),
            )
        except Exception as error:  # pylint: disable=broad-except
            log.error("Failed to start snapshot backup %s: %s", request.backup_name, _error_message(error))
            self._record_event(request, BackupState.ERROR, _error_message(error))
            return BackupState.ERROR

        while True:
            try:
                statuses = self.datastore.list_backup_transfer_status(request.volume.name)
            except Exception as error:  # pylint: disable=broad-except
                self._record_event(request, BackupState.UNKNOWN, _error_message(error))
                return BackupState.UNKNOWN

            transfer = _find_transfer_status(statuses, request.snapshot_name)
            if transfer is None:
                self._record_event(
                    request,
                    BackupState.UNKNOWN,
                    f"cannot find backup status of snapshot {request.snapshot_name}",
                )
                return BackupState.UNKNOWN
            if transfer.error:
                self._record_event(request, BackupState.ERROR, transfer.error)
                return BackupState.ERROR
            if transfer.progress < COMPLETED_PROGRESS:
                log.debug("Backup %s progress %d%%", request.backup_name, transfer.progress)
                time.sleep(self.poll_interval_seconds)
                continue

            self._record_event(request, BackupState.COMPLETED)
            return BackupState.COMPLETED

    def _write_state(self, request: TransferRequest, state: BackupState, log: FieldsAdapter) -> None:
        try:
            backup = self.datastore.get_backup(request.backup_name)
        except DataStoreError as error:
            log.error("Failed to get backup %s: %s", request.backup_name, error)
            return

        if backup.status.state not in (BackupState.NONE, BackupState.IN_PROGRESS):
            log.warning(
                "Dropped %s state of backup %s already in %s state",
                state.value,
                request.backup_name,
                backup.status.state.value,
            )
            return

        existing = copy.deepcopy(backup)
        backup.status.state = state
        try:
            write_status_if_changed(self.datastore, existing, backup)
        except ConflictError:
            log.warning("Dropped %s state of backup %s due to conflict", state.value, request.backup_name)
        except DataStoreError as error:
            log.error("Failed to update backup %s status: %s", request.backup_name, error)

    def _request_sibling_sync(self, request: TransferRequest, log: FieldsAdapter) -> None:
        sync_time = utc_now()
        try:
            backup_volume = self.datastore.get_backup_volume(request.backup_volume_name)
        except NotFoundError:
            backup_volume = None
        except DataStoreError as error:
            log.error("Failed to get backup volume %s: %s", request.backup_volume_name, error)
            return

        if backup_volume is not None:
            backup_volume.sync_requested_at = sync_time
            try:
                self.datastore.update_backup_volume(backup_volume)
            except ConflictError:
                pass
            except DataStoreError as error:
                log.error("Failed to update backup volume %s spec: %s", request.backup_volume_name, error)
            return

        try:
            backup_target = self.datastore.get_backup_target(self.backup_target_name)
        except DataStoreError as error:
            log.warning("Failed to get backup target %s: %s", self.backup_target_name, error)
            return
        backup_target.sync_requested_at = sync_time
        try:
            self.datastore.update_backup_target(backup_target)
        except ConflictError:
            pass
        except DataStoreError as error:
            log.warning("Failed to update backup target %s: %s", self.backup_target_name, error)

    def _record_event(self, request: TransferRequest, state: BackupState, error: str = "") -> None:
        labels = dict(request.labels)
        message = f"Snapshot {request.snapshot_name} backup {request.backup_name} label {labels}"
        if error:
            self.event_recorder.event(request.volume, EVENT_TYPE_WARNING, state.value, f"{message}: {error}")
            return
        self.event_recorder.event(request.volume, EVENT_TYPE_NORMAL, state.value, message)


def _find_transfer_status(statuses: list[TransferStatus], snapshot_name: str) -> TransferStatus | None:
    for status in statuses:
        if status.snapshot_name == snapshot_name:
            return status
    return None


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
