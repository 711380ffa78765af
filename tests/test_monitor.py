from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from nerdy_k8s_backup_controller.datastore import DataStoreError
from nerdy_k8s_backup_controller.models import BackupState, TransferStatus
from nerdy_k8s_backup_controller.monitor import ProgressMonitor, TransferRequest

from fakes import FakeDataStore, make_backup, populated_datastore


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> Mock:
    sleep = Mock()
    monkeypatch.setattr("nerdy_k8s_backup_controller.monitor.time.sleep", sleep)
    return sleep


def _in_progress_datastore(**kwargs: bool) -> FakeDataStore:
    datastore = populated_datastore(**kwargs)
    datastore.add_backup(make_backup(owner_id="node-1", snapshot_name="snap-1", state=BackupState.IN_PROGRESS))
    return datastore


def _monitor(datastore: FakeDataStore) -> ProgressMonitor:
    return ProgressMonitor(datastore=datastore, event_recorder=Mock(), backup_target_name="default")


def _request(datastore: FakeDataStore) -> TransferRequest:
    return TransferRequest.build(
        backup=datastore.get_backup("backup-1"),
        backup_volume_name="vol-1",
        volume=datastore.get_volume("vol-1"),
        backup_target_url="s3://backups@us-east-1/",
        credential={"AWS_ACCESS_KEY_ID": "key"},
    )


def _polls(*progress: int) -> list[list[TransferStatus]]:
    return [[TransferStatus(snapshot_name="snap-1", progress=value)] for value in progress]


def test_run_with_progress_reaching_completion_marks_completed_and_wakes_backup_volume_once(_no_sleep: Mock) -> None:
    datastore = _in_progress_datastore()
    datastore.transfer_polls = _polls(10, 55, 100)
    monitor = _monitor(datastore)
    engine_client = Mock()

    state = monitor.run(engine_client, _request(datastore))

    assert state is BackupState.COMPLETED
    assert datastore.backups["backup-1"].status.state is BackupState.COMPLETED
    assert len(datastore.backup_volume_writes) == 1
    assert datastore.backup_target_writes == []
    assert datastore.transfer_poll_count == 3
    assert _no_sleep.call_count == 2
    engine_client.snapshot_backup.assert_called_once_with(
        "backup-1",
        "snap-1",
        "s3://backups@us-east-1/",
        "",
        "",
        {"app": "db"},
        {"AWS_ACCESS_KEY_ID": "key"},
    )


def test_run_with_completion_and_no_backup_volume_wakes_backup_target() -> None:
    datastore = _in_progress_datastore(with_backup_volume=False)
    datastore.transfer_polls = _polls(100)
    monitor = _monitor(datastore)

    state = monitor.run(Mock(), _request(datastore))

    assert state is BackupState.COMPLETED
    assert len(datastore.backup_target_writes) == 1
    assert datastore.backup_target_writes[0].sync_requested_at is not None


def test_run_with_transfer_error_marks_error_and_stops_polling(_no_sleep: Mock) -> None:
    datastore = _in_progress_datastore()
    datastore.transfer_polls = [
        [TransferStatus(snapshot_name="snap-1", progress=20)],
        [TransferStatus(snapshot_name="snap-1", progress=30, error="disk full")],
        [TransferStatus(snapshot_name="snap-1", progress=100)],
    ]
    monitor = _monitor(datastore)

    state = monitor.run(Mock(), _request(datastore))

    assert state is BackupState.ERROR
    assert datastore.backups["backup-1"].status.state is BackupState.ERROR
    assert datastore.transfer_poll_count == 2
    assert _no_sleep.call_count == 1
    assert datastore.backup_volume_writes == []
    event_args = monitor.event_recorder.event.call_args.args  # type: ignore[attr-defined]
    assert event_args[1:3] == ("Warning", "Error")
    assert "disk full" in event_args[3]


def test_run_with_missing_transfer_entry_marks_unknown() -> None:
    datastore = _in_progress_datastore()
    datastore.transfer_polls = [[TransferStatus(snapshot_name="other-snap", progress=100)]]
    monitor = _monitor(datastore)

    state = monitor.run(Mock(), _request(datastore))

    assert state is BackupState.UNKNOWN
    assert datastore.backups["backup-1"].status.state is BackupState.UNKNOWN


def test_run_with_failing_transfer_listing_marks_unknown() -> None:
    datastore = _in_progress_datastore()
    datastore.list_backup_transfer_status = Mock(side_effect=DataStoreError("api down"))  # type: ignore[method-assign]
    monitor = _monitor(datastore)

    state = monitor.run(Mock(), _request(datastore))

    assert state is BackupState.UNKNOWN
    assert datastore.backups["backup-1"].status.state is BackupState.UNKNOWN


def test_run_with_rejected_transfer_start_marks_error_without_polling() -> None:
    datastore = _in_progress_datastore()
    engine_client = Mock()
    engine_client.snapshot_backup.side_effect = RuntimeError("snapshot not found")
    monitor = _monitor(datastore)

    state = monitor.run(engine_client, _request(datastore))

    assert state is BackupState.ERROR
    assert datastore.backups["backup-1"].status.state is BackupState.ERROR
    assert datastore.transfer_poll_count == 0


def test_run_with_concurrent_reconciler_write_keeps_last_committed_state() -> None:
    datastore = _in_progress_datastore()
    datastore.transfer_polls = _polls(100)
    monitor = _monitor(datastore)
    request = _request(datastore)
    engine_client = Mock()
    stored_get_backup = datastore.get_backup

    def _get_backup_then_race(name: str):
        pre_image = stored_get_backup(name)
        concurrent = stored_get_backup(name)
        concurrent.status.messages = {"sync": "reconciler wrote first"}
        datastore.update_backup_status(concurrent)
        return pre_image

    datastore.get_backup = _get_backup_then_race  # type: ignore[method-assign]

    state = monitor.run(engine_client, request)

    assert state is BackupState.COMPLETED
    stored = datastore.backups["backup-1"].status
    assert stored.messages == {"sync": "reconciler wrote first"}
    assert stored.state is BackupState.IN_PROGRESS
    assert len(datastore.status_writes) == 1
    engine_client.snapshot_backup.assert_called_once()


def test_run_with_unexpected_store_failure_never_raises() -> None:
    datastore = _in_progress_datastore()
    datastore.transfer_polls = _polls(100)
    request = _request(datastore)
    datastore.get_backup = Mock(side_effect=ValueError("corrupt object"))  # type: ignore[method-assign]
    monitor = _monitor(datastore)

    state = monitor.run(Mock(), request)

    assert state is BackupState.COMPLETED


def test_launch_runs_monitor_in_background_thread() -> None:
    datastore = _in_progress_datastore()
    datastore.transfer_polls = _polls(100)
    monitor = _monitor(datastore)

    thread = monitor.launch(Mock(), _request(datastore))
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert thread.daemon
    assert datastore.backups["backup-1"].status.state is BackupState.COMPLETED


def test_run_finishing_after_sync_completed_backup_keeps_completed_state() -> None:
    datastore = populated_datastore()
    datastore.add_backup(
        make_backup(
            owner_id="node-1",
            snapshot_name="snap-1",
            state=BackupState.COMPLETED,
            url="s3://backups@us-east-1/?backup=backup-1&volume=vol-1",
            last_synced_at=datetime(2024, 1, 1, 12, 0, tzinfo=UTC),
        )
    )
    monitor = _monitor(datastore)

    state = monitor.run(Mock(), _request(datastore))

    assert state is BackupState.UNKNOWN
    assert datastore.backups["backup-1"].status.state is BackupState.COMPLETED
    assert datastore.status_writes == []
