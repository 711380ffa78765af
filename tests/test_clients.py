from __future__ import annotations

from nerdy_k8s_backup_controller.clients import BackupTargetInProgressError, encode_backup_url, is_in_progress_error


def test_encode_backup_url_with_plain_target_appends_backup_and_volume() -> None:
    url = encode_backup_url("backup-1", "vol-1", "s3://backups@us-east-1/")

    assert url == "s3://backups@us-east-1/?backup=backup-1&volume=vol-1"


def test_encode_backup_url_with_existing_query_replaces_backup_and_volume_only() -> None:
    url = encode_backup_url("backup-2", "vol-2", "nfs://server:/exports?backup=old&nfsOptions=soft&volume=old")

    assert url == "nfs://server:/exports?nfsOptions=soft&backup=backup-2&volume=vol-2"


def test_is_in_progress_error_with_marker_error_or_message_returns_true() -> None:
    assert is_in_progress_error(BackupTargetInProgressError("busy")) is True
    assert is_in_progress_error(RuntimeError("backup backup-1 is in progress")) is True
    assert is_in_progress_error(RuntimeError("permission denied")) is False
