from __future__ import annotations

from fakes import ENGINE_IMAGE, FakeDataStore, make_backup

from nerdy_k8s_backup_controller.ownership import is_controller_responsible_for, is_responsible_for


def test_is_responsible_for_with_no_ready_engine_image_anywhere_returns_false() -> None:
    datastore = FakeDataStore()
    datastore.engine_image_nodes = set()

    assert is_responsible_for(datastore, "node-1", make_backup(owner_id="node-1"), ENGINE_IMAGE) is False


def test_is_responsible_for_with_current_owner_still_capable_keeps_ownership() -> None:
    datastore = FakeDataStore()

    assert is_responsible_for(datastore, "node-1", make_backup(owner_id="node-1"), ENGINE_IMAGE) is True
    assert is_responsible_for(datastore, "node-2", make_backup(owner_id="node-1"), ENGINE_IMAGE) is False


def test_is_responsible_for_with_owner_losing_engine_image_allows_takeover() -> None:
    datastore = FakeDataStore()
    datastore.engine_image_nodes = {"node-2"}

    assert is_responsible_for(datastore, "node-2", make_backup(owner_id="node-1"), ENGINE_IMAGE) is True


def test_is_responsible_for_with_unowned_backup_lets_any_capable_replica_claim() -> None:
    datastore = FakeDataStore()

    assert is_responsible_for(datastore, "node-1", make_backup(owner_id=""), ENGINE_IMAGE) is True
    assert is_responsible_for(datastore, "node-2", make_backup(owner_id=""), ENGINE_IMAGE) is True


def test_is_responsible_for_with_local_replica_lacking_engine_image_returns_false() -> None:
    datastore = FakeDataStore()
    datastore.engine_image_nodes = {"node-2"}

    assert is_responsible_for(datastore, "node-1", make_backup(owner_id="node-1"), ENGINE_IMAGE) is False
    assert is_responsible_for(datastore, "node-1", make_backup(owner_id=""), ENGINE_IMAGE) is False


def test_is_controller_responsible_for_with_down_owner_requires_new_owner() -> None:
    datastore = FakeDataStore()
    datastore.ready_nodes = {"node-2"}

    assert is_controller_responsible_for("node-2", datastore, "", "node-1") is True
    assert is_controller_responsible_for("node-2", datastore, "", "node-2") is True


def test_is_controller_responsible_for_with_healthy_preferred_owner_keeps_preferred() -> None:
    datastore = FakeDataStore()

    assert is_controller_responsible_for("node-1", datastore, "node-1", "node-2") is True
    assert is_controller_responsible_for("node-2", datastore, "node-1", "node-2") is False
