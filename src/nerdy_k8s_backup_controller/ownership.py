from __future__ import annotations

from typing import Protocol

from .models import Backup


class NodeReadiness(Protocol):
    def is_node_down_or_deleted(self, node_name: str) -> bool:
        ...

    def list_ready_nodes_with_ready_engine_image(self, image: str) -> list[str]:
        ...

    def check_engine_image_readiness(self, image: str, node_name: str) -> bool:
        ...


def is_controller_responsible_for(
    controller_id: str,
    datastore: NodeReadiness,
    preferred_owner_id: str,
    current_owner_id: str,
) -> bool:
    """Cluster-wide tie-break for which replica should own an object.

    The preferred owner wins. Otherwise the current owner keeps the object while the
    preferred owner is unavailable, and any replica may take it over once both are
    unavailable.
    """

    def is_owner_unavailable(node_name: str) -> bool:
        return not node_name or datastore.is_node_down_or_deleted(node_name)

    is_preferred_owner = controller_id == preferred_owner_id
    continue_to_be_owner = current_owner_id == controller_id and is_owner_unavailable(preferred_owner_id)
    requires_new_owner = is_owner_unavailable(current_owner_id) and is_owner_unavailable(preferred_owner_id)
    return is_preferred_owner or continue_to_be_owner or requires_new_owner


def is_responsible_for(
    datastore: NodeReadiness,
    controller_id: str,
    backup: Backup,
    default_engine_image: str,
) -> bool:
    if not datastore.list_ready_nodes_with_ready_engine_image(default_engine_image):
        return False

    is_responsible = is_controller_responsible_for(controller_id, datastore, "", backup.status.owner_id)
    current_owner_engine_available = datastore.check_engine_image_readiness(
        default_engine_image, backup.status.owner_id
    )
    current_node_engine_available = datastore.check_engine_image_readiness(default_engine_image, controller_id)

    is_preferred_owner = current_node_engine_available and is_responsible
    continue_to_be_owner = current_node_engine_available and controller_id == backup.status.owner_id
    requires_new_owner = current_node_engine_available and not current_owner_engine_available
    return is_preferred_owner or continue_to_be_owner or requires_new_owner
