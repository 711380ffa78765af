from __future__ import annotations

import logging

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import format_api_exception_message
from .models import Volume, utc_now

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
DEFAULT_COMPONENT = "nerdy-backup-controller"

logger = logging.getLogger(__name__)


class EventRecorder:
    """Writes core/v1 Events whose involved object is the backed-up volume.

    Recording is best effort: a rejected event is logged and never interrupts the
    caller.
    """

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        component: str = DEFAULT_COMPONENT,
        host: str = "",
        api_version: str = "",
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.host = host
        self.api_version = api_version

    def event(self, volume: Volume, event_type: str, reason: str, message: str) -> None:
        now = utc_now()
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{volume.name}.", namespace=volume.namespace),
            involved_object=client.V1ObjectReference(
                kind="Volume",
                name=volume.name,
                namespace=volume.namespace,
                uid=volume.uid or None,
                api_version=self.api_version or None,
            ),
            type=event_type,
            reason=reason,
            message=message,
            source=client.V1EventSource(component=self.component, host=self.host or None),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=volume.namespace, body=body)
        except ApiException as error:
            logger.warning(
                "%s",
                format_api_exception_message(operation=f"record {reason} event for volume '{volume.name}'", error=error),
            )
        except Exception as error:  # pylint: disable=broad-except
            logger.warning("Failed to record %s event for volume '%s': %s", reason, volume.name, error)
