from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Sequence
import argparse
import importlib
import logging
import signal
import sys
import threading

from .config import ConfigError, ControllerConfig, load_config_overrides, validate_config
from .controller import BackupController
from .datastore import KubernetesDataStore
from .events import EventRecorder
from .k8s import KubernetesAuthenticationError, load_kubernetes_clients
from .logs import configure_logging
from .monitor import ProgressMonitor
from .reconciler import BackupReconciler
from .workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile Backup resources against the backup target")
    parser.add_argument("-c", "--config", help="Path to a YAML file overriding environment defaults")
    parser.add_argument("--namespace", help="Namespace the controller watches")
    parser.add_argument("--controller-id", help="Identifier of this replica, usually the node name")
    parser.add_argument("--workers", type=int, help="Number of reconcile workers")
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file")
    parser.add_argument("--context", help="Kubeconfig context to use")
    parser.add_argument("--in-cluster", action="store_true", default=None, help="Use the pod service account")
    parser.add_argument("--log-level", help="Logging level, e.g. DEBUG or INFO")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace, base: ControllerConfig | None = None) -> ControllerConfig:
    config = base or ControllerConfig()
    if args.config:
        config = load_config_overrides(config, Path(args.config))

    overrides: dict[str, Any] = {
        "namespace": args.namespace,
        "controller_id": args.controller_id,
        "workers": args.workers,
        "kubeconfig_path": args.kubeconfig,
        "context": args.context,
        "in_cluster": args.in_cluster,
        "log_level": args.log_level,
    }
    return replace(config, **{key: value for key, value in overrides.items() if value is not None})


def load_factory(reference: str) -> Any:
    module_name, _, attribute = reference.partition(":")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attribute)
    except (ImportError, AttributeError) as error:
        raise ConfigError(f"Unable to load factory '{reference}': {error}") from error


def build_controller(config: ControllerConfig) -> tuple[BackupController, KubernetesDataStore]:
    clients = load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )
    datastore = KubernetesDataStore(
        custom_objects_api=clients.custom_objects_api,
        namespace=config.namespace,
        group=config.crd_group,
        version=config.crd_version,
    )
    event_recorder = EventRecorder(
        core_api=clients.core_api,
        host=config.controller_id,
        api_version=f"{config.crd_group}/{config.crd_version}",
    )
    queue: RateLimitingQueue[str] = RateLimitingQueue()
    monitor = ProgressMonitor(
        datastore=datastore,
        event_recorder=event_recorder,
        backup_target_name=config.backup_target_name,
        poll_interval_seconds=config.backup_status_poll_interval_seconds,
    )
    reconciler = BackupReconciler(
        datastore=datastore,
        controller_id=config.controller_id,
        monitor=monitor,
        event_recorder=event_recorder,
        target_client_factory=load_factory(config.target_client_factory),
        engine_client_factory=load_factory(config.engine_client_factory),
        enqueue=lambda name: queue.add(f"{config.namespace}/{name}"),
        backup_target_name=config.backup_target_name,
    )
    controller = BackupController(
        reconciler=reconciler,
        queue=queue,
        namespace=config.namespace,
        max_retries=config.max_retries,
    )
    return controller, datastore


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = resolve_config(args)
    except ConfigError as error:
        print(f"error: {error}", file=sys.stderr)
        return 2

    errors = validate_config(config)
    configure_logging("INFO" if errors else config.log_level)
    if errors:
        for message in errors:
            logger.error("Invalid configuration: %s", message)
        return 2

    try:
        controller, datastore = build_controller(config)
    except (ConfigError, KubernetesAuthenticationError) as error:
        logger.error("%s", error)
        return 3

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())

    watcher = threading.Thread(
        target=controller.watch,
        args=(datastore, stop_event),
        name="backup-watch",
        daemon=True,
    )
    watcher.start()
    controller.run(config.workers, stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
