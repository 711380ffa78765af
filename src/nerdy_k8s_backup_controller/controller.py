from __future__ import annotations

import logging
import threading
import time
from typing import Iterator, Protocol

from .models import Backup
from .workqueue import RateLimitingQueue

DEFAULT_MAX_RETRIES = 3
WORKER_RESTART_SECONDS = 1.0
WATCH_RETRY_SECONDS = 5.0

logger = logging.getLogger(__name__)


class BackupSyncError(RuntimeError):
    """Raised when a queued backup key fails to reconcile."""


class Reconciler(Protocol):
    def reconcile(self, backup_name: str) -> None:
        ...


class BackupEventSource(Protocol):
    def stream_backup_events(self) -> Iterator[tuple[str, Backup]]:
        ...


class BackupController:
    """Drains ``namespace/name`` keys from the queue into the reconciler.

    Failed keys are retried with per-key backoff until ``max_retries`` requeues have
    been spent, then dropped with an error log.
    """

    def __init__(
        self,
        *,
        reconciler: Reconciler,
        queue: RateLimitingQueue[str],
        namespace: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
        name: str = "nerdy-backup",
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.reconciler = reconciler
        self.queue = queue
        self.namespace = namespace
        self.max_retries = max_retries
        self.name = name

    def enqueue_backup(self, backup: Backup | str) -> None:
        if isinstance(backup, Backup):
            key = f"{backup.namespace or self.namespace}/{backup.name}"
        else:
            key = backup if "/" in backup else f"{self.namespace}/{backup}"
        self.queue.add(key)

    def run(self, workers: int, stop_event: threading.Event) -> None:
        if workers <= 0:
            raise ValueError("workers must be positive")

        logger.info("Starting %s controller with %d workers", self.name, workers)
        threads = [
            threading.Thread(target=self._worker_until, args=(stop_event,), name=f"{self.name}-worker-{index}", daemon=True)
            for index in range(workers)
        ]
        for thread in threads:
            thread.start()
        try:
            stop_event.wait()
        finally:
            logger.info("Shutting down %s controller", self.name)
            self.queue.shut_down()
            for thread in threads:
                thread.join(timeout=WORKER_RESTART_SECONDS)

    def watch(self, source: BackupEventSource, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                for _event_type, backup in source.stream_backup_events():
                    self.enqueue_backup(backup)
                    if stop_event.is_set():
                        return
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("Backup watch interrupted: %s", error)
                stop_event.wait(WATCH_RETRY_SECONDS)

    def process_next_work_item(self) -> bool:
        key, shutting_down = self.queue.get()
        if shutting_down:
            return False
        if key is None:
            return True
        try:
            error: Exception | None = None
            try:
                self.sync_handler(key)
            except Exception as sync_error:  # pylint: disable=broad-except
                error = sync_error
            self.handle_err(error, key)
        finally:
            self.queue.done(key)
        return True

    def handle_err(self, error: Exception | None, key: str) -> None:
        if error is None:
            self.queue.forget(key)
            return

        if self.queue.num_requeues(key) < self.max_retries:
            logger.warning("Error syncing backup %s: %s", key, error)
            self.queue.add_rate_limited(key)
            return

        logger.error("Dropping backup %s out of the queue: %s", key, error, exc_info=error)
        self.queue.forget(key)

    def sync_handler(self, key: str) -> None:
        namespace, separator, name = key.partition("/")
        if not separator or not namespace or not name:
            raise BackupSyncError(f"{self.name}: invalid backup key {key!r}")
        if namespace != self.namespace:
            return
        try:
            self.reconciler.reconcile(name)
        except Exception as error:
            raise BackupSyncError(f"{self.name}: fail to sync backup {key}: {error}") from error

    def _worker_until(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                while self.process_next_work_item():
                    pass
                return
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s worker crashed; restarting", self.name)
                time.sleep(WORKER_RESTART_SECONDS)
