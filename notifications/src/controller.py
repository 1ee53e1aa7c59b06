from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from typing import Any

from kubernetes.client import CoreV1Api

from notifications.src.errors import (
    CacheSyncTimeout,
    ReconfigurationError,
    ValidationError,
)
from notifications.src.lifecycle import WorkerLifecycleManager
from notifications.src.merger import ConfigMerger
from notifications.src.metrics import METRICS
from notifications.src.watcher import ResourceKind, ResourceWatcher
from notifications.src.worker import WorkerFactory

LOGGER = logging.getLogger(__name__)


def await_initial_sync(
    watchers: Sequence[ResourceWatcher],
    timeout_seconds: float,
    stop_event: threading.Event | None = None,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Block until every watcher has completed its initial listing.

    Raises :class:`CacheSyncTimeout` when that takes longer than
    *timeout_seconds*. Afterwards, a resource that was not found is not an
    error: one warning names everything missing and the names are returned,
    while the watchers keep waiting for the resources to be created.
    """
    logger = logger or LOGGER
    stop = stop_event or threading.Event()
    deadline = time.monotonic() + timeout_seconds
    while not all(watcher.has_synced() for watcher in watchers):
        if stop.is_set():
            return []
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CacheSyncTimeout("timed out waiting for caches to sync")
        stop.wait(timeout=min(0.1, remaining))

    missing = [watcher.kind.display_name for watcher in watchers if not watcher.list()]
    if missing:
        logger.warning(
            "Cannot find %s. Waiting when both config map and secret are created.",
            " and ".join(missing),
        )
    return missing


class ConfigReconciler:
    """Feed both resource watchers into the merger and supervise the result.

    One consumer thread per watcher drains its event stream into
    :meth:`ConfigMerger.on_update`, which keeps per-source ordering. Any
    :class:`ReconfigurationError` (invalid configuration, worker that cannot
    start or stop, cache sync timeout, worker exiting on its own) is logged
    once, stored in :attr:`fatal_error` and ends :meth:`run_forever`.
    """

    def __init__(
        self,
        watchers: Sequence[ResourceWatcher],
        lifecycle: WorkerLifecycleManager,
        merger: ConfigMerger | None = None,
        cache_sync_timeout_seconds: float = 60.0,
        stop_timeout_seconds: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.watchers = list(watchers)
        self.lifecycle = lifecycle
        self.merger = merger or ConfigMerger(lifecycle)
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.logger = logger or LOGGER

        if self.lifecycle.on_worker_exit is None:
            self.lifecycle.on_worker_exit = self._on_worker_exit

        self.synced = threading.Event()
        self.fatal_error: BaseException | None = None
        self._fatal_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._consumers: list[threading.Thread] = []

    @property
    def ready(self) -> threading.Event:
        """Set while a worker is running."""
        return self.lifecycle.running

    def _fail(self, exc: BaseException, message: str) -> None:
        with self._fatal_lock:
            first = self.fatal_error is None
            if first:
                self.fatal_error = exc
        if first:
            METRICS.config_errors_total.labels(reason=type(exc).__name__).inc()
            self.logger.error("%s: %s", message, exc)
        self._shutdown.set()

    def _on_worker_exit(self, version: int) -> None:
        self._fail(
            ReconfigurationError(f"worker for configuration version {version} exited unexpectedly"),
            "Worker stopped",
        )

    def _consume(self, watcher: ResourceWatcher) -> None:
        try:
            for event in watcher.events():
                self.merger.on_update(event)
        except ValidationError as exc:
            self._fail(exc, "Failed to parse new settings")
        except ReconfigurationError as exc:
            self._fail(exc, "Failed to start controller")
        except Exception as exc:
            self.logger.exception("Unexpected error applying %s update", watcher.kind.value)
            self._fail(exc, "Failed to apply configuration")

    def start(self) -> None:
        for watcher in self.watchers:
            watcher.start()
            consumer = threading.Thread(
                target=self._consume,
                args=(watcher,),
                name=f"merge-{watcher.kind.value}",
                daemon=True,
            )
            self._consumers.append(consumer)
            consumer.start()

    def stop(self) -> None:
        for watcher in self.watchers:
            watcher.stop(timeout=self.stop_timeout_seconds)
        self.merger.close()
        for consumer in self._consumers:
            consumer.join(timeout=self.stop_timeout_seconds)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start watching, wait for the initial sync, then block until shutdown."""
        if shutdown_event is not None:
            self._shutdown = shutdown_event
        self.start()
        try:
            try:
                await_initial_sync(
                    self.watchers,
                    timeout_seconds=self.cache_sync_timeout_seconds,
                    stop_event=self._shutdown,
                    logger=self.logger,
                )
                self.synced.set()
            except CacheSyncTimeout as exc:
                self._fail(exc, "Failed to load configuration")
            self._shutdown.wait()
        finally:
            self.stop()


def build_reconciler(
    core_api: CoreV1Api,
    namespace: str,
    worker_factory: WorkerFactory,
    selector: str = "",
    processors_count: int = 1,
    cache_sync_timeout_seconds: float = 60.0,
    worker_stop_timeout_seconds: float = 30.0,
    worker_options: Mapping[str, Any] | None = None,
) -> ConfigReconciler:
    """Wire watchers, merger and lifecycle manager for one namespace."""
    watchers = [
        ResourceWatcher(core_api=core_api, kind=ResourceKind.SETTINGS, namespace=namespace),
        ResourceWatcher(core_api=core_api, kind=ResourceKind.SECRETS, namespace=namespace),
    ]
    lifecycle = WorkerLifecycleManager(
        worker_factory=worker_factory,
        namespace=namespace,
        selector=selector,
        processors_count=processors_count,
        stop_timeout_seconds=worker_stop_timeout_seconds,
        worker_options=worker_options,
    )
    return ConfigReconciler(
        watchers=watchers,
        lifecycle=lifecycle,
        cache_sync_timeout_seconds=cache_sync_timeout_seconds,
        stop_timeout_seconds=max(10.0, worker_stop_timeout_seconds),
    )
