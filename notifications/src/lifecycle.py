from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from notifications.src.errors import StaleSnapshotError, WorkerStartError, WorkerStopTimeout
from notifications.src.metrics import METRICS, ControllerMetrics
from notifications.src.settings import ConfigSnapshot
from notifications.src.worker import Worker, WorkerFactory

LOGGER = logging.getLogger(__name__)


@dataclass
class WorkerHandle:
    """One running worker together with its own cancellation scope."""

    worker: Worker
    version: int
    stop_event: threading.Event
    thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def stop(self, timeout: float | None) -> bool:
        """Cancel the scope and wait for the run thread; True once it has exited."""
        self.stop_event.set()
        if self.thread is None:
            return True
        self.thread.join(timeout=timeout)
        return not self.thread.is_alive()


class WorkerLifecycleManager:
    """Owns the single running worker and replaces it on every new snapshot.

    States are *idle* (no handle) and *running* (one handle). :meth:`apply`
    always moves to *running*: the previous worker is cancelled and joined
    first, then the new one is constructed and initialized to completion
    before its run thread starts. There is no way back to *idle* other than
    :meth:`shutdown` at process exit.

    Construction, initialization and teardown failures raise subclasses of
    :class:`~notifications.src.errors.ReconfigurationError`; the caller treats
    them as fatal.
    """

    def __init__(
        self,
        worker_factory: WorkerFactory,
        namespace: str,
        selector: str = "",
        processors_count: int = 1,
        stop_timeout_seconds: float = 30.0,
        worker_options: Mapping[str, Any] | None = None,
        on_worker_exit: Callable[[int], None] | None = None,
        metrics: ControllerMetrics = METRICS,
        logger: logging.Logger | None = None,
    ) -> None:
        if processors_count < 1:
            raise ValueError("processors_count must be >= 1")
        self.worker_factory = worker_factory
        self.namespace = namespace
        self.selector = selector
        self.processors_count = processors_count
        self.stop_timeout_seconds = stop_timeout_seconds
        self.worker_options = dict(worker_options or {})
        self.on_worker_exit = on_worker_exit
        self.metrics = metrics
        self.logger = logger or LOGGER

        self.running = threading.Event()
        self._handle: WorkerHandle | None = None
        self._last_version = 0

    @property
    def current(self) -> WorkerHandle | None:
        return self._handle

    def _stop_current(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self.running.clear()
        self.metrics.worker_running.set(0)
        if not handle.stop(timeout=self.stop_timeout_seconds):
            raise WorkerStopTimeout(
                f"worker for configuration version {handle.version} did not stop "
                f"within {self.stop_timeout_seconds}s"
            )
        self._handle = None

    def apply(self, snapshot: ConfigSnapshot) -> None:
        if snapshot.version <= self._last_version:
            raise StaleSnapshotError(
                f"configuration version {snapshot.version} is not newer than "
                f"version {self._last_version}"
            )
        self._last_version = snapshot.version

        if self._handle is not None:
            self.logger.info("Settings had been updated. Restarting controller...")
            self._stop_current()
            self.metrics.worker_restarts_total.inc()

        stop_event = threading.Event()
        try:
            worker = self.worker_factory(
                snapshot,
                namespace=self.namespace,
                selector=self.selector,
                metrics=self.metrics.worker,
                **self.worker_options,
            )
        except Exception as exc:
            raise WorkerStartError(
                f"failed to construct worker for configuration version {snapshot.version}: {exc}"
            ) from exc

        try:
            worker.initialize(stop_event)
        except Exception as exc:
            stop_event.set()
            raise WorkerStartError(
                f"failed to initialize worker for configuration version {snapshot.version}: {exc}"
            ) from exc

        handle = WorkerHandle(worker=worker, version=snapshot.version, stop_event=stop_event)
        handle.thread = threading.Thread(
            target=self._run_worker,
            args=(handle,),
            name=f"worker-v{snapshot.version}",
            daemon=True,
        )
        self._handle = handle
        handle.thread.start()

        self.metrics.worker_running.set(1)
        self.metrics.config_version.set(snapshot.version)
        self.running.set()
        self.logger.info("Started worker for configuration version %d", snapshot.version)

    def _run_worker(self, handle: WorkerHandle) -> None:
        unexpected_exit = False
        try:
            handle.worker.run(handle.stop_event, self.processors_count)
            unexpected_exit = not handle.stop_event.is_set()
            if unexpected_exit:
                self.logger.error(
                    "Worker for configuration version %d exited without a stop signal",
                    handle.version,
                )
        except Exception:
            unexpected_exit = True
            self.logger.exception("Worker for configuration version %d crashed", handle.version)
        finally:
            if unexpected_exit and self.on_worker_exit is not None:
                self.on_worker_exit(handle.version)

    def shutdown(self) -> None:
        """Stop the running worker, if any, at process exit."""
        try:
            self._stop_current()
        except WorkerStopTimeout:
            self.logger.error(
                "Worker did not stop within %ss during shutdown", self.stop_timeout_seconds
            )
