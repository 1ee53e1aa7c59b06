from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from notifications.src.metrics import METRICS
from notifications.src.services import CONSOLE_SERVICE_NAME, ConsoleService, Service
from notifications.src.settings import ConfigSnapshot, RawPayload, parse_config
from notifications.src.watcher import ResourceEvent, ResourceKind

LOGGER = logging.getLogger(__name__)


class SnapshotApplier(Protocol):
    def apply(self, snapshot: ConfigSnapshot) -> None: ...

    def shutdown(self) -> None: ...


class ConfigMerger:
    """Combine settings and secrets updates into configuration snapshots.

    Every :meth:`on_update` runs under one lock, including validation and the
    hand-off to the lifecycle manager, so merge attempts from the two watcher
    threads are totally ordered and a worker is never started for a snapshot
    that a concurrent update has already superseded.

    Identical re-deliveries are not deduplicated: each one is a new merge
    attempt and, once both halves are present, a new worker replacement.
    """

    def __init__(
        self,
        lifecycle: SnapshotApplier,
        parse: Callable[[RawPayload, RawPayload, int], ConfigSnapshot] = parse_config,
        console_factory: Callable[[], Service] = ConsoleService,
        logger: logging.Logger | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.parse = parse
        self.console_factory = console_factory
        self.logger = logger or LOGGER

        self._lock = threading.Lock()
        self._settings: RawPayload | None = None
        self._secrets: RawPayload | None = None
        self._version = 0
        self._halted = False

    @property
    def version(self) -> int:
        """Number of merge attempts made so far."""
        with self._lock:
            return self._version

    def on_update(self, event: ResourceEvent) -> None:
        """Record *event* and, when both halves are known, build and apply a snapshot.

        Raises whatever validation or the lifecycle manager raises; the merger
        then refuses every later update, since the process is going down.
        """
        with self._lock:
            if self._halted:
                self.logger.debug(
                    "Ignoring %s update, the merger is halted", event.kind.value
                )
                return

            if event.kind is ResourceKind.SETTINGS:
                self._settings = event.payload
            else:
                self._secrets = event.payload

            if self._settings is None or self._secrets is None:
                return

            self._version += 1
            METRICS.merge_attempts_total.inc()
            try:
                snapshot = self.parse(self._settings, self._secrets, self._version)
                # Built-in inspection sink, useful for debugging deliveries.
                snapshot.notifier.add_service(CONSOLE_SERVICE_NAME, self.console_factory())
                self.lifecycle.apply(snapshot)
            except BaseException:
                self._halted = True
                raise

    def close(self) -> None:
        """Refuse further updates and stop the running worker.

        Takes the merge lock, so a replacement already in progress finishes
        first and no worker can be started once this returns.
        """
        with self._lock:
            self._halted = True
            self.lifecycle.shutdown()
