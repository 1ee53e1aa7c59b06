from __future__ import annotations

import importlib
import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from kubernetes import client, watch
from kubernetes.client import ApiException, CustomObjectsApi

from notifications.src.metrics import WorkerMetrics
from notifications.src.settings import ConfigSnapshot

APPLICATION_GROUP = "argoproj.io"
APPLICATION_VERSION = "v1alpha1"
APPLICATION_PLURAL = "applications"


class Worker(Protocol):
    def initialize(self, stop_event: threading.Event) -> None: ...

    def run(self, stop_event: threading.Event, processors_count: int) -> None: ...


class WorkerFactory(Protocol):
    def __call__(
        self,
        snapshot: ConfigSnapshot,
        *,
        namespace: str,
        selector: str,
        metrics: WorkerMetrics,
        **options: Any,
    ) -> Worker: ...


def load_worker_factory(path: str) -> WorkerFactory:
    """Resolve a ``package.module:attribute`` import path to a worker factory."""
    module_name, separator, attribute = path.partition(":")
    if not separator or not module_name or not attribute:
        raise ValueError(f"worker factory must look like 'package.module:attribute', got: {path!r}")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attribute)
    except AttributeError as exc:
        raise ValueError(f"{module_name} has no attribute {attribute!r}") from exc
    if not callable(factory):
        raise ValueError(f"worker factory {path!r} is not callable")
    return factory


class ApplicationObserver:
    """Default worker: observes Argo CD Applications matching the selector.

    It proves the configuration is loadable and the cluster reachable, and
    counts application events per type. Trigger evaluation and delivery are
    left to a real worker plugged in with ``--worker-factory``.
    """

    def __init__(
        self,
        snapshot: ConfigSnapshot,
        *,
        namespace: str,
        selector: str,
        metrics: WorkerMetrics,
        custom_api: CustomObjectsApi | None = None,
        repo_server: str = "",
        watch_timeout_seconds: int = 10,
        logger: logging.Logger | None = None,
        **_: Any,
    ) -> None:
        self.snapshot = snapshot
        self.namespace = namespace
        self.selector = selector
        self.metrics = metrics
        self.custom_api = custom_api or client.CustomObjectsApi()
        self.repo_server = repo_server
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._resource_version: str | None = None

    def _list_kwargs(self) -> dict[str, Any]:
        return {
            "group": APPLICATION_GROUP,
            "version": APPLICATION_VERSION,
            "namespace": self.namespace,
            "plural": APPLICATION_PLURAL,
            "label_selector": self.selector,
        }

    def initialize(self, stop_event: threading.Event) -> None:
        listing = self.custom_api.list_namespaced_custom_object(**self._list_kwargs())
        self._resource_version = (listing.get("metadata") or {}).get("resourceVersion")
        self.logger.info(
            "Worker initialized for configuration version %d: %d application(s), "
            "%d trigger(s), services %s",
            self.snapshot.version,
            len(listing.get("items") or []),
            len(self.snapshot.triggers),
            ", ".join(sorted(self.snapshot.services)) or "none",
        )

    def _process(self, event_type: str, obj: dict[str, Any]) -> None:
        name = (obj.get("metadata") or {}).get("name", "<unknown>")
        self.metrics.applications_observed_total.labels(event=event_type).inc()
        self.logger.debug("Observed %s of application %s", event_type, name)

    def run(self, stop_event: threading.Event, processors_count: int) -> None:
        backoff_seconds = 1
        with ThreadPoolExecutor(
            max_workers=processors_count, thread_name_prefix="processor"
        ) as executor:
            while not stop_event.is_set():
                watcher = watch.Watch()
                try:
                    for event in watcher.stream(
                        self.custom_api.list_namespaced_custom_object,
                        resource_version=self._resource_version,
                        timeout_seconds=self.watch_timeout_seconds,
                        **self._list_kwargs(),
                    ):
                        if stop_event.is_set():
                            break
                        obj = event.get("object")
                        if not isinstance(obj, dict):
                            continue
                        version = (obj.get("metadata") or {}).get("resourceVersion")
                        if version:
                            self._resource_version = version
                        executor.submit(self._process, str(event.get("type", "")), obj)
                    backoff_seconds = 1
                except ApiException as exc:
                    if exc.status == 410:
                        self._resource_version = None
                        continue
                    self.logger.exception("Application watch failed")
                    stop_event.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                    backoff_seconds = min(backoff_seconds * 2, 30)
                finally:
                    watcher.stop()
        self.logger.info("Worker for configuration version %d stopped", self.snapshot.version)
