from __future__ import annotations

import base64
import binascii
import enum
import logging
import queue
import random
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from notifications.src.metrics import METRICS
from notifications.src.settings import RawPayload

SETTINGS_CONFIG_MAP_NAME = "argocd-notifications-cm"
SECRET_NAME = "argocd-notifications-secret"


class ResourceKind(enum.Enum):
    SETTINGS = "settings"
    SECRETS = "secrets"

    @property
    def resource_name(self) -> str:
        if self is ResourceKind.SETTINGS:
            return SETTINGS_CONFIG_MAP_NAME
        return SECRET_NAME

    @property
    def display_name(self) -> str:
        """Human-readable identity used in operator-facing log lines."""
        if self is ResourceKind.SETTINGS:
            return f"config map {self.resource_name}"
        return f"secret {self.resource_name}"


class EventType(enum.Enum):
    ADDED = "Added"
    UPDATED = "Updated"


@dataclass(frozen=True)
class ResourceEvent:
    kind: ResourceKind
    type: EventType
    payload: RawPayload


class ResourceWatcher:
    """List-then-watch a single named ConfigMap or Secret in a namespace.

    A background thread keeps a local cache of the latest observed object and
    publishes every ``ADDED``/``MODIFIED`` as a :class:`ResourceEvent` on an
    internal queue, read through :meth:`events`. Transport problems never
    reach the consumer: ``410 Gone`` triggers a re-list, every other error is
    retried with exponential backoff and jitter (capped at 30 s).

    ``DELETED`` only clears the cache. The merger keeps the last payload it
    saw, so a deleted resource does not tear down a running worker.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        kind: ResourceKind,
        namespace: str,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.kind = kind
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._field_selector = f"metadata.name={kind.resource_name}"
        self._cache: RawPayload | None = None
        self._cache_lock = threading.Lock()
        self._events: queue.Queue[ResourceEvent | None] = queue.Queue()
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_fn(self, **kwargs: Any) -> Any:
        if self.kind is ResourceKind.SETTINGS:
            return self.core_api.list_namespaced_config_map(**kwargs)
        return self.core_api.list_namespaced_secret(**kwargs)

    def start(self) -> None:
        """Begin background delivery; returns immediately."""
        if self._thread is not None:
            raise RuntimeError(f"watcher for {self.kind.display_name} is already started")
        self._thread = threading.Thread(
            target=self.run_forever,
            name=f"watch-{self.kind.value}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the watch stream, release the consumer and wait for the thread."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
        self._events.put(None)
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        return self._synced.wait(timeout=timeout)

    def list(self) -> list[RawPayload]:
        with self._cache_lock:
            return [] if self._cache is None else [self._cache]

    def events(self) -> Iterator[ResourceEvent]:
        """Yield events in the order they were observed until the watcher stops."""
        while True:
            event = self._events.get()
            if event is None:
                return
            yield event

    def _payload(self, obj: Any) -> RawPayload:
        raw_data = getattr(obj, "data", None)
        if not isinstance(raw_data, dict):
            return {}
        if self.kind is ResourceKind.SETTINGS:
            return {
                k: ("" if v is None else str(v))
                for k, v in raw_data.items()
                if isinstance(k, str)
            }

        decoded: dict[str, str | bytes] = {}
        for key, value in raw_data.items():
            if not isinstance(key, str):
                continue
            try:
                decoded[key] = base64.b64decode(value or "", validate=True)
            except (binascii.Error, TypeError, ValueError):
                self.logger.warning(
                    "Skipping key %s of %s: value is not valid base64",
                    key,
                    self.kind.display_name,
                )
        return decoded

    def _set_cache(self, payload: RawPayload | None) -> RawPayload | None:
        with self._cache_lock:
            previous = self._cache
            self._cache = payload
        METRICS.resource_present.labels(resource=self.kind.value).set(
            0 if payload is None else 1
        )
        return previous

    def _emit(self, event_type: EventType, payload: RawPayload) -> None:
        if self._stop.is_set():
            return
        if event_type is EventType.ADDED:
            self.logger.info("%s found", self.kind.display_name)
        METRICS.config_updates_total.labels(
            resource=self.kind.value, event=event_type.value
        ).inc()
        self._events.put(ResourceEvent(kind=self.kind, type=event_type, payload=payload))

    def _relist(self) -> str | None:
        """List the resource, refresh the cache and return the list's resourceVersion.

        Anything found is published so that changes made while the watch was
        disconnected still reach the merger: ``ADDED`` when the cache was
        empty, ``UPDATED`` otherwise.
        """
        result = self._list_fn(namespace=self.namespace, field_selector=self._field_selector)
        resource_version = getattr(getattr(result, "metadata", None), "resource_version", None)
        items = [
            item
            for item in (getattr(result, "items", None) or [])
            if getattr(getattr(item, "metadata", None), "name", None) == self.kind.resource_name
        ]
        if items:
            payload = self._payload(items[0])
            previous = self._set_cache(payload)
            self._emit(EventType.ADDED if previous is None else EventType.UPDATED, payload)
        else:
            self._set_cache(None)
        self._synced.set()
        return resource_version

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply one raw watch event to the cache and publish it."""
        if event_type in {"ADDED", "MODIFIED"}:
            name = getattr(getattr(obj, "metadata", None), "name", None)
            if name != self.kind.resource_name:
                return
            payload = self._payload(obj)
            self._set_cache(payload)
            self._emit(EventType.ADDED if event_type == "ADDED" else EventType.UPDATED, payload)
        elif event_type == "DELETED":
            self.logger.warning("%s was deleted", self.kind.display_name)
            self._set_cache(None)

    def _wait_backoff(self, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def _log_api_error(self, exc: ApiException, action: str) -> None:
        if exc.status in {401, 403}:
            self.logger.error(
                "Kubernetes API access denied during %s of %s (status=%s). "
                "Check controller RBAC and service account permissions.",
                action,
                self.kind.display_name,
                exc.status,
            )
        else:
            self.logger.exception("Kubernetes API %s of %s failed", action, self.kind.display_name)

    def run_forever(self) -> None:
        """List-then-watch loop; runs until :meth:`stop` is called."""
        resource = self.kind.value
        resource_version: str | None = None
        needs_list = True
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._stop.is_set():
            if needs_list:
                try:
                    resource_version = self._relist()
                    needs_list = False
                    self.logger.debug(
                        "Watching %s from resourceVersion %s",
                        self.kind.display_name,
                        resource_version,
                    )
                except ApiException as exc:
                    self._log_api_error(exc, "list")
                    METRICS.watch_errors_total.labels(resource=resource).inc()
                    backoff_seconds = self._wait_backoff(backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error listing %s", self.kind.display_name)
                    METRICS.watch_errors_total.labels(resource=resource).inc()
                    backoff_seconds = self._wait_backoff(backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_fn,
                    namespace=self.namespace,
                    field_selector=self._field_selector,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )

                for event in stream:
                    if self._stop.is_set():
                        break

                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        code = obj.get("code") if isinstance(obj, dict) else None
                        if code == 410:
                            raise ApiException(status=410, reason="Gone")
                        raise ApiException(status=code or 500, reason="watch error event")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    self.handle_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away, re-list
                # and resume from the fresh one.
                if exc.status == 410:
                    self.logger.warning(
                        "Watch of %s expired, re-listing", self.kind.display_name
                    )
                    needs_list = True
                    continue
                self._log_api_error(exc, "watch")
                METRICS.watch_errors_total.labels(resource=resource).inc()
                backoff_seconds = self._wait_backoff(backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected error watching %s", self.kind.display_name)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                backoff_seconds = self._wait_backoff(backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
