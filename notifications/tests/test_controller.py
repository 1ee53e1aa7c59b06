from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock

import pytest

from notifications.src.controller import ConfigReconciler, await_initial_sync, build_reconciler
from notifications.src.errors import CacheSyncTimeout
from notifications.src.lifecycle import WorkerLifecycleManager
from notifications.src.settings import ConfigSnapshot, RawPayload
from notifications.src.watcher import EventType, ResourceEvent, ResourceKind, ResourceWatcher


class FakeWatcher:
    """In-memory stand-in for :class:`ResourceWatcher` driven by the test."""

    def __init__(self, kind: ResourceKind, synced: bool = True) -> None:
        self.kind = kind
        self._synced = synced
        self._cache: RawPayload | None = None
        self._queue: queue.Queue[ResourceEvent | None] = queue.Queue()
        self.started = False
        self.stopped = False

    def publish(self, payload: RawPayload, event_type: EventType = EventType.ADDED) -> None:
        self._cache = payload
        self._queue.put(ResourceEvent(kind=self.kind, type=event_type, payload=payload))

    def has_synced(self) -> bool:
        return self._synced

    def list(self) -> list[RawPayload]:
        return [] if self._cache is None else [self._cache]

    def events(self) -> Iterator[ResourceEvent]:
        while True:
            event = self._queue.get()
            if event is None:
                return
            yield event

    def start(self) -> None:
        self.started = True

    def stop(self, timeout: float | None = None) -> None:
        self.stopped = True
        self._queue.put(None)


class RecordingFactory:
    def __init__(self) -> None:
        self.snapshots: list[ConfigSnapshot] = []
        self.constructed = threading.Event()

    def __call__(self, snapshot: ConfigSnapshot, **kwargs: Any) -> Any:
        self.snapshots.append(snapshot)
        self.constructed.set()
        worker = MagicMock()
        worker.run.side_effect = lambda stop_event, processors_count: stop_event.wait()
        return worker


def _make_reconciler(
    factory: Any, watchers: list[FakeWatcher], cache_sync_timeout_seconds: float = 2.0
) -> ConfigReconciler:
    lifecycle = WorkerLifecycleManager(
        worker_factory=factory, namespace="argocd", stop_timeout_seconds=2.0
    )
    return ConfigReconciler(
        watchers=watchers,  # type: ignore[arg-type]
        lifecycle=lifecycle,
        cache_sync_timeout_seconds=cache_sync_timeout_seconds,
        stop_timeout_seconds=2.0,
    )


def _run_in_background(
    reconciler: ConfigReconciler,
) -> tuple[threading.Thread, threading.Event]:
    shutdown_event = threading.Event()
    thread = threading.Thread(
        target=reconciler.run_forever, kwargs={"shutdown_event": shutdown_event}, daemon=True
    )
    thread.start()
    return thread, shutdown_event


SETTINGS = {"service.slack": "token: $slack-token\n"}
SECRETS = {"slack-token": b"xoxb-1"}


# ---------------------------------------------------------------------------
# Startup readiness gate
# ---------------------------------------------------------------------------


def test_await_initial_sync_warns_about_both_missing_resources(
    caplog: pytest.LogCaptureFixture,
) -> None:
    watchers = [FakeWatcher(ResourceKind.SETTINGS), FakeWatcher(ResourceKind.SECRETS)]

    with caplog.at_level(logging.WARNING):
        missing = await_initial_sync(watchers, timeout_seconds=1)  # type: ignore[arg-type]

    assert missing == [
        "config map argocd-notifications-cm",
        "secret argocd-notifications-secret",
    ]
    assert (
        "Cannot find config map argocd-notifications-cm and secret "
        "argocd-notifications-secret. Waiting when both config map and secret are created."
    ) in caplog.text


def test_await_initial_sync_warns_only_about_missing_secret(
    caplog: pytest.LogCaptureFixture,
) -> None:
    settings = FakeWatcher(ResourceKind.SETTINGS)
    settings.publish(SETTINGS)
    watchers = [settings, FakeWatcher(ResourceKind.SECRETS)]

    with caplog.at_level(logging.WARNING):
        missing = await_initial_sync(watchers, timeout_seconds=1)  # type: ignore[arg-type]

    assert missing == ["secret argocd-notifications-secret"]
    assert "Cannot find secret argocd-notifications-secret." in caplog.text


def test_await_initial_sync_is_silent_when_everything_exists(
    caplog: pytest.LogCaptureFixture,
) -> None:
    settings = FakeWatcher(ResourceKind.SETTINGS)
    settings.publish(SETTINGS)
    secrets = FakeWatcher(ResourceKind.SECRETS)
    secrets.publish(SECRETS)

    with caplog.at_level(logging.WARNING):
        missing = await_initial_sync([settings, secrets], timeout_seconds=1)  # type: ignore[list-item]

    assert missing == []
    assert "Cannot find" not in caplog.text


def test_await_initial_sync_times_out() -> None:
    watchers = [FakeWatcher(ResourceKind.SETTINGS, synced=False)]

    with pytest.raises(CacheSyncTimeout, match="timed out waiting for caches to sync"):
        await_initial_sync(watchers, timeout_seconds=0.2)  # type: ignore[arg-type]


def test_await_initial_sync_returns_early_on_shutdown() -> None:
    stop = threading.Event()
    stop.set()

    missing = await_initial_sync(
        [FakeWatcher(ResourceKind.SETTINGS, synced=False)],  # type: ignore[list-item]
        timeout_seconds=5,
        stop_event=stop,
    )

    assert missing == []


# ---------------------------------------------------------------------------
# Reconciliation loop
# ---------------------------------------------------------------------------


def test_worker_starts_once_both_resources_appear_after_startup() -> None:
    settings = FakeWatcher(ResourceKind.SETTINGS)
    secrets = FakeWatcher(ResourceKind.SECRETS)
    factory = RecordingFactory()
    reconciler = _make_reconciler(factory, [settings, secrets])

    thread, shutdown_event = _run_in_background(reconciler)
    assert reconciler.synced.wait(timeout=2)
    assert not reconciler.ready.is_set()

    settings.publish(SETTINGS)
    secrets.publish(SECRETS)

    assert reconciler.ready.wait(timeout=2)
    assert len(factory.snapshots) == 1
    assert factory.snapshots[0].services["slack"].options["token"] == "xoxb-1"

    shutdown_event.set()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert settings.stopped and secrets.stopped
    assert reconciler.fatal_error is None
    assert not reconciler.ready.is_set()


def test_settings_only_never_constructs_worker() -> None:
    settings = FakeWatcher(ResourceKind.SETTINGS)
    secrets = FakeWatcher(ResourceKind.SECRETS)
    factory = RecordingFactory()
    reconciler = _make_reconciler(factory, [settings, secrets])

    thread, shutdown_event = _run_in_background(reconciler)
    settings.publish(SETTINGS)
    settings.publish(SETTINGS, EventType.UPDATED)

    assert not factory.constructed.wait(timeout=0.3)
    shutdown_event.set()
    thread.join(timeout=5)
    assert factory.snapshots == []


def test_configuration_update_replaces_worker() -> None:
    settings = FakeWatcher(ResourceKind.SETTINGS)
    secrets = FakeWatcher(ResourceKind.SECRETS)
    factory = RecordingFactory()
    reconciler = _make_reconciler(factory, [settings, secrets])

    thread, shutdown_event = _run_in_background(reconciler)
    settings.publish(SETTINGS)
    secrets.publish(SECRETS)
    assert reconciler.ready.wait(timeout=2)
    first = reconciler.lifecycle.current

    secrets.publish({"slack-token": b"xoxb-2"}, EventType.UPDATED)
    for _ in range(100):
        current = reconciler.lifecycle.current
        if current is not None and current.version == 2:
            break
        threading.Event().wait(timeout=0.02)

    assert first is not None and first.stop_event.is_set()
    assert [s.services["slack"].options["token"] for s in factory.snapshots] == [
        "xoxb-1",
        "xoxb-2",
    ]
    shutdown_event.set()
    thread.join(timeout=5)


def test_shutdown_during_replacement_leaves_no_worker_running() -> None:
    stop_events: list[threading.Event] = []
    replacing = threading.Event()

    def slow_teardown_factory(snapshot: ConfigSnapshot, **kwargs: Any) -> Any:
        worker = MagicMock()

        def run(stop_event: threading.Event, processors_count: int) -> None:
            stop_events.append(stop_event)
            stop_event.wait()
            replacing.set()
            time.sleep(0.5)

        worker.run.side_effect = run
        return worker

    settings = FakeWatcher(ResourceKind.SETTINGS)
    secrets = FakeWatcher(ResourceKind.SECRETS)
    lifecycle = WorkerLifecycleManager(
        worker_factory=slow_teardown_factory, namespace="argocd", stop_timeout_seconds=2.0
    )
    reconciler = ConfigReconciler(
        watchers=[settings, secrets],  # type: ignore[list-item]
        lifecycle=lifecycle,
        stop_timeout_seconds=0.1,
    )

    thread, shutdown_event = _run_in_background(reconciler)
    settings.publish(SETTINGS)
    secrets.publish(SECRETS)
    assert reconciler.ready.wait(timeout=2)

    secrets.publish({"slack-token": b"xoxb-2"}, EventType.UPDATED)
    assert replacing.wait(timeout=2)
    shutdown_event.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert lifecycle.current is None
    assert all(stop_event.is_set() for stop_event in stop_events)
    assert not reconciler.ready.is_set()


def test_invalid_configuration_is_fatal_and_starts_no_worker(
    caplog: pytest.LogCaptureFixture,
) -> None:
    settings = FakeWatcher(ResourceKind.SETTINGS)
    secrets = FakeWatcher(ResourceKind.SECRETS)
    factory = RecordingFactory()
    reconciler = _make_reconciler(factory, [settings, secrets])

    with caplog.at_level(logging.ERROR):
        thread, _ = _run_in_background(reconciler)
        secrets.publish(SECRETS)
        settings.publish(
            {"subscriptions": "- recipients: [teams:ops]\n  triggers: []\n"}
        )
        thread.join(timeout=5)

    assert not thread.is_alive()
    assert factory.snapshots == []
    assert reconciler.fatal_error is not None
    assert "Failed to parse new settings" in caplog.text
    assert "undefined service 'teams'" in caplog.text


def test_cache_sync_timeout_is_fatal() -> None:
    watchers = [
        FakeWatcher(ResourceKind.SETTINGS, synced=False),
        FakeWatcher(ResourceKind.SECRETS),
    ]
    reconciler = _make_reconciler(RecordingFactory(), watchers, cache_sync_timeout_seconds=0.2)

    thread, _ = _run_in_background(reconciler)
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert isinstance(reconciler.fatal_error, CacheSyncTimeout)
    assert all(watcher.stopped for watcher in watchers)


def test_worker_construction_failure_is_fatal(caplog: pytest.LogCaptureFixture) -> None:
    def broken_factory(snapshot: ConfigSnapshot, **kwargs: Any) -> Any:
        raise RuntimeError("cannot reach cluster")

    settings = FakeWatcher(ResourceKind.SETTINGS)
    secrets = FakeWatcher(ResourceKind.SECRETS)
    reconciler = _make_reconciler(broken_factory, [settings, secrets])

    with caplog.at_level(logging.ERROR):
        thread, _ = _run_in_background(reconciler)
        settings.publish(SETTINGS)
        secrets.publish(SECRETS)
        thread.join(timeout=5)

    assert not thread.is_alive()
    assert "Failed to start controller" in caplog.text
    assert "cannot reach cluster" in caplog.text


def test_worker_exiting_unexpectedly_is_fatal() -> None:
    def short_lived_factory(snapshot: ConfigSnapshot, **kwargs: Any) -> Any:
        worker = MagicMock()
        worker.run.return_value = None
        return worker

    settings = FakeWatcher(ResourceKind.SETTINGS)
    secrets = FakeWatcher(ResourceKind.SECRETS)
    reconciler = _make_reconciler(short_lived_factory, [settings, secrets])

    thread, _ = _run_in_background(reconciler)
    settings.publish(SETTINGS)
    secrets.publish(SECRETS)
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert "exited unexpectedly" in str(reconciler.fatal_error)


def test_build_reconciler_wires_one_watcher_per_resource() -> None:
    core_api = MagicMock()
    factory = RecordingFactory()

    reconciler = build_reconciler(
        core_api=core_api,
        namespace="argocd",
        worker_factory=factory,
        selector="team=payments",
        processors_count=4,
        worker_options={"repo_server": "repo:8081"},
    )

    assert [w.kind for w in reconciler.watchers] == [ResourceKind.SETTINGS, ResourceKind.SECRETS]
    assert all(isinstance(w, ResourceWatcher) for w in reconciler.watchers)
    assert all(w.namespace == "argocd" for w in reconciler.watchers)
    assert reconciler.lifecycle.selector == "team=payments"
    assert reconciler.lifecycle.processors_count == 4
    assert reconciler.lifecycle.worker_options == {"repo_server": "repo:8081"}
    assert reconciler.merger.lifecycle is reconciler.lifecycle
    assert reconciler.stop_timeout_seconds >= reconciler.lifecycle.stop_timeout_seconds
