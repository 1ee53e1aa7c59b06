from __future__ import annotations

import json
import logging
import sys
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, TextIO

LOGGER = logging.getLogger(__name__)

CONSOLE_SERVICE_NAME = "console"

KNOWN_SERVICE_TYPES = frozenset(
    {
        "alertmanager",
        "email",
        "github",
        "googlechat",
        "grafana",
        "mattermost",
        "newrelic",
        "opsgenie",
        "pagerduty",
        "pagerdutyv2",
        "pushover",
        "rocketchat",
        "slack",
        "teams",
        "telegram",
        "webex",
        "webhook",
    }
)


@dataclass(frozen=True)
class Notification:
    """A rendered notification ready to be handed to a service."""

    message: str
    trigger: str = ""
    extra: Mapping[str, Any] = field(default_factory=dict)


class Service(Protocol):
    def send(self, notification: Notification, destination: str) -> None: ...


@dataclass(frozen=True)
class ServiceConfig:
    """Connection parameters of one configured notification service.

    ``options`` already has every ``$secret`` placeholder substituted.
    Plain data: the worker builds its own delivery sink from it.
    """

    name: str
    type: str
    options: Mapping[str, Any]


class ConsoleService:
    """Inspection sink that prints every notification as a JSON line."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()

    def send(self, notification: Notification, destination: str) -> None:
        line = json.dumps(
            {
                "destination": destination,
                "trigger": notification.trigger,
                "message": notification.message,
                **dict(notification.extra),
            },
            sort_keys=True,
        )
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()


class Notifier:
    """Registry of delivery sinks for one snapshot.

    It starts empty: the controller registers the built-in console sink and the
    worker registers a sink for each configured service it can deliver to.
    """

    def __init__(self, services: Mapping[str, Service] | None = None) -> None:
        self._services: dict[str, Service] = dict(services or {})

    def add_service(self, name: str, service: Service) -> None:
        if name in self._services:
            raise ValueError(f"service {name!r} is already registered")
        self._services[name] = service
        LOGGER.debug("Registered notification service %s", name)

    def get_service(self, name: str) -> Service:
        try:
            return self._services[name]
        except KeyError:
            raise KeyError(f"service {name!r} is not configured") from None

    def has_service(self, name: str) -> bool:
        return name in self._services

    @property
    def service_names(self) -> list[str]:
        return sorted(self._services)

    def send(self, notification: Notification, service_name: str, destination: str) -> None:
        self.get_service(service_name).send(notification, destination)
