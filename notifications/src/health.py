from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _MetricsHandler(BaseHTTPRequestHandler):
    """Serves ``/metrics`` plus the liveness and readiness probes on one port."""

    worker_event: threading.Event
    synced_event: threading.Event | None

    def _readiness(self) -> dict[str, bool]:
        return {
            "synced": self.synced_event is None or self.synced_event.is_set(),
            "worker": self.worker_event.is_set(),
        }

    def _send(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _serve_readyz(self) -> None:
        checks = self._readiness()
        body = " ".join(f"{name}={str(ok).lower()}" for name, ok in checks.items())
        self._send(200 if all(checks.values()) else 503, body.encode())

    def do_GET(self) -> None:
        if self.path == "/metrics":
            self._send(200, generate_latest(), CONTENT_TYPE_LATEST)
        elif self.path == "/healthz":
            self._send(200, b"ok")
        elif self.path == "/readyz":
            self._serve_readyz()
        else:
            self._send(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_metrics_handler(
    worker_running: threading.Event, synced: threading.Event | None = None
) -> type[_MetricsHandler]:
    """Bind the readiness events onto a handler class.

    The stdlib server instantiates handlers itself, so state travels as
    class attributes.
    """

    class _BoundMetricsHandler(_MetricsHandler):
        worker_event = worker_running
        synced_event = synced

    return _BoundMetricsHandler


def start_health_server(
    ready: threading.Event, port: int, synced: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Serve metrics and probes from a daemon thread; shut down with ``server.shutdown()``."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_metrics_handler(ready, synced))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="metrics-server", daemon=True).start()
    LOGGER.info("Serving metrics on port %d", port)
    return server
