from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Callable, Sequence

from notifications.src.controller import build_reconciler
from notifications.src.health import start_health_server
from notifications.src.kube import build_clients, current_namespace, load_kube_configuration
from notifications.src.metrics import METRICS
from notifications.src.worker import load_worker_factory

RUNTIME_VERSION = "0.3.0"
DEFAULT_METRICS_PORT = 9001
DEFAULT_WORKER_FACTORY = "notifications.src.worker:ApplicationObserver"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(://[^/\s:@]+:)([^@\s]+)(@)"),
        r"\1[REDACTED]\3",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers = [log_handler]
    logging.root.setLevel(_LOG_LEVELS.get(level.lower(), logging.INFO))


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc
    return _check_range(name, value, minimum=minimum, maximum=maximum)


def _check_range(
    name: str, value: int, *, minimum: int | None = None, maximum: int | None = None
) -> int:
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _bounded_int(
    name: str, *, minimum: int | None = None, maximum: int | None = None
) -> Callable[[str], int]:
    def parse(raw: str) -> int:
        try:
            return _check_range(name, int(raw), minimum=minimum, maximum=maximum)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from exc

    return parse


def build_parser() -> argparse.ArgumentParser:
    """Command-line options; every option falls back to its environment variable.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``              namespace to watch (current namespace).
        ``PROCESSORS_COUNT``             worker processors (``1``).
        ``APP_LABEL_SELECTOR``           application label selector (empty).
        ``LOG_LEVEL``                    ``debug|info|warn|error`` (``info``).
        ``METRICS_PORT``                 metrics and probe port (``9001``).
        ``ARGOCD_REPO_SERVER``           repo server address.
        ``WORKER_FACTORY``               ``package.module:attribute`` of the worker.
        ``CACHE_SYNC_TIMEOUT_SECONDS``   initial listing timeout (``60``).
        ``WORKER_STOP_TIMEOUT_SECONDS``  previous worker stop timeout (``30``).
    """
    parser = argparse.ArgumentParser(
        prog="notifications-controller",
        description="Run the notifications controller, reloading it whenever its "
        "configuration changes.",
    )
    parser.add_argument("--kubeconfig", default=None, help="Path to a kubeconfig file.")
    parser.add_argument(
        "--context", dest="kube_context", default=None, help="Kubeconfig context to use."
    )
    parser.add_argument(
        "--namespace",
        default=os.getenv("WATCH_NAMESPACE", ""),
        help="Namespace which controller handles. Current namespace if empty.",
    )
    parser.add_argument(
        "--processors-count",
        type=_bounded_int("--processors-count", minimum=1),
        default=env_int("PROCESSORS_COUNT", 1, minimum=1),
        help="Processors count.",
    )
    parser.add_argument(
        "--app-label-selector",
        default=os.getenv("APP_LABEL_SELECTOR", ""),
        help="App label selector.",
    )
    parser.add_argument(
        "--loglevel",
        type=str.lower,
        choices=sorted(_LOG_LEVELS),
        default=os.getenv("LOG_LEVEL", "info").lower(),
        help="Set the logging level.",
    )
    parser.add_argument(
        "--metrics-port",
        type=_bounded_int("--metrics-port", minimum=1, maximum=65535),
        default=env_int("METRICS_PORT", DEFAULT_METRICS_PORT, minimum=1, maximum=65535),
        help="Metrics port.",
    )
    parser.add_argument(
        "--argocd-repo-server",
        default=os.getenv("ARGOCD_REPO_SERVER", "argocd-repo-server:8081"),
        help="Argo CD repo server address.",
    )
    parser.add_argument(
        "--worker-factory",
        default=os.getenv("WORKER_FACTORY", DEFAULT_WORKER_FACTORY),
        help="Import path of the callable that builds a worker from a configuration snapshot.",
    )
    parser.add_argument(
        "--cache-sync-timeout",
        type=_bounded_int("--cache-sync-timeout", minimum=1),
        default=env_int("CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1),
        help="Seconds to wait for the initial listing of the config map and secret.",
    )
    parser.add_argument(
        "--worker-stop-timeout",
        type=_bounded_int("--worker-stop-timeout", minimum=1),
        default=env_int("WORKER_STOP_TIMEOUT_SECONDS", 30, minimum=1),
        help="Seconds to wait for the previous worker to stop during a reload.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Controller entrypoint: load configuration sources, then supervise the worker."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.loglevel)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        factory = load_worker_factory(args.worker_factory)
    except (ImportError, ValueError) as exc:
        parser.error(f"--worker-factory: {exc}")

    in_cluster = load_kube_configuration(kubeconfig=args.kubeconfig, context=args.kube_context)
    namespace = args.namespace.strip()
    if not namespace:
        namespace = current_namespace(
            in_cluster, kubeconfig=args.kubeconfig, context=args.kube_context
        )
    core_api, custom_api = build_clients()

    reconciler = build_reconciler(
        core_api=core_api,
        namespace=namespace,
        worker_factory=factory,
        selector=args.app_label_selector,
        processors_count=args.processors_count,
        cache_sync_timeout_seconds=args.cache_sync_timeout,
        worker_stop_timeout_seconds=args.worker_stop_timeout,
        worker_options={"custom_api": custom_api, "repo_server": args.argocd_repo_server},
    )

    health_server = start_health_server(
        ready=reconciler.ready,
        port=args.metrics_port,
        synced=reconciler.synced,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info("Loading configuration from namespace %s", namespace)
    reconciler.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    if reconciler.fatal_error is not None:
        logger.error("Controller terminated: %s", reconciler.fatal_error)
        sys.exit(1)
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
