from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class WorkerMetrics:
    """Metrics handed to every worker instance.

    They outlive individual workers, so observation counts keep accumulating
    across configuration reloads.
    """

    applications_observed_total: Counter = field(
        default_factory=lambda: Counter(
            "argocd_notifications_applications_observed_total",
            "Number of application events observed by the worker",
            ["event"],
        )
    )


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    ``resource`` labels carry the watched resource kind (``settings`` or
    ``secrets``) so operators can tell which half of the configuration is
    lagging or failing.
    """

    config_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "notifications_controller_config_updates_total",
            "Total configuration resource events delivered to the merger",
            ["resource", "event"],
        )
    )
    merge_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "notifications_controller_merge_attempts_total",
            "Total merge attempts with both settings and secrets present",
        )
    )
    config_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "notifications_controller_config_errors_total",
            "Total fatal configuration errors",
            ["reason"],
        )
    )
    worker_restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "notifications_controller_worker_restarts_total",
            "Total worker replacements caused by configuration changes",
        )
    )
    worker_running: Gauge = field(
        default_factory=lambda: Gauge(
            "notifications_controller_worker_running",
            "Whether a worker instance is currently running (1=yes, 0=no)",
        )
    )
    config_version: Gauge = field(
        default_factory=lambda: Gauge(
            "notifications_controller_config_version",
            "Version of the configuration snapshot the running worker was built from",
        )
    )
    resource_present: Gauge = field(
        default_factory=lambda: Gauge(
            "notifications_controller_resource_present",
            "Whether the watched resource currently exists (1=yes, 0=no)",
            ["resource"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "notifications_controller_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "notifications_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "notifications_controller",
            "Build information for the controller",
        )
    )
    worker: WorkerMetrics = field(default_factory=WorkerMetrics)


METRICS = ControllerMetrics()
