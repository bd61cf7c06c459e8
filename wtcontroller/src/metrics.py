from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controllers on ``/metrics``.

    Queue metrics are labeled by ``queue`` and everything else by
    ``controller`` so the service combiner and the namespace RBAC controller
    can be alerted on independently.
    """

    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "wtcontroller_queue_adds_total",
            "Total items added to a work queue",
            ["queue"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "wtcontroller_queue_depth",
            "Current number of items ready to be processed",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "wtcontroller_queue_retries_total",
            "Total items re-queued with backoff after a failed sync",
            ["queue"],
        )
    )
    syncs_total: Counter = field(
        default_factory=lambda: Counter(
            "wtcontroller_syncs_total",
            "Total sync attempts by outcome (success, retry, dropped)",
            ["controller", "result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "wtcontroller_sync_duration_seconds",
            "Seconds spent in a single sync call",
            ["controller"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    mutations_total: Counter = field(
        default_factory=lambda: Counter(
            "wtcontroller_mutations_total",
            "Total create/update/delete calls issued against the cluster API",
            ["controller", "kind", "verb"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "wtcontroller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["controller"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "wtcontroller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["controller"],
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "wtcontroller_relists_total",
            "Total full re-lists after the watch resource version expired",
            ["controller"],
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "wtcontroller_resyncs_total",
            "Total periodic resyncs re-delivering cached objects",
            ["controller"],
        )
    )
    controller_running: Gauge = field(
        default_factory=lambda: Gauge(
            "wtcontroller_running",
            "Whether a controller's worker is running (1=yes, 0=no)",
            ["controller"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "wtcontroller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
