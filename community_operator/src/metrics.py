from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Watch and cache metrics carry a ``kind`` label so a stalled informer for
    one resource type can be told apart from the others.
    """

    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "mongodb_operator_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "mongodb_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    cached_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "mongodb_operator_cached_objects",
            "Current number of objects held in the informer cache",
            ["kind"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "mongodb_operator_reconcile_total",
            "Total reconcile invocations",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "mongodb_operator_reconcile_duration_seconds",
            "Seconds spent in a single reconcile invocation",
            ["controller"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, float("inf")),
        )
    )
    work_queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "mongodb_operator_work_queue_depth",
            "Current number of requests waiting to be reconciled",
            ["controller"],
        )
    )
    manager_running: Gauge = field(
        default_factory=lambda: Gauge(
            "mongodb_operator_manager_running",
            "Whether the manager run loop is active (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "mongodb_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
