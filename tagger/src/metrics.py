from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class TaggerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue and reconcile metrics carry a ``name`` or ``controller`` label so
    each controller sharing the process can be alerted on independently.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "tagger_workqueue_depth",
            "Current number of keys ready to be processed",
            ["name"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "tagger_workqueue_adds_total",
            "Total keys added to the work queue",
            ["name"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "tagger_workqueue_retries_total",
            "Total keys requeued with backoff after a failed reconcile",
            ["name"],
        )
    )
    handlers_in_flight: Gauge = field(
        default_factory=lambda: Gauge(
            "tagger_handlers_in_flight",
            "Current number of reconcile handlers holding a worker token",
            ["controller"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "tagger_reconcile_total",
            "Total reconcile attempts by outcome",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "tagger_reconcile_duration_seconds",
            "Seconds spent in a single reconcile attempt",
            ["controller"],
            buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 180, float("inf")),
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "tagger_dropped_keys_total",
            "Total keys dropped without retry (malformed or retry ceiling reached)",
            ["controller"],
        )
    )
    informer_events_total: Counter = field(
        default_factory=lambda: Counter(
            "tagger_informer_events_total",
            "Total watch events applied to the local cache",
            ["informer", "type"],
        )
    )
    informer_watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "tagger_informer_watch_errors_total",
            "Total list or watch errors seen by an informer",
            ["informer"],
        )
    )
    informer_synced: Gauge = field(
        default_factory=lambda: Gauge(
            "tagger_informer_synced",
            "Whether the informer cache completed its initial list (1=yes, 0=no)",
            ["informer"],
        )
    )
    webhook_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "tagger_webhook_requests_total",
            "Total registry webhook deliveries by response status",
            ["receiver", "status"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "tagger",
            "Build information for the controller",
        )
    )


METRICS = TaggerMetrics()
