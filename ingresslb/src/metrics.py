from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Per-object failures never fail a sync, so they are surfaced here as
    counters (``skipped_total``, ``tls_errors_total``) instead.
    """

    syncs_total: Counter = field(
        default_factory=lambda: Counter(
            "ingresslb_syncs_total",
            "Total configuration syncs by result",
            ["result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ingresslb_sync_duration_seconds",
            "Seconds spent resolving and handing configuration to the proxy",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, float("inf")),
        )
    )
    reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "ingresslb_reloads_total",
            "Total proxy configuration reloads accepted by the sink",
        )
    )
    enqueued_total: Counter = field(
        default_factory=lambda: Counter(
            "ingresslb_enqueued_total",
            "Total relevant change notifications enqueued, by resource kind",
            ["kind"],
        )
    )
    rate_limit_wait_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ingresslb_rate_limit_wait_seconds",
            "Seconds the sync worker waited for a reload token",
            buckets=(0.01, 0.1, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    upstreams: Gauge = field(
        default_factory=lambda: Gauge(
            "ingresslb_upstreams",
            "Number of upstreams in the last resolved configuration",
        )
    )
    tls_credentials: Gauge = field(
        default_factory=lambda: Gauge(
            "ingresslb_tls_credentials",
            "Number of TLS credentials in the last resolved configuration",
        )
    )
    skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "ingresslb_skipped_total",
            "Total ingress rules or paths left out of a configuration",
            ["reason"],
        )
    )
    tls_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingresslb_tls_errors_total",
            "Total TLS Secrets rejected during resolution",
        )
    )
    status_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "ingresslb_status_updates_total",
            "Total Ingress status patches by result",
            ["result"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingresslb_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ingresslb_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ingresslb",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
