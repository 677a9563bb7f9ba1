from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Registry outcomes are labelled by watched ``kind`` so operators can tell a
    misbehaving Ingress surface apart from ConfigMap/Secret sources.
    """

    registrations_total: Counter = field(
        default_factory=lambda: Counter(
            "dex_clients_registrations_total",
            "Total Dex registry calls by resource kind, operation and outcome",
            ["kind", "operation", "outcome"],
        )
    )
    skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "dex_clients_skipped_total",
            "Total resource events that did not result in a registry call",
            ["kind", "reason"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "dex_clients_events_total",
            "Total watch events dispatched to reconcilers",
            ["kind", "api_version", "event"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "dex_clients_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind", "api_version"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "dex_clients_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind", "api_version"],
        )
    )
    watched_surfaces: Gauge = field(
        default_factory=lambda: Gauge(
            "dex_clients_watched_surfaces",
            "Number of (kind, apiVersion) watch loops started at boot",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "dex_clients",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
