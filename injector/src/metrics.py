from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Info


@dataclass(frozen=True)
class InjectorMetrics:
    """Prometheus metrics exported by the injector on ``/metrics``.

    Admission counters are labelled by object ``kind`` so Pod and Service
    traffic can be alerted on separately.
    """

    admissions_total: Counter = field(
        default_factory=lambda: Counter(
            "mesh_injector_admissions_total",
            "Total admission reviews handled, by kind and outcome",
            ["kind", "outcome"],
        )
    )
    admission_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "mesh_injector_admission_errors_total",
            "Total admission reviews denied because of an error",
            ["kind", "error"],
        )
    )
    admission_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "mesh_injector_admission_duration_seconds",
            "Seconds spent handling one admission review",
            ["kind"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    routes_total: Counter = field(
        default_factory=lambda: Counter(
            "mesh_injector_routes_total",
            "Gateway routes resolved during injection, by role and whether they were created",
            ["role", "result"],
        )
    )
    certificates_issued_total: Counter = field(
        default_factory=lambda: Counter(
            "mesh_injector_certificates_issued_total",
            "Certificates attached to gateway API definitions",
            ["source"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "mesh_injector",
            "Build information for the injector",
        )
    )


METRICS = InjectorMetrics()
