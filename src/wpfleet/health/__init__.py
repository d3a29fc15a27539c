"""Health probing and verdict infrastructure."""

from __future__ import annotations

from .engine import HealthEngine, reduce_verdict, run_probes
from .models import (
    CONTAINER_PROBES,
    DEFAULT_PROBES,
    PROBE_KIND_VALUES,
    URL_PROBES,
    ContainerProbePayload,
    HealthStatus,
    HealthVerdict,
    HttpProbePayload,
    HttpTimings,
    MetricsProbePayload,
    ProbeContext,
    ProbeDefinition,
    ProbeError,
    ProbeKind,
    ProbeOptions,
    ProbeResult,
    TLSProbePayload,
    WordPressProbePayload,
    infer_health_url,
    parse_probe_kinds,
)
from .probes import collect_probes
from .utils import format_prometheus, serialize_result, serialize_verdict

__all__ = [
    "CONTAINER_PROBES",
    "ContainerProbePayload",
    "DEFAULT_PROBES",
    "HealthEngine",
    "HealthStatus",
    "HealthVerdict",
    "HttpProbePayload",
    "HttpTimings",
    "MetricsProbePayload",
    "PROBE_KIND_VALUES",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeError",
    "ProbeKind",
    "ProbeOptions",
    "ProbeResult",
    "TLSProbePayload",
    "URL_PROBES",
    "WordPressProbePayload",
    "collect_probes",
    "format_prometheus",
    "infer_health_url",
    "parse_probe_kinds",
    "reduce_verdict",
    "run_probes",
    "serialize_result",
    "serialize_verdict",
]
