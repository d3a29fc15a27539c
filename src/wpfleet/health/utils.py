"""Utility helpers for serialising health verdicts."""
from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from enum import Enum

from prometheus_client import CollectorRegistry, Gauge, generate_latest

from .models import (
    ContainerProbePayload,
    HealthVerdict,
    HttpProbePayload,
    ProbeKind,
    ProbeResult,
    WordPressProbePayload,
)


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            field.name: _sanitize_payload(getattr(value, field.name))
            for field in dataclasses.fields(value)
        }
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def serialize_result(result: ProbeResult) -> dict[str, object]:
    """Convert one probe result into a JSON-serialisable mapping."""
    payload: dict[str, object] = {
        "kind": result.kind.value,
        "ok": result.ok,
        "duration_ms": result.duration_ms,
    }
    if result.error is not None:
        payload["error"] = result.error.message
    else:
        data = _sanitize_payload(result.payload)
        if isinstance(data, dict) and isinstance(result.payload, WordPressProbePayload):
            data["plugin_count"] = result.payload.plugin_count
        payload["data"] = data
    return payload


def serialize_verdict(verdict: HealthVerdict) -> dict[str, object]:
    """Convert a verdict into a JSON-serialisable mapping."""
    return {
        "host": verdict.host,
        "container": verdict.container,
        "status": verdict.status.value,
        "warnings": list(verdict.warnings),
        "checked_at": verdict.checked_at.isoformat(),
        "duration_ms": verdict.duration_ms,
        "probes": {
            kind.value: serialize_result(result)
            for kind, result in verdict.per_probe.items()
        },
    }


def format_prometheus(verdicts: Iterable[HealthVerdict]) -> str:
    """Render verdicts as Prometheus exposition text."""
    registry = CollectorRegistry()
    labels = ("host", "container")
    status_gauge = Gauge(
        "wordpress_health_status",
        "Overall site health (1 healthy, 0.5 degraded, 0 unhealthy or unknown).",
        labels,
        registry=registry,
    )
    response_time = Gauge(
        "wordpress_http_response_time_seconds",
        "Total time of the HTTP health request.",
        labels,
        registry=registry,
    )
    status_code = Gauge(
        "wordpress_http_status_code",
        "HTTP status code returned by the site.",
        labels,
        registry=registry,
    )
    memory = Gauge(
        "wordpress_container_memory_percent",
        "Container memory usage as a percentage of its limit.",
        labels,
        registry=registry,
    )
    cpu = Gauge(
        "wordpress_container_cpu_percent",
        "Container CPU usage percentage.",
        labels,
        registry=registry,
    )
    uptime = Gauge(
        "wordpress_container_uptime_seconds",
        "Seconds since the container started.",
        labels,
        registry=registry,
    )

    for verdict in verdicts:
        label_values = (verdict.host, verdict.container or "")
        status_gauge.labels(*label_values).set(verdict.status.gauge)

        http = verdict.payload(ProbeKind.HTTP)
        if isinstance(http, HttpProbePayload):
            response_time.labels(*label_values).set(http.response_time_ms / 1000)
            status_code.labels(*label_values).set(http.status_code)

        container = verdict.payload(ProbeKind.CONTAINER)
        if isinstance(container, ContainerProbePayload):
            if container.memory_percent is not None:
                memory.labels(*label_values).set(container.memory_percent)
            if container.cpu_percent is not None:
                cpu.labels(*label_values).set(container.cpu_percent)
            if container.uptime_seconds is not None:
                uptime.labels(*label_values).set(container.uptime_seconds)

    return generate_latest(registry).decode("utf-8")


__all__ = ["format_prometheus", "serialize_result", "serialize_verdict"]
