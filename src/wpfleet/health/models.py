"""Data models for health probes and verdicts."""

from __future__ import annotations

import socket
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    import httpx

    from ..providers.docker import DockerProvider
    from ..ranges import HostTarget
    from ..tls import TLSInspector
    from ..transport import Connection


class ProbeKind(str, Enum):
    """Independent health signal families."""

    HTTP = "http"
    TLS = "tls"
    CONTAINER = "container"
    WORDPRESS = "wordpress"
    METRICS = "metrics"


PROBE_KIND_VALUES: tuple[str, ...] = tuple(kind.value for kind in ProbeKind)
DEFAULT_PROBES: frozenset[ProbeKind] = frozenset(
    {ProbeKind.HTTP, ProbeKind.TLS, ProbeKind.CONTAINER, ProbeKind.WORDPRESS}
)
# Probes that need a container (and therefore an SSH connection).
CONTAINER_PROBES: frozenset[ProbeKind] = frozenset({ProbeKind.CONTAINER, ProbeKind.WORDPRESS})
# Probes that talk to the site URL.
URL_PROBES: frozenset[ProbeKind] = frozenset({ProbeKind.HTTP, ProbeKind.TLS, ProbeKind.METRICS})


class HealthStatus(str, Enum):
    """Overall status of one site."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @property
    def gauge(self) -> float:
        """Return the numeric value exported to Prometheus."""
        return STATUS_GAUGE[self]


STATUS_GAUGE: Mapping[HealthStatus, float] = {
    HealthStatus.HEALTHY: 1.0,
    HealthStatus.DEGRADED: 0.5,
    HealthStatus.UNHEALTHY: 0.0,
    HealthStatus.UNKNOWN: 0.0,
}


def parse_probe_kinds(values: Sequence[str]) -> frozenset[ProbeKind]:
    """Translate probe names (``http``, ``tls`` ...) into :class:`ProbeKind` members."""
    kinds: set[ProbeKind] = set()
    for value in values:
        for token in str(value).split(","):
            name = token.strip().lower()
            if not name:
                continue
            try:
                kinds.add(ProbeKind(name))
            except ValueError as exc:
                allowed = ", ".join(PROBE_KIND_VALUES)
                raise ValueError(f"Unknown probe '{name}'. Allowed: {allowed}.") from exc
    return frozenset(kinds)


class ProbeError(RuntimeError):
    """A probe could not produce a measurement."""

    def __init__(self, kind: ProbeKind, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause


@dataclass(slots=True, frozen=True)
class HttpTimings:
    """Phase timings of an HTTP request in milliseconds."""

    dns_ms: float | None = None
    connect_ms: float | None = None
    tls_ms: float | None = None
    first_byte_ms: float | None = None
    transfer_ms: float | None = None


@dataclass(slots=True, frozen=True)
class HttpProbePayload:
    """Measurement of a single HTTP GET."""

    url: str
    final_url: str
    status_code: int
    response_time_ms: float
    content_length: int
    headers: Mapping[str, str] = field(default_factory=dict)
    redirects: tuple[str, ...] = ()
    timings: HttpTimings = HttpTimings()


@dataclass(slots=True, frozen=True)
class TLSProbePayload:
    """Certificate presented by the site."""

    host: str
    port: int
    valid: bool
    verification_error: str | None
    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    days_until_expiry: int
    protocol: str | None
    cipher: str | None
    subject_alt_names: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ContainerProbePayload:
    """Lifecycle and resource usage of the site container."""

    container: str
    running: bool
    status: str
    health: str | None
    started_at: datetime | None
    uptime_seconds: float | None
    restart_count: int
    container_id: str
    cpu_percent: float | None = None
    memory_usage_bytes: int | None = None
    memory_limit_bytes: int | None = None
    memory_percent: float | None = None
    network_rx_bytes: int | None = None
    network_tx_bytes: int | None = None


@dataclass(slots=True, frozen=True)
class WordPressProbePayload:
    """Application-level view obtained through WP-CLI."""

    version: str
    site_url: str | None
    home_url: str | None
    db_reachable: bool
    cache_enabled: bool | None
    debug_mode: bool | None
    active_theme: str | None
    active_plugins: tuple[str, ...] = ()

    @property
    def plugin_count(self) -> int:
        """Return the number of active plugins."""
        return len(self.active_plugins)


@dataclass(slots=True, frozen=True)
class MetricsProbePayload:
    """Summary of the site's Prometheus metrics endpoint."""

    url: str
    available: bool
    status_code: int | None = None
    response_time_ms: float | None = None
    parsed: bool = False
    metric_count: int = 0
    requests_total: float | None = None
    errors_total: float | None = None
    avg_request_duration_seconds: float | None = None
    php_memory_bytes: float | None = None
    db_queries_total: float | None = None
    cache_hit_rate: float | None = None
    detail: str | None = None


ProbePayload = Union[
    HttpProbePayload,
    TLSProbePayload,
    ContainerProbePayload,
    WordPressProbePayload,
    MetricsProbePayload,
]


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of one probe: a payload or an error, never both."""

    kind: ProbeKind
    payload: ProbePayload | None = None
    error: ProbeError | None = None
    duration_ms: int | None = None

    def __post_init__(self) -> None:
        if (self.payload is None) == (self.error is None):
            raise ValueError("ProbeResult requires exactly one of payload or error.")

    @property
    def ok(self) -> bool:
        """Return ``True`` when the probe produced a payload."""
        return self.payload is not None


@dataclass(slots=True, frozen=True)
class ProbeOptions:
    """Tunables shared by all probes of one evaluation."""

    url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    follow_redirects: bool = True
    verify_tls: bool = True
    max_redirects: int = 10
    tls_warn_days: int = 30
    memory_warn_percent: float = 90.0
    cpu_warn_percent: float = 80.0
    metrics_path: str = "metrics"
    metrics_token: str | None = None
    max_concurrency: int = 5


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Execution context handed to each probe."""

    target: HostTarget
    options: ProbeOptions
    connection: Connection | None = None
    docker: DockerProvider | None = None
    tls_inspector: TLSInspector | None = None
    http_transport: httpx.BaseTransport | None = None
    resolver: Callable[..., Any] = socket.getaddrinfo
    site_url: str | None = None

    @property
    def url(self) -> str:
        """Return the site URL.

        An explicit option wins, then the ``siteurl`` reported by WordPress,
        then ``https://<host>``.
        """
        return self.options.url or self.site_url or infer_health_url(self.target.host)


def infer_health_url(host: str) -> str:
    """Return the default health URL for ``host``."""
    return f"https://{host}"


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Metadata + callable for a probe."""

    kind: ProbeKind
    run: Callable[[ProbeContext], ProbePayload]


@dataclass(slots=True, frozen=True)
class HealthVerdict:
    """Reduced health of one target."""

    target: HostTarget
    status: HealthStatus
    warnings: tuple[str, ...]
    per_probe: Mapping[ProbeKind, ProbeResult]
    checked_at: datetime
    duration_ms: int = 0

    @property
    def host(self) -> str:
        """Return the probed host."""
        return self.target.host

    @property
    def container(self) -> str | None:
        """Return the probed container, if any."""
        return self.target.container

    def payload(self, kind: ProbeKind) -> ProbePayload | None:
        """Return the payload recorded for ``kind`` (``None`` if absent or failed)."""
        result = self.per_probe.get(kind)
        return result.payload if result is not None else None
