"""Built-in health probes.

Each probe receives a :class:`ProbeContext`, performs exactly one
measurement (no retries) and returns a typed payload. A probe signals that
it could not measure anything by raising :class:`ProbeError`; the engine
turns that into an error result.
"""
from __future__ import annotations

import concurrent.futures
import socket
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime

import httpx
from prometheus_client.parser import text_string_to_metric_families

from ..providers.docker import DockerError, DockerProvider
from ..providers.wordpress import WordPressError, WordPressProvider
from ..tls import DEFAULT_TLS_PORT, TLSInspectionError, TLSInspector
from ..transport import TransportError
from .models import (
    ContainerProbePayload,
    HttpProbePayload,
    HttpTimings,
    MetricsProbePayload,
    ProbeContext,
    ProbeDefinition,
    ProbeError,
    ProbeKind,
    TLSProbePayload,
    WordPressProbePayload,
)

USER_AGENT = "wpfleet-health/1.0"

# httpcore trace events used to derive phase timings.
_CONNECT_STARTED = "connection.connect_tcp.started"
_CONNECT_COMPLETE = "connection.connect_tcp.complete"
_TLS_STARTED = "connection.start_tls.started"
_TLS_COMPLETE = "connection.start_tls.complete"
_HEADERS_SENT = (
    "http11.send_request_headers.complete",
    "http2.send_request_headers.complete",
)
_HEADERS_RECEIVED = (
    "http11.receive_response_headers.complete",
    "http2.receive_response_headers.complete",
)

METRIC_REQUESTS = "wordpress_requests_total"
METRIC_ERRORS = "wordpress_errors_total"
METRIC_DURATION = "wordpress_request_duration_seconds"
METRIC_PHP_MEMORY = "wordpress_php_memory_bytes"
METRIC_DB_QUERIES = "wordpress_db_queries_total"
METRIC_CACHE_HIT_RATE = "wordpress_cache_hit_rate"


def _elapsed_ms(start: float, end: float | None) -> float | None:
    if end is None:
        return None
    return round((end - start) * 1000, 3)


class _TraceRecorder:
    """Collect httpcore trace events as ``perf_counter`` timestamps."""

    def __init__(self) -> None:
        self.events: dict[str, float] = {}

    def __call__(self, event_name: str, info: Mapping[str, object]) -> None:
        self.events[event_name] = time.perf_counter()

    def span(self, started: str, completed: str) -> float | None:
        begin = self.events.get(started)
        end = self.events.get(completed)
        if begin is None or end is None:
            return None
        return round((end - begin) * 1000, 3)

    def first(self, names: Iterable[str]) -> float | None:
        for name in names:
            if name in self.events:
                return self.events[name]
        return None


def _resolve(context: ProbeContext, host: str, port: int) -> float:
    timeout = context.options.timeout
    start = time.perf_counter()
    # getaddrinfo has no timeout of its own; a stalled lookup is abandoned.
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="wpfleet-dns")
    future = executor.submit(context.resolver, host, port, proto=socket.IPPROTO_TCP)
    try:
        future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        message = f"DNS lookup for {host} timed out after {timeout:g}s"
        raise ProbeError(ProbeKind.HTTP, message, exc) from exc
    except OSError as exc:
        raise ProbeError(ProbeKind.HTTP, f"DNS lookup for {host} failed: {exc}", exc) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return round((time.perf_counter() - start) * 1000, 3)


def _first_header_values(headers: httpx.Headers) -> dict[str, str]:
    values: dict[str, str] = {}
    for name, value in headers.multi_items():
        values.setdefault(name.lower(), value)
    return values


def _client(context: ProbeContext, *, follow_redirects: bool, verify: bool) -> httpx.Client:
    options = context.options
    return httpx.Client(
        timeout=options.timeout,
        follow_redirects=follow_redirects,
        max_redirects=options.max_redirects,
        verify=verify,
        transport=context.http_transport,
        headers={"User-Agent": USER_AGENT},
    )


def probe_http(context: ProbeContext) -> HttpProbePayload:
    """GET the site URL and record status, size, headers and phase timings."""
    options = context.options
    url = context.url
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise ProbeError(ProbeKind.HTTP, f"Invalid URL {url!r}: {exc}", exc) from exc

    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    dns_ms = _resolve(context, parsed.host, port)
    trace = _TraceRecorder()
    start = time.perf_counter()
    try:
        with _client(
            context,
            follow_redirects=options.follow_redirects,
            verify=options.verify_tls,
        ) as client:
            with client.stream(
                "GET",
                url,
                headers=dict(options.headers),
                extensions={"trace": trace},
            ) as response:
                first_byte = time.perf_counter()
                body = response.read()
                finished = time.perf_counter()
    except httpx.HTTPError as exc:
        raise ProbeError(ProbeKind.HTTP, f"GET {url} failed: {exc}", exc) from exc

    headers_received = trace.first(_HEADERS_RECEIVED) or first_byte
    headers_sent = trace.first(_HEADERS_SENT)
    timings = HttpTimings(
        dns_ms=dns_ms,
        connect_ms=trace.span(_CONNECT_STARTED, _CONNECT_COMPLETE),
        tls_ms=trace.span(_TLS_STARTED, _TLS_COMPLETE),
        first_byte_ms=_elapsed_ms(headers_sent or start, headers_received),
        transfer_ms=_elapsed_ms(headers_received, finished),
    )
    redirects: tuple[str, ...] = ()
    if response.history:
        redirects = tuple(str(hop.url) for hop in response.history[1:]) + (str(response.url),)
    return HttpProbePayload(
        url=url,
        final_url=str(response.url),
        status_code=response.status_code,
        response_time_ms=round((finished - start) * 1000, 3),
        content_length=len(body),
        headers=_first_header_values(response.headers),
        redirects=redirects,
        timings=timings,
    )


def probe_tls(context: ProbeContext) -> TLSProbePayload:
    """Fetch the site certificate and report validity and expiry."""
    try:
        parsed = httpx.URL(context.url)
    except httpx.InvalidURL as exc:
        raise ProbeError(ProbeKind.TLS, f"Invalid URL {context.url!r}: {exc}", exc) from exc
    if parsed.scheme != "https":
        raise ProbeError(ProbeKind.TLS, f"Site URL {context.url} is not https; no certificate to check.")
    host = parsed.host
    port = parsed.port or DEFAULT_TLS_PORT
    inspector = context.tls_inspector or TLSInspector(timeout=context.options.timeout)
    try:
        handshake = inspector.inspect(host, port)
    except TLSInspectionError as exc:
        raise ProbeError(ProbeKind.TLS, str(exc), exc) from exc
    certificate = handshake.certificate
    return TLSProbePayload(
        host=host,
        port=port,
        valid=handshake.verified,
        verification_error=handshake.verification_error,
        subject=certificate.subject,
        issuer=certificate.issuer,
        not_before=certificate.not_before,
        not_after=certificate.not_after,
        days_until_expiry=certificate.days_until_expiry(),
        protocol=handshake.protocol,
        cipher=handshake.cipher,
        subject_alt_names=certificate.subject_alt_names,
    )


def _require_container(context: ProbeContext, kind: ProbeKind) -> tuple[DockerProvider, str]:
    docker = context.docker
    container = context.target.container
    if docker is None or not container:
        raise ProbeError(kind, "No container selected for this target.")
    return docker, container


def probe_container(context: ProbeContext) -> ContainerProbePayload:
    """Inspect the container and take one resource usage sample."""
    docker, container = _require_container(context, ProbeKind.CONTAINER)
    try:
        state = docker.inspect(container)
    except (DockerError, TransportError) as exc:
        raise ProbeError(ProbeKind.CONTAINER, str(exc), exc) from exc

    stats = None
    if state.running:
        try:
            stats = docker.stats(container)
        except (DockerError, TransportError):
            stats = None

    return ContainerProbePayload(
        container=container,
        running=state.running,
        status=state.status,
        health=state.health,
        started_at=state.started_at,
        uptime_seconds=state.uptime_seconds(datetime.now(tz=UTC)),
        restart_count=state.restart_count,
        container_id=state.container_id,
        cpu_percent=stats.cpu_percent if stats else None,
        memory_usage_bytes=stats.memory_usage_bytes if stats else None,
        memory_limit_bytes=stats.memory_limit_bytes if stats else None,
        memory_percent=stats.memory_percent if stats else None,
        network_rx_bytes=stats.network_rx_bytes if stats else None,
        network_tx_bytes=stats.network_tx_bytes if stats else None,
    )


def probe_wordpress(context: ProbeContext) -> WordPressProbePayload:
    """Query WordPress through WP-CLI inside the container."""
    docker, container = _require_container(context, ProbeKind.WORDPRESS)
    wordpress = WordPressProvider(docker, container, timeout=context.options.timeout)
    try:
        version = wordpress.core_version()
        plugins = wordpress.active_plugins()
        return WordPressProbePayload(
            version=version,
            site_url=wordpress.option("siteurl"),
            home_url=wordpress.option("home"),
            db_reachable=wordpress.db_reachable(),
            cache_enabled=wordpress.config_flag("WP_CACHE"),
            debug_mode=wordpress.config_flag("WP_DEBUG"),
            active_theme=wordpress.active_theme(),
            active_plugins=tuple(plugin.name for plugin in plugins),
        )
    except (WordPressError, TransportError) as exc:
        raise ProbeError(ProbeKind.WORDPRESS, str(exc), exc) from exc


def metrics_url(base_url: str, path: str) -> str:
    """Join the site URL and the metrics path."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def summarize_metrics(text: str) -> dict[str, float | int | None]:
    """Extract the WordPress metrics of interest from exposition ``text``.

    Raises ``ValueError`` when the text is not valid Prometheus exposition.
    """
    totals: dict[str, float] = {}
    seen: set[str] = set()
    family_count = 0
    for family in text_string_to_metric_families(text):
        family_count += 1
        for sample in family.samples:
            seen.add(sample.name)
            totals[sample.name] = totals.get(sample.name, 0.0) + float(sample.value)

    def _total(name: str) -> float | None:
        return totals.get(name) if name in seen else None

    duration_sum = _total(f"{METRIC_DURATION}_sum")
    duration_count = _total(f"{METRIC_DURATION}_count")
    average = None
    if duration_sum is not None and duration_count:
        average = duration_sum / duration_count

    return {
        "metric_count": family_count,
        "requests_total": _total(METRIC_REQUESTS),
        "errors_total": _total(METRIC_ERRORS),
        "avg_request_duration_seconds": average,
        "php_memory_bytes": _total(METRIC_PHP_MEMORY),
        "db_queries_total": _total(METRIC_DB_QUERIES),
        "cache_hit_rate": _total(METRIC_CACHE_HIT_RATE),
    }


def probe_metrics(context: ProbeContext) -> MetricsProbePayload:
    """Scrape the site's metrics endpoint; unavailability is not an error."""
    options = context.options
    url = metrics_url(context.url, options.metrics_path)
    headers = dict(options.headers)
    if options.metrics_token:
        headers["Authorization"] = f"Bearer {options.metrics_token}"
    start = time.perf_counter()
    try:
        with _client(context, follow_redirects=True, verify=options.verify_tls) as client:
            response = client.get(url, headers=headers)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return MetricsProbePayload(url=url, available=False, detail=str(exc))
    elapsed = round((time.perf_counter() - start) * 1000, 3)

    if response.status_code != 200:
        return MetricsProbePayload(
            url=url,
            available=False,
            status_code=response.status_code,
            response_time_ms=elapsed,
            detail=f"HTTP {response.status_code}",
        )

    try:
        summary = summarize_metrics(response.text)
    except ValueError as exc:
        return MetricsProbePayload(
            url=url,
            available=True,
            status_code=response.status_code,
            response_time_ms=elapsed,
            parsed=False,
            detail=f"Unparsable metrics: {exc}",
        )
    return MetricsProbePayload(
        url=url,
        available=True,
        status_code=response.status_code,
        response_time_ms=elapsed,
        parsed=True,
        metric_count=int(summary["metric_count"] or 0),
        requests_total=summary["requests_total"],
        errors_total=summary["errors_total"],
        avg_request_duration_seconds=summary["avg_request_duration_seconds"],
        php_memory_bytes=summary["php_memory_bytes"],
        db_queries_total=summary["db_queries_total"],
        cache_hit_rate=summary["cache_hit_rate"],
    )


PROBE_DEFINITIONS: Mapping[ProbeKind, ProbeDefinition] = {
    ProbeKind.HTTP: ProbeDefinition(ProbeKind.HTTP, probe_http),
    ProbeKind.TLS: ProbeDefinition(ProbeKind.TLS, probe_tls),
    ProbeKind.CONTAINER: ProbeDefinition(ProbeKind.CONTAINER, probe_container),
    ProbeKind.WORDPRESS: ProbeDefinition(ProbeKind.WORDPRESS, probe_wordpress),
    ProbeKind.METRICS: ProbeDefinition(ProbeKind.METRICS, probe_metrics),
}


def collect_probes(kinds: Iterable[ProbeKind]) -> list[ProbeDefinition]:
    """Return probe definitions for ``kinds`` in canonical order."""
    wanted = set(kinds)
    return [definition for kind, definition in PROBE_DEFINITIONS.items() if kind in wanted]


__all__ = [
    "PROBE_DEFINITIONS",
    "collect_probes",
    "metrics_url",
    "probe_container",
    "probe_http",
    "probe_metrics",
    "probe_tls",
    "probe_wordpress",
    "summarize_metrics",
]
