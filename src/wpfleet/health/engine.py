"""Probe execution harness and verdict reduction."""

from __future__ import annotations

import concurrent.futures
import socket
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime

import httpx

from ..providers.docker import DockerProvider
from ..providers.wordpress import WordPressProvider
from ..ranges import HostTarget
from ..tls import TLSInspector
from ..transport import Connection, TransportError
from .models import (
    DEFAULT_PROBES,
    URL_PROBES,
    ContainerProbePayload,
    HealthStatus,
    HealthVerdict,
    HttpProbePayload,
    ProbeContext,
    ProbeDefinition,
    ProbeError,
    ProbeKind,
    ProbeOptions,
    ProbeResult,
    TLSProbePayload,
    WordPressProbePayload,
)
from .probes import collect_probes


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _unexpected_failure(
    probe: ProbeDefinition,
    exc: Exception,
    duration_ms: int,
) -> ProbeResult:
    message = f"Probe '{probe.kind.value}' raised an unexpected error: {exc!r}"
    return ProbeResult(
        kind=probe.kind,
        error=ProbeError(probe.kind, message, exc),
        duration_ms=duration_ms,
    )


def _run_single_probe(probe: ProbeDefinition, context: ProbeContext) -> ProbeResult:
    start = time.perf_counter()
    try:
        payload = probe.run(context)
    except ProbeError as exc:
        return ProbeResult(kind=probe.kind, error=exc, duration_ms=_duration_ms(start))
    except Exception as exc:
        return _unexpected_failure(probe, exc, _duration_ms(start))
    return ProbeResult(kind=probe.kind, payload=payload, duration_ms=_duration_ms(start))


def run_probes(
    context: ProbeContext,
    probes: Sequence[ProbeDefinition],
) -> list[ProbeResult]:
    """Execute probes with bounded concurrency; results keep probe order."""
    if not probes:
        return []

    max_workers = max(1, min(context.options.max_concurrency, len(probes)))
    if max_workers == 1:
        return [_run_single_probe(probe, context) for probe in probes]

    results: list[ProbeResult | None] = [None] * len(probes)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index: dict[concurrent.futures.Future[ProbeResult], int] = {}
        for index, probe in enumerate(probes):
            future = executor.submit(_run_single_probe, probe, context)
            future_to_index[future] = index

        for future in concurrent.futures.as_completed(future_to_index):
            index = future_to_index[future]
            results[index] = future.result()

    return [result for result in results if result is not None]


def _escalate(current: HealthStatus, candidate: HealthStatus) -> HealthStatus:
    if current is HealthStatus.UNHEALTHY:
        return current
    if candidate is HealthStatus.UNHEALTHY:
        return candidate
    if candidate is HealthStatus.DEGRADED:
        return HealthStatus.DEGRADED
    return current


def reduce_verdict(
    target: HostTarget,
    results: Iterable[ProbeResult],
    options: ProbeOptions | None = None,
    *,
    checked_at: datetime | None = None,
    duration_ms: int = 0,
) -> HealthVerdict:
    """Reduce probe results to a single :class:`HealthVerdict`.

    The status starts healthy and is only ever escalated:

    * HTTP errors and 5xx responses are unhealthy, 4xx responses degraded.
    * An unverifiable certificate is unhealthy; one expiring within
      ``tls_warn_days`` adds a warning and degrades an otherwise healthy site.
    * A stopped container is unhealthy; high memory or CPU only warns.
    * An unreachable database is unhealthy.
    * If no probe produced a usable result and nothing above fired, the
      status is unknown.
    """
    effective = options or ProbeOptions()
    per_probe: dict[ProbeKind, ProbeResult] = {}
    for result in results:
        per_probe[result.kind] = result

    status = HealthStatus.HEALTHY
    warnings: list[str] = []

    http = per_probe.get(ProbeKind.HTTP)
    if http is not None:
        if http.error is not None:
            status = _escalate(status, HealthStatus.UNHEALTHY)
            warnings.append(f"HTTP check failed: {http.error.message}")
        elif isinstance(http.payload, HttpProbePayload):
            code = http.payload.status_code
            if code >= 500:
                status = _escalate(status, HealthStatus.UNHEALTHY)
            elif code >= 400:
                status = _escalate(status, HealthStatus.DEGRADED)

    tls = per_probe.get(ProbeKind.TLS)
    if tls is not None and isinstance(tls.payload, TLSProbePayload):
        certificate = tls.payload
        if not certificate.valid:
            status = _escalate(status, HealthStatus.UNHEALTHY)
            detail = certificate.verification_error or "verification failed"
            warnings.append(f"TLS certificate invalid: {detail}")
        elif certificate.days_until_expiry < effective.tls_warn_days:
            warnings.append(
                f"TLS certificate expires in {certificate.days_until_expiry} days"
            )
            if status is HealthStatus.HEALTHY:
                status = HealthStatus.DEGRADED

    container = per_probe.get(ProbeKind.CONTAINER)
    if container is not None and isinstance(container.payload, ContainerProbePayload):
        state = container.payload
        if not state.running:
            status = _escalate(status, HealthStatus.UNHEALTHY)
            warnings.append(f"Container {state.container} is {state.status}")
        if state.memory_percent is not None and state.memory_percent > effective.memory_warn_percent:
            warnings.append(f"High memory usage: {state.memory_percent:.1f}%")
        if state.cpu_percent is not None and state.cpu_percent > effective.cpu_warn_percent:
            warnings.append(f"High CPU usage: {state.cpu_percent:.1f}%")

    wordpress = per_probe.get(ProbeKind.WORDPRESS)
    if wordpress is not None and isinstance(wordpress.payload, WordPressProbePayload):
        if not wordpress.payload.db_reachable:
            status = _escalate(status, HealthStatus.UNHEALTHY)
            warnings.append("WordPress database unreachable")

    for kind, result in per_probe.items():
        if kind is ProbeKind.HTTP or result.error is None:
            continue
        warnings.append(f"{kind.value} probe failed: {result.error.message}")

    usable = any(result.ok for result in per_probe.values())
    if not usable and status is HealthStatus.HEALTHY:
        status = HealthStatus.UNKNOWN

    return HealthVerdict(
        target=target,
        status=status,
        warnings=tuple(warnings),
        per_probe=per_probe,
        checked_at=checked_at or datetime.now(tz=UTC),
        duration_ms=duration_ms,
    )


class HealthEngine:
    """Coordinator that runs the enabled probes for a target and reduces them."""

    def __init__(
        self,
        options: ProbeOptions | None = None,
        *,
        tls_inspector: TLSInspector | None = None,
        http_transport: httpx.BaseTransport | None = None,
        resolver: Callable[..., object] = socket.getaddrinfo,
        probe_definitions: Mapping[ProbeKind, ProbeDefinition] | None = None,
    ) -> None:
        self.options = options or ProbeOptions()
        self._tls_inspector = tls_inspector or TLSInspector(timeout=self.options.timeout)
        self._http_transport = http_transport
        self._resolver = resolver
        self._probe_definitions = probe_definitions

    def _definitions(self, kinds: Iterable[ProbeKind]) -> list[ProbeDefinition]:
        if self._probe_definitions is None:
            return collect_probes(kinds)
        wanted = set(kinds)
        return [
            definition
            for kind, definition in self._probe_definitions.items()
            if kind in wanted
        ]

    def site_url(self, target: HostTarget, docker: DockerProvider | None) -> str | None:
        """Return the ``siteurl`` WordPress reports for the target container.

        ``None`` when an explicit URL is configured, there is no container,
        or WP-CLI cannot answer; callers then fall back to ``https://<host>``.
        """
        if self.options.url or docker is None or not target.container:
            return None
        wordpress = WordPressProvider(docker, target.container, timeout=self.options.timeout)
        try:
            return wordpress.option("siteurl")
        except TransportError:
            return None

    def context_for(
        self,
        target: HostTarget,
        connection: Connection | None = None,
        *,
        resolve_site_url: bool = True,
    ) -> ProbeContext:
        """Build the probe context for ``target``."""
        docker = DockerProvider(connection) if connection is not None else None
        return ProbeContext(
            target=target,
            options=self.options,
            connection=connection,
            docker=docker,
            tls_inspector=self._tls_inspector,
            http_transport=self._http_transport,
            resolver=self._resolver,
            site_url=self.site_url(target, docker) if resolve_site_url else None,
        )

    def evaluate(
        self,
        target: HostTarget,
        enabled: Iterable[ProbeKind] | None = None,
        *,
        connection: Connection | None = None,
    ) -> HealthVerdict:
        """Run every enabled probe once and return the reduced verdict."""
        start = time.perf_counter()
        kinds = DEFAULT_PROBES if enabled is None else frozenset(enabled)
        context = self.context_for(target, connection, resolve_site_url=bool(kinds & URL_PROBES))
        if ProbeKind.TLS in kinds and not context.url.lower().startswith("https://"):
            kinds = kinds - {ProbeKind.TLS}
        results = run_probes(context, self._definitions(kinds))
        return reduce_verdict(
            target,
            results,
            self.options,
            duration_ms=_duration_ms(start),
        )


__all__ = ["HealthEngine", "reduce_verdict", "run_probes"]
