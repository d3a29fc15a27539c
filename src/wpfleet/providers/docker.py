"""Docker provider: container discovery, inspection and compose restarts."""
from __future__ import annotations

import posixpath
import re
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from ..transport import CommandError, CommandResult, Connection, TransportError

WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"
DEFAULT_CONTAINER_PREFIX = "wp_"
INSPECT_FORMAT = (
    "{{.State.Status}}|{{if .State.Health}}{{.State.Health.Status}}{{end}}|"
    "{{.State.StartedAt}}|{{.RestartCount}}|{{.Id}}"
)
STATS_FORMAT = "{{.CPUPerc}}|{{.MemUsage}}|{{.MemPerc}}|{{.NetIO}}"

_SIZE_RE = re.compile(r"^\s*(?P<value>[0-9]*\.?[0-9]+)\s*(?P<unit>[a-zA-Z]*)\s*$")
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?(?P<tz>[+-]\d{2}:\d{2})?$"
)
_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


class DockerError(RuntimeError):
    """Raised when docker commands fail or return unexpected output."""


@dataclass(frozen=True, slots=True)
class ContainerState:
    """Subset of ``docker inspect`` describing a container's lifecycle."""

    name: str
    status: str
    health: str | None
    started_at: datetime | None
    restart_count: int
    container_id: str

    @property
    def running(self) -> bool:
        """Return whether docker reports the container as running."""
        return self.status == "running"

    def uptime_seconds(self, now: datetime | None = None) -> float | None:
        """Return seconds since the container started, if known."""
        if self.started_at is None or not self.running:
            return None
        current = now or datetime.now(tz=UTC)
        return max((current - self.started_at).total_seconds(), 0.0)


@dataclass(frozen=True, slots=True)
class ContainerStats:
    """One ``docker stats --no-stream`` sample."""

    cpu_percent: float | None
    memory_usage_bytes: int | None
    memory_limit_bytes: int | None
    memory_percent: float | None
    network_rx_bytes: int | None
    network_tx_bytes: int | None


def parse_size(text: str) -> int | None:
    """Convert docker's human sizes (``1.5GiB``, ``512kB``) to bytes."""
    match = _SIZE_RE.match(text)
    if match is None:
        return None
    multiplier = _SIZE_UNITS.get(match.group("unit").lower())
    if multiplier is None:
        return None
    return int(float(match.group("value")) * multiplier)


def parse_percent(text: str) -> float | None:
    """Convert ``"12.5%"`` to ``12.5``; ``None`` when unparsable."""
    cleaned = text.strip().rstrip("%").strip()
    if not cleaned or cleaned == "--":
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_timestamp(text: str) -> datetime | None:
    """Parse docker's RFC 3339 timestamps (nanosecond precision)."""
    value = text.strip()
    if not value or value.startswith("0001-01-01"):
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    match = _TIMESTAMP_RE.match(value)
    if match is None:
        return None
    base = match.group("base")
    frac = (match.group("frac") or "")[:6]
    tz = match.group("tz") or "+00:00"
    normalised = f"{base}.{frac.ljust(6, '0')}{tz}" if frac else f"{base}{tz}"
    try:
        return datetime.fromisoformat(normalised)
    except ValueError:
        return None


def parse_inspect_line(name: str, line: str) -> ContainerState:
    """Parse one line produced by :data:`INSPECT_FORMAT`."""
    parts = line.strip().split("|")
    if len(parts) != 5:
        raise DockerError(f"Unexpected docker inspect output for {name}: {line!r}")
    status, health, started, restarts, container_id = parts
    try:
        restart_count = int(restarts or 0)
    except ValueError as exc:
        raise DockerError(f"Invalid restart count for {name}: {restarts!r}") from exc
    return ContainerState(
        name=name,
        status=status,
        health=health or None,
        started_at=parse_timestamp(started),
        restart_count=restart_count,
        container_id=container_id,
    )


def parse_stats_line(line: str) -> ContainerStats:
    """Parse one line produced by :data:`STATS_FORMAT`."""
    parts = line.strip().split("|")
    if len(parts) != 4:
        raise DockerError(f"Unexpected docker stats output: {line!r}")
    cpu, mem_usage, mem_percent, net_io = parts
    usage, _, limit = mem_usage.partition("/")
    rx, _, tx = net_io.partition("/")
    return ContainerStats(
        cpu_percent=parse_percent(cpu),
        memory_usage_bytes=parse_size(usage),
        memory_limit_bytes=parse_size(limit) if limit else None,
        memory_percent=parse_percent(mem_percent),
        network_rx_bytes=parse_size(rx),
        network_tx_bytes=parse_size(tx) if tx else None,
    )


class DockerProvider:
    """Run docker commands on a remote host."""

    def __init__(self, connection: Connection, *, docker_bin: str = "docker") -> None:
        self.connection = connection
        self.docker_bin = docker_bin

    def _docker(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        timeout: float | None = None,
    ) -> CommandResult:
        command = shlex.join([self.docker_bin, *args])
        try:
            return self.connection.execute(command, timeout=timeout)
        except CommandError as exc:
            message = exc.stderr.strip() or exc.stdout.strip() or "no output"
            raise DockerError(
                f"{error_prefix} failed (exit {exc.exit_status}): {message}"
            ) from exc

    def discover_containers(self, prefix: str = DEFAULT_CONTAINER_PREFIX) -> list[str]:
        """Return running container names starting with ``prefix``, sorted."""
        result = self._docker(
            ["ps", "--format", "{{.Names}}"],
            error_prefix="docker ps",
        )
        names = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return sorted(name for name in names if name.startswith(prefix))

    def label(self, container: str, label: str) -> str:
        """Return a container label value ('' when unset)."""
        result = self._docker(
            ["inspect", "--format", f'{{{{index .Config.Labels "{label}"}}}}', container],
            error_prefix=f"docker inspect {container}",
        )
        value = result.stdout.strip()
        return "" if value == "<no value>" else value

    def working_dir(
        self,
        container: str,
        *,
        parent_override: str | None = None,
        prefix: str = DEFAULT_CONTAINER_PREFIX,
    ) -> str:
        """Return the compose project directory that owns ``container``.

        With ``parent_override`` the project directory name is kept but placed
        under the given parent; this covers hosts where compose projects were
        moved after the containers were created.
        """
        try:
            discovered = self.label(container, WORKING_DIR_LABEL)
        except DockerError:
            if parent_override is None:
                raise
            discovered = ""
        if parent_override is not None:
            if discovered:
                base = posixpath.basename(discovered.rstrip("/"))
            else:
                base = container.removeprefix(prefix)
            return posixpath.join(parent_override.rstrip("/") or "/", base)
        if not discovered:
            raise DockerError(
                f"Container {container} has no {WORKING_DIR_LABEL} label; "
                "pass a working directory parent explicitly."
            )
        return discovered

    def inspect(self, container: str) -> ContainerState:
        """Return the lifecycle state of ``container``."""
        result = self._docker(
            ["inspect", "--format", INSPECT_FORMAT, container],
            error_prefix=f"docker inspect {container}",
        )
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise DockerError(f"docker inspect returned no data for {container}.")
        return parse_inspect_line(container, lines[0])

    def stats(self, container: str) -> ContainerStats:
        """Return a single resource usage sample for ``container``."""
        result = self._docker(
            ["stats", "--no-stream", "--format", STATS_FORMAT, container],
            error_prefix=f"docker stats {container}",
        )
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise DockerError(f"docker stats returned no data for {container}.")
        return parse_stats_line(lines[0])

    def restart_project(self, working_dir: str, *, timeout: float | None = None) -> None:
        """Recreate the compose project in ``working_dir`` (down, then up -d)."""
        quoted = shlex.quote(working_dir)
        for action in ("down", "up -d"):
            command = f"cd {quoted} && {self.docker_bin} compose {action}"
            try:
                self.connection.execute(command, timeout=timeout)
            except CommandError as exc:
                message = exc.stderr.strip() or exc.stdout.strip() or "no output"
                raise DockerError(
                    f"docker compose {action} failed (exit {exc.exit_status}): {message}"
                ) from exc
            except TransportError as exc:
                raise DockerError(f"docker compose {action} aborted: {exc}") from exc

    def exec(
        self,
        container: str,
        args: Sequence[str],
        *,
        user: str | None = "0",
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``args`` inside ``container``; non-zero exits are returned, not raised."""
        argv = [self.docker_bin, "exec"]
        if user is not None:
            argv.extend(["-u", user])
        argv.append(container)
        argv.extend(args)
        return self.connection.execute(shlex.join(argv), timeout=timeout, check=False)


__all__ = [
    "ContainerState",
    "ContainerStats",
    "DEFAULT_CONTAINER_PREFIX",
    "DockerError",
    "DockerProvider",
    "INSPECT_FORMAT",
    "STATS_FORMAT",
    "WORKING_DIR_LABEL",
    "parse_inspect_line",
    "parse_percent",
    "parse_size",
    "parse_stats_line",
    "parse_timestamp",
]
