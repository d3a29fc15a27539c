"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import fnmatch
import shlex
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest

from wpfleet.cli import RuntimeContext
from wpfleet.config import AppConfig, load_config
from wpfleet.health import HealthStatus, HealthVerdict, ProbeKind, ProbeOptions
from wpfleet.logging import StructuredLogger
from wpfleet.prompts import AlwaysConfirm
from wpfleet.ranges import HostTarget
from wpfleet.transport import CommandError, CommandResult, SSHSettings, TransportError

SAMPLE_COMPOSE = """\
version: '3.8'
services:
  wordpress:
    image: wordpress:6.5-php8.2
    container_name: wp_shop
    restart: unless-stopped
    ports:
    - 8080:80
    environment:
      WORDPRESS_DB_HOST: db
  db:
    image: mariadb:11
    restart: unless-stopped
volumes:
  db_data: {}
"""

WORKING_DIR_LABEL_FORMAT = "Labels"


@dataclass
class Rule:
    """Scripted reply for commands containing every fragment in ``match``."""

    match: tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    exit_status: int = 0
    raises: BaseException | None = None
    times: int | None = None

    def matches(self, command: str) -> bool:
        if self.times is not None and self.times <= 0:
            return False
        return all(fragment in command for fragment in self.match)


@dataclass
class FakeConnection:
    """In-memory remote host: a flat filesystem plus scripted command replies."""

    host: str = "wp1.example.com"
    files: dict[str, str] = field(default_factory=dict)
    rules: list[Rule] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    closed: bool = False

    def respond(
        self,
        *match: str,
        stdout: str = "",
        stderr: str = "",
        exit_status: int = 0,
        raises: BaseException | None = None,
        times: int | None = None,
    ) -> None:
        """Register a reply; later registrations win over earlier ones."""
        self.rules.append(
            Rule(
                match=tuple(match),
                stdout=stdout,
                stderr=stderr,
                exit_status=exit_status,
                raises=raises,
                times=times,
            )
        )

    def execute(
        self,
        command: str,
        *,
        input: str | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        self.commands.append(command)
        result = self._dispatch(command, input)
        if check and not result.ok:
            raise CommandError(command, result.exit_status, result.stdout, result.stderr)
        return result

    def close(self) -> None:
        self.closed = True

    def ran(self, fragment: str) -> list[str]:
        """Return executed commands containing ``fragment``."""
        return [command for command in self.commands if fragment in command]

    def _dispatch(self, command: str, input: str | None) -> CommandResult:
        for rule in reversed(self.rules):
            if rule.matches(command):
                if rule.times is not None:
                    rule.times -= 1
                if rule.raises is not None:
                    raise rule.raises
                return CommandResult(command, rule.exit_status, rule.stdout, rule.stderr)
        return self._filesystem(command, input)

    def _filesystem(self, command: str, input: str | None) -> CommandResult:
        tokens = shlex.split(command)

        def done(stdout: str = "", exit_status: int = 0, stderr: str = "") -> CommandResult:
            return CommandResult(command, exit_status, stdout, stderr)

        def missing(path: str) -> CommandResult:
            return done(exit_status=1, stderr=f"{path}: No such file or directory")

        match tokens:
            case ["cat", ">", path]:
                self.files[path] = input or ""
                return done()
            case ["cat", ">>", path]:
                self.files[path] = self.files.get(path, "") + (input or "")
                return done()
            case ["cat", path]:
                if path not in self.files:
                    return missing(path)
                return done(self.files[path])
            case ["mv", "-f", source, target]:
                if source not in self.files:
                    return missing(source)
                self.files[target] = self.files.pop(source)
                return done()
            case ["cp", "-p", source, target]:
                if source not in self.files:
                    return missing(source)
                self.files[target] = self.files[source]
                return done()
            case ["rm", "-f", path]:
                self.files.pop(path, None)
                return done()
            case ["test", "-f" | "-r", path]:
                return done(exit_status=0 if path in self.files else 1)
            case ["ls", "-1", pattern, *_]:
                names = sorted(name for name in self.files if fnmatch.fnmatch(name, pattern))
                return done("".join(f"{name}\n" for name in names))
        return done(exit_status=127, stderr=f"unexpected command: {command}")


def add_site(
    connection: FakeConnection,
    container: str = "wp_shop",
    working_dir: str = "/srv/wp/shop",
    compose: str | None = SAMPLE_COMPOSE,
) -> str:
    """Register a compose project and its container label on ``connection``."""
    connection.respond(
        "docker inspect",
        WORKING_DIR_LABEL_FORMAT,
        f" {container}",
        stdout=f"{working_dir}\n",
    )
    connection.respond(f"cd {working_dir} ", "docker compose")
    path = f"{working_dir}/docker-compose.yml"
    if compose is not None:
        connection.files[path] = compose
    return path


def running_containers(connection: FakeConnection, *names: str) -> None:
    """Script ``docker ps`` to list ``names``."""
    connection.respond("docker ps", stdout="".join(f"{name}\n" for name in names))


def make_verdict(
    target: HostTarget,
    status: HealthStatus = HealthStatus.HEALTHY,
    warnings: Iterable[str] = (),
) -> HealthVerdict:
    """Build a verdict without running probes."""
    return HealthVerdict(
        target=target,
        status=status,
        warnings=tuple(warnings),
        per_probe={},
        checked_at=datetime(2026, 1, 1, tzinfo=UTC),
    )


class StubEngine:
    """Stands in for :class:`~wpfleet.health.HealthEngine` in CLI tests."""

    def __init__(
        self,
        options: ProbeOptions,
        statuses: Mapping[str, HealthStatus],
        calls: list[tuple[HostTarget, frozenset[ProbeKind], ProbeOptions]],
    ) -> None:
        self.options = options
        self._statuses = statuses
        self._calls = calls

    def evaluate(
        self,
        target: HostTarget,
        enabled: Iterable[ProbeKind] | None = None,
        *,
        connection: object = None,
    ) -> HealthVerdict:
        kinds = frozenset(enabled or ())
        self._calls.append((target, kinds, self.options))
        status = self._statuses.get(target.host, HealthStatus.HEALTHY)
        return make_verdict(target, status)


@dataclass
class Fleet:
    """Hosts, health answers and recorded calls shared with CLI tests."""

    connections: dict[str, FakeConnection] = field(default_factory=dict)
    statuses: dict[str, HealthStatus] = field(default_factory=dict)
    engine_calls: list[tuple[HostTarget, frozenset[ProbeKind], ProbeOptions]] = field(
        default_factory=list
    )
    settings: list[SSHSettings] = field(default_factory=list)
    sleeps: list[float] = field(default_factory=list)

    def host(self, name: str) -> FakeConnection:
        """Return (creating on first use) the fake connection for ``name``."""
        if name not in self.connections:
            self.connections[name] = FakeConnection(host=name)
        return self.connections[name]

    def connector_factory(self, settings: SSHSettings) -> Callable[[str], FakeConnection]:
        self.settings.append(settings)

        def _connect(host: str) -> FakeConnection:
            if host not in self.connections:
                raise TransportError(host, "SSH connection failed: unreachable")
            return self.connections[host]

        return _connect

    def engine_factory(self, options: ProbeOptions) -> StubEngine:
        return StubEngine(options, self.statuses, self.engine_calls)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration isolated from the host system."""
    return load_config(
        config_file=tmp_path / "config.yml",
        env={},
        overrides={"logs_dir": str(tmp_path / "logs"), "mutation": {"settle_delay": 0.5}},
    )


@pytest.fixture
def fleet() -> Fleet:
    return Fleet()


@pytest.fixture
def runtime(app_config: AppConfig, fleet: Fleet) -> RuntimeContext:
    """Runtime wired to the fake fleet; prompts always answer yes."""
    return RuntimeContext(
        config=app_config,
        logger=StructuredLogger(app_config.logs_dir),
        connector_factory=fleet.connector_factory,
        engine_factory=fleet.engine_factory,
        confirmer=AlwaysConfirm(),
        sleep=fleet.sleeps.append,
    )
