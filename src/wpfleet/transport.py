"""SSH transport used to reach fleet hosts.

All remote work (docker, WP-CLI, file manipulation) flows through a
:class:`Connection`: something that can run a shell command and return its
exit status and output. :class:`SSHConnection` is the paramiko-backed
implementation; tests substitute in-memory fakes.
"""
from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import paramiko

LOGGER = logging.getLogger(__name__)

DEFAULT_KEY_NAMES = ("id_rsa", "id_ed25519", "id_ecdsa")


class TransportError(RuntimeError):
    """Raised when a host cannot be reached or a session breaks."""

    def __init__(self, host: str, message: str) -> None:
        super().__init__(f"{host}: {message}")
        self.host = host


class CommandError(RuntimeError):
    """Raised when a remote command exits with a non-zero status."""

    def __init__(self, command: str, exit_status: int, stdout: str, stderr: str) -> None:
        detail = stderr.strip() or stdout.strip() or "no output"
        super().__init__(f"Command `{command}` failed (exit {exit_status}): {detail}")
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one remote command."""

    command: str
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.exit_status == 0


class Connection(Protocol):
    """Minimal surface the rest of wpfleet needs from a remote session."""

    host: str

    def execute(
        self,
        command: str,
        *,
        input: str | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run ``command`` and return its result."""

    def close(self) -> None:
        """Release the session."""


@dataclass(frozen=True)
class SSHSettings:
    """Connection parameters shared by every host in a run."""

    user: str | None = None
    port: int = 22
    key_path: Path | None = None
    use_agent: bool = True
    connect_timeout: float = 30.0
    command_timeout: float = 120.0
    disable_default_keys: bool = False
    extra_key_names: tuple[str, ...] = field(default=DEFAULT_KEY_NAMES)

    def key_candidates(self) -> list[str]:
        """Return existing private key files to offer, explicit key first."""
        candidates: list[str] = []
        if self.key_path is not None:
            candidates.append(str(self.key_path.expanduser()))
        if not self.disable_default_keys:
            ssh_dir = Path.home() / ".ssh"
            for name in self.extra_key_names:
                path = ssh_dir / name
                if path.is_file() and str(path) not in candidates:
                    candidates.append(str(path))
        return candidates


class SSHConnection:
    """paramiko-backed :class:`Connection`."""

    def __init__(self, host: str, client: paramiko.SSHClient, settings: SSHSettings) -> None:
        self.host = host
        self._client = client
        self._settings = settings

    def execute(
        self,
        command: str,
        *,
        input: str | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        effective_timeout = timeout if timeout is not None else self._settings.command_timeout
        LOGGER.debug("%s $ %s", self.host, command)
        try:
            stdin, stdout, stderr = self._client.exec_command(command, timeout=effective_timeout)
            if input is not None:
                stdin.write(input)
                stdin.flush()
            stdin.channel.shutdown_write()
            # Drain stderr alongside stdout so neither window fills up.
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                pending_err = pool.submit(stderr.read)
                out = stdout.read().decode("utf-8", "replace")
                err = pending_err.result().decode("utf-8", "replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(self.host, f"command `{command}` aborted: {exc}") from exc

        result = CommandResult(command=command, exit_status=exit_status, stdout=out, stderr=err)
        if check and not result.ok:
            raise CommandError(command, exit_status, out, err)
        return result

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SSHConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def connect(host: str, settings: SSHSettings) -> SSHConnection:
    """Open an SSH session to ``host``."""
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    key_files = settings.key_candidates()
    try:
        client.connect(
            hostname=host,
            port=settings.port,
            username=settings.user,
            key_filename=key_files or None,
            timeout=settings.connect_timeout,
            banner_timeout=settings.connect_timeout,
            auth_timeout=settings.connect_timeout,
            allow_agent=settings.use_agent,
            look_for_keys=False,
        )
    except (paramiko.SSHException, OSError) as exc:
        client.close()
        raise TransportError(host, f"SSH connection failed: {exc}") from exc
    LOGGER.debug("connected to %s:%s", host, settings.port)
    return SSHConnection(host, client, settings)


Connector = Callable[[str], Connection]


def make_connector(settings: SSHSettings) -> Connector:
    """Return a callable opening one connection per host with ``settings``."""

    def _connector(host: str) -> Connection:
        return connect(host, settings)

    return _connector


__all__ = [
    "CommandError",
    "CommandResult",
    "Connection",
    "Connector",
    "DEFAULT_KEY_NAMES",
    "SSHConnection",
    "SSHSettings",
    "TransportError",
    "connect",
    "make_connector",
]
