"""Export compose service keys as named placeholders.

A placeholder is an upper-case ``SERVICE_KEY`` name bound to the value of
``services.<service>.<key>``. Placeholders can be written to a local
``NAME=value`` file, appended to a remote file as a ``placeholders:`` block,
or handed to a local callback script through its environment.
"""
from __future__ import annotations

import os
import re
import shlex
import subprocess
from collections.abc import Iterable, Mapping
from pathlib import Path

import yaml

from .compose import ComposeDocument, ComposeStore, WriteError
from .transport import CommandError, TransportError

_UNSAFE = re.compile(r"[^A-Za-z0-9_]")
BLOCK_HEADER = "# %%PLACEHOLDERS%% - exported placeholders"


class ExportError(RuntimeError):
    """Raised when placeholders cannot be written or handed to a callback."""


def parse_keys(raw: str) -> list[str]:
    """Split a comma-separated key list, dropping blanks."""
    return [key.strip() for key in raw.split(",") if key.strip()]


def placeholder_name(service: str, key: str, prefix: str | None = None) -> str:
    """Return the placeholder name for ``key``.

    ``PREFIX_KEY`` when a prefix is given, ``SERVICE_KEY`` otherwise; anything
    outside ``[A-Za-z0-9_]`` becomes an underscore.
    """
    head = prefix or service
    return _UNSAFE.sub("_", f"{head}_{key}".upper())


def render_value(value: object, *, yaml_format: bool = True) -> str:
    """Render ``value`` as text; complex values become YAML when ``yaml_format``."""
    if not yaml_format:
        return str(value)
    text = yaml.safe_dump(value, sort_keys=False, default_flow_style=False, allow_unicode=True)
    # Scalars come back with an explicit document end marker.
    if text.endswith("\n...\n"):
        text = text[: -len("...\n")]
    return text.strip()


def collect_placeholders(
    document: ComposeDocument,
    service: str,
    keys: Iterable[str],
    *,
    prefix: str | None = None,
    yaml_format: bool = True,
) -> dict[str, str]:
    """Return placeholder name -> rendered value, in ``keys`` order.

    A missing service or key raises :class:`~wpfleet.compose.NotFoundError`.
    """
    placeholders: dict[str, str] = {}
    for key in keys:
        value = document.get_value(service, key)
        placeholders[placeholder_name(service, key, prefix)] = render_value(
            value, yaml_format=yaml_format
        )
    return placeholders


def format_env_file(placeholders: Mapping[str, str]) -> str:
    """Return ``NAME=value`` lines with embedded newlines escaped."""
    lines: list[str] = []
    for name, value in placeholders.items():
        escaped = value.replace("\n", "\\n")
        lines.append(f"{name}={escaped}\n")
    return "".join(lines)


def placeholder_block(placeholders: Mapping[str, str]) -> str:
    """Return the YAML block mapping each name to its ``%%NAME%%`` token."""
    lines = ["", BLOCK_HEADER, "placeholders:"]
    lines.extend(f"  {name}: '%%{name}%%'" for name in placeholders)
    return "\n".join(lines) + "\n"


def write_env_file(path: Path, placeholders: Mapping[str, str]) -> None:
    """Write ``placeholders`` to a local file."""
    try:
        path.write_text(format_env_file(placeholders), encoding="utf-8")
    except OSError as exc:
        raise ExportError(f"Failed to write {path}: {exc}") from exc


def append_block(store: ComposeStore, block: str, remote_file: str | None = None) -> str:
    """Append ``block`` to the compose file (or ``remote_file``); return the path written."""
    if remote_file is None:
        store.write_text(store.read_text() + block)
        return store.path
    try:
        store.connection.execute(f"cat >> {shlex.quote(remote_file)}", input=block)
    except (CommandError, TransportError) as exc:
        raise WriteError(f"Failed to append to {remote_file} on {store.host}: {exc}") from exc
    return remote_file


def run_callback(script: Path, placeholders: Mapping[str, str]) -> subprocess.CompletedProcess[str]:
    """Run a local ``script`` with the placeholders added to its environment."""
    env = dict(os.environ)
    env.update(placeholders)
    try:
        result = subprocess.run(  # noqa: S603 - operator supplied script
            [str(script)],
            capture_output=True,
            text=True,
            env=env,
            check=False,
        )
    except OSError as exc:
        raise ExportError(f"Callback {script} could not be started: {exc}") from exc
    if result.returncode != 0:
        message = result.stderr or result.stdout or f"exit {result.returncode}"
        raise ExportError(f"Callback {script} failed: {message.strip()}")
    return result


__all__ = [
    "BLOCK_HEADER",
    "ExportError",
    "append_block",
    "collect_placeholders",
    "format_env_file",
    "parse_keys",
    "placeholder_block",
    "placeholder_name",
    "render_value",
    "run_callback",
    "write_env_file",
]
