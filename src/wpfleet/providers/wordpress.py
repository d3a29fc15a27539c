"""WP-CLI wrapper for WordPress containers."""
from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass

from ..transport import CommandResult
from .docker import DockerProvider

WP_BINARY = "wp"
_TRUTHY = {"1", "true", "yes", "on"}


class WordPressError(RuntimeError):
    """Raised when a required WP-CLI call fails."""


@dataclass(frozen=True, slots=True)
class PluginInfo:
    """An active plugin as reported by ``wp plugin list``."""

    name: str
    version: str | None = None
    update: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "version": self.version, "update": self.update}


class WordPressProvider:
    """Query a WordPress install through ``docker exec ... wp``."""

    def __init__(self, docker: DockerProvider, container: str, *, timeout: float | None = None) -> None:
        self.docker = docker
        self.container = container
        self.timeout = timeout

    def run(self, args: Sequence[str]) -> CommandResult:
        """Run ``wp --allow-root <args>`` inside the container."""
        return self.docker.exec(
            self.container,
            [WP_BINARY, "--allow-root", *args],
            timeout=self.timeout,
        )

    def _required(self, args: Sequence[str]) -> str:
        result = self.run(args)
        if not result.ok:
            message = result.stderr.strip() or result.stdout.strip() or "no output"
            raise WordPressError(
                f"wp {' '.join(args)} failed in {self.container} (exit {result.exit_status}): {message}"
            )
        return result.stdout.strip()

    def _optional(self, args: Sequence[str]) -> str | None:
        result = self.run(args)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def core_version(self) -> str:
        """Return the WordPress core version; raises when WP-CLI is unusable."""
        return self._required(["core", "version"])

    def option(self, name: str) -> str | None:
        """Return an option value or ``None`` when unavailable."""
        return self._optional(["option", "get", name])

    def db_reachable(self) -> bool:
        """Return whether ``wp db check`` succeeds."""
        return self.run(["db", "check"]).ok

    def config_flag(self, name: str) -> bool | None:
        """Return a boolean wp-config constant (``WP_DEBUG``, ``WP_CACHE``)."""
        value = self._optional(["config", "get", name])
        if value is None:
            return None
        return value.lower() in _TRUTHY

    def active_theme(self) -> str | None:
        """Return the active theme slug."""
        return self._optional(["theme", "list", "--status=active", "--field=name"])

    def active_plugins(self) -> list[PluginInfo]:
        """Return active plugins; an empty list when the listing fails."""
        raw = self._optional(["plugin", "list", "--status=active", "--format=json"])
        if raw is None:
            return []
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError:
            return []
        plugins: list[PluginInfo] = []
        if isinstance(entries, list):
            for entry in entries:
                if isinstance(entry, dict) and entry.get("name"):
                    plugins.append(
                        PluginInfo(
                            name=str(entry["name"]),
                            version=str(entry["version"]) if entry.get("version") else None,
                            update=str(entry["update"]) if entry.get("update") else None,
                        )
                    )
        return plugins


__all__ = ["PluginInfo", "WordPressError", "WordPressProvider"]
