"""Remote ``docker-compose.yml`` access.

:class:`ComposeStore` reads, rewrites, backs up and restores the compose file
of one site on one host. Every call goes back to the remote file; nothing is
cached between calls. Writes land in a temporary sibling first and are
renamed over the live file so readers never observe partial content.
"""
from __future__ import annotations

import copy
import shlex
from collections.abc import Callable, Iterator, Mapping
from datetime import datetime

import yaml

from .backups import (
    BACKUP_MARKER,
    BackupRecord,
    backup_path_for,
    generate_identifier,
    parse_backup_listing,
    parse_backup_path,
)
from .transport import CommandError, Connection, TransportError

COMPOSE_FILENAME = "docker-compose.yml"
SECTION_KEY = "services"
TEMP_SUFFIX = ".wpfleet-tmp"


class ComposeStoreError(RuntimeError):
    """Base error for compose store failures."""


class ReadError(ComposeStoreError):
    """Raised when the compose file cannot be fetched."""


class ParseError(ComposeStoreError):
    """Raised when the compose file is not a YAML mapping."""


class WriteError(ComposeStoreError):
    """Raised when the compose file cannot be replaced."""


class BackupError(ComposeStoreError):
    """Raised when a backup cannot be created or removed."""


class RestoreError(ComposeStoreError):
    """Raised when a backup cannot be copied back."""


class NotFoundError(ComposeStoreError):
    """Raised when a service or key is missing from the document."""

    def __init__(self, section: str, key: str | None = None) -> None:
        if key is None:
            message = f"Service {section!r} not found."
        else:
            message = f"Key {key!r} not found in service {section!r}."
        super().__init__(message)
        self.section = section
        self.key = key


class ComposeDocument:
    """Parsed compose file.

    Top-level keys (``services``, ``networks``, ``volumes`` and anything
    else) keep their original order across a load/dump cycle.
    """

    def __init__(self, data: Mapping[str, object] | None = None) -> None:
        self._data: dict[str, object] = dict(data or {})

    @classmethod
    def from_text(cls, text: str) -> ComposeDocument:
        """Parse YAML ``text``; raise :class:`ParseError` on invalid input."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ParseError(f"Invalid compose YAML: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ParseError(
                f"Compose file must contain a mapping at the top level (got {type(data).__name__})."
            )
        return cls(data)

    def to_text(self) -> str:
        """Serialise the document back to YAML."""
        return yaml.safe_dump(
            self._data,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )

    @property
    def data(self) -> dict[str, object]:
        """Return the underlying mapping (mutable)."""
        return self._data

    def copy(self) -> ComposeDocument:
        """Return a deep copy."""
        return ComposeDocument(copy.deepcopy(self._data))

    def section_names(self) -> list[str]:
        """Return the names of all services."""
        return list(self._sections())

    def _sections(self) -> dict[str, object]:
        sections = self._data.get(SECTION_KEY)
        if sections is None:
            return {}
        if not isinstance(sections, dict):
            raise ParseError(f"'{SECTION_KEY}' must be a mapping.")
        return sections

    def _section(self, section: str) -> dict[str, object]:
        body = self._sections().get(section)
        if not isinstance(body, dict):
            raise NotFoundError(section)
        return body

    def get_section(self, section: str) -> dict[str, object]:
        """Return the body of ``section``."""
        return self._section(section)

    def get_value(self, section: str, key: str) -> object:
        """Return ``services[section][key]``."""
        body = self._section(section)
        if key not in body:
            raise NotFoundError(section, key)
        return body[key]

    def set_value(self, section: str, key: str, value: object) -> None:
        """Set ``services[section][key]``; the service must already exist."""
        self._section(section)[key] = value

    def delete_key(self, section: str, key: str) -> None:
        """Remove ``services[section][key]``."""
        body = self._section(section)
        if key not in body:
            raise NotFoundError(section, key)
        del body[key]

    def delete_section(self, section: str) -> None:
        """Remove the whole service ``section``."""
        sections = self._sections()
        if section not in sections:
            raise NotFoundError(section)
        del sections[section]

    def add_section(self, section: str, body: Mapping[str, object]) -> None:
        """Add a new service; refuses to overwrite an existing one."""
        sections = self._data.get(SECTION_KEY)
        if sections is None:
            sections = {}
            self._data[SECTION_KEY] = sections
        if not isinstance(sections, dict):
            raise ParseError(f"'{SECTION_KEY}' must be a mapping.")
        if section in sections:
            raise ComposeStoreError(f"Service {section!r} already exists.")
        sections[section] = dict(body)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ComposeDocument):
            return NotImplemented
        return self._data == other._data

    def __repr__(self) -> str:
        return f"ComposeDocument(keys={list(self._data)!r})"


def compose_path_for(working_dir: str) -> str:
    """Return the compose file path inside ``working_dir``."""
    return f"{working_dir.rstrip('/')}/{COMPOSE_FILENAME}"


class ComposeStore:
    """Compose file of one site, reached through ``connection``."""

    def __init__(
        self,
        connection: Connection,
        working_dir: str,
        *,
        container: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.connection = connection
        self.working_dir = working_dir.rstrip("/") or "/"
        self.container = container
        self.path = compose_path_for(self.working_dir)
        self._clock = clock

    @property
    def host(self) -> str:
        """Return the host this store talks to."""
        return self.connection.host

    def _run(self, command: str, *, input: str | None = None) -> str:
        return self.connection.execute(command, input=input).stdout

    # Whole-document operations -------------------------------------
    def read_text(self) -> str:
        """Return the raw compose file content."""
        try:
            return self._run(f"cat {shlex.quote(self.path)}")
        except (CommandError, TransportError) as exc:
            raise ReadError(f"Failed to read {self.path} on {self.host}: {exc}") from exc

    def read(self) -> ComposeDocument:
        """Fetch and parse the compose file."""
        return ComposeDocument.from_text(self.read_text())

    def write(self, document: ComposeDocument) -> None:
        """Replace the compose file with ``document``."""
        self.write_text(document.to_text())

    def write_text(self, text: str) -> None:
        """Replace the compose file with raw ``text`` (temp file + rename)."""
        temp_path = shlex.quote(self.path + TEMP_SUFFIX)
        try:
            self._run(f"cat > {temp_path}", input=text)
            self._run(f"mv -f {temp_path} {shlex.quote(self.path)}")
        except (CommandError, TransportError) as exc:
            self._discard_temp()
            raise WriteError(f"Failed to write {self.path} on {self.host}: {exc}") from exc

    def _discard_temp(self) -> None:
        try:
            self.connection.execute(
                f"rm -f {shlex.quote(self.path + TEMP_SUFFIX)}",
                check=False,
            )
        except TransportError:
            return

    # Backups ---------------------------------------------------------
    def backup(self) -> BackupRecord:
        """Copy the live compose file to a timestamped sibling."""
        identifier = generate_identifier(self._clock)
        target = backup_path_for(self.path, identifier)
        quoted = shlex.quote(self.path)
        try:
            exists = self.connection.execute(f"test -f {quoted}", check=False)
            if not exists.ok:
                raise BackupError(f"Compose file {self.path} not found on {self.host}.")
            self._run(f"cp -p {quoted} {shlex.quote(target)}")
        except (CommandError, TransportError) as exc:
            raise BackupError(f"Failed to back up {self.path} on {self.host}: {exc}") from exc
        record = parse_backup_path(target, container=self.container)
        if record is None:  # pragma: no cover - identifier is generated locally
            raise BackupError(f"Generated backup path {target} is not parseable.")
        return record

    def restore(self, backup_path: str) -> None:
        """Copy ``backup_path`` back over the live compose file."""
        source = shlex.quote(backup_path)
        temp_path = shlex.quote(self.path + TEMP_SUFFIX)
        try:
            readable = self.connection.execute(f"test -r {source}", check=False)
            if not readable.ok:
                raise RestoreError(f"Backup {backup_path} not found on {self.host}.")
            self._run(f"cp -p {source} {temp_path}")
            self._run(f"mv -f {temp_path} {shlex.quote(self.path)}")
        except (CommandError, TransportError) as exc:
            self._discard_temp()
            raise RestoreError(
                f"Failed to restore {backup_path} on {self.host}: {exc}"
            ) from exc

    def list_backups(self) -> list[BackupRecord]:
        """Return existing backups, oldest first."""
        pattern = f"{shlex.quote(self.path)}{BACKUP_MARKER}*"
        try:
            listing = self._run(f"ls -1 {pattern} 2>/dev/null || true")
        except (CommandError, TransportError) as exc:
            raise ReadError(f"Failed to list backups on {self.host}: {exc}") from exc
        return parse_backup_listing(listing.splitlines(), container=self.container)

    def latest_backup(self) -> BackupRecord | None:
        """Return the newest backup, if any."""
        records = self.list_backups()
        return records[-1] if records else None

    def delete_backup(self, backup_path: str) -> None:
        """Remove one backup file belonging to this compose file."""
        if not backup_path.startswith(self.path + BACKUP_MARKER):
            raise BackupError(
                f"{backup_path} is not a backup of {self.path}; refusing to delete it."
            )
        try:
            self._run(f"rm -f {shlex.quote(backup_path)}")
        except (CommandError, TransportError) as exc:
            raise BackupError(f"Failed to delete {backup_path} on {self.host}: {exc}") from exc

    # Structural accessors ------------------------------------------
    def get_value(self, section: str, key: str) -> object:
        """Return ``services[section][key]`` from the live file."""
        return self.read().get_value(section, key)

    def set_value(self, section: str, key: str, value: object) -> None:
        """Set ``services[section][key]`` and write the file back."""
        document = self.read()
        document.set_value(section, key, value)
        self.write(document)

    def delete_key(self, section: str, key: str) -> None:
        """Remove ``services[section][key]`` and write the file back."""
        document = self.read()
        document.delete_key(section, key)
        self.write(document)

    def delete_section(self, section: str) -> None:
        """Remove the service ``section`` and write the file back."""
        document = self.read()
        document.delete_section(section)
        self.write(document)

    def add_section(self, section: str, body: Mapping[str, object]) -> None:
        """Add a new service and write the file back."""
        document = self.read()
        document.add_section(section, body)
        self.write(document)


__all__ = [
    "COMPOSE_FILENAME",
    "BackupError",
    "ComposeDocument",
    "ComposeStore",
    "ComposeStoreError",
    "NotFoundError",
    "ParseError",
    "ReadError",
    "RestoreError",
    "WriteError",
    "compose_path_for",
]
