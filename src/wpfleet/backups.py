"""Naming and discovery helpers for compose file backups.

Backups are plain sibling copies of the live compose file named
``<compose path>.backup.<YYYYmmdd-HHMMSS>`` (UTC). They are never pruned
automatically; operators remove them explicitly. Names have one-second
resolution, so a second backup taken within the same second replaces the
first.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

BACKUP_MARKER = ".backup."
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(frozen=True, slots=True)
class BackupRecord:
    """A backup copy of a compose file on a remote host."""

    path: str
    timestamp: datetime
    container: str | None = None

    @property
    def identifier(self) -> str:
        """Return the timestamp suffix used in the file name."""
        return self.timestamp.strftime(TIMESTAMP_FORMAT)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": self.path,
            "timestamp": self.timestamp.isoformat(),
            "container": self.container,
        }


def generate_identifier(clock: Callable[[], datetime] | None = None) -> str:
    """Return a timestamp suffix for a new backup."""
    now = (clock or (lambda: datetime.now(tz=UTC)))()
    return now.strftime(TIMESTAMP_FORMAT)


def backup_path_for(compose_path: str, identifier: str) -> str:
    """Return the sibling backup path for ``compose_path``."""
    return f"{compose_path}{BACKUP_MARKER}{identifier}"


def parse_backup_path(path: str, *, container: str | None = None) -> BackupRecord | None:
    """Return a :class:`BackupRecord` for ``path`` or ``None`` if it is not a backup."""
    marker = path.rfind(BACKUP_MARKER)
    if marker < 0:
        return None
    suffix = path[marker + len(BACKUP_MARKER) :]
    try:
        timestamp = datetime.strptime(suffix, TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None
    return BackupRecord(path=path, timestamp=timestamp, container=container)


def parse_backup_listing(
    lines: Iterable[str],
    *,
    container: str | None = None,
) -> list[BackupRecord]:
    """Parse ``ls -1`` output into records sorted oldest first.

    Names that do not carry a parsable timestamp are skipped.
    """
    records: list[BackupRecord] = []
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        record = parse_backup_path(line, container=container)
        if record is not None:
            records.append(record)
    records.sort(key=lambda record: (record.timestamp, record.path))
    return records


__all__ = [
    "BACKUP_MARKER",
    "BackupRecord",
    "TIMESTAMP_FORMAT",
    "backup_path_for",
    "generate_identifier",
    "parse_backup_listing",
    "parse_backup_path",
]
