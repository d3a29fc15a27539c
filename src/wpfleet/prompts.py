"""Confirmation and value input capabilities injected into mutations."""
from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TextIO

import typer
import yaml


class PromptError(RuntimeError):
    """Raised when a value cannot be obtained from its source."""


class ValueSource(Protocol):
    """Produces the value written by ``compose set``."""

    def read_value(self) -> object:
        """Return the parsed value."""


def parse_value(text: str) -> object:
    """Parse ``text`` as YAML, falling back to the raw string."""
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


@dataclass(frozen=True)
class AlwaysConfirm:
    """Confirmer used with ``--yes`` or after a batch-level confirmation."""

    def confirm(self, prompt: str) -> bool:
        return True


@dataclass(frozen=True)
class InteractiveConfirmer:
    """Ask on the terminal; the default answer is no."""

    default: bool = False

    def confirm(self, prompt: str) -> bool:
        return typer.confirm(prompt, default=self.default)


@dataclass(frozen=True)
class PresetValue:
    """Value given on the command line (``--value``)."""

    raw: str

    def read_value(self) -> object:
        return parse_value(self.raw)


@dataclass(frozen=True)
class FileValue:
    """Value read from a local YAML file (``--value-file``)."""

    path: Path

    def read_value(self) -> object:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PromptError(f"Unable to read value file {self.path}: {exc}") from exc
        return parse_value(text)


@dataclass
class InteractiveValue:
    """Value typed on stdin until EOF (``--interactive``)."""

    stream: TextIO | None = None

    def read_value(self) -> object:
        typer.echo("Enter the YAML value, then press Ctrl-D:", err=True)
        text = (self.stream or sys.stdin).read()
        if not text.strip():
            raise PromptError("No value entered.")
        return parse_value(text)


__all__ = [
    "AlwaysConfirm",
    "FileValue",
    "InteractiveConfirmer",
    "InteractiveValue",
    "PresetValue",
    "PromptError",
    "ValueSource",
    "parse_value",
]
