"""Host range expressions.

A range expression names a contiguous block of numbered hosts with optional
exclusions::

    wp%d.example.com:1-10            -> wp1 .. wp10
    wp%02d.example.com:1-10:!3,5-7   -> wp01, wp02, wp04, wp08, wp09, wp10

The template must contain exactly one integer ``%`` conversion; ``%%`` is a
literal percent sign. Expansion is pure and can be repeated freely.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

_CONVERSION_RE = re.compile(r"%(?P<spec>[-+ #0]*\d*(?:\.\d+)?)(?P<type>[a-zA-Z%])")
_INTEGER_CONVERSIONS = {"d", "i", "u"}


class FormatError(ValueError):
    """Raised when a range expression cannot be parsed."""


@dataclass(frozen=True, slots=True)
class HostTarget:
    """A single host (and optionally one container on it) to operate on."""

    host: str
    container: str | None = None

    @property
    def label(self) -> str:
        """Return ``host`` or ``host/container`` for display."""
        if self.container:
            return f"{self.host}/{self.container}"
        return self.host


@dataclass(frozen=True, slots=True)
class HostRangeSpec:
    """Parsed range expression."""

    template: str
    start: int
    end: int
    exclusions: frozenset[int] = frozenset()

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise FormatError(
                f"Range start ({self.start}) must not exceed range end ({self.end})."
            )
        _validate_template(self.template)
        clipped = frozenset(
            index for index in self.exclusions if self.start <= index <= self.end
        )
        object.__setattr__(self, "exclusions", clipped)

    def indices(self) -> list[int]:
        """Return the ascending list of indices that survive exclusion."""
        return [
            index
            for index in range(self.start, self.end + 1)
            if index not in self.exclusions
        ]

    def __len__(self) -> int:
        return (self.end - self.start + 1) - len(self.exclusions)


def _validate_template(template: str) -> None:
    integer_slots = 0
    for match in _CONVERSION_RE.finditer(template):
        kind = match.group("type")
        if kind == "%":
            if match.group("spec"):
                raise FormatError(f"Invalid conversion in template {template!r}.")
            continue
        if kind not in _INTEGER_CONVERSIONS:
            raise FormatError(
                f"Template {template!r} may only contain integer placeholders (got %{kind})."
            )
        integer_slots += 1
    if integer_slots != 1:
        raise FormatError(
            f"Template {template!r} must contain exactly one integer placeholder such as %d."
        )
    try:
        template % 0
    except (TypeError, ValueError) as exc:
        raise FormatError(f"Invalid template {template!r}: {exc}.") from exc


def _parse_int(token: str, label: str) -> int:
    text = token.strip()
    try:
        return int(text, 10)
    except ValueError as exc:
        raise FormatError(f"Invalid {label}: {token!r} is not an integer.") from exc


def _parse_exclusions(segment: str) -> set[int]:
    segment = segment.strip()
    if not segment.startswith("!"):
        raise FormatError(f"Exclusion list must start with '!': {segment!r}.")
    excluded: set[int] = set()
    for raw in segment[1:].split(","):
        token = raw.strip()
        if not token:
            continue
        if "-" in token:
            bounds = token.split("-")
            if len(bounds) != 2:
                raise FormatError(f"Invalid exclusion range {token!r}.")
            low = _parse_int(bounds[0], "exclusion bound")
            high = _parse_int(bounds[1], "exclusion bound")
            if low > high:
                raise FormatError(
                    f"Invalid exclusion range {token!r}: start exceeds end."
                )
            excluded.update(range(low, high + 1))
            continue
        excluded.add(_parse_int(token, "exclusion"))
    return excluded


def parse_range(expression: str) -> HostRangeSpec:
    """Parse ``pattern:start-end[:!exclusions]`` into a :class:`HostRangeSpec`."""
    parts = expression.split(":")
    if len(parts) not in (2, 3):
        raise FormatError(
            f"Invalid range expression {expression!r}; expected "
            "'pattern:start-end' or 'pattern:start-end:!exclusions'."
        )
    template, range_part = parts[0], parts[1]
    bounds = range_part.split("-")
    if len(bounds) != 2:
        raise FormatError(f"Invalid range {range_part!r}; expected 'start-end'.")
    start = _parse_int(bounds[0], "range start")
    end = _parse_int(bounds[1], "range end")

    exclusions: set[int] = set()
    if len(parts) == 3:
        exclusions = _parse_exclusions(parts[2])

    return HostRangeSpec(
        template=template,
        start=start,
        end=end,
        exclusions=frozenset(exclusions),
    )


def expand(spec: HostRangeSpec, *, container: str | None = None) -> tuple[HostTarget, ...]:
    """Expand ``spec`` into ordered host targets."""
    return tuple(
        HostTarget(host=spec.template % index, container=container)
        for index in spec.indices()
    )


def resolve_targets(
    expression: str | None = None,
    *,
    hosts: Iterable[str] = (),
    container: str | None = None,
) -> list[HostTarget]:
    """Combine explicit hostnames and an optional range expression.

    Duplicates are dropped while preserving first-seen order.
    """
    targets: list[HostTarget] = []
    seen: set[str] = set()
    candidates: list[str] = [host for host in hosts if host]
    if expression:
        candidates.extend(target.host for target in expand(parse_range(expression)))
    for host in candidates:
        if host in seen:
            continue
        seen.add(host)
        targets.append(HostTarget(host=host, container=container))
    return targets


__all__ = [
    "FormatError",
    "HostRangeSpec",
    "HostTarget",
    "expand",
    "parse_range",
    "resolve_targets",
]
