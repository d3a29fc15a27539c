"""Transactional compose mutations.

A :class:`MutationController` drives one host through::

    start -> backed_up -> applied -> restarted -> health_checked -> committed
                                         |                |
                                         +---> rolled_back <---+

Restart failures and unhealthy verdicts take the rollback path (restore the
backup, restart again) unless rollback is disabled or no backup exists. A
failure while rolling back is reported as ``rollback_failed`` and never
folded into an ordinary failure: the host is in an unknown state.
"""
from __future__ import annotations

import time
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .backups import BackupRecord
from .compose import ComposeDocument, ComposeStore, ComposeStoreError
from .health.models import DEFAULT_PROBES, HealthStatus, HealthVerdict, ProbeKind
from .providers.docker import DockerError
from .ranges import HostTarget
from .transport import CommandError, TransportError

_RESTART_ERRORS = (DockerError, TransportError, CommandError)
_ROLLBACK_ERRORS = (ComposeStoreError, DockerError, TransportError, CommandError)


class MutationState(str, Enum):
    """Position of a host in the mutation state machine."""

    START = "start"
    BACKED_UP = "backed_up"
    APPLIED = "applied"
    RESTARTED = "restarted"
    HEALTH_CHECKED = "health_checked"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    ROLLBACK_FAILED = "rollback_failed"
    CANCELLED = "cancelled"


class OutcomeKind(str, Enum):
    """Final classification of a host in a batch."""

    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class MutationError(RuntimeError):
    """Base class for errors raised along the mutation path."""


class RestartError(MutationError):
    """Raised when the workload could not be restarted."""


class HealthCheckError(MutationError):
    """Raised when the health check itself could not be completed."""


class HealthCheckFailed(MutationError):
    """Raised when the post-restart verdict is unhealthy."""

    def __init__(self, verdict: HealthVerdict) -> None:
        detail = "; ".join(verdict.warnings) or verdict.status.value
        super().__init__(f"Health check failed ({verdict.status.value}): {detail}")
        self.verdict = verdict


class RollbackFailure(MutationError):
    """Raised when restoring the backup (or restarting afterwards) failed."""

    def __init__(self, original: BaseException, cause: BaseException) -> None:
        super().__init__(f"Rollback failed after '{original}': {cause}")
        self.original = original
        self.cause = cause


class Confirmer(Protocol):
    """Answers yes/no questions before destructive work."""

    def confirm(self, prompt: str) -> bool:
        """Return ``True`` to proceed."""


@dataclass(frozen=True)
class MutationConfig:
    """Immutable settings shared by every host of one invocation."""

    skip_backup: bool = False
    skip_confirm: bool = False
    skip_restart: bool = False
    skip_health_check: bool = False
    skip_rollback: bool = False
    settle_delay: float = 5.0
    health_timeout: float = 30.0
    probes: frozenset[ProbeKind] = DEFAULT_PROBES
    health_url: str | None = None
    concurrency: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "skip_backup": self.skip_backup,
            "skip_confirm": self.skip_confirm,
            "skip_restart": self.skip_restart,
            "skip_health_check": self.skip_health_check,
            "skip_rollback": self.skip_rollback,
            "settle_delay": self.settle_delay,
            "health_timeout": self.health_timeout,
            "probes": sorted(kind.value for kind in self.probes),
            "health_url": self.health_url,
            "concurrency": self.concurrency,
        }


# Changes ------------------------------------------------------------


class Change(Protocol):
    """A modification applied to a compose document."""

    def apply(self, document: ComposeDocument) -> ComposeDocument:
        """Return the modified document."""

    def describe(self) -> str:
        """Return a one-line human description."""


@dataclass(frozen=True)
class SetValue:
    """Set ``services.<section>.<key>`` to ``value``."""

    section: str
    key: str
    value: object

    def apply(self, document: ComposeDocument) -> ComposeDocument:
        updated = document.copy()
        updated.set_value(self.section, self.key, self.value)
        return updated

    def describe(self) -> str:
        return f"set services.{self.section}.{self.key} = {self.value!r}"


@dataclass(frozen=True)
class DeleteKey:
    """Remove ``services.<section>.<key>``."""

    section: str
    key: str

    def apply(self, document: ComposeDocument) -> ComposeDocument:
        updated = document.copy()
        updated.delete_key(self.section, self.key)
        return updated

    def describe(self) -> str:
        return f"delete services.{self.section}.{self.key}"


@dataclass(frozen=True)
class DeleteSection:
    """Remove the whole service ``section``."""

    section: str

    def apply(self, document: ComposeDocument) -> ComposeDocument:
        updated = document.copy()
        updated.delete_section(self.section)
        return updated

    def describe(self) -> str:
        return f"delete service {self.section}"


@dataclass(frozen=True)
class AddSection:
    """Add a new service ``section`` with ``body``."""

    section: str
    body: Mapping[str, object]

    def apply(self, document: ComposeDocument) -> ComposeDocument:
        updated = document.copy()
        updated.add_section(self.section, self.body)
        return updated

    def describe(self) -> str:
        return f"add service {self.section}"


@dataclass(frozen=True)
class ReplaceDocument:
    """Replace the whole compose document."""

    document: ComposeDocument

    @classmethod
    def from_text(cls, text: str) -> ReplaceDocument:
        """Build from YAML text (validated up front)."""
        return cls(ComposeDocument.from_text(text))

    def apply(self, document: ComposeDocument) -> ComposeDocument:
        return self.document.copy()

    def describe(self) -> str:
        return "replace compose document"


# Outcomes -----------------------------------------------------------


@dataclass(frozen=True)
class MutationStep:
    """One recorded transition."""

    name: str
    status: str
    detail: str | None = None


@dataclass(frozen=True)
class MutationOutcome:
    """Final result for one host."""

    target: HostTarget
    kind: OutcomeKind
    state: MutationState
    backup: BackupRecord | None = None
    error: BaseException | None = None
    verdict: HealthVerdict | None = None
    steps: tuple[MutationStep, ...] = ()
    change: str | None = None

    @property
    def committed(self) -> bool:
        """Return ``True`` when the change was kept."""
        return self.kind is OutcomeKind.COMMITTED

    @property
    def message(self) -> str:
        """Return a short description for reports."""
        if self.error is not None:
            return str(self.error)
        if self.verdict is not None:
            return f"health {self.verdict.status.value}"
        return self.kind.value.replace("_", " ")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.target.host,
            "container": self.target.container,
            "outcome": self.kind.value,
            "state": self.state.value,
            "change": self.change,
            "backup": self.backup.path if self.backup else None,
            "error": str(self.error) if self.error is not None else None,
            "health": self.verdict.status.value if self.verdict else None,
            "steps": [
                {"name": step.name, "status": step.status, "detail": step.detail}
                for step in self.steps
            ],
        }


def skipped_outcome(target: HostTarget, reason: str = "not started") -> MutationOutcome:
    """Outcome for a target that was never dispatched."""
    return MutationOutcome(
        target=target,
        kind=OutcomeKind.SKIPPED,
        state=MutationState.START,
        steps=(MutationStep("dispatch", "skipped", reason),),
    )


def failed_outcome(target: HostTarget, error: BaseException) -> MutationOutcome:
    """Outcome for a target whose operation raised before reaching the controller."""
    return MutationOutcome(
        target=target,
        kind=OutcomeKind.FAILED,
        state=MutationState.FAILED,
        error=error,
        steps=(MutationStep("run", "error", str(error)),),
    )


def summarize(outcomes: Iterable[MutationOutcome]) -> dict[OutcomeKind, int]:
    """Count outcomes per kind (every kind present, zero when absent)."""
    counts = Counter(outcome.kind for outcome in outcomes)
    return {kind: counts.get(kind, 0) for kind in OutcomeKind}


# Controller ---------------------------------------------------------


class MutationController:
    """Drive one host through backup, apply, restart, health gate and commit/rollback."""

    def __init__(
        self,
        store: ComposeStore,
        *,
        restart: Callable[[], None],
        check_health: Callable[[], HealthVerdict],
        config: MutationConfig | None = None,
        confirmer: Confirmer | None = None,
        target: HostTarget | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.config = config or MutationConfig()
        self.target = target or HostTarget(host=store.host, container=store.container)
        self._restart = restart
        self._check_health = check_health
        self._confirmer = confirmer
        self._sleep = sleep
        self._steps: list[MutationStep] = []
        self._state = MutationState.START

    @property
    def state(self) -> MutationState:
        """Return the current state."""
        return self._state

    def _step(self, name: str, status: str = "success", detail: str | None = None) -> None:
        self._steps.append(MutationStep(name, status, detail))

    def _outcome(
        self,
        kind: OutcomeKind,
        change: Change,
        *,
        backup: BackupRecord | None = None,
        error: BaseException | None = None,
        verdict: HealthVerdict | None = None,
    ) -> MutationOutcome:
        return MutationOutcome(
            target=self.target,
            kind=kind,
            state=self._state,
            backup=backup,
            error=error,
            verdict=verdict,
            steps=tuple(self._steps),
            change=change.describe(),
        )

    def run(self, change: Change) -> MutationOutcome:
        """Apply ``change`` to this host and return the outcome."""
        self._steps = []
        self._state = MutationState.START
        config = self.config

        if not config.skip_confirm:
            prompt = f"Apply '{change.describe()}' to {self.target.label}?"
            if self._confirmer is None or not self._confirmer.confirm(prompt):
                self._state = MutationState.CANCELLED
                self._step("confirm", "cancelled")
                return self._outcome(OutcomeKind.CANCELLED, change)
            self._step("confirm")

        backup: BackupRecord | None = None
        if not config.skip_backup:
            try:
                backup = self.store.backup()
            except ComposeStoreError as exc:
                self._state = MutationState.FAILED
                self._step("backup", "error", str(exc))
                return self._outcome(OutcomeKind.FAILED, change, error=exc)
            self._state = MutationState.BACKED_UP
            self._step("backup", detail=backup.path)

        try:
            current = self.store.read()
            self.store.write(change.apply(current))
        except ComposeStoreError as exc:
            self._state = MutationState.FAILED
            self._step("apply", "error", str(exc))
            return self._outcome(OutcomeKind.FAILED, change, backup=backup, error=exc)
        self._state = MutationState.APPLIED
        self._step("apply", detail=change.describe())

        if config.skip_restart:
            return self._commit(change, backup)

        try:
            self._restart()
        except _RESTART_ERRORS as exc:
            self._step("restart", "error", str(exc))
            return self._recover(change, RestartError(str(exc)), backup)
        self._state = MutationState.RESTARTED
        self._step("restart")

        if config.skip_health_check:
            return self._commit(change, backup)

        if config.settle_delay > 0:
            self._sleep(config.settle_delay)
        try:
            verdict = self._check_health()
        except Exception as exc:
            self._step("health", "error", str(exc))
            return self._recover(change, HealthCheckError(str(exc)), backup)
        self._state = MutationState.HEALTH_CHECKED
        self._step("health", verdict.status.value, "; ".join(verdict.warnings) or None)
        if verdict.status is HealthStatus.UNHEALTHY:
            return self._recover(change, HealthCheckFailed(verdict), backup, verdict=verdict)
        return self._commit(change, backup, verdict=verdict)

    def _commit(
        self,
        change: Change,
        backup: BackupRecord | None,
        *,
        verdict: HealthVerdict | None = None,
    ) -> MutationOutcome:
        self._state = MutationState.COMMITTED
        self._step("commit")
        return self._outcome(OutcomeKind.COMMITTED, change, backup=backup, verdict=verdict)

    def _recover(
        self,
        change: Change,
        error: MutationError,
        backup: BackupRecord | None,
        *,
        verdict: HealthVerdict | None = None,
    ) -> MutationOutcome:
        if self.config.skip_rollback or backup is None:
            reason = "disabled" if self.config.skip_rollback else "no backup"
            self._step("rollback", "skipped", reason)
            self._state = MutationState.FAILED
            return self._outcome(
                OutcomeKind.FAILED, change, backup=backup, error=error, verdict=verdict
            )

        try:
            self.store.restore(backup.path)
            self._step("rollback.restore", detail=backup.path)
            self._restart()
            self._step("rollback.restart")
        except _ROLLBACK_ERRORS as exc:
            self._state = MutationState.ROLLBACK_FAILED
            self._step("rollback", "error", str(exc))
            return self._outcome(
                OutcomeKind.ROLLBACK_FAILED,
                change,
                backup=backup,
                error=RollbackFailure(error, exc),
                verdict=verdict,
            )
        self._state = MutationState.ROLLED_BACK
        return self._outcome(
            OutcomeKind.ROLLED_BACK, change, backup=backup, error=error, verdict=verdict
        )


__all__ = [
    "AddSection",
    "Change",
    "Confirmer",
    "DeleteKey",
    "DeleteSection",
    "HealthCheckError",
    "HealthCheckFailed",
    "MutationConfig",
    "MutationController",
    "MutationError",
    "MutationOutcome",
    "MutationState",
    "MutationStep",
    "OutcomeKind",
    "ReplaceDocument",
    "RestartError",
    "RollbackFailure",
    "SetValue",
    "failed_outcome",
    "skipped_outcome",
    "summarize",
]
