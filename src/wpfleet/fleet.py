"""Bounded-concurrency fan-out of per-host operations."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

from .ranges import HostTarget

LOGGER = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10

R = TypeVar("R")


@dataclass(frozen=True)
class FleetRun(Generic[R]):
    """Outcomes of one fan-out, in completion order."""

    outcomes: tuple[R, ...]
    interrupted: bool = False


class FleetExecutor(Generic[R]):
    """Run ``operation`` for every target with at most ``concurrency`` in flight.

    ``operation`` failures never escape: ``on_error`` converts the exception
    into that target's outcome so sibling targets are unaffected. If
    ``on_error`` itself raises, the target gets the ``on_skip`` outcome. When the
    caller is interrupted (Ctrl-C) no further targets are dispatched, work
    already in flight finishes, and every undispatched target receives the
    outcome built by ``on_skip``.
    """

    def __init__(
        self,
        operation: Callable[[HostTarget], R],
        *,
        on_error: Callable[[HostTarget, Exception], R],
        on_skip: Callable[[HostTarget], R],
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1.")
        self._operation = operation
        self._on_error = on_error
        self._on_skip = on_skip
        self.concurrency = concurrency
        self._lock = threading.Lock()
        self._outcomes: list[R] = []

    def _record(self, outcome: R) -> None:
        with self._lock:
            self._outcomes.append(outcome)

    def _guarded(self, target: HostTarget) -> None:
        try:
            outcome = self._operation(target)
        except Exception as exc:
            LOGGER.debug("operation for %s failed: %s", target.label, exc, exc_info=True)
            try:
                outcome = self._on_error(target, exc)
            except Exception:
                LOGGER.warning("on_error callback failed for %s", target.label, exc_info=True)
                outcome = self._on_skip(target)
        self._record(outcome)

    def run(self, targets: Iterable[HostTarget]) -> FleetRun[R]:
        """Execute the operation across ``targets``."""
        self._outcomes = []
        ordered = list(targets)
        if not ordered:
            return FleetRun(outcomes=())

        interrupted = False
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.concurrency, len(ordered)),
            thread_name_prefix="wpfleet",
        )
        futures: dict[concurrent.futures.Future[None], HostTarget] = {}
        try:
            for target in ordered:
                futures[executor.submit(self._guarded, target)] = target
            for future in concurrent.futures.as_completed(futures):
                error = future.exception()
                if isinstance(error, KeyboardInterrupt):
                    raise error
                if error is not None:
                    LOGGER.error("no outcome recorded for %s: %s", futures[future].label, error)
        except KeyboardInterrupt:
            interrupted = True
            LOGGER.debug("interrupted; cancelling undispatched targets")
            for future in futures:
                future.cancel()
        finally:
            executor.shutdown(wait=True)

        if interrupted:
            dispatched = set(futures.values())
            for future, target in futures.items():
                # Cancelled before starting, or the interrupt surfaced inside it.
                if future.cancelled() or future.exception() is not None:
                    self._record(self._on_skip(target))
            for target in ordered:
                if target not in dispatched:
                    self._record(self._on_skip(target))

        return FleetRun(outcomes=tuple(self._outcomes), interrupted=interrupted)


__all__ = ["DEFAULT_CONCURRENCY", "FleetExecutor", "FleetRun"]
