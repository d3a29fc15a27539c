"""Fan-out executor tests."""
from __future__ import annotations

import threading
import time

import pytest

from wpfleet.fleet import FleetExecutor
from wpfleet.ranges import HostTarget


def _targets(count: int) -> list[HostTarget]:
    return [HostTarget(host=f"wp{index}.example.com", container="wp_shop") for index in range(1, count + 1)]


def _error(target: HostTarget, exc: Exception) -> str:
    return f"{target.host}: error {exc}"


def _skip(target: HostTarget) -> str:
    return f"{target.host}: skipped"


def test_every_target_gets_exactly_one_outcome() -> None:
    executor = FleetExecutor(lambda target: f"{target.host}: ok", on_error=_error, on_skip=_skip)

    run = executor.run(_targets(7))

    assert sorted(run.outcomes) == sorted(f"wp{index}.example.com: ok" for index in range(1, 8))
    assert run.interrupted is False


def test_failures_are_isolated() -> None:
    def operation(target: HostTarget) -> str:
        if target.host == "wp3.example.com":
            raise ConnectionError("ssh refused")
        return f"{target.host}: ok"

    run = FleetExecutor(operation, on_error=_error, on_skip=_skip, concurrency=3).run(_targets(5))

    assert len(run.outcomes) == 5
    assert "wp3.example.com: error ssh refused" in run.outcomes
    assert sum(outcome.endswith(": ok") for outcome in run.outcomes) == 4


def test_concurrency_bound_is_respected() -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def operation(target: HostTarget) -> str:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return target.host

    run = FleetExecutor(operation, on_error=_error, on_skip=_skip, concurrency=2).run(_targets(10))

    assert len(run.outcomes) == 10
    assert peak <= 2


def test_concurrency_one_runs_sequentially_in_order() -> None:
    seen: list[str] = []

    def operation(target: HostTarget) -> str:
        seen.append(target.host)
        return target.host

    run = FleetExecutor(operation, on_error=_error, on_skip=_skip, concurrency=1).run(_targets(4))

    assert seen == [f"wp{index}.example.com" for index in range(1, 5)]
    assert list(run.outcomes) == seen


def test_failing_on_error_falls_back_to_skip_outcome() -> None:
    def operation(target: HostTarget) -> str:
        if target.host == "wp1.example.com":
            raise ConnectionError("ssh refused")
        return f"{target.host}: ok"

    def on_error(target: HostTarget, exc: Exception) -> str:
        raise ValueError("cannot format error")

    run = FleetExecutor(operation, on_error=on_error, on_skip=_skip).run(_targets(3))

    assert sorted(run.outcomes) == [
        "wp1.example.com: skipped",
        "wp2.example.com: ok",
        "wp3.example.com: ok",
    ]


def test_empty_target_list() -> None:
    run = FleetExecutor(lambda target: "ok", on_error=_error, on_skip=_skip).run([])

    assert run.outcomes == ()
    assert run.interrupted is False


@pytest.mark.parametrize("concurrency", [0, -3])
def test_rejects_non_positive_concurrency(concurrency: int) -> None:
    with pytest.raises(ValueError):
        FleetExecutor(lambda target: "ok", on_error=_error, on_skip=_skip, concurrency=concurrency)


def test_interrupt_skips_undispatched_targets() -> None:
    def operation(target: HostTarget) -> str:
        if target.host == "wp2.example.com":
            raise KeyboardInterrupt
        if target.host == "wp3.example.com":
            # Keeps the single worker busy while the interrupt is handled.
            time.sleep(0.3)
        return f"{target.host}: ok"

    run = FleetExecutor(operation, on_error=_error, on_skip=_skip, concurrency=1).run(_targets(4))

    assert run.interrupted is True
    assert len(run.outcomes) == 4
    assert "wp1.example.com: ok" in run.outcomes
    assert "wp2.example.com: skipped" in run.outcomes
    assert "wp4.example.com: skipped" in run.outcomes
    assert any(outcome.startswith("wp3.example.com") for outcome in run.outcomes)
