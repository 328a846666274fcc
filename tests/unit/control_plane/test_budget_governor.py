"""Unit tests for token budget admission across rolling windows."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from story_scheduler.control_plane.budget_governor import (
    BackpressureLevel,
    BudgetGovernor,
    BudgetLimits,
    WindowKind,
)


@dataclass
class _Clock:
    current: float = 1_000.0

    def __call__(self) -> float:
        return self.current


@dataclass
class _RecordingLogger:
    records: list[tuple[str, str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **fields: object) -> None:
        self.records.append(("info", event, fields))

    def warning(self, event: str, **fields: object) -> None:
        self.records.append(("warning", event, fields))

    def events(self) -> list[str]:
        return [event for _, event, _ in self.records]


def _make_governor(
    clock: _Clock,
    *,
    minute: int = 100,
    hour: int = 10_000,
    logger: _RecordingLogger | None = None,
) -> BudgetGovernor:
    limits = BudgetLimits(tokens_per_minute=minute, tokens_per_hour=hour, tokens_per_day=100_000)
    return BudgetGovernor(limits, clock=clock, logger=logger or _RecordingLogger())


def test_denied_until_minute_window_rolls_over() -> None:
    clock = _Clock()
    transitions: list[tuple[BackpressureLevel, BackpressureLevel]] = []
    governor = _make_governor(clock)
    governor.set_pressure_hook(lambda old, new, _decision: transitions.append((old, new)))

    first = governor.admit(90)
    assert first.allowed
    assert first.pressure is BackpressureLevel.ELEVATED
    assert first.window is WindowKind.MINUTE
    assert first.delay_ms == 825

    denied = governor.admit(20)
    assert not denied.allowed
    assert denied.retry_after_ms == 20_000
    assert denied.window is WindowKind.MINUTE
    assert denied.pressure is BackpressureLevel.EXHAUSTED
    assert not denied.oversized
    assert governor.snapshot()[0].consumed == 90

    clock.current = 1_020.0
    resumed = governor.admit(20)
    assert resumed.allowed
    assert resumed.pressure is BackpressureLevel.NORMAL
    assert resumed.delay_ms == 0

    assert transitions == [
        (BackpressureLevel.NORMAL, BackpressureLevel.ELEVATED),
        (BackpressureLevel.ELEVATED, BackpressureLevel.EXHAUSTED),
        (BackpressureLevel.EXHAUSTED, BackpressureLevel.NORMAL),
    ]


def test_hour_window_blocks_after_minute_resets() -> None:
    clock = _Clock()
    governor = _make_governor(clock, hour=120)

    assert governor.admit(90).allowed
    clock.current = 1_020.0
    denied = governor.admit(40)

    assert not denied.allowed
    assert denied.window is WindowKind.HOUR
    assert denied.retry_after_ms == (3_600 - 1_020) * 1_000


def test_oversized_cost_is_flagged() -> None:
    governor = _make_governor(_Clock())
    decision = governor.admit(150)

    assert not decision.allowed
    assert decision.oversized
    assert decision.to_dict()["oversized"] is True


def test_critical_pacing_delay() -> None:
    governor = _make_governor(_Clock())
    decision = governor.admit(96)

    assert decision.pressure is BackpressureLevel.CRITICAL
    assert decision.delay_ms == 1_530


def test_concurrent_admissions_never_overshoot() -> None:
    governor = _make_governor(_Clock())
    results: list[bool] = []
    lock = threading.Lock()
    barrier = threading.Barrier(20)

    def worker() -> None:
        barrier.wait()
        decision = governor.admit(10)
        with lock:
            results.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 10
    assert all(window.consumed <= window.limit for window in governor.snapshot())


@given(
    cost=st.integers(min_value=1, max_value=60),
    attempts=st.integers(min_value=0, max_value=25),
)
@settings(max_examples=60, derandomize=True, deadline=None)
def test_minute_counter_conserves_admitted_cost(cost: int, attempts: int) -> None:
    governor = _make_governor(_Clock())

    allowed = sum(1 for _ in range(attempts) if governor.admit(cost).allowed)

    assert allowed == min(attempts, 100 // cost)
    assert governor.snapshot()[0].consumed == allowed * cost


def test_release_refunds_and_reconcile_tracks_drift() -> None:
    logger = _RecordingLogger()
    governor = _make_governor(_Clock(), logger=logger)

    admission = governor.admit(50)
    assert governor.release(admission) == (WindowKind.MINUTE, WindowKind.HOUR, WindowKind.DAY)
    assert [window.consumed for window in governor.snapshot()] == [0, 0, 0]

    assert governor.reconcile("S1", "draft", estimated=100, actual=130) == 30
    assert governor.reconcile("S1", "logic", estimated=100, actual=80) == -20
    assert governor.reconciled_drift == 10

    assert logger.events() == [
        "budget_admitted",
        "budget_released",
        "cost_reconciled",
        "cost_reconciled",
    ]
    assert logger.records[-1][2]["total_drift"] == 10


def test_release_after_rollover_keeps_new_window_charge() -> None:
    clock = _Clock(current=1_019.5)
    governor = _make_governor(clock)

    stale = governor.admit(60)
    clock.current = 1_020.5
    assert governor.admit(60).allowed

    assert governor.release(stale) == (WindowKind.HOUR, WindowKind.DAY)
    minute, hour, _ = governor.snapshot()
    assert minute.consumed == 60
    assert hour.consumed == 60

    denied = governor.admit(60)
    assert not denied.allowed
    assert denied.window is WindowKind.MINUTE


def test_denial_is_logged_as_warning() -> None:
    logger = _RecordingLogger()
    governor = _make_governor(_Clock(), logger=logger)
    governor.admit(500)

    level, event, fields = logger.records[-1]
    assert (level, event) == ("warning", "budget_admission_denied")
    assert fields["window"] == "minute"


def test_snapshot_reports_windows() -> None:
    governor = _make_governor(_Clock())
    governor.admit(25)
    minute, hour, day = governor.snapshot()

    assert minute.kind is WindowKind.MINUTE
    assert minute.remaining == 75
    assert minute.resets_at == 1_020.0
    assert hour.to_dict()["utilization"] == 0.0025
    assert day.limit == 100_000


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"tokens_per_minute": 0}, "tokens_per_minute must be > 0"),
        ({"warning_utilization": 0.0}, "warning_utilization"),
        ({"warning_utilization": 0.9, "critical_utilization": 0.5}, "cannot be below"),
        ({"base_delay_ms": -1}, "base_delay_ms must be >= 0"),
    ],
)
def test_limits_validation(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        BudgetLimits(**overrides)  # type: ignore[arg-type]


def test_invalid_admit_and_release_rejected() -> None:
    governor = _make_governor(_Clock())
    with pytest.raises(ValueError, match="estimated_cost must be >= 0"):
        governor.admit(-1)
    with pytest.raises(ValueError, match="only allowed admissions can be released"):
        governor.release(governor.admit(500))
