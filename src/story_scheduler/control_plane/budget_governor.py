"""
Token budget admission control across minute, hour, and day windows.

Admission is a single critical section: every window is rolled to the current
wall-clock boundary, checked, and incremented under one lock, so concurrent
callers can never jointly overshoot a window.

The governor never drops work. A denied admission carries ``retry_after_ms``,
the wait until every blocking window has rolled over. Near a limit, allowed
admissions carry a ``delay_ms`` pacing hint that grows with utilization.

Decisions are logged through ``structlog``; pressure level transitions are
reported to an optional hook.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from story_scheduler.constants import (
    BUDGET_WINDOW_SECONDS,
    DEFAULT_TOKENS_PER_DAY,
    DEFAULT_TOKENS_PER_HOUR,
    DEFAULT_TOKENS_PER_MINUTE,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

Clock = Callable[[], float]

_WARNING_DELAY_FACTOR: Final[float] = 1.5
_CRITICAL_DELAY_FACTOR: Final[float] = 3.0


class WindowKind(StrEnum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return BUDGET_WINDOW_SECONDS[self.value]


class BackpressureLevel(StrEnum):
    """Budget pressure severity reported with each admission."""

    NORMAL = "normal"
    ELEVATED = "elevated"
    CRITICAL = "critical"
    EXHAUSTED = "exhausted"


PressureHook = Callable[["BackpressureLevel", "BackpressureLevel", "AdmissionDecision"], None]


@dataclass(frozen=True, slots=True)
class BudgetLimits:
    """Per-window token limits and soft-delay thresholds."""

    tokens_per_minute: int = DEFAULT_TOKENS_PER_MINUTE
    tokens_per_hour: int = DEFAULT_TOKENS_PER_HOUR
    tokens_per_day: int = DEFAULT_TOKENS_PER_DAY
    warning_utilization: float = 0.8
    critical_utilization: float = 0.95
    base_delay_ms: int = 500

    def __post_init__(self) -> None:
        for name in ("tokens_per_minute", "tokens_per_hour", "tokens_per_day"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if not (0.0 < self.warning_utilization <= 1.0):
            raise ValueError("warning_utilization must be in (0.0, 1.0]")
        if not (0.0 < self.critical_utilization <= 1.0):
            raise ValueError("critical_utilization must be in (0.0, 1.0]")
        if self.critical_utilization < self.warning_utilization:
            raise ValueError("critical_utilization cannot be below warning_utilization")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")

    def limit_for(self, kind: WindowKind) -> int:
        if kind is WindowKind.MINUTE:
            return self.tokens_per_minute
        if kind is WindowKind.HOUR:
            return self.tokens_per_hour
        return self.tokens_per_day

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> BudgetLimits:
        return cls(
            tokens_per_minute=int(section["tokens_per_minute"]),  # type: ignore[call-overload]
            tokens_per_hour=int(section["tokens_per_hour"]),  # type: ignore[call-overload]
            tokens_per_day=int(section["tokens_per_day"]),  # type: ignore[call-overload]
            warning_utilization=float(section["warning_utilization"]),  # type: ignore[arg-type]
            critical_utilization=float(section["critical_utilization"]),  # type: ignore[arg-type]
            base_delay_ms=int(section["base_delay_ms"]),  # type: ignore[call-overload]
        )


@dataclass(frozen=True, slots=True)
class BudgetWindow:
    """Point-in-time view of one window counter."""

    kind: WindowKind
    limit: int
    consumed: int
    window_start: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.consumed)

    @property
    def utilization(self) -> float:
        return self.consumed / self.limit

    @property
    def resets_at(self) -> float:
        return self.window_start + self.kind.seconds

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "limit": self.limit,
            "consumed": self.consumed,
            "remaining": self.remaining,
            "window_start": self.window_start,
            "utilization": round(self.utilization, 4),
        }


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    """
    Outcome of one :meth:`BudgetGovernor.admit` call.

    ``charged`` pairs each window kind with the start of the window the cost
    was added to; it is empty for denied admissions.
    """

    allowed: bool
    cost: int
    retry_after_ms: int = 0
    delay_ms: int = 0
    pressure: BackpressureLevel = BackpressureLevel.NORMAL
    window: WindowKind | None = None
    oversized: bool = False
    charged: tuple[tuple[WindowKind, float], ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "cost": self.cost,
            "retry_after_ms": self.retry_after_ms,
            "delay_ms": self.delay_ms,
            "pressure": self.pressure.value,
            "window": self.window.value if self.window is not None else None,
            "oversized": self.oversized,
        }


class _WindowCounter:
    __slots__ = ("kind", "limit", "consumed", "window_start")

    def __init__(self, kind: WindowKind, limit: int) -> None:
        self.kind = kind
        self.limit = limit
        self.consumed = 0
        self.window_start = 0.0

    def roll(self, now: float) -> None:
        start = math.floor(now / self.kind.seconds) * self.kind.seconds
        if start != self.window_start:
            self.window_start = float(start)
            self.consumed = 0

    def resets_in_ms(self, now: float) -> int:
        return max(1, math.ceil((self.window_start + self.kind.seconds - now) * 1000))

    def view(self) -> BudgetWindow:
        return BudgetWindow(
            kind=self.kind,
            limit=self.limit,
            consumed=self.consumed,
            window_start=self.window_start,
        )


class BudgetGovernor:
    """Thread-safe token admission across rolling wall-clock windows."""

    def __init__(
        self,
        limits: BudgetLimits | None = None,
        *,
        clock: Clock = time.time,
        pressure_hook: PressureHook | None = None,
        logger: Any | None = None,
    ) -> None:
        self._limits = limits or BudgetLimits()
        self._clock = clock
        self._pressure_hook = pressure_hook
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._counters = tuple(
            _WindowCounter(kind, self._limits.limit_for(kind)) for kind in WindowKind
        )
        self._pressure = BackpressureLevel.NORMAL
        self._reconciled_drift = 0

    @property
    def limits(self) -> BudgetLimits:
        return self._limits

    @property
    def pressure(self) -> BackpressureLevel:
        return self._pressure

    @property
    def reconciled_drift(self) -> int:
        """Sum of ``actual - estimated`` over all reconciled stage costs."""
        return self._reconciled_drift

    def set_pressure_hook(self, hook: PressureHook | None) -> None:
        self._pressure_hook = hook

    def admit(self, estimated_cost: int) -> AdmissionDecision:
        if estimated_cost < 0:
            raise ValueError("estimated_cost must be >= 0")

        with self._lock:
            now = self._clock()
            for counter in self._counters:
                counter.roll(now)

            blocking = [
                counter
                for counter in self._counters
                if counter.consumed + estimated_cost > counter.limit
            ]
            if blocking:
                latest = max(blocking, key=lambda counter: counter.resets_in_ms(now))
                decision = AdmissionDecision(
                    allowed=False,
                    cost=estimated_cost,
                    retry_after_ms=latest.resets_in_ms(now),
                    pressure=BackpressureLevel.EXHAUSTED,
                    window=latest.kind,
                    oversized=any(estimated_cost > counter.limit for counter in blocking),
                )
            else:
                for counter in self._counters:
                    counter.consumed += estimated_cost
                hottest = max(self._counters, key=lambda counter: counter.consumed / counter.limit)
                pressure, delay_ms = self._soft_delay(hottest.consumed / hottest.limit)
                decision = AdmissionDecision(
                    allowed=True,
                    cost=estimated_cost,
                    delay_ms=delay_ms,
                    pressure=pressure,
                    window=hottest.kind if pressure is not BackpressureLevel.NORMAL else None,
                    charged=tuple(
                        (counter.kind, counter.window_start) for counter in self._counters
                    ),
                )
            previous = self._pressure
            self._pressure = decision.pressure

        self._log_decision(decision)
        if previous is not decision.pressure and self._pressure_hook is not None:
            self._pressure_hook(previous, decision.pressure, decision)
        return decision

    def release(self, admission: AdmissionDecision) -> tuple[WindowKind, ...]:
        """
        Refund an admission that was never dispatched.

        Only windows still open since the admission are credited; a window that
        has rolled over already started from zero. Returns the refunded kinds.
        """
        if not admission.allowed:
            raise ValueError("only allowed admissions can be released")
        charged = dict(admission.charged)
        refunded: list[WindowKind] = []
        with self._lock:
            now = self._clock()
            for counter in self._counters:
                counter.roll(now)
                if charged.get(counter.kind) != counter.window_start:
                    continue
                counter.consumed = max(0, counter.consumed - admission.cost)
                refunded.append(counter.kind)
        self._logger.info(
            "budget_released",
            cost=admission.cost,
            windows=[kind.value for kind in refunded],
        )
        return tuple(refunded)

    def reconcile(self, story_id: str, stage: str, estimated: int, actual: int) -> int:
        """Record actual consumption for an admitted stage; returns the drift."""
        if actual < 0:
            raise ValueError("actual must be >= 0")
        drift = actual - estimated
        with self._lock:
            self._reconciled_drift += drift
            total = self._reconciled_drift
        self._logger.info(
            "cost_reconciled",
            story_id=story_id,
            stage=stage,
            estimated=estimated,
            actual=actual,
            drift=drift,
            total_drift=total,
        )
        return drift

    def snapshot(self) -> tuple[BudgetWindow, ...]:
        with self._lock:
            now = self._clock()
            for counter in self._counters:
                counter.roll(now)
            return tuple(counter.view() for counter in self._counters)

    def _soft_delay(self, utilization: float) -> tuple[BackpressureLevel, int]:
        limits = self._limits
        if utilization >= limits.critical_utilization:
            over = utilization - limits.critical_utilization
            delay = limits.base_delay_ms * _CRITICAL_DELAY_FACTOR * (1 + 2 * over)
            return BackpressureLevel.CRITICAL, round(delay)
        if utilization >= limits.warning_utilization:
            over = utilization - limits.warning_utilization
            delay = limits.base_delay_ms * _WARNING_DELAY_FACTOR * (1 + over)
            return BackpressureLevel.ELEVATED, round(delay)
        return BackpressureLevel.NORMAL, 0

    def _log_decision(self, decision: AdmissionDecision) -> None:
        if decision.allowed:
            self._logger.info("budget_admitted", **decision.to_dict())
        else:
            self._logger.warning("budget_admission_denied", **decision.to_dict())


__all__ = [
    "AdmissionDecision",
    "BackpressureLevel",
    "BudgetGovernor",
    "BudgetLimits",
    "BudgetWindow",
    "Clock",
    "PressureHook",
    "WindowKind",
]
