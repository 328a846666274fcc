"""Concurrency helpers for the dispatch loop: stage permit pools, cancellation, timeouts."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class CancellationToken:
    """One-shot cancellation flag for a batch, remembering why it fired."""

    __slots__ = ("_reason",)

    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the token; returns ``False`` when it had already fired."""
        if self._reason is not None:
            return False
        self._reason = reason.strip() or "cancelled"
        return True


@dataclass(frozen=True, slots=True)
class PoolSnapshot:
    stage: str
    limit: int
    in_use: int
    peak: int

    @property
    def available(self) -> int:
        return self.limit - self.in_use

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage,
            "limit": self.limit,
            "in_use": self.in_use,
            "available": self.available,
            "peak": self.peak,
        }


class StagePool:
    """
    Permit pool capping concurrent jobs for one pipeline stage.

    The dispatch loop never waits on a pool: :meth:`try_acquire` either takes a
    permit or reports the stage as saturated, and the job stays queued until a
    running job of the same stage calls :meth:`release`.
    """

    def __init__(self, stage: str, limit: int) -> None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValueError(f"{stage}: concurrency limit must be a positive integer")
        self.stage = stage
        self._limit = limit
        self._in_use = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    @property
    def peak(self) -> int:
        return self._peak

    def try_acquire(self) -> bool:
        if self._in_use >= self._limit:
            return False
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)
        return True

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError(f"{self.stage}: release without a matching acquire")
        self._in_use -= 1

    def snapshot(self) -> PoolSnapshot:
        return PoolSnapshot(self.stage, self._limit, self._in_use, self._peak)


async def run_with_timeout(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """
    Await ``awaitable`` for at most ``timeout_seconds``.

    On expiry the awaitable is cancelled (for a pending stage future this makes
    any later outcome report a no-op) and :class:`TimeoutError` is raised.
    """
    if timeout_seconds <= 0:
        if inspect.iscoroutine(awaitable):
            # Never scheduled; close it so it is not reported as un-awaited.
            awaitable.close()
        raise ValueError("timeout_seconds must be > 0")

    try:
        async with asyncio.timeout(timeout_seconds):
            return await awaitable
    except TimeoutError:
        raise TimeoutError(f"no result within {timeout_seconds} seconds") from None


__all__ = [
    "CancellationToken",
    "PoolSnapshot",
    "SleepFn",
    "StagePool",
    "run_with_timeout",
]
