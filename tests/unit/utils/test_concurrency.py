"""Tests for dispatch-loop concurrency primitives."""

from __future__ import annotations

import asyncio
import gc
import warnings

import pytest

from story_scheduler.utils.concurrency import (
    CancellationToken,
    PoolSnapshot,
    StagePool,
    run_with_timeout,
)


async def _slow(value: int = 1, delay: float = 0.05) -> int:
    await asyncio.sleep(delay)
    return value


async def test_run_with_timeout_returns_value() -> None:
    assert await run_with_timeout(_slow(7, 0.0), 1.0) == 7


async def test_run_with_timeout_raises_and_cancels_pending_future() -> None:
    future: asyncio.Future[str] = asyncio.get_running_loop().create_future()

    with pytest.raises(TimeoutError, match=r"no result within 0\.01 seconds"):
        await run_with_timeout(future, 0.01)

    assert future.cancelled()


async def test_run_with_timeout_resolves_future_set_later() -> None:
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()
    loop.call_later(0.01, future.set_result, "reported")

    assert await run_with_timeout(future, 1.0) == "reported"


async def test_run_with_timeout_propagates_errors() -> None:
    async def _fail() -> None:
        raise RuntimeError("worker crashed")

    with pytest.raises(RuntimeError, match="worker crashed"):
        await run_with_timeout(_fail(), 1.0)


async def test_non_positive_timeout_closes_coroutine() -> None:
    coroutine = _slow()
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
            await run_with_timeout(coroutine, 0)
        del coroutine
        gc.collect()
    assert not [item for item in caught if "never awaited" in str(item.message)]


def test_cancellation_token_fires_once_with_reason() -> None:
    token = CancellationToken()
    assert not token.is_cancelled
    assert token.reason is None

    assert token.cancel("operator stop") is True
    assert token.cancel("second call") is False

    assert token.is_cancelled
    assert token.reason == "operator stop"


def test_cancellation_token_blank_reason_defaults() -> None:
    token = CancellationToken()
    token.cancel("   ")
    assert token.reason == "cancelled"


def test_stage_pool_caps_permits_and_tracks_peak() -> None:
    pool = StagePool("typefix", 2)

    assert pool.try_acquire()
    assert pool.try_acquire()
    assert not pool.try_acquire()
    assert pool.available == 0

    pool.release()
    assert pool.try_acquire()
    pool.release()
    pool.release()

    snapshot = pool.snapshot()
    assert snapshot == PoolSnapshot(stage="typefix", limit=2, in_use=0, peak=2)
    assert snapshot.to_dict() == {
        "stage": "typefix",
        "limit": 2,
        "in_use": 0,
        "available": 2,
        "peak": 2,
    }


def test_stage_pool_release_underflow() -> None:
    pool = StagePool("draft", 1)
    with pytest.raises(RuntimeError, match="draft: release without a matching acquire"):
        pool.release()


@pytest.mark.parametrize("limit", [0, -1, True, 1.5])
def test_stage_pool_rejects_invalid_limit(limit: object) -> None:
    with pytest.raises(ValueError, match="report: concurrency limit must be a positive integer"):
        StagePool("report", limit)  # type: ignore[arg-type]
