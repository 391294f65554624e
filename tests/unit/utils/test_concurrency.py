"""Unit tests for bounded wave execution and deadlines."""

from __future__ import annotations

import asyncio

import pytest

from cogworks.utils.concurrency import CancellationToken, WorkerPool, run_with_timeout


async def _sleep_then(value: int, delay: float) -> int:
    await asyncio.sleep(delay)
    return value


@pytest.mark.asyncio
async def test_results_keep_submission_order() -> None:
    pool: WorkerPool[int] = WorkerPool(max_concurrency=3)

    results = await pool.run([_sleep_then(1, 0.03), _sleep_then(2, 0.01), _sleep_then(3, 0.0)])

    assert results == [1, 2, 3]


@pytest.mark.asyncio
async def test_concurrency_is_bounded() -> None:
    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)

    await pool.run([_sleep_then(index, 0.01) for index in range(6)])

    assert pool.peak_in_flight == 2


@pytest.mark.asyncio
async def test_failure_cancels_siblings_and_propagates() -> None:
    finished: list[str] = []

    async def slow() -> int:
        await asyncio.sleep(1)
        finished.append("slow")
        return 0

    async def boom() -> int:
        raise RuntimeError("boom")

    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)
    with pytest.raises(RuntimeError, match="boom"):
        await pool.run([slow(), boom()])

    assert finished == []


@pytest.mark.asyncio
async def test_cancelled_pool_refuses_work() -> None:
    token = CancellationToken()
    token.cancel()
    pool: WorkerPool[int] = WorkerPool(max_concurrency=1, cancel_token=token)

    with pytest.raises(asyncio.CancelledError):
        await pool.run([_sleep_then(1, 0)])


@pytest.mark.asyncio
async def test_empty_wave() -> None:
    assert await WorkerPool[int](max_concurrency=1).run([]) == []


def test_pool_requires_positive_concurrency() -> None:
    with pytest.raises(ValueError, match="max_concurrency must be > 0"):
        WorkerPool(max_concurrency=0)


@pytest.mark.asyncio
async def test_run_with_timeout() -> None:
    assert await run_with_timeout(_sleep_then(7, 0), 1.0) == 7

    with pytest.raises(TimeoutError, match="timed out after 0.01 seconds"):
        await run_with_timeout(_sleep_then(7, 1.0), 0.01)

    with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
        await run_with_timeout(_sleep_then(7, 0), 0)


@pytest.mark.asyncio
async def test_run_with_timeout_observes_cancellation() -> None:
    token = CancellationToken()

    async def cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(_sleep_then(1, 1.0), 5.0, cancel_token=token)
    await canceller
