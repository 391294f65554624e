"""Async concurrency primitives for bounded wave execution."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Sequence

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """
    Run a wave of coroutines with at most ``max_concurrency`` in flight.

    Results are returned in submission order regardless of completion order, so
    callers that persist outcomes write them deterministically. A coroutine that
    raises cancels its still-running siblings and the exception propagates.
    """

    max_concurrency: int
    cancel_token: CancellationToken | None = None
    _token: CancellationToken = field(init=False, repr=False)
    _semaphore: asyncio.Semaphore = field(init=False, repr=False)
    _peak_in_flight: int = field(init=False, default=0)
    _in_flight: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._token = self.cancel_token or CancellationToken()
        self._semaphore = asyncio.Semaphore(self.max_concurrency)

    @property
    def peak_in_flight(self) -> int:
        return self._peak_in_flight

    async def run(self, coroutines: Sequence[Awaitable[T]]) -> list[T]:
        if self._token.is_cancelled:
            for coroutine in coroutines:
                _close_unscheduled_coroutine(coroutine)
            raise asyncio.CancelledError("operation cancelled")

        tasks = [asyncio.create_task(self._run_one(coroutine)) for coroutine in coroutines]
        if not tasks:
            return []
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise

        for task in tasks:
            if not task.done() or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                await _cancel_all(tasks)
                raise exc
        return [task.result() for task in tasks]

    async def _run_one(self, coroutine: Awaitable[T]) -> T:
        async with self._semaphore:
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
            try:
                self._token.raise_if_cancelled()
                return await coroutine
            finally:
                self._in_flight -= 1


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Run ``coroutine`` under a deadline; raises ``TimeoutError`` when it elapses."""
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError("operation cancelled")

    task: asyncio.Task[T] = asyncio.ensure_future(coroutine)
    cancel_wait_task = asyncio.create_task(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if task in done:
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        if cancel_wait_task in done:
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def _cancel_all(tasks: Sequence[asyncio.Task[T]]) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Raw coroutine objects that never get scheduled must be closed explicitly.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "WorkerPool",
    "run_with_timeout",
]
