"""Bounded inference execution.

Architecture:
    session / route (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Each call has two limits. Waiting for a free worker slot is bounded by
``queue_timeout`` (``PoolSaturatedError``). The whole call, queueing
included, can be bounded by a ``deadline`` (``DeadlineExceededError``).
A call that misses its deadline keeps its slot until the worker thread
returns, so no more than N models ever run at once.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUEUE_TIMEOUT_SECONDS: float = 5.0


class PoolSaturatedError(TimeoutError):
    """No worker slot became free within the queue timeout."""


class DeadlineExceededError(TimeoutError):
    """The call did not finish before its deadline."""


class InferencePool:
    """Runs blocking classifier calls on a fixed set of worker threads."""

    def __init__(self, max_concurrent: int, queue_timeout: float = QUEUE_TIMEOUT_SECONDS) -> None:
        self._slots = asyncio.Semaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix="snapclass-inference",
        )
        self._queue_timeout = queue_timeout
        self._running = 0
        self._waiting = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            PoolSaturatedError: If no slot frees up within the queue timeout.
        """
        await self._acquire_slot()
        with self._counter_lock:
            self._running += 1
        try:
            return await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
        finally:
            self._slots.release()
            with self._counter_lock:
                self._running -= 1

    async def run_with_deadline(self, func: Callable[..., T], *args: object, deadline: float | None) -> T:
        """Like ``run``, but stop waiting after ``deadline`` seconds.

        The worker is not interrupted. Its late result or error is dropped
        and its slot is released when it returns.

        Raises:
            PoolSaturatedError: If no slot frees up within the queue timeout.
            DeadlineExceededError: If the call is still running at the deadline.
        """
        work = asyncio.ensure_future(self.run(func, *args))
        work.add_done_callback(_drop_late_error)
        try:
            return await asyncio.wait_for(asyncio.shield(work), timeout=deadline)
        except TimeoutError:
            if work.done():
                raise
            logger.warning("Inference still running after %gs, abandoning the wait", deadline)
            raise DeadlineExceededError(f"Inference did not finish within {deadline:g}s") from None

    @property
    def active_count(self) -> int:
        """Calls currently running on a worker thread."""
        with self._counter_lock:
            return self._running

    @property
    def queue_depth(self) -> int:
        """Calls waiting for a slot."""
        with self._counter_lock:
            return self._waiting

    def shutdown(self) -> None:
        """Wait for running calls, then stop the worker threads."""
        self._executor.shutdown(wait=True)

    async def _acquire_slot(self) -> None:
        with self._counter_lock:
            self._waiting += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            logger.warning("Inference queue full, gave up after %.1fs", self._queue_timeout)
            raise PoolSaturatedError(f"Inference queue full after {self._queue_timeout:g}s") from None
        finally:
            with self._counter_lock:
                self._waiting -= 1


def _drop_late_error(future: asyncio.Future[object]) -> None:
    if not future.cancelled():
        future.exception()
