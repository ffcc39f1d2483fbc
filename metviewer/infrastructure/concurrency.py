"""Concurrency primitives used by the search engine."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Hashable,
    Iterable,
    Optional,
    Sequence,
    TypeVar,
)

from logger import get_logger

T = TypeVar("T")
R = TypeVar("R")
K = TypeVar("K", bound=Hashable)

LOGGER = get_logger("metviewer.concurrency")


class OperationCancelled(Exception):
    """Raised when work is abandoned because its cancel token fired."""


class CancelToken:
    """Cooperative cancellation signal threaded through a search session."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled")

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return False when cancelled before waking."""

        if self._event.is_set():
            return False
        if seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the underlying task is cancelled, so an in-flight
        HTTP request is torn down, and ``OperationCancelled`` is raised.
        """

        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            task.cancel()
            raise OperationCancelled("Operation cancelled")
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:  # noqa: BLE001 - the outcome is discarded
            LOGGER.debug("Cancelled task finished with an error", exc_info=True)
        raise OperationCancelled("Operation cancelled")


class LaunchLimiter:
    """Spaces launches by a minimum interval using a next-allowed cursor."""

    def __init__(self, delay_ms: float) -> None:
        if delay_ms < 0:
            raise ValueError("delay_ms must be greater than or equal to 0")
        self._interval = delay_ms / 1000.0
        self._next_allowed = 0.0

    def reserve(self) -> float:
        """Claim the next launch slot and return how long to wait for it."""

        now = asyncio.get_running_loop().time()
        wait = max(0.0, self._next_allowed - now)
        self._next_allowed = now + wait + self._interval
        return wait


@dataclass(frozen=True, slots=True)
class TaskResult(Generic[T, R]):
    """Outcome of a single work item."""

    index: int
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class BatchOutcome(Generic[T, R]):
    """Per-item outcomes of a run, aligned with the input order.

    Slots left as ``None`` were abandoned because the run was cancelled.
    """

    results: list[Optional[TaskResult[T, R]]]
    cancelled: bool = False

    def successes(self) -> list[R]:
        return [result.value for result in self.results if result is not None and result.ok]  # type: ignore[misc]

    @property
    def failure_count(self) -> int:
        return sum(1 for result in self.results if result is not None and not result.ok)

    @property
    def abandoned_count(self) -> int:
        return sum(1 for result in self.results if result is None)


def _validate_limits(limit: int, delay_ms: float) -> None:
    if limit < 1:
        raise ValueError("limit must be greater than or equal to 1")
    if delay_ms < 0:
        raise ValueError("delay_ms must be greater than or equal to 0")


async def run_rate_limited(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    limit: int,
    delay_ms: float,
    on_result: Callable[[TaskResult[T, R]], Any] | None = None,
    cancel: CancelToken | None = None,
) -> BatchOutcome[T, R]:
    """Run ``worker`` over ``items`` with bounded concurrency and launch rate.

    At most ``limit`` workers run at once and two launches are never closer
    than ``delay_ms`` apart. Failures are captured per item and never abort
    the run. ``on_result`` sees every outcome in completion order.
    """

    _validate_limits(limit, delay_ms)
    results: list[Optional[TaskResult[T, R]]] = [None] * len(items)
    if not items:
        return BatchOutcome(results=results)

    limiter = LaunchLimiter(delay_ms)
    cursor = iter(range(len(items)))

    async def _lane() -> None:
        for index in cursor:
            if cancel is not None and cancel.cancelled:
                return
            wait = limiter.reserve()
            if cancel is not None:
                if not await cancel.sleep(wait):
                    return
            elif wait:
                await asyncio.sleep(wait)

            item = items[index]
            try:
                if cancel is not None:
                    value = await cancel.guard(worker(item))
                else:
                    value = await worker(item)
            except OperationCancelled:
                return
            except Exception as exc:  # noqa: BLE001 - captured per item
                result: TaskResult[T, R] = TaskResult(index=index, item=item, error=exc)
            else:
                result = TaskResult(index=index, item=item, value=value)
            results[index] = result
            if on_result is not None:
                on_result(result)

    lanes = min(limit, len(items))
    await asyncio.gather(*(_lane() for _ in range(lanes)))
    outcome = BatchOutcome(results=results, cancelled=bool(cancel and cancel.cancelled))
    LOGGER.debug(
        "Batch finished items=%s failures=%s abandoned=%s",
        len(items),
        outcome.failure_count,
        outcome.abandoned_count,
    )
    return outcome


class RateLimitedQueue(Generic[K, R]):
    """Long-lived work queue with the same limit and launch-delay policy.

    Keys that are pending, in flight or already processed are tracked, so
    enqueueing the same key twice never starts a duplicate worker.
    """

    def __init__(
        self,
        worker: Callable[[K], Awaitable[R]],
        *,
        limit: int,
        delay_ms: float,
        on_result: Callable[[TaskResult[K, R]], Any] | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        _validate_limits(limit, delay_ms)
        self._worker = worker
        self._limit = limit
        self._limiter = LaunchLimiter(delay_ms)
        self._on_result = on_result
        self._cancel = cancel or CancelToken()
        self._pending: deque[K] = deque()
        self._tracked: set[K] = set()
        self._tasks: set[asyncio.Task] = set()
        self._active = 0
        self._launched = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def is_idle(self) -> bool:
        return self._idle.is_set()

    def __contains__(self, key: object) -> bool:
        return key in self._tracked

    def enqueue(self, key: K) -> bool:
        """Queue ``key``; return False when it is already tracked or cancelled."""

        if self._cancel.cancelled or key in self._tracked:
            return False
        self._tracked.add(key)
        self._pending.append(key)
        self._idle.clear()
        self._pump()
        return True

    def extend(self, keys: Iterable[K]) -> int:
        return sum(1 for key in keys if self.enqueue(key))

    async def join(self) -> None:
        await self._idle.wait()

    async def aclose(self) -> None:
        self._cancel.cancel()
        self._pending.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._idle.set()

    def _pump(self) -> None:
        while self._active < self._limit and self._pending and not self._cancel.cancelled:
            key = self._pending.popleft()
            index = self._launched
            self._launched += 1
            self._active += 1
            task = asyncio.get_running_loop().create_task(self._run(index, key))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        if self._cancel.cancelled:
            self._pending.clear()
        if self._active == 0 and not self._pending:
            self._idle.set()

    async def _run(self, index: int, key: K) -> None:
        try:
            if not await self._cancel.sleep(self._limiter.reserve()):
                return
            try:
                value = await self._cancel.guard(self._worker(key))
            except OperationCancelled:
                return
            except Exception as exc:  # noqa: BLE001 - captured per item
                result: TaskResult[K, R] = TaskResult(index=index, item=key, error=exc)
            else:
                result = TaskResult(index=index, item=key, value=value)
            if self._on_result is not None:
                self._on_result(result)
        finally:
            self._active -= 1
            self._pump()


__all__ = [
    "BatchOutcome",
    "CancelToken",
    "LaunchLimiter",
    "OperationCancelled",
    "RateLimitedQueue",
    "TaskResult",
    "run_rate_limited",
]
