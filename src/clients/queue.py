"""Rate-limited request queue: bounded concurrency plus a rolling per-minute cap.

Every outbound QuickBooks call goes through a single :class:`RequestQueue`.
A pending task starts only when fewer than ``concurrency`` tasks are running
and fewer than ``rate_limit_per_minute`` tasks have started in the trailing
window. Higher priority starts first; equal priority keeps arrival order.
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.status import QueueStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

WINDOW_SECONDS = 60.0

RetryCallback = Callable[[int, BaseException, float], Any]


class QueueClearedError(Exception):
    """A pending task was discarded by :meth:`RequestQueue.clear` before it ran."""


@dataclass(order=True)
class _QueuedTask(Generic[T]):
    # Heap order: higher priority first, then arrival order
    sort_key: tuple[int, int]
    fn: Callable[[], Awaitable[T]] = field(compare=False)
    future: "asyncio.Future[T]" = field(compare=False)


class RequestQueue(Generic[T]):
    """Single admission point for outbound API calls.

    Args:
        rate_limit_per_minute: Maximum task starts in any trailing window.
        concurrency: Maximum tasks running at once.
        window_seconds: Length of the rolling window (60s in production).
        clock: Monotonic time source (overridable in tests).
    """

    def __init__(
        self,
        rate_limit_per_minute: int = 60,
        concurrency: int = 5,
        *,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_limit_per_minute < 1 or concurrency < 1:
            raise ValueError("rate_limit_per_minute and concurrency must be at least 1")
        self.rate_limit_per_minute = rate_limit_per_minute
        self.concurrency = concurrency
        self.window_seconds = window_seconds
        self._clock = clock

        self._pending: list[_QueuedTask[Any]] = []
        self._sequence = itertools.count()
        self._active = 0
        self._window: deque[float] = deque()
        self._paused = False
        self._timer: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # ── Submission ──────────────────────────────────────────────────────

    def add(
        self, task: Callable[[], Awaitable[T]], priority: int = 0
    ) -> "asyncio.Future[T]":
        """Enqueue *task* and return a future for its result.

        Never blocks: the task starts as soon as concurrency and rate budget
        allow. Must be called from inside a running event loop.
        """
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        entry = _QueuedTask((-priority, next(self._sequence)), task, future)
        heapq.heappush(self._pending, entry)
        self._idle.clear()
        logger.debug(
            "Queued task (priority=%d, pending=%d, active=%d)",
            priority, len(self._pending), self._active,
        )
        self._drain()
        return future

    def add_with_retry(
        self,
        task: Callable[[], Awaitable[T]],
        *,
        retries: int = 3,
        retry_delay: float = 1.0,
        on_retry: RetryCallback | None = None,
        priority: int = 0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> "asyncio.Future[T]":
        """Enqueue *task*, retrying it in place inside one queue slot.

        Args:
            task: Coroutine function to run.
            retries: Retries after the first failure before the future fails.
            retry_delay: Base delay in seconds; attempt n waits
                ``retry_delay * 2 ** (n - 1)`` before the next try.
            on_retry: Called as ``on_retry(attempt, exc, delay)`` before each
                wait.
            priority: Queue priority.
            sleep: Override for the backoff sleep (tests).
        """

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "Queued task attempt %d/%d failed, retrying in %.2fs: %s",
                state.attempt_number, retries + 1, delay, exc,
            )
            if on_retry is not None and exc is not None:
                on_retry(state.attempt_number, exc, delay)

        kwargs: dict[str, Any] = {}
        if sleep is not None:
            kwargs["sleep"] = sleep

        async def _with_retry() -> T:
            retrying = AsyncRetrying(
                retry=retry_if_exception_type(Exception),
                stop=stop_after_attempt(max(retries, 0) + 1),
                wait=wait_exponential(multiplier=retry_delay, min=0),
                before_sleep=_before_sleep,
                reraise=True,
                **kwargs,
            )
            return await retrying(task)

        return self.add(_with_retry, priority)

    async def add_batch(
        self, tasks: Iterable[Callable[[], Awaitable[T]]], priority: int = 0
    ) -> list[T]:
        """Submit every task and wait for all results, in submission order."""
        futures = [self.add(task, priority) for task in tasks]
        return list(await asyncio.gather(*futures))

    # ── Control ─────────────────────────────────────────────────────────

    def pause(self) -> None:
        """Stop admitting new tasks. Running tasks finish normally."""
        self._paused = True
        self._cancel_timer()
        logger.info("Request queue paused (%d pending)", len(self._pending))

    def resume(self) -> None:
        """Restart admission."""
        self._paused = False
        logger.info("Request queue resumed (%d pending)", len(self._pending))
        self._drain()

    def clear(self) -> int:
        """Discard pending tasks. Their futures fail with QueueClearedError.

        Returns:
            The number of tasks discarded.
        """
        discarded = self._pending
        self._pending = []
        self._cancel_timer()
        for entry in discarded:
            if not entry.future.done():
                entry.future.set_exception(QueueClearedError("Task discarded by queue clear()"))
        if discarded:
            logger.info("Request queue cleared %d pending tasks", len(discarded))
        self._check_idle()
        return len(discarded)

    async def on_idle(self) -> None:
        """Wait until nothing is pending and nothing is running."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Stop admissions, drop pending tasks, and wait for running ones."""
        self._paused = True
        self.clear()
        await self.on_idle()
        self._cancel_timer()
        logger.info("Request queue shut down")

    def get_stats(self) -> QueueStats:
        self._prune_window(self._clock())
        return QueueStats(
            pending=len(self._pending),
            active=self._active,
            requests_in_last_minute=len(self._window),
            rate_limit_per_minute=self.rate_limit_per_minute,
            concurrency=self.concurrency,
            is_paused=self._paused,
        )

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def active(self) -> int:
        return self._active

    @property
    def is_paused(self) -> bool:
        return self._paused

    # ── Scheduling ──────────────────────────────────────────────────────

    def _prune_window(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._window and self._window[0] <= cutoff:
            self._window.popleft()

    def _drain(self) -> None:
        """Start as many pending tasks as the limits allow."""
        if self._paused:
            self._check_idle()
            return
        loop = asyncio.get_running_loop()

        while self._pending and self._active < self.concurrency:
            now = self._clock()
            self._prune_window(now)
            if len(self._window) >= self.rate_limit_per_minute:
                self._arm_timer(loop, self._window[0] + self.window_seconds - now)
                return

            entry = heapq.heappop(self._pending)
            if entry.future.done():
                # Caller cancelled the future before it started
                continue

            self._active += 1
            self._window.append(now)
            task = loop.create_task(self._run(entry))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

        self._check_idle()

    def _arm_timer(self, loop: asyncio.AbstractEventLoop, delay: float) -> None:
        if self._timer is not None:
            return
        delay = max(delay, 0.0)
        logger.debug("Rate limit reached, next admission in %.2fs", delay)
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._drain()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run(self, entry: _QueuedTask[Any]) -> None:
        try:
            result = await entry.fn()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Queued task failed: %r", exc)
            if not entry.future.done():
                entry.future.set_exception(exc)
        except BaseException:
            # Cancelled mid-run: settle the caller's future too
            if not entry.future.done():
                entry.future.cancel()
            raise
        else:
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            self._active -= 1
            self._drain()

    def _check_idle(self) -> None:
        if not self._pending and self._active == 0:
            self._idle.set()
        else:
            self._idle.clear()
