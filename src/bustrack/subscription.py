"""Polling subscriptions: turn a one-shot async fetch into a continuous stream.

Each subscription runs one asyncio task that calls fetch(), queues the
result, sleeps for the polling interval and repeats until cancelled. A failed
fetch does not end the stream; the task waits retry_delay seconds and tries
again.

A subscription ends when it is cancelled, when the manager cancels all
subscriptions, or when the consumer drops its last reference to the
Subscription object.

The queue between the task and the consumer is unbounded: a consumer slower
than the polling interval accumulates results, and ticks are never skipped or
merged.
"""

import asyncio
import functools
import itertools
import logging
import weakref
from typing import AsyncIterator, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from .config import DEFAULT_POLLING_INTERVAL, DEFAULT_RETRY_DELAY

logger = logging.getLogger(__name__)

T = TypeVar("T")

FetchFunc = Callable[[], Awaitable[T]]

_CLOSED = object()


class _PollState:
    """Failure bookkeeping shared by a polling task and its Subscription."""

    def __init__(self, subscription_id: int):
        self.subscription_id = subscription_id
        self.consecutive_failures = 0
        self.last_error: Optional[BaseException] = None


class Subscription(Generic[T]):
    """
    A running subscription, consumed with ``async for``.

    Iteration ends once the subscription is cancelled and every result
    queued before that point has been delivered. The polling task never
    holds the Subscription, so dropping it cancels the task.
    """

    def __init__(self, state: _PollState, queue: asyncio.Queue, task: asyncio.Task):
        self.id = state.subscription_id
        self._state = state
        self._queue = queue
        self._task = task
        self._finished = False
        finalizer = weakref.finalize(self, task.cancel)
        finalizer.atexit = False

    @property
    def active(self) -> bool:
        return not self._task.done()

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._state.last_error

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def cancel(self) -> None:
        """Stop polling. Safe to call more than once."""
        if not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        """Cancel and wait for the polling task to finish."""
        self.cancel()
        await asyncio.gather(self._task, return_exceptions=True)

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        state = "active" if self.active else "closed"
        return f"<Subscription id={self.id} {state} failures={self.consecutive_failures}>"


async def _poll(
    fetch: FetchFunc,
    state: _PollState,
    queue: asyncio.Queue,
    interval: float,
    retry_delay: float,
) -> None:
    """Fetch, emit, sleep; on error, wait retry_delay and try again."""
    while True:
        try:
            result = await fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            state.consecutive_failures += 1
            state.last_error = e
            logger.warning(
                f"Subscription {state.subscription_id} fetch failed "
                f"({state.consecutive_failures} in a row), retrying in {retry_delay}s: {e}"
            )
            await asyncio.sleep(retry_delay)
            continue

        state.consecutive_failures = 0
        state.last_error = None
        queue.put_nowait(result)
        await asyncio.sleep(interval)


def _finish(
    registry: Dict[int, asyncio.Task],
    subscription_id: int,
    queue: asyncio.Queue,
    on_terminate: Optional[Callable[[], None]],
    task: asyncio.Task,
) -> None:
    """Done-callback of a polling task. Runs exactly once per subscription."""
    if registry.pop(subscription_id, None) is None:
        return
    queue.put_nowait(_CLOSED)

    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Subscription {subscription_id} stopped unexpectedly: {task.exception()}")
    else:
        logger.info(f"Subscription {subscription_id} stopped")

    if on_terminate is not None:
        try:
            on_terminate()
        except Exception as e:
            logger.warning(f"Termination callback of subscription {subscription_id} failed: {e}")


class SubscriptionManager:
    """
    Owns the registry of running polling tasks, keyed by subscription id.

    The registry is only touched from event loop callbacks and synchronous
    methods, so the event loop serializes every mutation. Neither the
    registry nor the tasks reference Subscription objects or the manager.
    """

    def __init__(self, polling_interval: float = DEFAULT_POLLING_INTERVAL, retry_delay: float = DEFAULT_RETRY_DELAY):
        self.polling_interval = polling_interval
        self.retry_delay = retry_delay
        self._tasks: Dict[int, asyncio.Task] = {}
        self._ids = itertools.count(1)

    @property
    def active_subscription_count(self) -> int:
        return len(self._tasks)

    def subscribe(
        self,
        fetch: FetchFunc,
        interval: Optional[float] = None,
        on_terminate: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        """
        Start polling fetch() in a background task.

        Must be called from a running event loop.

        Args:
            fetch: Zero-argument coroutine function producing one result per tick.
            interval: Seconds between successful fetches (default: polling_interval).
            on_terminate: Called once when the subscription ends, however it ends.

        Returns:
            The Subscription to iterate over. Polling stops when it is
            cancelled or garbage collected.
        """
        interval = self.polling_interval if interval is None else interval
        if interval < 0:
            raise ValueError(f"interval must not be negative, got {interval}")

        state = _PollState(next(self._ids))
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.get_running_loop().create_task(
            _poll(fetch, state, queue, interval, self.retry_delay),
            name=f"bustrack-subscription-{state.subscription_id}",
        )
        self._tasks[state.subscription_id] = task
        task.add_done_callback(functools.partial(_finish, self._tasks, state.subscription_id, queue, on_terminate))

        logger.info(f"Started subscription {state.subscription_id} (interval {interval}s)")
        return Subscription(state, queue, task)

    async def cancel_all(self) -> None:
        """Cancel every running subscription and clear the registry."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Cancelled {len(tasks)} subscriptions")
