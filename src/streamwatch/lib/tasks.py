"""
Supervised background task runners.

PeriodicTask runs one coroutine function on a fixed interval and catches
failures at the loop boundary. QueueConsumer drains an asyncio.Queue with a
single task so items are handled strictly in arrival order.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class LoopStats:
    """Counters for one periodic loop."""
    iterations: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_run: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iterations': self.iterations,
            'failures': self.failures,
            'consecutive_failures': self.consecutive_failures,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'last_success': self.last_success.isoformat() if self.last_success else None,
            'last_error': self.last_error,
        }


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        run_immediately: bool = True
    ):
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self.stats = LoopStats()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_failing(self) -> bool:
        return self.stats.consecutive_failures > 0

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def run_once(self) -> bool:
        """Run a single iteration with loop-boundary error handling."""
        self.stats.iterations += 1
        self.stats.last_run = datetime.now(timezone.utc)
        try:
            await self.func()
        except Exception as e:
            self.stats.failures += 1
            self.stats.consecutive_failures += 1
            self.stats.last_error = str(e)
            logger.error(f"Loop '{self.name}' iteration failed: {e}", exc_info=True)
            return False

        self.stats.consecutive_failures = 0
        self.stats.last_success = self.stats.last_run
        return True

    async def _run(self) -> None:
        logger.debug(f"Loop '{self.name}' started (interval {self.interval}s)")

        if not self.run_immediately:
            if await self._wait_or_stop():
                return

        while not self._stop_event.is_set():
            await self.run_once()
            if await self._wait_or_stop():
                break

        logger.debug(f"Loop '{self.name}' stopped")

    async def _wait_or_stop(self) -> bool:
        """Sleep one interval; True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return False
        return True

    def request_stop(self) -> None:
        """Stop scheduling new ticks; an in-flight iteration is left to finish."""
        self._stop_event.set()

    async def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to exit; cancel it if ``timeout`` elapses."""
        if self._task is None:
            return True

        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if done:
            return True

        logger.warning(f"Loop '{self.name}' did not stop within {timeout}s, cancelling")
        await self.cancel()
        return False

    async def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def to_dict(self) -> Dict[str, Any]:
        return {'interval': self.interval, 'running': self.is_running, **self.stats.to_dict()}


class QueueConsumer(Generic[T]):
    """Single consumer task reading items from a queue."""

    def __init__(
        self,
        name: str,
        handler: Callable[[T], Awaitable[Any]],
        maxsize: int = 0
    ):
        self.name = name
        self._handler = handler
        self._queue: "asyncio.Queue[T]" = asyncio.Queue(maxsize=maxsize)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.processed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._consume(), name=self.name)

    def submit(self, item: T) -> bool:
        """Enqueue an item without blocking; False if the queue is full."""
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning(f"Queue '{self.name}' is full, dropping item")
            return False
        return True

    async def put(self, item: T) -> None:
        await self._queue.put(item)

    async def _handle(self, item: T) -> None:
        try:
            await self._handler(item)
            self.processed += 1
        except Exception as e:
            self.failed += 1
            logger.error(f"Queue '{self.name}' handler failed: {e}", exc_info=True)
        finally:
            self._queue.task_done()

    async def _consume(self) -> None:
        while not self._stop_event.is_set():
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            await self._handle(item)

    async def join(self) -> None:
        """Wait until every queued item has been handled."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop the consumer, optionally handling items still queued."""
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        remaining = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            remaining += 1
            if drain:
                await self._handle(item)
            else:
                self._queue.task_done()

        if remaining:
            logger.info(f"Queue '{self.name}' {'drained' if drain else 'discarded'} {remaining} remaining item(s)")
