"""
Debounced aggregation of rapid metadata edits.

Fragments added for the same key within the quiet window are collected into
one batch; the batch is flushed once, in arrival order, after the window
passes without a new fragment.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

FlushHandler = Callable[[str, List[Any]], Awaitable[None]]


@dataclass
class PendingDebounceBatch:
    """Fragments accumulated for one key and the timer that will flush them."""
    key: str
    fragments: List[Any] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None
    first_added: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DebounceAggregator:
    """Coalesces bursts of fragments per key into a single delayed flush."""

    def __init__(self, quiet_window: float, flush_handler: FlushHandler):
        if quiet_window < 0:
            raise ValueError("quiet_window cannot be negative")
        self.quiet_window = quiet_window
        self._flush_handler = flush_handler
        self._batches: Dict[str, PendingDebounceBatch] = {}
        self._in_flight: set = set()
        self._closed = False
        self.flush_count = 0

    def add_message(self, key: str, fragment: Any) -> None:
        """Append a fragment and (re)arm the key's timer."""
        if self._closed:
            logger.warning(f"Debounce aggregator closed, dropping fragment for {key}")
            return

        batch = self._batches.get(key)
        if batch is None:
            batch = PendingDebounceBatch(key=key)
            self._batches[key] = batch

        batch.fragments.append(fragment)

        if batch.timer is not None and not batch.timer.done():
            batch.timer.cancel()
        batch.timer = asyncio.create_task(self._fire_after_quiet(key, batch))

        logger.debug(f"Debounced fragment for {key} ({len(batch.fragments)} pending)")

    async def _fire_after_quiet(self, key: str, batch: PendingDebounceBatch) -> None:
        await asyncio.sleep(self.quiet_window)

        # Detach before dispatch so new fragments start a fresh batch.
        if self._batches.get(key) is not batch:
            return
        del self._batches[key]

        task = asyncio.current_task()
        self._in_flight.add(task)
        try:
            await self._dispatch(key, batch.fragments)
        finally:
            self._in_flight.discard(task)

    async def _dispatch(self, key: str, fragments: List[Any]) -> None:
        self.flush_count += 1
        try:
            await self._flush_handler(key, fragments)
        except Exception as e:
            logger.error(f"Debounce flush for {key} failed: {e}", exc_info=True)

    def pending(self, key: str) -> List[Any]:
        """Fragments currently waiting for ``key``."""
        batch = self._batches.get(key)
        return list(batch.fragments) if batch else []

    @property
    def pending_keys(self) -> List[str]:
        return list(self._batches.keys())

    async def flush_all(self) -> int:
        """Flush every pending batch immediately."""
        batches = list(self._batches.values())
        self._batches.clear()

        for batch in batches:
            if batch.timer is not None and not batch.timer.done():
                batch.timer.cancel()
            await self._dispatch(batch.key, batch.fragments)

        if batches:
            logger.info(f"Flushed {len(batches)} pending debounce batch(es)")
        return len(batches)

    async def close(self) -> None:
        """Flush pending batches, wait for in-flight flushes and stop accepting fragments."""
        self._closed = True
        await self.flush_all()
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
