"""
State reconciliation.

Diffs each fresh observation against the last snapshot for its external id
and classifies the transition. Status transitions (online, offline,
deleted) and schedule moves are published immediately; title and category
edits are collected by a per-platform DebounceAggregator and published as a
single MetadataChanged event per stream once it goes quiet.

Transition precedence for one observation:

1. ``not_found`` for a known id            -> Deleted
2. not live, now live with an actual start -> Online
3. live (or started), now has an end time  -> Offline
4. scheduled start moved                   -> ScheduleChanged
5. title or category changed               -> MetadataChanged (debounced)
"""

import asyncio
import logging
import weakref
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..lib.debounce import DebounceAggregator
from ..lib.dedup import RecentlySeen
from ..models import (
    LiveIndicator, RawObservation, StreamEvent, StreamEventType,
    StreamSnapshot, StreamStatus
)
from .event_bus import EventBus
from .repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class _PendingMetadata:
    """Before/after values behind one debounced batch."""
    platform: str
    channel_key: str
    external_id: str
    previous_title: Optional[str] = None
    previous_category: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    first_change: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class StateReconciler:
    """Turns observations into at most one event per detected transition."""

    def __init__(
        self,
        event_bus: EventBus,
        recent: RecentlySeen,
        repository: Optional[Repository] = None,
        debounce_seconds: float = 180.0,
        snapshot_capacity: int = 50000,
        snapshot_ttl: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.event_bus = event_bus
        self.recent = recent
        self.repository = repository
        self.debounce_seconds = debounce_seconds
        self.snapshot_capacity = snapshot_capacity
        self.snapshot_ttl = snapshot_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._snapshots: "OrderedDict[str, StreamSnapshot]" = OrderedDict()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._debouncers: Dict[str, DebounceAggregator] = {}
        self._pending: Dict[str, _PendingMetadata] = {}

        # Statistics
        self.observations = 0
        self.events_by_type: Dict[str, int] = {event_type.value: 0 for event_type in StreamEventType}
        self.suppressed = 0
        self.evicted = 0

    # Snapshot store

    def get_snapshot(self, external_id: str) -> Optional[StreamSnapshot]:
        snapshot = self._snapshots.get(external_id)
        if snapshot is None:
            return None

        if self._is_expired(snapshot, self._clock()):
            del self._snapshots[external_id]
            self.evicted += 1
            return None
        return snapshot

    def _is_expired(self, snapshot: StreamSnapshot, now: datetime) -> bool:
        return self.snapshot_ttl is not None and now - snapshot.updated_at > timedelta(seconds=self.snapshot_ttl)

    def _store(self, snapshot: StreamSnapshot) -> None:
        self._snapshots[snapshot.external_id] = snapshot
        self._snapshots.move_to_end(snapshot.external_id)
        while len(self._snapshots) > self.snapshot_capacity:
            evicted_id, _ = self._snapshots.popitem(last=False)
            self.evicted += 1
            logger.debug(f"Evicted snapshot {evicted_id} (capacity {self.snapshot_capacity})")

    def load_snapshot(self, snapshot: StreamSnapshot) -> None:
        """Seed a baseline, e.g. from storage at start-up."""
        self._store(snapshot)

    def forget(self, external_id: str) -> None:
        self._snapshots.pop(external_id, None)

    def evict_expired(self) -> int:
        """Drop snapshots not updated within the TTL."""
        if self.snapshot_ttl is None:
            return 0

        now = self._clock()
        expired = [key for key, snap in self._snapshots.items() if self._is_expired(snap, now)]
        for key in expired:
            del self._snapshots[key]

        if expired:
            self.evicted += len(expired)
            logger.info(f"Evicted {len(expired)} stale snapshot(s)")
        return len(expired)

    def snapshots_for(self, platform: str, status: Optional[StreamStatus] = None) -> List[StreamSnapshot]:
        return [
            snap for snap in self._snapshots.values()
            if snap.platform == platform and (status is None or snap.status == status)
        ]

    @property
    def snapshot_count(self) -> int:
        return len(self._snapshots)

    # Classification

    @staticmethod
    def classify(prior: Optional[StreamSnapshot], observation: RawObservation) -> Optional[StreamEventType]:
        """Pure transition classification; ``prior`` None means first sighting."""
        if observation.not_found:
            if prior is not None and prior.status != StreamStatus.DELETED:
                return StreamEventType.DELETED
            return None

        prior_status = prior.status if prior else StreamStatus.UNKNOWN

        if prior_status != StreamStatus.LIVE and observation.reports_live and observation.actual_end is None:
            return StreamEventType.ONLINE

        if observation.actual_end is not None and prior is not None:
            started = prior.actual_start is not None
            if prior_status == StreamStatus.LIVE or (prior_status == StreamStatus.UNKNOWN and started):
                return StreamEventType.OFFLINE

        if prior is None:
            return None

        if observation.scheduled_start is not None and observation.scheduled_start != prior.scheduled_start:
            return StreamEventType.SCHEDULE_CHANGED

        if _metadata_changes(prior, observation):
            return StreamEventType.METADATA_CHANGED

        return None

    @staticmethod
    def next_status(prior: Optional[StreamSnapshot], observation: RawObservation) -> StreamStatus:
        if observation.not_found:
            return StreamStatus.DELETED
        if observation.actual_end is not None:
            return StreamStatus.ENDED
        if observation.reports_live:
            return StreamStatus.LIVE
        if observation.indicator == LiveIndicator.UPCOMING:
            return StreamStatus.SCHEDULED
        return prior.status if prior else StreamStatus.UNKNOWN

    # Reconciliation

    def _lock_for(self, external_id: str) -> asyncio.Lock:
        lock = self._locks.get(external_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[external_id] = lock
        return lock

    async def reconcile(self, observation: RawObservation, publish: bool = True) -> Optional[StreamEvent]:
        """
        Reconcile one observation and return the event it produced.

        Observations for the same external id are serialized. A debounced
        metadata change returns None; its event is published on flush. With
        ``publish=False`` the caller is responsible for publishing.
        """
        lock = self._lock_for(observation.external_id)
        async with lock:
            return await self._reconcile_locked(observation, publish)

    async def _reconcile_locked(self, observation: RawObservation, publish: bool) -> Optional[StreamEvent]:
        self.observations += 1
        prior = self.get_snapshot(observation.external_id)

        if (
            prior is not None
            and prior.status == StreamStatus.ENDED
            and observation.reports_live
            and observation.actual_end is None
        ):
            logger.info(
                f"{observation.platform}/{observation.external_id} is live again after ending, "
                f"treating it as a new stream"
            )
            self.forget(observation.external_id)
            prior = None

        event_type = self.classify(prior, observation)
        snapshot = self._merge(prior, observation)

        if observation.not_found:
            self.forget(observation.external_id)
        else:
            self._store(snapshot)

        event = None
        if event_type == StreamEventType.METADATA_CHANGED:
            self._debounce_metadata(prior, observation)
        elif event_type is not None:
            event = self._build_event(event_type, prior, snapshot, observation)
            if event_type.is_status_transition and not self._claim(event):
                event = None

        if event is not None:
            self.events_by_type[event.event_type.value] += 1
            logger.info(
                f"{event.event_type.value}: {event.platform}/{event.channel_key} ({event.external_id})"
            )
            if publish:
                await self.event_bus.publish(event)

        if not observation.not_found:
            await self._persist(snapshot)

        return event

    async def reconcile_many(self, observations: Sequence[RawObservation]) -> List[StreamEvent]:
        """
        Reconcile a pass worth of observations and publish them as a batch.

        Different ids are reconciled concurrently; a failure on one id is
        logged and does not affect the others.
        """
        results = await asyncio.gather(
            *(self.reconcile(obs, publish=False) for obs in observations),
            return_exceptions=True,
        )

        events = []
        for observation, result in zip(observations, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Reconciliation failed for {observation.platform}/{observation.external_id}: {result}",
                    exc_info=result,
                )
            elif result is not None:
                events.append(result)

        if events:
            await self.event_bus.publish_batch(events)
        return events

    def _claim(self, event: StreamEvent) -> bool:
        """Dedup a status transition; frees the opposite transition's key."""
        if not self.recent.check_and_add(event.dedup_key):
            self.suppressed += 1
            logger.debug(f"Suppressed duplicate {event.event_type.value} for {event.external_id}")
            return False

        if event.event_type == StreamEventType.ONLINE:
            self.recent.discard((event.platform, event.external_id, StreamEventType.OFFLINE.value))
        elif event.event_type == StreamEventType.OFFLINE:
            self.recent.discard((event.platform, event.external_id, StreamEventType.ONLINE.value))
        return True

    def _merge(self, prior: Optional[StreamSnapshot], observation: RawObservation) -> StreamSnapshot:
        def pick(name: str) -> Any:
            value = getattr(observation, name)
            if value is None and prior is not None:
                return getattr(prior, name)
            return value

        return StreamSnapshot(
            platform=observation.platform,
            channel_key=observation.channel_key,
            external_id=observation.external_id,
            status=self.next_status(prior, observation),
            title=pick("title"),
            category=pick("category"),
            channel_title=pick("channel_title"),
            scheduled_start=pick("scheduled_start"),
            actual_start=pick("actual_start"),
            actual_end=pick("actual_end"),
            updated_at=self._clock(),
        )

    def _build_event(
        self,
        event_type: StreamEventType,
        prior: Optional[StreamSnapshot],
        snapshot: StreamSnapshot,
        observation: RawObservation
    ) -> StreamEvent:
        payload: Dict[str, Any] = {"title": snapshot.title}

        if event_type == StreamEventType.ONLINE:
            payload.update({
                "category": snapshot.category,
                "channelTitle": snapshot.channel_title,
                "actualStart": snapshot.actual_start,
                "scheduledStart": snapshot.scheduled_start,
            })
        elif event_type == StreamEventType.OFFLINE:
            payload.update({
                "actualStart": snapshot.actual_start,
                "actualEnd": snapshot.actual_end,
            })
            if snapshot.actual_start is not None and snapshot.actual_end is not None:
                duration = snapshot.actual_end - snapshot.actual_start
                payload["durationSeconds"] = max(0, int(duration.total_seconds()))
        elif event_type == StreamEventType.SCHEDULE_CHANGED:
            payload.update({
                "scheduledStart": snapshot.scheduled_start,
                "previousScheduledStart": prior.scheduled_start if prior else None,
            })
        elif event_type == StreamEventType.DELETED:
            payload["previousStatus"] = prior.status.value if prior else None

        return StreamEvent(
            event_type=event_type,
            platform=observation.platform,
            channel_key=observation.channel_key,
            external_id=observation.external_id,
            payload=payload,
            detected_at=self._clock(),
        )

    async def _persist(self, snapshot: StreamSnapshot) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.upsert_snapshot(snapshot.external_id, snapshot.to_fields())
        except Exception as e:
            logger.error(f"Failed to persist snapshot {snapshot.external_id}: {e}")

    # Debounced metadata

    def set_debounce_window(self, platform: str, seconds: float) -> None:
        """Use a platform-specific quiet window for metadata batches."""
        if platform in self._debouncers:
            self._debouncers[platform].quiet_window = seconds
        else:
            self._debouncers[platform] = DebounceAggregator(seconds, self._flush_metadata)

    def debouncer_for(self, platform: str) -> DebounceAggregator:
        if platform not in self._debouncers:
            self._debouncers[platform] = DebounceAggregator(self.debounce_seconds, self._flush_metadata)
        return self._debouncers[platform]

    def _debounce_metadata(self, prior: StreamSnapshot, observation: RawObservation) -> None:
        # One batch per video; a channel can have several upcoming broadcasts
        key = f"{observation.platform}:{observation.channel_key}:{observation.external_id}"
        pending = self._pending.get(key)
        if pending is None:
            pending = _PendingMetadata(
                platform=observation.platform,
                channel_key=observation.channel_key,
                external_id=observation.external_id,
                previous_title=prior.title,
                previous_category=prior.category,
            )
            self._pending[key] = pending

        pending.title = observation.title or prior.title
        pending.category = observation.category or prior.category

        debouncer = self.debouncer_for(observation.platform)
        for fragment in _metadata_changes(prior, observation):
            debouncer.add_message(key, fragment)

    async def _flush_metadata(self, key: str, fragments: List[Any]) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            logger.warning(f"Metadata batch for {key} has no pending context, dropping")
            return

        event = StreamEvent(
            event_type=StreamEventType.METADATA_CHANGED,
            platform=pending.platform,
            channel_key=pending.channel_key,
            external_id=pending.external_id,
            payload={
                "title": pending.title,
                "previousTitle": pending.previous_title,
                "category": pending.category,
                "previousCategory": pending.previous_category,
                "changes": list(fragments),
            },
            detected_at=self._clock(),
        )
        self.events_by_type[event.event_type.value] += 1
        logger.info(f"MetadataChanged: {key} ({len(fragments)} change(s))")
        await self.event_bus.publish(event)

    async def flush_pending(self) -> int:
        """Flush every pending metadata batch and close the aggregators."""
        flushed = 0
        for debouncer in self._debouncers.values():
            flushed += await debouncer.flush_all()
            await debouncer.close()
        return flushed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "observations": self.observations,
            "snapshots": self.snapshot_count,
            "events": dict(self.events_by_type),
            "suppressed": self.suppressed,
            "evicted": self.evicted,
            "pending_metadata": sorted(self._pending.keys()),
        }


def _metadata_changes(prior: StreamSnapshot, observation: RawObservation) -> List[str]:
    """Human-readable diff lines for title and category edits."""
    changes = []
    if observation.title is not None and prior.title is not None and observation.title != prior.title:
        changes.append(f"title changed `{prior.title}` => `{observation.title}`")
    if observation.category is not None and prior.category is not None and observation.category != prior.category:
        changes.append(f"category changed `{prior.category}` => `{observation.category}`")
    return changes
