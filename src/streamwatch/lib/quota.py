"""
Per-credential call budget management.

QuotaManager owns one CredentialSlot per configured API key and hands out
the least-used slot that still has budget. Budgets roll over at midnight
UTC.
"""

import logging
import threading
from datetime import datetime, timezone, timedelta
from typing import Callable, List, Optional, Sequence

from ..models import ApiUsageInfo, CredentialSlot
from .errors import NoCapacityError

logger = logging.getLogger(__name__)


class QuotaCost:
    """Fixed call costs in quota units."""
    VIDEOS_LIST = 1
    CHANNELS_LIST = 1
    PLAYLIST_ITEMS_LIST = 1
    SEARCH_LIST = 100


def next_daily_reset(now: datetime) -> datetime:
    """Next midnight UTC after ``now``."""
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class QuotaManager:
    """Selects credentials and tracks their usage against a per-key limit."""

    def __init__(
        self,
        credentials: Sequence[str],
        quota_limit: int = 10000,
        platform: str = "youtube",
        warning_ratio: float = 0.8,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if quota_limit <= 0:
            raise ValueError("quota_limit must be positive")

        self.platform = platform
        self.quota_limit = quota_limit
        self.warning_ratio = warning_ratio
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

        reset_at = next_daily_reset(self._clock())
        self._slots: List[CredentialSlot] = [
            CredentialSlot(
                identifier=f"{platform}-key-{index + 1}",
                credential=credential,
                reset_at=reset_at,
            )
            for index, credential in enumerate(credentials)
        ]

        if not self._slots:
            logger.warning(f"No credentials configured for {platform}")

    @property
    def slots(self) -> List[CredentialSlot]:
        return list(self._slots)

    def _get(self, identifier: str) -> CredentialSlot:
        for slot in self._slots:
            if slot.identifier == identifier:
                return slot
        raise KeyError(f"Unknown credential slot: {identifier}")

    def select_slot(self) -> CredentialSlot:
        """
        Return the non-exhausted slot with the lowest used quota.

        Ties go to the least recently used slot. Raises NoCapacityError when
        every slot is exhausted.
        """
        with self._lock:
            candidates = [slot for slot in self._slots if not slot.exhausted]
            if not candidates:
                raise NoCapacityError(
                    f"All {len(self._slots)} {self.platform} credentials are exhausted",
                    platform=self.platform,
                )

            never_used = datetime.min.replace(tzinfo=timezone.utc)
            selected = min(
                candidates,
                key=lambda slot: (slot.used_quota, slot.last_used or never_used),
            )
            selected.last_used = self._clock()
            return selected

    def record_usage(self, slot: CredentialSlot, cost: int) -> None:
        """Add ``cost`` units to a slot and update its thresholds."""
        if cost < 0:
            raise ValueError(f"Quota cost cannot be negative: {cost}")

        with self._lock:
            target = self._get(slot.identifier)
            target.used_quota += cost
            target.last_used = self._clock()

            if not target.warned and target.used_quota >= self.quota_limit * self.warning_ratio:
                target.warned = True
                logger.warning(
                    f"{target.identifier} has used {target.used_quota}/{self.quota_limit} "
                    f"quota units ({self.warning_ratio:.0%} threshold)"
                )

            if not target.exhausted and target.used_quota >= self.quota_limit:
                target.exhausted = True
                logger.warning(f"{target.identifier} quota exhausted until {target.reset_at.isoformat()}")

    def mark_exhausted(self, slot: CredentialSlot) -> None:
        """Mark a slot exhausted after the upstream reported its quota is spent."""
        with self._lock:
            target = self._get(slot.identifier)
            if not target.exhausted:
                target.exhausted = True
                logger.warning(f"{target.identifier} reported exhausted by upstream")

    def reset_expired(self, now: Optional[datetime] = None) -> int:
        """Zero every slot whose budget window has rolled over."""
        now = now or self._clock()
        reset_count = 0

        with self._lock:
            for slot in self._slots:
                if now >= slot.reset_at:
                    slot.used_quota = 0
                    slot.exhausted = False
                    slot.warned = False
                    slot.reset_at = next_daily_reset(now)
                    reset_count += 1

        if reset_count:
            logger.info(f"Reset quota for {reset_count} {self.platform} credential(s)")
        return reset_count

    @property
    def has_capacity(self) -> bool:
        return any(not slot.exhausted for slot in self._slots)

    @property
    def available_quota(self) -> int:
        """Units left across slots that are not exhausted."""
        with self._lock:
            return sum(
                max(0, self.quota_limit - slot.used_quota)
                for slot in self._slots if not slot.exhausted
            )

    def get_usage_info(self) -> ApiUsageInfo:
        """Aggregated usage across all slots."""
        with self._lock:
            used = sum(slot.used_quota for slot in self._slots)
            limit = self.quota_limit * len(self._slots)
            reset_times = [slot.reset_at for slot in self._slots]

        return ApiUsageInfo(
            used_quota=used,
            quota_limit=limit,
            quota_reset_time=min(reset_times) if reset_times else None,
            remaining_requests=max(0, limit - used),
        )

    def get_slot_usage(self) -> List[ApiUsageInfo]:
        """Usage per slot, in configuration order."""
        with self._lock:
            return [
                ApiUsageInfo(
                    used_quota=slot.used_quota,
                    quota_limit=self.quota_limit,
                    quota_reset_time=slot.reset_at,
                    remaining_requests=max(0, self.quota_limit - slot.used_quota),
                )
                for slot in self._slots
            ]
