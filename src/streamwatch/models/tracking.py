"""
Tracking, subscription and credential models.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Set, Tuple
from pydantic import BaseModel, Field, field_validator

from .stream import ensure_utc


class ChannelWatch(BaseModel):
    """A (platform, channel_key) pair with its distinct followers."""

    platform: str = Field(..., description="Platform identifier")
    channel_key: str = Field(..., description="Platform-specific channel identifier", min_length=1)
    followers: Set[str] = Field(default_factory=set, description="Distinct follower identities")
    anonymous_follows: int = Field(0, description="Follows recorded without a follower identity")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('platform')
    @classmethod
    def validate_platform(cls, v):
        return v.strip().lower()

    @property
    def key(self) -> Tuple[str, str]:
        return (self.platform, self.channel_key)

    @property
    def ref_count(self) -> int:
        return len(self.followers) + self.anonymous_follows


class WebhookSubscription(BaseModel):
    """Webhook lease for one (channel_key, topic)."""

    platform: str
    channel_key: str
    topic: str = Field(..., description="Hub topic URL or push subscription type")
    subscription_id: Optional[str] = Field(None, description="Upstream-assigned id")
    lease_start: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    lease_seconds: Optional[int] = Field(None, description="Lease duration, None for non-expiring")
    verified: bool = Field(False, description="Hub confirmed the subscription intent")

    @field_validator('lease_start')
    @classmethod
    def normalize_lease_start(cls, v):
        return ensure_utc(v)

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.lease_seconds is None:
            return None
        return self.lease_start + timedelta(seconds=self.lease_seconds)

    def is_renewal_due(self, now: datetime, renewal_buffer: float) -> bool:
        """True iff ``now - lease_start >= lease_seconds - renewal_buffer``."""
        if self.lease_seconds is None:
            return False
        age = (ensure_utc(now) - self.lease_start).total_seconds()
        return age >= self.lease_seconds - renewal_buffer


class CredentialSlot(BaseModel):
    """One API credential and its call budget for the current window."""

    identifier: str
    credential: str = Field(..., repr=False)
    used_quota: int = 0
    exhausted: bool = False
    warned: bool = False
    last_used: Optional[datetime] = None
    reset_at: datetime


class ApiUsageInfo(BaseModel):
    """Quota usage summary."""

    used_quota: int = 0
    quota_limit: int = 0
    quota_reset_time: Optional[datetime] = None
    remaining_requests: int = 0

    @property
    def usage_percentage(self) -> float:
        if self.quota_limit <= 0:
            return 0.0
        return self.used_quota / self.quota_limit * 100


class PlatformMonitorStatus(BaseModel):
    """Status snapshot reported by one platform poller."""

    platform: str
    state: str
    health: str
    monitored_channels: int = 0
    last_update: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error_message: Optional[str] = None
    api_usage: Optional[ApiUsageInfo] = None
    loops: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
