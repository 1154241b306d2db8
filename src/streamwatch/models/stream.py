"""
Stream observation and snapshot models.

A RawObservation is what a poller or webhook saw for one externally
identified stream/video. A StreamSnapshot is the last recorded state for that
id and serves as the reconciliation baseline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to an aware UTC datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StreamStatus(str, Enum):
    """Lifecycle status of a stream/video."""
    UNKNOWN = "unknown"
    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"
    DELETED = "deleted"


class LiveIndicator(str, Enum):
    """Coarse live state reported by the platform."""
    LIVE = "live"
    UPCOMING = "upcoming"
    NONE = "none"


class RawObservation(BaseModel):
    """One freshly observed record for an external stream id."""

    platform: str = Field(..., description="Platform identifier, e.g. youtube")
    channel_key: str = Field(..., description="Platform-specific channel identifier")
    external_id: str = Field(..., description="Stream or video id", min_length=1)
    indicator: LiveIndicator = Field(LiveIndicator.NONE, description="Coarse live/upcoming/none state")
    not_found: bool = Field(False, description="Upstream reports the id no longer exists")
    title: Optional[str] = Field(None, description="Stream title")
    category: Optional[str] = Field(None, description="Game or category name")
    channel_title: Optional[str] = Field(None, description="Display name of the channel")
    scheduled_start: Optional[datetime] = Field(None, description="Scheduled start (UTC)")
    actual_start: Optional[datetime] = Field(None, description="Actual start (UTC)")
    actual_end: Optional[datetime] = Field(None, description="Actual end (UTC)")
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('platform')
    @classmethod
    def validate_platform(cls, v):
        """Platform names are lowercase."""
        if not v or not v.strip():
            raise ValueError("Platform cannot be empty")
        return v.strip().lower()

    @field_validator('scheduled_start', 'actual_start', 'actual_end', 'observed_at')
    @classmethod
    def normalize_timestamps(cls, v):
        return ensure_utc(v)

    @classmethod
    def missing(cls, platform: str, channel_key: str, external_id: str) -> "RawObservation":
        """Observation for an id the platform no longer returns."""
        return cls(
            platform=platform,
            channel_key=channel_key,
            external_id=external_id,
            not_found=True,
        )

    @property
    def reports_live(self) -> bool:
        """Live indicator backed by an actual start time."""
        return self.indicator == LiveIndicator.LIVE and self.actual_start is not None


class StreamSnapshot(BaseModel):
    """Last known state of one stream/video."""

    platform: str
    channel_key: str
    external_id: str
    status: StreamStatus = StreamStatus.UNKNOWN
    title: Optional[str] = None
    category: Optional[str] = None
    channel_title: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_fields(self) -> Dict[str, Any]:
        """Serializable field map handed to the repository."""
        return self.model_dump(mode="json")
