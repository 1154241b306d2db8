"""
Event models published on, and consumed from, the pub/sub bus.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Tuple
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .stream import ensure_utc


class StreamEventType(str, Enum):
    """Transition kinds detected by the reconciler."""
    ONLINE = "Online"
    OFFLINE = "Offline"
    METADATA_CHANGED = "MetadataChanged"
    SCHEDULE_CHANGED = "ScheduleChanged"
    DELETED = "Deleted"

    @property
    def channel_suffix(self) -> str:
        """Pub/sub channel suffix for this event type."""
        return _CHANNEL_SUFFIXES[self]

    @property
    def is_status_transition(self) -> bool:
        """Transitions that are dedup-keyed."""
        return self in (StreamEventType.ONLINE, StreamEventType.OFFLINE, StreamEventType.DELETED)


_CHANNEL_SUFFIXES = {
    StreamEventType.ONLINE: "online",
    StreamEventType.OFFLINE: "offline",
    StreamEventType.METADATA_CHANGED: "metadata",
    StreamEventType.SCHEDULE_CHANGED: "schedule",
    StreamEventType.DELETED: "deleted",
}


def _to_wire_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_to_wire_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_wire_value(item) for key, item in value.items()}
    return value


class StreamEvent(BaseModel):
    """Normalized event describing one detected transition."""

    event_type: StreamEventType = Field(..., description="Kind of transition")
    platform: str = Field(..., description="Platform identifier")
    channel_key: str = Field(..., description="Platform-specific channel identifier")
    external_id: str = Field(..., description="Stream or video id")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Type-specific fields, camelCase keys")
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('detected_at')
    @classmethod
    def normalize_detected_at(cls, v):
        return ensure_utc(v)

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        return (self.platform, self.external_id, self.event_type.value)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        message = {
            "eventType": self.event_type.value,
            "platform": self.platform,
            "channelKey": self.channel_key,
            "externalId": self.external_id,
            "detectedAt": self.detected_at.isoformat(),
        }
        for key, value in self.payload.items():
            message.setdefault(key, _to_wire_value(value))
        return message


class FollowAction(str, Enum):
    """Direction of a follow-list change."""
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"


class FollowEvent(BaseModel):
    """A follower started or stopped watching a channel."""

    model_config = ConfigDict(populate_by_name=True)

    platform: str = Field(..., validation_alias=AliasChoices("platform", "Platform"))
    stream_key: str = Field(..., validation_alias=AliasChoices("stream_key", "streamKey", "StreamKey"))
    guild_id: int = Field(0, validation_alias=AliasChoices("guild_id", "guildId", "GuildId"))
    discord_channel_id: int = Field(
        0, validation_alias=AliasChoices("discord_channel_id", "discordChannelId", "DiscordChannelId")
    )
    user_id: int = Field(0, validation_alias=AliasChoices("user_id", "userId", "UserId"))
    action: FollowAction = FollowAction.FOLLOW

    @field_validator('platform')
    @classmethod
    def validate_platform(cls, v):
        if not v or not v.strip():
            raise ValueError("Platform cannot be empty")
        return v.strip().lower()

    @field_validator('stream_key')
    @classmethod
    def validate_stream_key(cls, v):
        if not v or not v.strip():
            raise ValueError("Stream key cannot be empty")
        return v.strip()

    @property
    def follower_id(self) -> str:
        """Identity of the follower for reference counting."""
        return f"{self.guild_id}:{self.discord_channel_id}"
