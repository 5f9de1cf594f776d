"""
Shared Pydantic models for the feed monitor and voice tracker.
These are the shapes that cross component boundaries: adapter results,
outbound update events, inbound voice events and Celery payloads.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Platform Results
# =============================================================================

class FeedSource(BaseModel):
    """Metadata of a content source as reported by its platform."""
    id: str = Field(..., description="Platform-native id used in the canonical URL")
    items_id: str = Field(..., description="Platform-native id used to fetch items")
    name: str
    description: str = ""
    source_url: str
    cover_url: Optional[str] = None


class LatestItem(BaseModel):
    """Newest published item of a source."""
    id: str
    title: str
    published: datetime


# =============================================================================
# Subscriptions
# =============================================================================

class SubscriberType(str, Enum):
    """Who receives a notification."""
    GUILD = "guild"
    DIRECT = "dm"


class SubscriberTarget(BaseModel):
    """Inbound identification of a subscriber."""
    type: SubscriberType
    target_id: str


class ItemSnapshot(BaseModel):
    """Title and publish time of a feed item."""
    model_config = ConfigDict(from_attributes=True)

    title: str
    published: datetime


class SubscriptionEntry(BaseModel):
    """A subscribed feed with its newest known item."""
    model_config = ConfigDict(from_attributes=True)

    feed_id: int
    name: str
    platform_id: str
    source_url: str
    cover_url: Optional[str] = None
    latest: Optional[ItemSnapshot] = None


# =============================================================================
# Outbound Events
# =============================================================================

class FeedUpdateEvent(BaseModel):
    """Emitted once per detected new item of a feed."""
    feed_id: int
    feed_name: str
    source_url: str
    cover_url: Optional[str] = None
    item: ItemSnapshot
    previous_item: Optional[ItemSnapshot] = None

    platform_id: str = ""
    feed_description: str = ""


class FeedDeliveryPayload(BaseModel):
    """Payload for the Celery delivery task."""
    event: FeedUpdateEvent
    subscriber_id: int
    # Exactly one of these is set
    channel_id: Optional[str] = None
    recipient_id: Optional[str] = None

    feed_item_name: str = "Item"
    platform_name: str = ""
    logo_url: Optional[str] = None
    copyright_notice: str = ""


# =============================================================================
# Server Settings
# =============================================================================

class FeedSettings(BaseModel):
    """Feed notification settings of a guild."""
    enabled: Optional[bool] = None
    channel_id: Optional[str] = None
    subscribe_role_id: Optional[str] = None
    unsubscribe_role_id: Optional[str] = None


class VoiceSettings(BaseModel):
    """Voice tracking settings of a guild."""
    enabled: Optional[bool] = None


class ServerSettings(BaseModel):
    """Per-guild configuration document."""
    feeds: FeedSettings = Field(default_factory=FeedSettings)
    voice: VoiceSettings = Field(default_factory=VoiceSettings)

    @property
    def voice_tracking_enabled(self) -> bool:
        # Unset means enabled
        return self.voice.enabled is not False


# =============================================================================
# Voice
# =============================================================================

class VoiceEventKind(str, Enum):
    JOIN = "join"
    MOVE = "move"
    LEAVE = "leave"


class VoiceEvent(BaseModel):
    """Voice presence change forwarded by the bot shell."""
    kind: VoiceEventKind
    user_id: int
    guild_id: int
    channel_id: Optional[int] = None  # New channel for join/move, left channel for leave
    previous_channel_id: Optional[int] = None
    timestamp: datetime


class LeaderboardOptions(BaseModel):
    """Leaderboard query window and page."""
    guild_id: int
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=10, ge=1)


class LeaderboardEntry(BaseModel):
    """Total voice time of one user."""
    user_id: int
    total_seconds: int


class DailyActivity(BaseModel):
    """Voice time of one user on one UTC day."""
    day: date
    total_seconds: int


class GuildStatType(str, Enum):
    AVERAGE_TIME = "average_time"
    ACTIVE_USER_COUNT = "active_user_count"
    TOTAL_TIME = "total_time"


class GuildDailyStat(BaseModel):
    """One guild-wide statistic on one UTC day."""
    day: date
    value: float
