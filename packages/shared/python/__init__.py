"""Shared Python models and utilities."""

from .models import (
    FeedSource,
    LatestItem,
    SubscriberType,
    SubscriberTarget,
    ItemSnapshot,
    SubscriptionEntry,
    FeedUpdateEvent,
    FeedDeliveryPayload,
    FeedSettings,
    VoiceSettings,
    ServerSettings,
    VoiceEventKind,
    VoiceEvent,
    LeaderboardOptions,
    LeaderboardEntry,
    DailyActivity,
    GuildStatType,
    GuildDailyStat,
)

__all__ = [
    "FeedSource",
    "LatestItem",
    "SubscriberType",
    "SubscriberTarget",
    "ItemSnapshot",
    "SubscriptionEntry",
    "FeedUpdateEvent",
    "FeedDeliveryPayload",
    "FeedSettings",
    "VoiceSettings",
    "ServerSettings",
    "VoiceEventKind",
    "VoiceEvent",
    "LeaderboardOptions",
    "LeaderboardEntry",
    "DailyActivity",
    "GuildStatType",
    "GuildDailyStat",
]
