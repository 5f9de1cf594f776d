"""
SQLAlchemy ORM Models for the feed monitor and voice tracker.

Source of Truth: feeds, their published items, subscribers and voice
sessions all live here. Every other component reaches them through
packages.database.repository.Repository.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    DateTime that always comes back timezone-aware in UTC.

    SQLite has no timezone support, so values are normalised to naive UTC
    on the way in and tagged with UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Feeds
# =============================================================================

class Feed(Base):
    """A monitored content source on one platform."""

    __tablename__ = "feeds"
    __table_args__ = (
        UniqueConstraint("platform_id", "source_id", name="uq_feeds_platform_source"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)

    # Registry key (PlatformInfo.name)
    platform_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Identifier used to build the canonical URL
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Identifier used to fetch items (Comick hid differs from the slug)
    items_id: Mapped[str] = mapped_column(String(255), nullable=False)

    source_url: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    cover_url: Mapped[Optional[str]] = mapped_column(String(1024))
    tags: Mapped[str] = mapped_column(String(255), default="series", nullable=False)


class FeedItem(Base):
    """A published chapter/episode of a feed. Never mutated."""

    __tablename__ = "feed_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feed_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    published: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


Index("ix_feed_items_feed_id_published", FeedItem.feed_id, FeedItem.published.desc())


class Subscriber(Base):
    """Notification target: a guild or a direct-message user."""

    __tablename__ = "subscribers"
    __table_args__ = (
        UniqueConstraint("type", "target_id", name="uq_subscribers_type_target"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)


class FeedSubscription(Base):
    """Many-to-many link between feeds and subscribers."""

    __tablename__ = "feed_subscriptions"
    __table_args__ = (
        UniqueConstraint("feed_id", "subscriber_id", name="uq_feed_subscriptions_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feed_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False
    )
    subscriber_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=False
    )


# =============================================================================
# Voice
# =============================================================================

class VoiceSession(Base):
    """
    One continuous presence of a user in a voice channel.

    INVARIANT: at most one row per (user_id, channel_id) has is_active set.
    A fresh session has leave_time == join_time; the heartbeat slides
    leave_time forward while the session stays active.
    """

    __tablename__ = "voice_sessions"
    __table_args__ = (
        Index("ix_voice_sessions_guild_user", "guild_id", "user_id"),
        Index("ix_voice_sessions_user_channel_join", "user_id", "channel_id", "join_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    channel_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    join_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    leave_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    @property
    def duration_seconds(self) -> float:
        return max((self.leave_time - self.join_time).total_seconds(), 0.0)


# =============================================================================
# Settings & Metadata
# =============================================================================

class ServerSettingsRow(Base):
    """Per-guild settings stored as a JSON document."""

    __tablename__ = "server_settings"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    settings: Mapped[str] = mapped_column(Text, default="{}", nullable=False)


class BotMeta(Base):
    """Key/value store for state that must survive restarts."""

    __tablename__ = "bot_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
