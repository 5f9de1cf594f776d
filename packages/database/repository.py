"""
Async repository over the feed and voice schema.

Every component holds a handle to one Repository and never touches the
engine directly. Each public coroutine is a single short transaction.

CONSTRAINT: SQLAlchemy errors never leak past this module; they are
wrapped in DatabaseError with the cause chained. Nothing here retries.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncIterator, Optional

from sqlalchemy import delete, event, exists, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import (
    Base,
    BotMeta,
    Feed,
    FeedItem,
    FeedSubscription,
    ServerSettingsRow,
    Subscriber,
    VoiceSession,
)

log = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Wrapped persistence failure."""


class IntegrityViolation(DatabaseError):
    """A unique or foreign key constraint rejected a write."""


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Repository:
    """Persistent store for feeds, subscriptions, voice sessions and metadata."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self._echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        """Lazy engine initialization."""
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, echo=self._echo)
            if self._engine.dialect.name == "sqlite":
                event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return self._engine

    @property
    def sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        if self._sessionmaker is None:
            self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)
        return self._sessionmaker

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.sessionmaker() as session:
                async with session.begin():
                    yield session
        except IntegrityError as e:
            raise IntegrityViolation(str(e.orig)) from e
        except SQLAlchemyError as e:
            raise DatabaseError(str(e)) from e

    async def create_all(self) -> None:
        """Create missing tables."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise DatabaseError(str(e)) from e

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    # =========================================================================
    # Feeds
    # =========================================================================

    async def get_feed(self, feed_id: int) -> Optional[Feed]:
        async with self._transaction() as session:
            return await session.get(Feed, feed_id)

    async def get_feed_by_source(self, platform_id: str, source_id: str) -> Optional[Feed]:
        async with self._transaction() as session:
            result = await session.execute(
                select(Feed).where(Feed.platform_id == platform_id, Feed.source_id == source_id)
            )
            return result.scalar_one_or_none()

    async def get_feed_by_source_url(self, source_url: str) -> Optional[Feed]:
        async with self._transaction() as session:
            result = await session.execute(select(Feed).where(Feed.source_url == source_url))
            return result.scalar_one_or_none()

    async def insert_feed(self, feed: Feed) -> Feed:
        """
        Insert a feed, or return the existing row for its (platform_id, source_id).

        Concurrent creators of the same feed all end up with the same row.
        """
        try:
            async with self._transaction() as session:
                session.add(feed)
            return feed
        except IntegrityViolation:
            existing = await self.get_feed_by_source(feed.platform_id, feed.source_id)
            if existing is None:
                raise
            return existing

    async def list_feeds(self, tag: Optional[str] = None) -> list[Feed]:
        stmt = select(Feed).order_by(Feed.id)
        if tag is not None:
            stmt = stmt.where(Feed.tags.contains(tag))
        async with self._transaction() as session:
            return list((await session.execute(stmt)).scalars())

    async def list_feeds_with_subscribers(self, tag: Optional[str] = None) -> list[Feed]:
        has_subscriber = exists(
            select(FeedSubscription.id).where(FeedSubscription.feed_id == Feed.id)
        )
        stmt = select(Feed).where(has_subscriber).order_by(Feed.id)
        if tag is not None:
            stmt = stmt.where(Feed.tags.contains(tag))
        async with self._transaction() as session:
            return list((await session.execute(stmt)).scalars())

    async def delete_feed(self, feed_id: int) -> bool:
        async with self._transaction() as session:
            result = await session.execute(delete(Feed).where(Feed.id == feed_id))
            return result.rowcount > 0

    # =========================================================================
    # Feed Items
    # =========================================================================

    async def get_latest_item(self, feed_id: int) -> Optional[FeedItem]:
        """The row with the greatest published time; ties go to the newest insert."""
        async with self._transaction() as session:
            result = await session.execute(
                select(FeedItem)
                .where(FeedItem.feed_id == feed_id)
                .order_by(FeedItem.published.desc(), FeedItem.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def insert_item(self, feed_id: int, description: str, published: datetime) -> FeedItem:
        item = FeedItem(feed_id=feed_id, description=description, published=published)
        async with self._transaction() as session:
            session.add(item)
        return item

    async def list_items(self, feed_id: int) -> list[FeedItem]:
        async with self._transaction() as session:
            result = await session.execute(
                select(FeedItem).where(FeedItem.feed_id == feed_id).order_by(FeedItem.id)
            )
            return list(result.scalars())

    # =========================================================================
    # Subscribers & Subscriptions
    # =========================================================================

    async def get_subscriber(self, type: str, target_id: str) -> Optional[Subscriber]:
        async with self._transaction() as session:
            result = await session.execute(
                select(Subscriber).where(Subscriber.type == type, Subscriber.target_id == target_id)
            )
            return result.scalar_one_or_none()

    async def get_or_create_subscriber(self, type: str, target_id: str) -> Subscriber:
        subscriber = await self.get_subscriber(type, target_id)
        if subscriber is not None:
            return subscriber
        try:
            subscriber = Subscriber(type=type, target_id=target_id)
            async with self._transaction() as session:
                session.add(subscriber)
            return subscriber
        except IntegrityViolation:
            # Lost the race to a concurrent creator
            subscriber = await self.get_subscriber(type, target_id)
            if subscriber is None:
                raise
            return subscriber

    async def list_subscribers_for_feed(
        self, feed_id: int, type: Optional[str] = None
    ) -> list[Subscriber]:
        stmt = (
            select(Subscriber)
            .join(FeedSubscription, FeedSubscription.subscriber_id == Subscriber.id)
            .where(FeedSubscription.feed_id == feed_id)
            .order_by(Subscriber.id)
        )
        if type is not None:
            stmt = stmt.where(Subscriber.type == type)
        async with self._transaction() as session:
            return list((await session.execute(stmt)).scalars())

    async def insert_subscription(self, feed_id: int, subscriber_id: int) -> bool:
        """Link a feed and a subscriber. Returns False if they were already linked."""
        try:
            async with self._transaction() as session:
                session.add(FeedSubscription(feed_id=feed_id, subscriber_id=subscriber_id))
        except IntegrityViolation:
            if await self.subscription_exists(feed_id, subscriber_id):
                return False
            raise
        return True

    async def subscription_exists(self, feed_id: int, subscriber_id: int) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                select(FeedSubscription.id).where(
                    FeedSubscription.feed_id == feed_id,
                    FeedSubscription.subscriber_id == subscriber_id,
                )
            )
            return result.first() is not None

    async def delete_subscription(self, feed_id: int, subscriber_id: int) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                delete(FeedSubscription).where(
                    FeedSubscription.feed_id == feed_id,
                    FeedSubscription.subscriber_id == subscriber_id,
                )
            )
            return result.rowcount > 0

    async def count_subscriptions(self, subscriber_id: int) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                select(func.count(FeedSubscription.id)).where(
                    FeedSubscription.subscriber_id == subscriber_id
                )
            )
            return result.scalar_one()

    async def count_feed_subscribers(self, feed_id: int) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                select(func.count(FeedSubscription.id)).where(FeedSubscription.feed_id == feed_id)
            )
            return result.scalar_one()

    async def list_subscriptions(
        self, subscriber_id: int, offset: int, limit: int
    ) -> list[tuple[Feed, Optional[FeedItem]]]:
        """
        Subscribed feeds ordered by name, each with its newest item.

        Items are only ever inserted at or after the current latest publish
        time, so the highest item id of a feed is its latest item.
        """
        latest_ids = (
            select(FeedItem.feed_id, func.max(FeedItem.id).label("item_id"))
            .group_by(FeedItem.feed_id)
            .subquery()
        )
        stmt = (
            select(Feed, FeedItem)
            .join(FeedSubscription, FeedSubscription.feed_id == Feed.id)
            .outerjoin(latest_ids, latest_ids.c.feed_id == Feed.id)
            .outerjoin(FeedItem, FeedItem.id == latest_ids.c.item_id)
            .where(FeedSubscription.subscriber_id == subscriber_id)
            .order_by(Feed.name, Feed.id)
            .offset(offset)
            .limit(limit)
        )
        async with self._transaction() as session:
            return [(row[0], row[1]) for row in (await session.execute(stmt)).all()]

    async def search_subscriptions(
        self, subscriber_id: int, partial_name: str, limit: int
    ) -> list[Feed]:
        stmt = (
            select(Feed)
            .join(FeedSubscription, FeedSubscription.feed_id == Feed.id)
            .where(
                FeedSubscription.subscriber_id == subscriber_id,
                Feed.name.ilike(f"%{partial_name}%"),
            )
            .order_by(Feed.name)
            .limit(limit)
        )
        async with self._transaction() as session:
            return list((await session.execute(stmt)).scalars())

    # =========================================================================
    # Voice Sessions
    # =========================================================================

    async def open_voice_session(
        self, user_id: int, guild_id: int, channel_id: int, join_time: datetime
    ) -> VoiceSession:
        """
        Start an active session.

        A stale active session on the same (user, channel) is closed at
        join_time first so at most one stays active.
        """
        async with self._transaction() as session:
            result = await session.execute(
                select(VoiceSession).where(
                    VoiceSession.user_id == user_id,
                    VoiceSession.channel_id == channel_id,
                    VoiceSession.is_active.is_(True),
                )
            )
            for stale in result.scalars():
                log.warning(
                    f"[VOICE] Closing stale session {stale.id} of user {user_id} "
                    f"in channel {channel_id}"
                )
                stale.leave_time = max(join_time, stale.join_time)
                stale.is_active = False

            voice_session = VoiceSession(
                user_id=user_id,
                guild_id=guild_id,
                channel_id=channel_id,
                join_time=join_time,
                leave_time=join_time,
                is_active=True,
            )
            session.add(voice_session)
        return voice_session

    async def close_voice_sessions(
        self,
        user_id: int,
        guild_id: int,
        leave_time: datetime,
        channel_id: Optional[int] = None,
    ) -> int:
        """Close the active sessions of a user in a guild (optionally one channel)."""
        stmt = select(VoiceSession).where(
            VoiceSession.user_id == user_id,
            VoiceSession.guild_id == guild_id,
            VoiceSession.is_active.is_(True),
        )
        if channel_id is not None:
            stmt = stmt.where(VoiceSession.channel_id == channel_id)
        async with self._transaction() as session:
            rows = list((await session.execute(stmt)).scalars())
            for row in rows:
                row.leave_time = max(leave_time, row.join_time)
                row.is_active = False
        return len(rows)

    async def find_active_sessions(
        self,
        user_id: Optional[int] = None,
        guild_id: Optional[int] = None,
        channel_id: Optional[int] = None,
    ) -> list[VoiceSession]:
        stmt = select(VoiceSession).where(VoiceSession.is_active.is_(True))
        if user_id is not None:
            stmt = stmt.where(VoiceSession.user_id == user_id)
        if guild_id is not None:
            stmt = stmt.where(VoiceSession.guild_id == guild_id)
        if channel_id is not None:
            stmt = stmt.where(VoiceSession.channel_id == channel_id)
        async with self._transaction() as session:
            return list((await session.execute(stmt.order_by(VoiceSession.id))).scalars())

    async def touch_active_sessions(self, now: datetime) -> int:
        """Slide leave_time of every active session up to now."""
        async with self._transaction() as session:
            result = await session.execute(
                update(VoiceSession)
                .where(VoiceSession.is_active.is_(True))
                .values(leave_time=now)
            )
            return result.rowcount

    async def close_all_active_sessions(self, leave_time: Optional[datetime]) -> int:
        """
        Close every active session at leave_time (never before its join_time).

        With leave_time None each session keeps its last heartbeat-slid leave_time.
        """
        async with self._transaction() as session:
            result = await session.execute(
                select(VoiceSession).where(VoiceSession.is_active.is_(True))
            )
            rows = list(result.scalars())
            for row in rows:
                if leave_time is not None:
                    row.leave_time = max(leave_time, row.join_time)
                row.is_active = False
        return len(rows)

    async def update_session_leave_time(self, session_id: int, leave_time: datetime) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                update(VoiceSession)
                .where(VoiceSession.id == session_id)
                .values(leave_time=leave_time)
            )
            return result.rowcount > 0

    async def get_sessions_in_range(
        self,
        guild_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        user_id: Optional[int] = None,
        closed_only: bool = False,
    ) -> list[VoiceSession]:
        """Sessions of a guild overlapping [since, until]."""
        stmt = select(VoiceSession).where(VoiceSession.guild_id == guild_id)
        if since is not None:
            stmt = stmt.where(VoiceSession.leave_time >= since)
        if until is not None:
            stmt = stmt.where(VoiceSession.join_time <= until)
        if user_id is not None:
            stmt = stmt.where(VoiceSession.user_id == user_id)
        if closed_only:
            stmt = stmt.where(VoiceSession.is_active.is_(False))
        async with self._transaction() as session:
            return list((await session.execute(stmt.order_by(VoiceSession.join_time))).scalars())

    # =========================================================================
    # Server Settings
    # =========================================================================

    async def get_server_settings(self, guild_id: int) -> Optional[ServerSettingsRow]:
        async with self._transaction() as session:
            return await session.get(ServerSettingsRow, guild_id)

    async def list_server_settings(self) -> list[ServerSettingsRow]:
        async with self._transaction() as session:
            return list((await session.execute(select(ServerSettingsRow))).scalars())

    async def upsert_server_settings(self, guild_id: int, settings_json: str) -> None:
        async with self._transaction() as session:
            await session.merge(ServerSettingsRow(guild_id=guild_id, settings=settings_json))

    # =========================================================================
    # Bot Meta
    # =========================================================================

    async def get_meta(self, key: str) -> Optional[str]:
        async with self._transaction() as session:
            row = await session.get(BotMeta, key)
            return row.value if row is not None else None

    async def set_meta(self, key: str, value: str) -> None:
        async with self._transaction() as session:
            await session.merge(BotMeta(key=key, value=value))

    async def delete_meta(self, key: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(delete(BotMeta).where(BotMeta.key == key))
            return result.rowcount > 0

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def dump_tables(self) -> dict[str, list[dict]]:
        """Every table as a list of JSON-friendly row dicts."""
        dump: dict[str, list[dict]] = {}
        async with self._transaction() as session:
            for table in Base.metadata.sorted_tables:
                result = await session.execute(select(table))
                dump[table.name] = [
                    {
                        key: value.isoformat() if isinstance(value, (datetime, date)) else value
                        for key, value in row._mapping.items()
                    }
                    for row in result
                ]
        return dump
