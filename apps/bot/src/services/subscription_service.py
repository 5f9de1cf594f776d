"""
Feed Subscription Service

Turns a source URL into a Feed (fetching its metadata once), and links
feeds to subscribers. Holds no state beyond its Repository and Registry
handles, so every operation is safe to call concurrently.

CONSTRAINT: subscribe() is idempotent. The second identical call returns
ALREADY_SUBSCRIBED with the same feed, never a second link.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from apps.bot.src.platforms.base import FeedPlatform
from apps.bot.src.platforms.errors import FeedError, UnsupportedUrl, UrlParseError
from apps.bot.src.platforms.registry import PlatformRegistry
from packages.database.models import Feed, Subscriber
from packages.database.repository import Repository
from packages.shared.python.models import ItemSnapshot, SubscriberTarget, SubscriptionEntry

log = logging.getLogger(__name__)


class SubscribeStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_SUBSCRIBED = "already_subscribed"
    UNSUPPORTED_URL = "unsupported_url"
    PLATFORM_ERROR = "platform_error"


class UnsubscribeStatus(str, Enum):
    REMOVED = "removed"
    NOT_SUBSCRIBED = "not_subscribed"
    UNSUPPORTED_URL = "unsupported_url"


@dataclass
class SubscribeResult:
    """Outcome of subscribe()."""
    status: SubscribeStatus
    url: str
    feed: Optional[Feed] = None
    error: Optional[FeedError] = None

    @property
    def ok(self) -> bool:
        return self.status in (SubscribeStatus.SUCCESS, SubscribeStatus.ALREADY_SUBSCRIBED)


@dataclass
class UnsubscribeResult:
    """Outcome of unsubscribe()."""
    status: UnsubscribeStatus
    url: str
    feed: Optional[Feed] = None
    error: Optional[FeedError] = None


@dataclass
class SubscriptionPage:
    """One page of subscriptions as shown to a user."""
    page: int
    pages: int
    total: int
    entries: list[SubscriptionEntry]


class FeedSubscriptionService:
    """Create/find feeds and subscribers and link them."""

    def __init__(self, repository: Repository, registry: PlatformRegistry):
        self.repository = repository
        self.registry = registry

    def _resolve(self, url: str) -> tuple[FeedPlatform, str]:
        """Owning adapter and source id of a URL. Raises UnsupportedUrl/UrlParseError."""
        platform = self.registry.route(url)
        return platform, platform.id_from_url(url)

    # =========================================================================
    # Feeds
    # =========================================================================

    async def get_feed_by_source_url(self, url: str) -> Optional[Feed]:
        """Existing feed for a URL, without touching the network."""
        platform, source_id = self._resolve(url)
        return await self.repository.get_feed_by_source(platform.name(), source_id)

    async def get_or_create_feed(self, url: str) -> Feed:
        """
        Find the feed for a URL, creating it from the platform if needed.

        A newly created feed is seeded with its current latest item so the
        first poll does not announce an old release. Failing to fetch that
        item (e.g. a source with no chapters yet) is not an error.

        Raises:
            UnsupportedUrl / UrlParseError: URL not understood
            FeedError: Platform failed to describe the source
            DatabaseError: Persistence failed
        """
        platform, source_id = self._resolve(url)
        feed = await self.repository.get_feed_by_source(platform.name(), source_id)
        if feed is not None:
            return feed

        source = await platform.fetch_source(source_id)
        candidate = Feed(
            name=source.name,
            description=source.description,
            platform_id=platform.name(),
            source_id=source.id,
            items_id=source.items_id,
            source_url=platform.url_from_id(source.id),
            cover_url=source.cover_url,
            tags=platform.info.tags,
        )
        feed = await self.repository.insert_feed(candidate)
        if feed is not candidate:
            # Someone else created it first
            return feed

        log.info(f"[SUBSCRIPTION] Created feed {feed.id} ({feed.name}) on {feed.platform_id}")
        try:
            latest = await platform.fetch_latest(feed.items_id)
        except FeedError as e:
            log.info(f"[SUBSCRIPTION] No initial item for feed {feed.id}: {e}")
            return feed

        await self.repository.insert_item(feed.id, latest.title, latest.published)
        return feed

    # =========================================================================
    # Subscribers
    # =========================================================================

    async def get_or_create_subscriber(self, target: SubscriberTarget) -> Subscriber:
        return await self.repository.get_or_create_subscriber(target.type.value, target.target_id)

    async def get_subscriber(self, target: SubscriberTarget) -> Optional[Subscriber]:
        return await self.repository.get_subscriber(target.type.value, target.target_id)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(self, url: str, target: SubscriberTarget) -> SubscribeResult:
        """Subscribe a target to the feed behind `url`."""
        try:
            feed = await self.get_or_create_feed(url)
        except (UnsupportedUrl, UrlParseError) as e:
            return SubscribeResult(SubscribeStatus.UNSUPPORTED_URL, url, error=e)
        except FeedError as e:
            log.warning(f"[SUBSCRIPTION] Platform error for {url}: {e}")
            return SubscribeResult(SubscribeStatus.PLATFORM_ERROR, url, error=e)

        subscriber = await self.get_or_create_subscriber(target)
        created = await self.repository.insert_subscription(feed.id, subscriber.id)
        if not created:
            return SubscribeResult(SubscribeStatus.ALREADY_SUBSCRIBED, url, feed=feed)

        log.info(
            f"[SUBSCRIPTION] {target.type.value}:{target.target_id} subscribed to feed {feed.id}"
        )
        return SubscribeResult(SubscribeStatus.SUCCESS, url, feed=feed)

    async def unsubscribe(self, url: str, target: SubscriberTarget) -> UnsubscribeResult:
        """Remove the link between a target and the feed behind `url`."""
        try:
            feed = await self.get_feed_by_source_url(url)
        except (UnsupportedUrl, UrlParseError) as e:
            return UnsubscribeResult(UnsubscribeStatus.UNSUPPORTED_URL, url, error=e)

        subscriber = await self.get_subscriber(target)
        if feed is None or subscriber is None:
            return UnsubscribeResult(UnsubscribeStatus.NOT_SUBSCRIBED, url, feed=feed)

        if not await self.repository.delete_subscription(feed.id, subscriber.id):
            return UnsubscribeResult(UnsubscribeStatus.NOT_SUBSCRIBED, url, feed=feed)

        log.info(
            f"[SUBSCRIPTION] {target.type.value}:{target.target_id} unsubscribed from feed {feed.id}"
        )
        return UnsubscribeResult(UnsubscribeStatus.REMOVED, url, feed=feed)

    async def list_subscriptions(
        self, target: SubscriberTarget, page: int = 1, page_size: int = 10
    ) -> list[SubscriptionEntry]:
        """
        One page of a target's subscriptions, ordered by feed name.

        Args:
            target: Subscriber to list
            page: 1-based page number
            page_size: Entries per page
        """
        subscriber = await self.get_subscriber(target)
        if subscriber is None:
            return []

        page = max(page, 1)
        page_size = max(page_size, 1)
        rows = await self.repository.list_subscriptions(
            subscriber.id, offset=(page - 1) * page_size, limit=page_size
        )
        return [
            SubscriptionEntry(
                feed_id=feed.id,
                name=feed.name,
                platform_id=feed.platform_id,
                source_url=feed.source_url,
                cover_url=feed.cover_url,
                latest=(
                    ItemSnapshot(title=item.description, published=item.published)
                    if item is not None else None
                ),
            )
            for feed, item in rows
        ]

    async def list_page(
        self, target: SubscriberTarget, page: Optional[int] = 1, page_size: int = 10
    ) -> SubscriptionPage:
        """Like list_subscriptions, plus the clamped page number and totals."""
        page = max(page or 1, 1)
        page_size = max(page_size, 1)
        total = await self.get_subscription_count(target)
        entries = await self.list_subscriptions(target, page=page, page_size=page_size)
        return SubscriptionPage(
            page=page,
            pages=(total + page_size - 1) // page_size,
            total=total,
            entries=entries,
        )

    async def get_subscription_count(self, target: SubscriberTarget) -> int:
        subscriber = await self.get_subscriber(target)
        if subscriber is None:
            return 0
        return await self.repository.count_subscriptions(subscriber.id)

    async def search_subscriptions(
        self, target: SubscriberTarget, partial_name: str, limit: int = 25
    ) -> list[Feed]:
        """Subscribed feeds whose name contains `partial_name` (autocomplete)."""
        subscriber = await self.get_subscriber(target)
        if subscriber is None:
            return []
        return await self.repository.search_subscriptions(subscriber.id, partial_name, limit)
