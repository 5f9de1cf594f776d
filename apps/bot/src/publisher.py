"""
Series Feed Publisher

Periodic poller: each tick fetches the latest item of every feed, compares
it with the newest persisted FeedItem and, on change, stores the new item
and emits a FeedUpdateEvent.

Change rule (observed vs persisted latest):
- nothing persisted yet                                  -> update
- observed.published >  persisted.published              -> update
- observed.title != persisted.title and published >=     -> update
- otherwise                                              -> unchanged

Delivery is handed to an UpdateDispatcher and never awaited by the tick.
The dispatcher drains one queue in order, so consumers see the events of
a feed in publish order.

CONSTRAINT: a failure on one feed never affects another feed.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional, Protocol

from apps.bot.src.platforms.errors import FeedError
from apps.bot.src.platforms.registry import PlatformRegistry
from packages.database.models import Feed, FeedItem, Subscriber
from packages.database.repository import DatabaseError, Repository
from packages.shared.python.models import FeedUpdateEvent, ItemSnapshot, LatestItem

log = logging.getLogger(__name__)


class FeedUpdateSink(Protocol):
    """Delivery target for feed updates. Owns its own retry policy."""

    async def notify(self, subscriber: Subscriber, event: FeedUpdateEvent) -> None: ...


class PollOutcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


def is_new_item(observed: LatestItem, persisted: Optional[FeedItem]) -> bool:
    """Whether `observed` must be stored as a new FeedItem."""
    if persisted is None:
        return True
    if observed.published > persisted.published:
        return True
    return observed.title != persisted.description and observed.published >= persisted.published


# =============================================================================
# Dispatcher
# =============================================================================

class UpdateDispatcher:
    """
    Ordered, non-blocking hand-off from the publisher to a sink.

    publish() only enqueues. A single worker fans each event out to every
    subscriber of its feed; failures are logged and not retried here.
    """

    def __init__(self, repository: Repository, sink: FeedUpdateSink):
        self.repository = repository
        self.sink = sink
        self._queue: asyncio.Queue[FeedUpdateEvent] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self.stats = {"delivered": 0, "failed": 0}

    def publish(self, event: FeedUpdateEvent) -> None:
        self._queue.put_nowait(event)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name="feed-update-dispatcher")

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: FeedUpdateEvent) -> None:
        try:
            subscribers = await self.repository.list_subscribers_for_feed(event.feed_id)
        except DatabaseError as e:
            log.error(f"[DELIVERY] Could not load subscribers of feed {event.feed_id}: {e}")
            self.stats["failed"] += 1
            return

        for subscriber in subscribers:
            try:
                await self.sink.notify(subscriber, event)
                self.stats["delivered"] += 1
            except Exception as e:
                self.stats["failed"] += 1
                log.error(
                    f"[DELIVERY] Error handling subscriber id `{subscriber.id}` "
                    f"target `{subscriber.target_id}`: {e}"
                )

    async def join(self) -> None:
        """Wait until every published event has been handed to the sink."""
        await self._queue.join()

    async def stop(self) -> None:
        """Drain pending events, then stop the worker."""
        if self._worker is None:
            return
        await self.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None


# =============================================================================
# Publisher
# =============================================================================

class FeedPublisher:
    """Scheduled change detection over all feeds."""

    def __init__(
        self,
        repository: Repository,
        registry: PlatformRegistry,
        dispatcher: UpdateDispatcher,
        poll_interval: float = 300.0,
        max_concurrency: Optional[int] = None,
        poll_unsubscribed: bool = False,
        tag: Optional[str] = "series",
    ):
        self.repository = repository
        self.registry = registry
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval
        self.max_concurrency = max_concurrency or max(len(registry) * 2, 1)
        self.poll_unsubscribed = poll_unsubscribed
        self.tag = tag
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _feeds_to_poll(self) -> list[Feed]:
        if self.poll_unsubscribed:
            return await self.repository.list_feeds(self.tag)
        return await self.repository.list_feeds_with_subscribers(self.tag)

    async def tick(self) -> list[FeedUpdateEvent]:
        """
        One polling pass over every feed.

        Returns:
            Events emitted during this pass
        """
        feeds = await self._feeds_to_poll()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        events: list[FeedUpdateEvent] = []

        async def poll(feed: Feed) -> PollOutcome:
            async with semaphore:
                try:
                    outcome, event = await self.check_feed_update(feed)
                except Exception as e:
                    log.exception(f"[ERROR] Unexpected error on feed id `{feed.id}` ({feed.name}): {e}")
                    return PollOutcome.FAILED
            if event is not None:
                events.append(event)
            return outcome

        outcomes = await asyncio.gather(*(poll(feed) for feed in feeds))
        log.info(
            f"[PUBLISHER] Checked {len(feeds)} feeds: "
            f"{outcomes.count(PollOutcome.UPDATED)} updated, "
            f"{outcomes.count(PollOutcome.FAILED)} failed"
        )
        return events

    async def check_feed_update(self, feed: Feed) -> tuple[PollOutcome, Optional[FeedUpdateEvent]]:
        """Fetch, compare and (on change) persist + emit for one feed."""
        platform = self.registry.get(feed.platform_id)
        if platform is None:
            log.warning(f"[PUBLISHER] No platform `{feed.platform_id}` for feed id `{feed.id}`")
            return PollOutcome.FAILED, None

        try:
            observed = await platform.fetch_latest(feed.items_id)
        except FeedError as e:
            log.warning(f"[PUBLISHER] Failed to check feed id `{feed.id}` ({feed.name}): {e}")
            return PollOutcome.FAILED, None

        try:
            persisted = await self.repository.get_latest_item(feed.id)
            if not is_new_item(observed, persisted):
                return PollOutcome.UNCHANGED, None
            await self.repository.insert_item(feed.id, observed.title, observed.published)
        except DatabaseError as e:
            log.error(f"[ERROR] Database error on feed id `{feed.id}`: {e}")
            return PollOutcome.FAILED, None

        log.info(
            f"New version found for feed id `{feed.id}` ({feed.name}): "
            f"{persisted.description if persisted else 'none'} -> {observed.title}"
        )
        event = FeedUpdateEvent(
            feed_id=feed.id,
            feed_name=feed.name,
            source_url=feed.source_url,
            cover_url=feed.cover_url,
            item=ItemSnapshot(title=observed.title, published=observed.published),
            previous_item=(
                ItemSnapshot(title=persisted.description, published=persisted.published)
                if persisted is not None else None
            ),
            platform_id=feed.platform_id,
            feed_description=feed.description,
        )
        self.dispatcher.publish(event)
        return PollOutcome.UPDATED, event

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="feed-publisher")
        log.info(f"[PUBLISHER] Started (interval: {self.poll_interval}s, concurrency: {self.max_concurrency})")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.tick()
            except Exception as e:
                log.exception(f"[ERROR] Publisher tick failed: {e}")
            await asyncio.sleep(max(self.poll_interval - (loop.time() - started), 0))

    async def stop(self) -> None:
        """Abort the current tick, then flush pending deliveries."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.error(f"[ERROR] Publisher loop had stopped with an error: {e}")
            self._task = None
        await self.dispatcher.stop()
        log.info("[PUBLISHER] Stopped")
