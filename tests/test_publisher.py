#!/usr/bin/env python3
"""
Test change detection, fan-out and failure isolation of the publisher.
"""

import sys
import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from apps.bot.src.platforms.errors import ApiError
from apps.bot.src.platforms.registry import PlatformRegistry
from apps.bot.src.publisher import FeedPublisher, UpdateDispatcher, is_new_item
from apps.bot.src.services.subscription_service import FeedSubscriptionService
from packages.database.models import FeedItem
from packages.shared.python.models import LatestItem, SubscriberTarget, SubscriberType
from tests.fakes import FakePlatform, RecordingSink, temp_repository

T0 = datetime(2025, 12, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=7)
GUILD = SubscriberTarget(type=SubscriberType.GUILD, target_id="555")
USER = SubscriberTarget(type=SubscriberType.DIRECT, target_id="1001")


def _item(title: str, published: datetime) -> LatestItem:
    return LatestItem(id=title, title=title, published=published)


def _publisher(repo, platform, sink, **kwargs):
    registry = PlatformRegistry([platform])
    publisher = FeedPublisher(repo, registry, UpdateDispatcher(repo, sink), **kwargs)
    return publisher, FeedSubscriptionService(repo, registry)


def test_change_rule():
    """Test when an observed item counts as new."""
    print("Testing change rule...")
    print("=" * 50)

    persisted = FeedItem(feed_id=1, description="5", published=T0)

    assert is_new_item(_item("5", T0), None)
    assert is_new_item(_item("6", T1), persisted)
    assert is_new_item(_item("5", T1), persisted)
    assert is_new_item(_item("5.5", T0), persisted)
    assert not is_new_item(_item("5", T0), persisted)
    assert not is_new_item(_item("4", T0 - timedelta(days=1)), persisted)
    print("✓ Newer or retitled-at-same-time is new; same or older is not")
    print()


def test_publisher_detects_change():
    """Test Chapter 1 -> Chapter 2 produces one event and two rows."""
    print("Testing publisher change detection...")
    print("=" * 50)

    async def scenario():
        platform = FakePlatform()
        url = platform.add_source("series", "Series", latest=_item("Chapter 1", T0))
        sink = RecordingSink()

        async with temp_repository() as repo:
            publisher, subscriptions = _publisher(repo, platform, sink)
            feed = (await subscriptions.subscribe(url, GUILD)).feed

            events = await publisher.tick()
            await publisher.dispatcher.join()
            assert events == []
            assert sink.received == []
            print("✓ Unchanged feed emits nothing")

            platform.latest[feed.items_id] = _item("Chapter 2", T1)
            events = await publisher.tick()
            await publisher.dispatcher.join()

            items = await repo.list_items(feed.id)
            assert [item.description for item in items] == ["Chapter 1", "Chapter 2"]
            assert len(events) == 1
            assert len(sink.received) == 1

            subscriber, event = sink.received[0]
            assert subscriber.target_id == "555"
            assert event.item.title == "Chapter 2"
            assert event.item.published == T1
            assert event.previous_item.title == "Chapter 1"
            assert event.feed_id == feed.id
            assert event.platform_id == "Fake"
            print("✓ One event for Chapter 2, two rows stored")

            await publisher.tick()
            await publisher.dispatcher.join()
            assert len(sink.received) == 1
            print("✓ Repeated observation is not re-announced")

            await publisher.stop()

    asyncio.run(scenario())
    print()


def test_fan_out_and_sink_failures():
    """Test every subscriber is notified even if one delivery fails."""
    print("Testing fan-out...")
    print("=" * 50)

    async def scenario():
        platform = FakePlatform()
        url = platform.add_source("series", "Series", latest=_item("1", T0))
        sink = RecordingSink(fail_for={"555"})

        async with temp_repository() as repo:
            publisher, subscriptions = _publisher(repo, platform, sink)
            feed = (await subscriptions.subscribe(url, GUILD)).feed
            await subscriptions.subscribe(url, USER)

            platform.latest[feed.items_id] = _item("2", T1)
            await publisher.tick()
            await publisher.dispatcher.join()

            assert [s.target_id for s, _ in sink.received] == ["1001"]
            assert publisher.dispatcher.stats == {"delivered": 1, "failed": 1}
            print("✓ Failed delivery logged, other subscriber still notified")

            await publisher.stop()

    asyncio.run(scenario())
    print()


def test_failure_isolation():
    """Test one failing feed does not affect the others."""
    print("Testing failure isolation...")
    print("=" * 50)

    async def scenario():
        platform = FakePlatform()
        good_url = platform.add_source("good", "Good", latest=_item("1", T0))
        bad_url = platform.add_source("bad", "Bad", latest=_item("1", T0))
        sink = RecordingSink()

        async with temp_repository() as repo:
            publisher, subscriptions = _publisher(repo, platform, sink)
            good = (await subscriptions.subscribe(good_url, GUILD)).feed
            bad = (await subscriptions.subscribe(bad_url, GUILD)).feed

            platform.latest[good.items_id] = _item("2", T1)
            platform.latest[bad.items_id] = ApiError("upstream down")

            events = await publisher.tick()
            await publisher.dispatcher.join()

            assert [e.feed_id for e in events] == [good.id]
            assert [e.feed_name for _, e in sink.received] == ["Good"]
            assert len(await repo.list_items(bad.id)) == 1
            print("✓ Failing feed skipped, healthy feed announced")

            await publisher.stop()

    asyncio.run(scenario())
    print()


class BrokenPlatform(FakePlatform):
    """Fails with a non-feed error for the ids in `broken`."""

    def __init__(self):
        super().__init__()
        self.broken = set()

    async def fetch_latest(self, items_id: str) -> LatestItem:
        if items_id in self.broken:
            self.fetch_latest_calls += 1
            raise RuntimeError("adapter bug")
        return await super().fetch_latest(items_id)


def test_unexpected_errors_are_isolated():
    """Test an unexpected exception on one feed spares the rest and the loop."""
    print("Testing unexpected feed errors...")
    print("=" * 50)

    async def scenario():
        platform = BrokenPlatform()
        good_url = platform.add_source("good", "Good", latest=_item("1", T0))
        bad_url = platform.add_source("bad", "Bad", latest=_item("1", T0))
        sink = RecordingSink()

        async with temp_repository() as repo:
            publisher, subscriptions = _publisher(repo, platform, sink, poll_interval=0.05)
            good = (await subscriptions.subscribe(good_url, GUILD)).feed
            bad = (await subscriptions.subscribe(bad_url, GUILD)).feed

            platform.latest[good.items_id] = _item("2", T1)
            platform.broken.add(bad.items_id)

            events = await publisher.tick()
            await publisher.dispatcher.join()
            assert [e.feed_id for e in events] == [good.id]
            assert [e.feed_name for _, e in sink.received] == ["Good"]
            print("✓ Healthy feed announced despite RuntimeError on another")

            calls = platform.fetch_latest_calls
            publisher.start()
            await asyncio.sleep(0.2)
            assert publisher.running
            assert platform.fetch_latest_calls >= calls + 4
            print("✓ Background loop keeps running")

            await publisher.stop()
            assert not publisher.running
            print("✓ Stops cleanly")

    asyncio.run(scenario())
    print()


def test_unsubscribed_feeds_skipped():
    """Test feeds without subscribers are only polled when configured."""
    print("Testing unsubscribed feeds...")
    print("=" * 50)

    async def scenario():
        platform = FakePlatform()
        url = platform.add_source("series", "Series", latest=_item("1", T0))

        async with temp_repository() as repo:
            publisher, subscriptions = _publisher(repo, platform, RecordingSink())
            await subscriptions.subscribe(url, GUILD)
            await subscriptions.unsubscribe(url, GUILD)

            calls = platform.fetch_latest_calls
            await publisher.tick()
            assert platform.fetch_latest_calls == calls
            print("✓ Feed without subscribers not fetched")

            publisher.poll_unsubscribed = True
            await publisher.tick()
            assert platform.fetch_latest_calls == calls + 1
            print("✓ Polled when poll_unsubscribed is set")

            await publisher.stop()

    asyncio.run(scenario())
    print()


def test_start_stop():
    """Test the background loop ticks and stops cleanly."""
    print("Testing publisher lifecycle...")
    print("=" * 50)

    async def scenario():
        platform = FakePlatform()
        url = platform.add_source("series", "Series", latest=_item("1", T0))

        async with temp_repository() as repo:
            publisher, subscriptions = _publisher(repo, platform, RecordingSink(), poll_interval=0.05)
            await subscriptions.subscribe(url, GUILD)
            calls = platform.fetch_latest_calls

            publisher.start()
            assert publisher.running
            await asyncio.sleep(0.2)
            await publisher.stop()

            assert not publisher.running
            assert platform.fetch_latest_calls >= calls + 2
            print(f"✓ {platform.fetch_latest_calls - calls} ticks before stop")

    asyncio.run(scenario())
    print()


def main():
    """Run all publisher tests."""
    print("\n" + "=" * 60)
    print("PUBLISHER TESTS")
    print("=" * 60 + "\n")

    test_change_rule()
    test_publisher_detects_change()
    test_fan_out_and_sink_failures()
    test_failure_isolation()
    test_unexpected_errors_are_isolated()
    test_unsubscribed_feeds_skipped()
    test_start_stop()

    print("=" * 60)
    print("✓ All publisher tests passed!")
    print("=" * 60)


if __name__ == "__main__":
    main()
