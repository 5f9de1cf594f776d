#!/usr/bin/env python3
"""
Test Rate Limiting functionality.
"""

import sys
import asyncio
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from apps.bot.src.rate_limiter import Quota, TokenBucket


def test_quota_parsing():
    """Test quota strings from settings."""
    print("Testing Quota parsing...")
    print("=" * 50)

    assert Quota.parse("30/minute") == Quota(30, 60.0)
    assert Quota.parse("5/second") == Quota(5, 1.0)
    assert Quota.parse("100/hour") == Quota(100, 3600.0)
    assert Quota.parse(" 10 / 2.5s ") == Quota(10, 2.5)
    print("✓ Valid quotas parsed")

    assert Quota.per_minute(30).rate == 0.5
    assert Quota.per_second(5).rate == 5.0
    print("✓ Rates computed")

    for bad in ("", "fast", "0/second", "5/day", "-1/minute"):
        with pytest.raises(ValueError):
            Quota.parse(bad)
    print("✓ Invalid quotas rejected")
    print()


def test_token_bucket_burst():
    """Test that a full bucket serves a burst without waiting."""
    print("Testing TokenBucket burst...")
    print("=" * 50)

    async def scenario():
        bucket = TokenBucket.from_quota(Quota.per_second(3), name="burst")
        start = time.monotonic()
        for _ in range(3):
            await bucket.until_ready()
        elapsed = time.monotonic() - start

        assert elapsed < 0.1
        assert not bucket.check()
        stats = bucket.get_stats()
        assert stats["acquired"] == 3
        assert stats["waited"] == 0
        print(f"✓ 3 tokens in {elapsed*1000:.1f}ms")

    asyncio.run(scenario())
    print()


def test_token_bucket_waits_when_empty():
    """Test that an empty bucket delays the next caller."""
    print("Testing TokenBucket wait...")
    print("=" * 50)

    async def scenario():
        bucket = TokenBucket(rate=20.0, capacity=1, name="slow")
        await bucket.until_ready()

        start = time.monotonic()
        await bucket.until_ready()
        elapsed = time.monotonic() - start

        assert elapsed >= 0.03, f"Expected to wait ~50ms, waited {elapsed*1000:.1f}ms"
        assert bucket.get_stats()["waited"] == 1
        print(f"✓ Second token after {elapsed*1000:.1f}ms")

    asyncio.run(scenario())
    print()


def test_cancelled_waiter_consumes_no_token():
    """Test that cancelling a waiting caller leaves the bucket intact."""
    print("Testing TokenBucket cancellation...")
    print("=" * 50)

    async def scenario():
        bucket = TokenBucket(rate=1.0, capacity=1, name="cancel")
        await bucket.until_ready()

        waiter = asyncio.create_task(bucket.until_ready())
        await asyncio.sleep(0.05)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert bucket.get_stats()["acquired"] == 1
        assert 0 <= bucket.available_tokens < 1
        print("✓ Cancelled waiter took nothing")

        # Lock was released by the cancelled waiter
        assert not bucket._lock.locked()
        print("✓ Bucket lock released")

    asyncio.run(scenario())
    print()


def test_acquire_more_than_capacity():
    """Test that impossible requests fail fast."""
    print("Testing oversized acquire...")
    print("=" * 50)

    async def scenario():
        bucket = TokenBucket(rate=1.0, capacity=2)
        with pytest.raises(ValueError):
            await bucket.acquire(3)
        print("✓ Oversized acquire rejected")

    asyncio.run(scenario())
    print()


def main():
    """Run all rate limiter tests."""
    print("\n" + "=" * 60)
    print("RATE LIMITER TESTS")
    print("=" * 60 + "\n")

    test_quota_parsing()
    test_token_bucket_burst()
    test_token_bucket_waits_when_empty()
    test_cancelled_waiter_consumes_no_token()
    test_acquire_more_than_capacity()

    print("=" * 60)
    print("✓ All rate limiter tests passed!")
    print("=" * 60)


if __name__ == "__main__":
    main()
