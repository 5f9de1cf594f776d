#!/usr/bin/env python3
"""
Test heartbeat writes and crash recovery of voice sessions.
"""

import sys
import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from apps.bot.src.services.internal_service import MetaKey
from apps.bot.src.voice_heartbeat import VoiceHeartbeat
from tests.fakes import temp_repository


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def test_crash_recovery():
    """Test orphaned sessions are closed at the last heartbeat."""
    print("Testing crash recovery...")
    print("=" * 50)

    async def scenario():
        now = _now()
        async with temp_repository() as repo:
            await repo.open_voice_session(1, 10, 100, now - timedelta(hours=2))
            await repo.set_meta(MetaKey.VOICE_HEARTBEAT, (now - timedelta(minutes=5)).isoformat())

            heartbeat = VoiceHeartbeat(repo)
            closed = await heartbeat.recover_from_crash()

            assert closed == 1
            assert await repo.find_active_sessions() == []
            session = (await repo.get_sessions_in_range(10))[0]
            assert session.leave_time == now - timedelta(minutes=5)
            assert session.duration_seconds == 115 * 60
            print(f"✓ Closed {closed} session at the heartbeat ({session.duration_seconds}s)")

    asyncio.run(scenario())
    print()


def test_recovery_without_heartbeat():
    """Test a clean previous shutdown leaves nothing to recover."""
    print("Testing recovery without heartbeat...")
    print("=" * 50)

    async def scenario():
        async with temp_repository() as repo:
            heartbeat = VoiceHeartbeat(repo)
            assert await heartbeat.read_last_heartbeat() is None
            assert await heartbeat.recover_from_crash() == 0
            print("✓ No heartbeat -> nothing closed")

    asyncio.run(scenario())
    print()


def test_recovery_with_unreadable_heartbeat():
    """Test a corrupt heartbeat falls back to each session's last slide."""
    print("Testing unreadable heartbeat...")
    print("=" * 50)

    async def scenario():
        now = _now()
        async with temp_repository() as repo:
            await repo.open_voice_session(1, 10, 100, now - timedelta(hours=1))
            await repo.touch_active_sessions(now - timedelta(minutes=20))
            await repo.set_meta(MetaKey.VOICE_HEARTBEAT, "yesterday-ish")

            closed = await VoiceHeartbeat(repo).recover_from_crash()
            assert closed == 1
            session = (await repo.get_sessions_in_range(10))[0]
            assert not session.is_active
            assert session.leave_time == now - timedelta(minutes=20)
            print("✓ Closed at last slid leave_time")

    asyncio.run(scenario())
    print()


def test_beat_slides_active_sessions():
    """Test one heartbeat write."""
    print("Testing beat...")
    print("=" * 50)

    async def scenario():
        now = _now()
        async with temp_repository() as repo:
            await repo.open_voice_session(1, 10, 100, now - timedelta(minutes=3))
            await repo.open_voice_session(2, 10, 100, now - timedelta(minutes=2))
            await repo.close_voice_sessions(2, 10, now - timedelta(minutes=1))

            heartbeat = VoiceHeartbeat(repo, clock=lambda: now)
            assert await heartbeat.beat() == 1
            assert await heartbeat.read_last_heartbeat() == now

            active = await repo.find_active_sessions()
            assert [s.user_id for s in active] == [1]
            assert active[0].leave_time == now
            closed = await repo.get_sessions_in_range(10, user_id=2)
            assert closed[0].leave_time == now - timedelta(minutes=1)
            print("✓ Only active sessions slid; heartbeat stored")

    asyncio.run(scenario())
    print()


def test_clean_shutdown():
    """Test clean shutdown closes sessions and drops the heartbeat."""
    print("Testing clean shutdown...")
    print("=" * 50)

    async def scenario():
        now = _now()
        async with temp_repository() as repo:
            await repo.open_voice_session(1, 10, 100, now - timedelta(minutes=3))
            heartbeat = VoiceHeartbeat(repo, clock=lambda: now)
            await heartbeat.beat()

            assert await heartbeat.mark_clean_shutdown() == 1
            assert await repo.find_active_sessions() == []
            assert await repo.get_meta(MetaKey.VOICE_HEARTBEAT) is None
            assert await heartbeat.recover_from_crash() == 0
            print("✓ Sessions closed, next start sees a clean shutdown")

    asyncio.run(scenario())
    print()


def test_background_loop():
    """Test start/stop of the periodic writer."""
    print("Testing heartbeat loop...")
    print("=" * 50)

    async def scenario():
        async with temp_repository() as repo:
            await repo.open_voice_session(1, 10, 100, _now() - timedelta(minutes=1))
            heartbeat = VoiceHeartbeat(repo, interval=0.05)

            heartbeat.start()
            assert heartbeat.running
            await asyncio.sleep(0.15)
            await heartbeat.stop()
            assert not heartbeat.running

            stored = await heartbeat.read_last_heartbeat()
            assert stored is not None
            active = await repo.find_active_sessions()
            assert active[0].leave_time > active[0].join_time
            print(f"✓ Heartbeat written at {stored.isoformat()}")

    asyncio.run(scenario())
    print()


def main():
    """Run all heartbeat tests."""
    print("\n" + "=" * 60)
    print("VOICE HEARTBEAT TESTS")
    print("=" * 60 + "\n")

    test_crash_recovery()
    test_recovery_without_heartbeat()
    test_recovery_with_unreadable_heartbeat()
    test_beat_slides_active_sessions()
    test_clean_shutdown()
    test_background_loop()

    print("=" * 60)
    print("✓ All heartbeat tests passed!")
    print("=" * 60)


if __name__ == "__main__":
    main()
