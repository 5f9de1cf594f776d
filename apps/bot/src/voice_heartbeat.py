"""
Voice Heartbeat - crash recovery for voice sessions.

Two jobs:
1. Liveness writer: every `interval` seconds slide leave_time of every
   active session to now, then store now (RFC-3339) under BotMeta
   "voice_heartbeat". A hard kill therefore loses at most one interval.
2. Startup reconciliation: if a heartbeat is stored, close every session
   left active by the previous process at that heartbeat.

INVARIANT: if a heartbeat is stored, no session is active after recover_from_crash().
CONSTRAINT: stop() lets an in-flight write finish; it never cancels one.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from apps.bot.src.services.internal_service import MetaKey
from packages.database.repository import Repository

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VoiceHeartbeat:
    """Periodic liveness writer and crash reconciler."""

    def __init__(
        self,
        repository: Repository,
        interval: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def read_last_heartbeat(self) -> Optional[datetime]:
        """
        Stored heartbeat, or None if there is none.

        Raises:
            ValueError: The stored value is not an RFC-3339 timestamp
        """
        value = await self.repository.get_meta(MetaKey.VOICE_HEARTBEAT)
        if value is None:
            return None
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            raise ValueError(f"Heartbeat without timezone: {value}")
        return parsed.astimezone(timezone.utc)

    async def beat(self, now: Optional[datetime] = None) -> int:
        """One liveness write. Returns the number of sessions touched."""
        now = now or self._clock()
        touched = await self.repository.touch_active_sessions(now)
        await self.repository.set_meta(MetaKey.VOICE_HEARTBEAT, now.isoformat())
        if touched:
            log.debug(f"[HEARTBEAT] Updated {touched} active voice sessions")
        return touched

    async def recover_from_crash(self) -> int:
        """
        Close sessions stranded by the previous process.

        Returns:
            Number of sessions closed
        """
        try:
            last_heartbeat = await self.read_last_heartbeat()
        except ValueError as e:
            # Sessions still carry their last slid leave_time; close them there
            log.warning(f"[HEARTBEAT] Unreadable heartbeat ({e}); closing sessions at last leave_time")
            closed = await self.repository.close_all_active_sessions(None)
            log.info(f"Crash recovery complete: closed {closed} orphaned sessions")
            return closed

        if last_heartbeat is None:
            log.info("No previous heartbeat found, assuming clean shutdown")
            return 0

        log.info(f"Recovering from potential crash. Last heartbeat was at {last_heartbeat.isoformat()}")
        closed = await self.repository.close_all_active_sessions(last_heartbeat)
        log.info(f"Crash recovery complete: closed {closed} orphaned sessions")
        return closed

    async def mark_clean_shutdown(self, now: Optional[datetime] = None) -> int:
        """Close active sessions at now and drop the heartbeat."""
        now = now or self._clock()
        closed = await self.repository.close_all_active_sessions(now)
        await self.repository.delete_meta(MetaKey.VOICE_HEARTBEAT)
        log.info(f"[HEARTBEAT] Clean shutdown: closed {closed} active sessions")
        return closed

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="voice-heartbeat")
        log.info(f"Voice session heartbeat started (interval: {self.interval}s)")

    async def stop(self) -> None:
        """Stop after the current write, if any, completes."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.beat()
            except Exception as e:
                log.error(f"[ERROR] Heartbeat failed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
