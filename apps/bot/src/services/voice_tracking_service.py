"""
Voice tracking service.

Owns the voice-session rows (through the Repository) and the process-wide
set of guilds with voice tracking disabled. Aggregations (leaderboards,
daily activity, guild statistics) are computed in memory from the closed
sessions that overlap the requested window.

INVARIANT: a single session never contributes more than MAX_SESSION_SECONDS.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from apps.bot.src.services.settings_service import SettingsService
from packages.database.models import VoiceSession
from packages.database.repository import Repository
from packages.shared.python.models import (
    DailyActivity,
    GuildDailyStat,
    GuildStatType,
    LeaderboardEntry,
    LeaderboardOptions,
    ServerSettings,
)

log = logging.getLogger(__name__)


# Bounds abandoned sessions that survived recovery
MAX_SESSION_SECONDS = 86_400


def _clipped_seconds(
    session: VoiceSession,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> float:
    """Seconds of `session` inside [since, until], capped per session."""
    start = session.join_time if since is None else max(session.join_time, since)
    end = session.leave_time if until is None else min(session.leave_time, until)
    seconds = (end - start).total_seconds()
    return min(max(seconds, 0.0), MAX_SESSION_SECONDS)


def _overlap_seconds(a: VoiceSession, b: VoiceSession) -> float:
    start = max(a.join_time, b.join_time)
    end = min(a.leave_time, b.leave_time)
    return max((end - start).total_seconds(), 0.0)


def _utc_days(since: datetime, until: datetime) -> list[date]:
    day = since.astimezone(timezone.utc).date()
    last = until.astimezone(timezone.utc).date()
    days = []
    while day <= last:
        days.append(day)
        day += timedelta(days=1)
    return days


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class VoiceTrackingService:
    """Voice sessions, tracking gate and voice statistics."""

    def __init__(self, repository: Repository, settings: SettingsService):
        self.repository = repository
        self.settings = settings
        self._disabled_guilds: set[int] = set()
        # Writers only; reads are single synchronous lookups on the event loop
        self._cache_lock = asyncio.Lock()
        settings.add_listener(self._on_settings_changed)

    # =========================================================================
    # Tracking gate
    # =========================================================================

    async def load_disabled_guilds(self) -> int:
        """Seed the disabled-guild cache from every stored settings row."""
        all_settings = await self.settings.list_all()
        async with self._cache_lock:
            self._disabled_guilds = {
                guild_id
                for guild_id, settings in all_settings.items()
                if not settings.voice_tracking_enabled
            }
            count = len(self._disabled_guilds)
        log.info(f"[VOICE] Voice tracking disabled in {count} guild(s)")
        return count

    def is_enabled(self, guild_id: int) -> bool:
        """Voice tracking is on unless the guild explicitly disabled it."""
        return guild_id not in self._disabled_guilds

    async def _on_settings_changed(self, guild_id: int, settings: ServerSettings) -> None:
        async with self._cache_lock:
            if settings.voice_tracking_enabled:
                self._disabled_guilds.discard(guild_id)
            else:
                self._disabled_guilds.add(guild_id)

    async def get_server_settings(self, guild_id: int) -> ServerSettings:
        return await self.settings.get(guild_id)

    async def update_server_settings(self, guild_id: int, settings: ServerSettings) -> None:
        await self.settings.update(guild_id, settings)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def start_session(
        self, user_id: int, guild_id: int, channel_id: int, join_time: datetime
    ) -> VoiceSession:
        return await self.repository.open_voice_session(user_id, guild_id, channel_id, join_time)

    async def end_sessions(
        self,
        user_id: int,
        guild_id: int,
        leave_time: datetime,
        channel_id: Optional[int] = None,
    ) -> int:
        return await self.repository.close_voice_sessions(
            user_id, guild_id, leave_time, channel_id=channel_id
        )

    async def find_active_sessions(
        self,
        user_id: Optional[int] = None,
        guild_id: Optional[int] = None,
        channel_id: Optional[int] = None,
    ) -> list[VoiceSession]:
        return await self.repository.find_active_sessions(user_id, guild_id, channel_id)

    async def update_session_leave_time(self, session_id: int, leave_time: datetime) -> bool:
        return await self.repository.update_session_leave_time(session_id, leave_time)

    async def get_sessions_in_range(
        self,
        guild_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        user_id: Optional[int] = None,
    ) -> list[VoiceSession]:
        return await self.repository.get_sessions_in_range(guild_id, since, until, user_id=user_id)

    # =========================================================================
    # Leaderboards
    # =========================================================================

    async def get_leaderboard(self, options: LeaderboardOptions) -> list[LeaderboardEntry]:
        """
        Total closed voice time per user, highest first.

        Sessions are clipped to [since, until]; active sessions count 0.
        """
        sessions = await self.repository.get_sessions_in_range(
            options.guild_id, options.since, options.until, closed_only=True
        )
        totals: dict[int, float] = defaultdict(float)
        for session in sessions:
            totals[session.user_id] += _clipped_seconds(session, options.since, options.until)

        return self._page(totals, options)

    async def get_partner_leaderboard(
        self, options: LeaderboardOptions, target_user_id: int
    ) -> list[LeaderboardEntry]:
        """Time other users spent in the same channel as `target_user_id`."""
        sessions = await self.repository.get_sessions_in_range(
            options.guild_id, options.since, options.until, closed_only=True
        )
        by_channel: dict[int, list[VoiceSession]] = defaultdict(list)
        for session in sessions:
            by_channel[session.channel_id].append(session)

        totals: dict[int, float] = defaultdict(float)
        for channel_sessions in by_channel.values():
            mine = [s for s in channel_sessions if s.user_id == target_user_id]
            others = [s for s in channel_sessions if s.user_id != target_user_id]
            for own in mine:
                for other in others:
                    shared = _overlap_seconds(own, other)
                    if shared > 0:
                        totals[other.user_id] += min(shared, MAX_SESSION_SECONDS)

        return self._page(totals, options)

    @staticmethod
    def _page(totals: dict[int, float], options: LeaderboardOptions) -> list[LeaderboardEntry]:
        ranked = sorted(
            (LeaderboardEntry(user_id=user_id, total_seconds=round(seconds))
             for user_id, seconds in totals.items() if seconds > 0),
            key=lambda entry: (-entry.total_seconds, entry.user_id),
        )
        return ranked[options.offset:options.offset + options.limit]

    # =========================================================================
    # Daily statistics
    # =========================================================================

    async def get_user_daily_activity(
        self, user_id: int, guild_id: int, since: datetime, until: datetime
    ) -> list[DailyActivity]:
        """Voice seconds of one user per UTC day in [since, until]."""
        sessions = await self.repository.get_sessions_in_range(
            guild_id, since, until, user_id=user_id, closed_only=True
        )
        activity = []
        for day in _utc_days(since, until):
            day_start, day_end = _day_bounds(day)
            seconds = sum(
                _clipped_seconds(s, max(day_start, since), min(day_end, until)) for s in sessions
            )
            activity.append(DailyActivity(day=day, total_seconds=round(seconds)))
        return activity

    async def get_guild_daily_stats(
        self,
        guild_id: int,
        since: datetime,
        until: datetime,
        stat_type: GuildStatType,
    ) -> list[GuildDailyStat]:
        """One guild-wide statistic per UTC day in [since, until]."""
        sessions = await self.repository.get_sessions_in_range(
            guild_id, since, until, closed_only=True
        )
        stats = []
        for day in _utc_days(since, until):
            day_start, day_end = _day_bounds(day)
            per_user: dict[int, float] = defaultdict(float)
            for session in sessions:
                seconds = _clipped_seconds(session, max(day_start, since), min(day_end, until))
                if seconds > 0:
                    per_user[session.user_id] += seconds

            total = sum(per_user.values())
            if stat_type == GuildStatType.TOTAL_TIME:
                value = total
            elif stat_type == GuildStatType.ACTIVE_USER_COUNT:
                value = float(len(per_user))
            else:
                value = total / len(per_user) if per_user else 0.0
            stats.append(GuildDailyStat(day=day, value=value))
        return stats
