"""
Voice Tracker - turns voice presence events into sessions.

Transitions:
- join(u, g, c, t):           open an active session on c
- move(u, g, c_old -> c, t):  close u's active sessions in g at t, open one on c
- leave(u, g, c, t):          close u's active session on c at t

Events for guilds with voice tracking disabled are dropped. Same-channel
updates (mute, deafen, stream) never reach here as events.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apps.bot.src.services.voice_tracking_service import VoiceTrackingService
from packages.shared.python.models import VoiceEvent, VoiceEventKind

log = logging.getLogger(__name__)


def classify_voice_change(
    before_channel_id: Optional[int],
    after_channel_id: Optional[int],
) -> Optional[VoiceEventKind]:
    """Kind of a raw voice state update, or None if the channel did not change."""
    if before_channel_id is None and after_channel_id is not None:
        return VoiceEventKind.JOIN
    if before_channel_id is not None and after_channel_id is None:
        return VoiceEventKind.LEAVE
    if before_channel_id is not None and before_channel_id != after_channel_id:
        return VoiceEventKind.MOVE
    return None


class VoiceTracker:
    """Consumes VoiceEvents and maintains VoiceSession rows."""

    def __init__(self, service: VoiceTrackingService):
        self.service = service

    async def handle_state_change(
        self,
        user_id: int,
        guild_id: int,
        before_channel_id: Optional[int],
        after_channel_id: Optional[int],
        timestamp: Optional[datetime] = None,
    ) -> Optional[VoiceEvent]:
        """
        Translate a raw before/after voice state into an event and apply it.

        Returns:
            The applied event, or None for same-channel updates
        """
        kind = classify_voice_change(before_channel_id, after_channel_id)
        if kind is None:
            return None

        event = VoiceEvent(
            kind=kind,
            user_id=user_id,
            guild_id=guild_id,
            channel_id=after_channel_id if kind != VoiceEventKind.LEAVE else before_channel_id,
            previous_channel_id=before_channel_id if kind == VoiceEventKind.MOVE else None,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        await self.voice_event(event)
        return event

    async def voice_event(self, event: VoiceEvent) -> None:
        """Apply one voice presence event."""
        if not self.service.is_enabled(event.guild_id):
            log.debug(f"[VOICE] Tracking disabled for guild {event.guild_id}, ignoring {event.kind.value}")
            return

        if event.kind == VoiceEventKind.JOIN:
            await self._handle_join(event)
        elif event.kind == VoiceEventKind.MOVE:
            await self._handle_move(event)
        else:
            await self._handle_leave(event)

    async def _handle_join(self, event: VoiceEvent) -> None:
        if event.channel_id is None:
            log.warning(f"[VOICE] Join without channel for user {event.user_id}, ignoring")
            return
        log.debug(f"[VOICE] User {event.user_id} joined voice channel {event.channel_id}")
        await self.service.start_session(
            event.user_id, event.guild_id, event.channel_id, event.timestamp
        )

    async def _handle_move(self, event: VoiceEvent) -> None:
        if event.channel_id is None or event.channel_id == event.previous_channel_id:
            return
        log.debug(
            f"[VOICE] User {event.user_id} moved from voice channel "
            f"{event.previous_channel_id} to {event.channel_id}"
        )
        await self.service.end_sessions(event.user_id, event.guild_id, event.timestamp)
        await self.service.start_session(
            event.user_id, event.guild_id, event.channel_id, event.timestamp
        )

    async def _handle_leave(self, event: VoiceEvent) -> None:
        log.debug(f"[VOICE] User {event.user_id} left voice channel {event.channel_id}")
        closed = await self.service.end_sessions(
            event.user_id, event.guild_id, event.timestamp, channel_id=event.channel_id
        )
        if not closed:
            log.debug(f"[VOICE] No active session to close for user {event.user_id}")

    async def track_existing_user(
        self,
        user_id: int,
        guild_id: int,
        channel_id: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Start tracking a user found in voice when the bot connects.

        Returns:
            True if a session was opened, False if one was already active
            or tracking is disabled for the guild
        """
        if not self.service.is_enabled(guild_id):
            return False
        active = await self.service.find_active_sessions(user_id=user_id, channel_id=channel_id)
        if active:
            return False
        await self.service.start_session(
            user_id, guild_id, channel_id, now or datetime.now(timezone.utc)
        )
        log.debug(
            f"[VOICE] Started tracking existing user {user_id} in voice channel "
            f"{channel_id} (guild {guild_id})"
        )
        return True
