"""
Discord Bot - Gateway Layer

Thin shell around the feed and voice engines:
- Slash commands for feed subscriptions and voice leaderboards
- Voice state updates forwarded to the VoiceTracker
- Publisher and heartbeat started/stopped with the bot

CRITICAL PATTERNS:
1. Crash recovery runs before the heartbeat starts writing
2. Deliveries go through Celery; the gateway loop never posts updates itself
3. Shutdown closes open voice sessions and drops the heartbeat
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from apps.bot.src.config import get_bot_settings
from apps.bot.src.notifier import CeleryDeliverySink
from apps.bot.src.platforms.registry import create_default_registry
from apps.bot.src.publisher import FeedPublisher, UpdateDispatcher
from apps.bot.src.services.internal_service import InternalService
from apps.bot.src.services.settings_service import SettingsService
from apps.bot.src.services.subscription_service import (
    FeedSubscriptionService,
    SubscribeStatus,
    UnsubscribeStatus,
)
from apps.bot.src.services.voice_tracking_service import VoiceTrackingService
from apps.bot.src.voice_heartbeat import VoiceHeartbeat
from apps.bot.src.voice_tracker import VoiceTracker
from packages.database.repository import Repository
from packages.shared.python.models import (
    LeaderboardOptions,
    SubscriberTarget,
    SubscriberType,
)

log = logging.getLogger(__name__)

BOT_VERSION = "0.1.0"
PAGE_SIZE = 10


# Bot setup with required intents
intents = discord.Intents.default()
intents.guilds = True
intents.members = True
intents.voice_states = True


class FeedwatchBot(commands.Bot):
    """Discord bot for feed notifications and voice activity tracking."""

    def __init__(self):
        super().__init__(
            command_prefix="!",
            intents=intents,
            help_command=None,
        )
        self.settings = get_bot_settings()
        self.settings.ensure_db_dir()

        self.repository = Repository(self.settings.database_url)
        self.registry = create_default_registry(self.settings)
        self.settings_service = SettingsService(self.repository)
        self.internal = InternalService(self.repository)
        self.subscriptions = FeedSubscriptionService(self.repository, self.registry)
        self.voice = VoiceTrackingService(self.repository, self.settings_service)
        self.tracker = VoiceTracker(self.voice)
        self.heartbeat = VoiceHeartbeat(self.repository, interval=self.settings.heartbeat_interval)
        self.publisher = FeedPublisher(
            self.repository,
            self.registry,
            UpdateDispatcher(self.repository, CeleryDeliverySink(self.settings_service, self.registry)),
            poll_interval=self.settings.poll_interval,
            max_concurrency=self.settings.max_concurrent_fetches,
            poll_unsubscribed=self.settings.poll_unsubscribed_feeds,
        )

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        await self.repository.create_all()
        await self.internal.record_version(BOT_VERSION)
        await self.voice.load_disabled_guilds()
        await self.heartbeat.recover_from_crash()
        self.heartbeat.start()
        self.publisher.start()

        await self.tree.sync()
        log.info(f"Synced {len(self.tree.get_commands())} commands")

    async def on_ready(self) -> None:
        """Called when the bot is fully connected."""
        log.info(f"Logged in as {self.user} (ID: {self.user.id})")
        log.info(f"Connected to {len(self.guilds)} guilds")

        tracked = 0
        for guild in self.guilds:
            for channel in guild.voice_channels:
                for member in channel.members:
                    if member.bot:
                        continue
                    if await self.tracker.track_existing_user(member.id, guild.id, channel.id):
                        tracked += 1
        if tracked:
            log.info(f"[VOICE] Started tracking {tracked} users already in voice")

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if member.bot:
            return
        await self.tracker.handle_state_change(
            member.id,
            member.guild.id,
            before.channel.id if before.channel else None,
            after.channel.id if after.channel else None,
        )

    async def on_error(self, event_method: str, *args, **kwargs) -> None:
        """Handle errors including rate limits gracefully."""
        import sys

        exc_type, exc_value, exc_tb = sys.exc_info()

        if isinstance(exc_value, discord.HTTPException):
            if exc_value.status == 429:
                retry_after = getattr(exc_value, "retry_after", 5)
                log.warning(f"[RATELIMIT] Rate limited in {event_method}, retry after {retry_after}s")
                return
            elif exc_value.status >= 500:
                log.error(f"[ERROR] Discord server error in {event_method}: {exc_value}")
                return

        log.error(f"[ERROR] Exception in {event_method}:", exc_info=(exc_type, exc_value, exc_tb))

    async def close(self) -> None:
        """Stop background work, close voice sessions, release resources."""
        await self.publisher.stop()
        await self.heartbeat.stop()
        await self.heartbeat.mark_clean_shutdown()
        await self.registry.aclose()
        await self.repository.dispose()
        await super().close()


bot = FeedwatchBot()


def _target(interaction: discord.Interaction) -> SubscriberTarget:
    """Guild subscriptions inside a server, personal ones in DMs."""
    if interaction.guild_id is not None:
        return SubscriberTarget(type=SubscriberType.GUILD, target_id=str(interaction.guild_id))
    return SubscriberTarget(type=SubscriberType.DIRECT, target_id=str(interaction.user.id))


# =============================================================================
# FEED COMMANDS
# =============================================================================

feed_group = app_commands.Group(name="feed", description="Manage feed subscriptions")


@feed_group.command(name="subscribe", description="Subscribe to a series by URL")
@app_commands.describe(url="AniList, MangaDex or Comick URL")
async def feed_subscribe(interaction: discord.Interaction, url: str) -> None:
    await interaction.response.defer(ephemeral=True, thinking=True)

    result = await bot.subscriptions.subscribe(url, _target(interaction))
    if result.status == SubscribeStatus.SUCCESS:
        message = f"✅ Subscribed to **{result.feed.name}**"
    elif result.status == SubscribeStatus.ALREADY_SUBSCRIBED:
        message = f"ℹ️ Already subscribed to **{result.feed.name}**"
    elif result.status == SubscribeStatus.UNSUPPORTED_URL:
        message = f"❌ Unsupported URL: {url}"
    else:
        message = f"❌ Could not fetch this series: {result.error}"

    await interaction.followup.send(message, ephemeral=True)


@feed_group.command(name="unsubscribe", description="Unsubscribe from a series")
@app_commands.describe(url="URL of a subscribed series")
async def feed_unsubscribe(interaction: discord.Interaction, url: str) -> None:
    await interaction.response.defer(ephemeral=True)

    result = await bot.subscriptions.unsubscribe(url, _target(interaction))
    if result.status == UnsubscribeStatus.REMOVED:
        message = f"✅ Unsubscribed from **{result.feed.name}**"
    elif result.status == UnsubscribeStatus.NOT_SUBSCRIBED:
        message = "ℹ️ Not subscribed to this series"
    else:
        message = f"❌ Unsupported URL: {url}"

    await interaction.followup.send(message, ephemeral=True)


@feed_unsubscribe.autocomplete("url")
async def feed_unsubscribe_autocomplete(
    interaction: discord.Interaction, current: str
) -> list[app_commands.Choice[str]]:
    feeds = await bot.subscriptions.search_subscriptions(_target(interaction), current)
    return [app_commands.Choice(name=feed.name[:100], value=feed.source_url) for feed in feeds]


@feed_group.command(name="list", description="List subscribed series")
@app_commands.describe(page="Page number (default: 1)")
async def feed_list(interaction: discord.Interaction, page: Optional[int] = 1) -> None:
    await interaction.response.defer(ephemeral=True)

    listing = await bot.subscriptions.list_page(_target(interaction), page=page, page_size=PAGE_SIZE)
    if not listing.entries:
        await interaction.followup.send("No subscriptions on this page.", ephemeral=True)
        return

    lines = []
    for entry in listing.entries:
        latest = (
            f"{entry.latest.title} (<t:{int(entry.latest.published.timestamp())}:R>)"
            if entry.latest else "nothing yet"
        )
        lines.append(f"**[{entry.name}]({entry.source_url})** · {entry.platform_id} · {latest}")

    embed = discord.Embed(
        title="Subscriptions",
        description="\n".join(lines),
        color=discord.Color.blue(),
    )
    embed.set_footer(text=f"Page {listing.page}/{listing.pages} · {listing.total} total")
    await interaction.followup.send(embed=embed, ephemeral=True)


@feed_group.command(name="channel", description="Set the channel for feed updates (Admin only)")
@app_commands.describe(channel="Channel that receives feed updates")
@app_commands.checks.has_permissions(administrator=True)
async def feed_channel(interaction: discord.Interaction, channel: discord.TextChannel) -> None:
    await interaction.response.defer(ephemeral=True)

    settings = await bot.settings_service.get(interaction.guild_id)
    settings.feeds.channel_id = str(channel.id)
    await bot.settings_service.update(interaction.guild_id, settings)
    await interaction.followup.send(f"Feed updates will be posted in {channel.mention}", ephemeral=True)


bot.tree.add_command(feed_group)


# =============================================================================
# VOICE COMMANDS
# =============================================================================

voice_group = app_commands.Group(name="voice", description="Voice activity", guild_only=True)


def _format_duration(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    return f"{hours}h {rest // 60:02d}m"


@voice_group.command(name="leaderboard", description="Top voice users")
@app_commands.describe(days="Days to look back (default: all time)", page="Page number")
@app_commands.checks.cooldown(1, 10.0, key=lambda i: (i.guild_id, i.user.id))
async def voice_leaderboard(
    interaction: discord.Interaction,
    days: Optional[app_commands.Range[int, 1, 365]] = None,
    page: Optional[app_commands.Range[int, 1, 100]] = 1,
) -> None:
    await interaction.response.defer(thinking=True)

    now = datetime.now(timezone.utc)
    page = page or 1
    options = LeaderboardOptions(
        guild_id=interaction.guild_id,
        since=now - timedelta(days=days) if days else None,
        until=now,
        offset=(page - 1) * PAGE_SIZE,
        limit=PAGE_SIZE,
    )
    entries = await bot.voice.get_leaderboard(options)
    if not entries:
        await interaction.followup.send("No voice activity recorded yet.")
        return

    lines = [
        f"**{options.offset + rank}.** <@{entry.user_id}> · {_format_duration(entry.total_seconds)}"
        for rank, entry in enumerate(entries, start=1)
    ]
    embed = discord.Embed(
        title=f"🎙️ {interaction.guild.name} Voice Leaderboard",
        description="\n".join(lines),
        color=discord.Color.green(),
    )
    await interaction.followup.send(embed=embed)


@voice_group.command(name="tracking", description="Enable or disable voice tracking (Admin only)")
@app_commands.describe(enabled="Track voice activity in this server")
@app_commands.checks.has_permissions(administrator=True)
async def voice_tracking(interaction: discord.Interaction, enabled: bool) -> None:
    await interaction.response.defer(ephemeral=True)

    settings = await bot.settings_service.get(interaction.guild_id)
    settings.voice.enabled = enabled
    await bot.settings_service.update(interaction.guild_id, settings)
    status_text = "✅ **Enabled**" if enabled else "❌ **Disabled**"
    await interaction.followup.send(f"Voice tracking: {status_text}", ephemeral=True)


bot.tree.add_command(voice_group)


# =============================================================================
# APP COMMAND ERROR HANDLER
# =============================================================================

@bot.tree.error
async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    """Handle slash command errors including cooldowns."""
    if isinstance(error, app_commands.CommandOnCooldown):
        message = f"⏰ Please wait **{error.retry_after:.0f}s** before using this command again."
    elif isinstance(error, app_commands.MissingPermissions):
        message = "❌ You don't have permission to use this command."
    else:
        log.error(f"[ERROR] App command error: {error}")
        message = f"❌ An error occurred: {str(error)[:100]}"

    if interaction.response.is_done():
        await interaction.followup.send(message, ephemeral=True)
    else:
        await interaction.response.send_message(message, ephemeral=True)


# =============================================================================
# ENTRY POINT
# =============================================================================

def main() -> None:
    """Run the bot."""
    settings = get_bot_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
