"""
Feed update notifier.

CeleryDeliverySink resolves where a subscriber wants its updates and
pushes a FeedDeliveryPayload to the `deliver_feed_update` task. The bot
process never talks to Discord for deliveries; workers do, with retries.

- Guild subscriber: channel from the guild's feed settings (skipped if unset)
- Direct subscriber: DM to target_id
"""

import logging
from typing import Any, Optional

from apps.bot.src.platforms.registry import PlatformRegistry
from apps.bot.src.services.settings_service import SettingsService
from packages.database.models import Subscriber
from packages.shared.python.models import (
    FeedDeliveryPayload,
    FeedUpdateEvent,
    SubscriberType,
)

log = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500


class CeleryDeliverySink:
    """FeedUpdateSink that enqueues one delivery task per subscriber."""

    def __init__(
        self,
        settings: SettingsService,
        registry: PlatformRegistry,
        task: Optional[Any] = None,
    ):
        if task is None:
            from apps.bot.src.tasks import deliver_feed_update
            task = deliver_feed_update
        self.settings = settings
        self.registry = registry
        self.task = task

    async def build_payload(
        self, subscriber: Subscriber, event: FeedUpdateEvent
    ) -> Optional[FeedDeliveryPayload]:
        """Delivery payload, or None when the subscriber has nowhere to deliver."""
        channel_id = recipient_id = None
        if subscriber.type == SubscriberType.GUILD.value:
            guild_settings = await self.settings.get(int(subscriber.target_id))
            channel_id = guild_settings.feeds.channel_id
            if channel_id is None:
                log.warning(
                    f"[DELIVERY] Guild {subscriber.target_id} has no feed channel configured, skipping"
                )
                return None
        else:
            recipient_id = subscriber.target_id

        payload = FeedDeliveryPayload(
            event=event,
            subscriber_id=subscriber.id,
            channel_id=channel_id,
            recipient_id=recipient_id,
        )
        platform = self.registry.get(event.platform_id)
        if platform is not None:
            payload.feed_item_name = platform.info.feed_item_name
            payload.platform_name = platform.info.name
            payload.logo_url = platform.info.logo_url or None
            payload.copyright_notice = platform.info.copyright_notice
        return payload

    async def notify(self, subscriber: Subscriber, event: FeedUpdateEvent) -> None:
        payload = await self.build_payload(subscriber, event)
        if payload is None:
            return
        self.task.delay(payload.model_dump(mode="json"))
        log.debug(f"[DELIVERY] Queued feed {event.feed_id} update for subscriber {subscriber.id}")


# =============================================================================
# Message rendering
# =============================================================================

def _quote_description(description: str) -> str:
    if not description.strip():
        return "> No description."
    text = description.strip().replace("\n\n", "\n").replace("\n", "\n> \n> ")
    text = "> " + text
    if len(text) > MAX_DESCRIPTION_LENGTH:
        text = text[:MAX_DESCRIPTION_LENGTH].rstrip("\n") + "\n> ..."
    return text


def build_feed_update_message(payload: FeedDeliveryPayload) -> dict:
    """Discord message body (embed) announcing a feed update."""
    event = payload.event
    item_name = payload.feed_item_name

    if event.previous_item is None:
        old_section = f"**No previous {item_name} **"
    else:
        old_section = (
            f"**Old {item_name}**: {event.previous_item.title}\n"
            f"Published on <t:{int(event.previous_item.published.timestamp())}>"
        )

    description = "\n\n".join([
        _quote_description(event.feed_description),
        old_section,
        f"**New {item_name}**: {event.item.title}\n"
        f"Published on <t:{int(event.item.published.timestamp())}>",
        f"**[Open in browser ↗]({event.source_url})**",
    ])

    embed: dict[str, Any] = {
        "title": event.feed_name,
        "url": event.source_url,
        "description": description,
    }
    if event.cover_url:
        embed["image"] = {"url": event.cover_url}
    if payload.logo_url:
        embed["thumbnail"] = {"url": payload.logo_url}
    if payload.copyright_notice:
        embed["footer"] = {"text": payload.copyright_notice}

    return {"embeds": [embed]}
