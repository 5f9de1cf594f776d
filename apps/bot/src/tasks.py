"""
Celery Tasks for Feed Delivery

The publisher never waits on Discord: each (subscriber, update) pair is
pushed to `deliver_feed_update`, and workers post it through the Discord
REST API.

Retry policy:
- 429 Too Many Requests: retried after the server's Retry-After
- 5xx / transport errors: exponential backoff, at most 5 retries
- other 4xx (missing access, unknown channel): not retried

Permanently failed tasks land in the "dead_letter" Redis list.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from celery.signals import task_failure

from apps.bot.src.celery_config import celery_app
from apps.bot.src.config import get_bot_settings
from apps.bot.src.notifier import build_feed_update_message
from packages.shared.python.models import FeedDeliveryPayload

log = logging.getLogger(__name__)

# Dead letter queue name
DEAD_LETTER_QUEUE = "dead_letter"


class DiscordRateLimited(Exception):
    """Discord answered 429."""

    def __init__(self, retry_after: float):
        super().__init__(f"Rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


class DeliveryRejected(Exception):
    """Discord refused the message for a reason retrying cannot fix."""


def get_discord_client(transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    """Sync Discord REST client authenticated as the bot."""
    settings = get_bot_settings()
    return httpx.Client(
        base_url=settings.discord_api_url,
        headers={
            "Authorization": f"Bot {settings.discord_token}",
            "User-Agent": settings.user_agent,
        },
        timeout=settings.request_timeout,
        transport=transport,
    )


def _check_response(response: httpx.Response) -> dict:
    if response.status_code == 429:
        try:
            retry_after = float(response.json().get("retry_after", 0))
        except ValueError:
            retry_after = 0.0
        retry_after = max(retry_after, float(response.headers.get("Retry-After", 0) or 0))
        raise DiscordRateLimited(retry_after or 1.0)
    if response.status_code >= 500:
        response.raise_for_status()
    if response.status_code >= 400:
        raise DeliveryRejected(f"{response.status_code}: {response.text[:200]}")
    return response.json()


def open_dm_channel(client: httpx.Client, recipient_id: str) -> str:
    """Channel id of the DM with `recipient_id`, creating it if needed."""
    data = _check_response(client.post("/users/@me/channels", json={"recipient_id": recipient_id}))
    return str(data["id"])


def send_feed_update(client: httpx.Client, payload: FeedDeliveryPayload) -> dict:
    """
    Post one feed update message.

    Raises:
        DiscordRateLimited: Discord asked to slow down
        DeliveryRejected: Non-retryable 4xx
        httpx.HTTPError: Transport failure or 5xx
    """
    channel_id = payload.channel_id
    if channel_id is None:
        if payload.recipient_id is None:
            raise DeliveryRejected("Payload has neither channel nor recipient")
        channel_id = open_dm_channel(client, payload.recipient_id)

    message = build_feed_update_message(payload)
    data = _check_response(client.post(f"/channels/{channel_id}/messages", json=message))
    return {
        "status": "success",
        "feed_id": payload.event.feed_id,
        "subscriber_id": payload.subscriber_id,
        "channel_id": channel_id,
        "message_id": data.get("id"),
    }


@celery_app.task(
    bind=True,
    name="deliver_feed_update",
    autoretry_for=(httpx.HTTPError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=5,
)
def deliver_feed_update(self, payload_dict: dict) -> dict:
    """
    Deliver a feed update to one subscriber.

    Args:
        payload_dict: FeedDeliveryPayload as dict

    Returns:
        Result dict with the created message id
    """
    payload = FeedDeliveryPayload(**payload_dict)
    with get_discord_client() as client:
        try:
            result = send_feed_update(client, payload)
        except DiscordRateLimited as e:
            log.warning(f"[RATELIMIT] Discord rate limited delivery, retry after {e.retry_after}s")
            raise self.retry(exc=e, countdown=e.retry_after)

    log.info(
        f"[DELIVERY] Feed {payload.event.feed_id} update sent to subscriber "
        f"{payload.subscriber_id} in channel {result['channel_id']}"
    )
    return result


# Dead letter queue handler
@task_failure.connect
def handle_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, traceback=None, **kw):
    """
    Handle permanently failed tasks.

    Logs to dead letter queue for manual investigation.
    """
    import redis

    try:
        client = redis.from_url(get_bot_settings().redis_url)

        failure_data = {
            "task_name": sender.name if sender else "unknown",
            "task_id": task_id,
            "args": args,
            "kwargs": kwargs,
            "exception": str(exception),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        client.lpush(DEAD_LETTER_QUEUE, json.dumps(failure_data, default=str))

        log.error(f"[DLQ] Task {task_id} failed permanently: {exception}")
    except redis.RedisError as e:
        log.error(f"[DLQ] Failed to log to dead letter queue: {e}")


@celery_app.task(name="get_queue_stats")
def get_queue_stats() -> dict:
    """Get queue statistics for monitoring."""
    import redis

    client = redis.from_url(get_bot_settings().redis_url)

    queues = ["high", "default", "low", DEAD_LETTER_QUEUE]
    return {queue: client.llen(queue) for queue in queues}


@celery_app.task(name="process_dead_letter")
def process_dead_letter(limit: int = 10, requeue: bool = False) -> dict:
    """
    Pop items from the dead letter queue.

    With `requeue`, failed feed deliveries are sent to `deliver_feed_update`
    again; anything else is only returned for inspection.
    """
    import redis

    client = redis.from_url(get_bot_settings().redis_url)

    processed = []
    requeued = 0
    for _ in range(limit):
        item = client.rpop(DEAD_LETTER_QUEUE)
        if not item:
            break
        failure = json.loads(item)
        processed.append(failure)

        if requeue and failure.get("task_name") == "deliver_feed_update" and failure.get("args"):
            deliver_feed_update.delay(failure["args"][0])
            requeued += 1

    if requeued:
        log.info(f"[DLQ] Requeued {requeued} feed deliveries")

    return {
        "processed_count": len(processed),
        "requeued_count": requeued,
        "items": processed,
    }
