"""
Celery app for outbound Discord deliveries.

The bot process only enqueues; workers own the Discord REST calls.

Queues:
- high: feed update deliveries
- default: anything unrouted
- low: dead letter maintenance and queue stats
"""

from celery import Celery
from kombu import Queue, Exchange

from apps.bot.src.config import get_bot_settings

settings = get_bot_settings()

celery_app = Celery("feedwatch", include=["apps.bot.src.tasks"])

celery_app.conf.update(
    broker_url=settings.broker_url,
    # Results live one redis db above the broker
    result_backend=settings.redis_url.replace("/0", "/1"),
    result_expires=6 * 3600,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # A delivery is only acked once Discord accepted the message
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # One message post plus an optional DM channel lookup
    task_soft_time_limit=60,
    task_time_limit=120,
    # Discord's global limit is 50 requests/second per bot token
    task_annotations={"deliver_feed_update": {"rate_limit": "40/s"}},
    worker_send_task_events=True,
    task_send_sent_event=True,
)

celery_app.conf.task_queues = (
    Queue("high", Exchange("high"), routing_key="high"),
    Queue("default", Exchange("default"), routing_key="default"),
    Queue("low", Exchange("low"), routing_key="low"),
)
celery_app.conf.task_default_queue = "default"
celery_app.conf.task_default_exchange = "default"
celery_app.conf.task_default_routing_key = "default"

celery_app.conf.task_routes = {
    "deliver_feed_update": {"queue": "high"},
    "get_queue_stats": {"queue": "low"},
    "process_dead_letter": {"queue": "low"},
}

# Run with `celery -A apps.bot.src.celery_config beat`
celery_app.conf.beat_schedule = {
    "report-dead-letters": {
        "task": "get_queue_stats",
        "schedule": 15 * 60.0,
    },
}
