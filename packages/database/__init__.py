"""
Database package for the feed monitor and voice tracker.

Storage Model:
- SQLAlchemy ORM schema (models.py), SQLite by default via aiosqlite
- Async Repository (repository.py) as the only gateway to the rows
"""

from .models import (
    Base,
    BotMeta,
    Feed,
    FeedItem,
    FeedSubscription,
    ServerSettingsRow,
    Subscriber,
    UTCDateTime,
    VoiceSession,
)
from .repository import DatabaseError, IntegrityViolation, Repository

__all__ = [
    "Base",
    "BotMeta",
    "Feed",
    "FeedItem",
    "FeedSubscription",
    "ServerSettingsRow",
    "Subscriber",
    "UTCDateTime",
    "VoiceSession",
    "DatabaseError",
    "IntegrityViolation",
    "Repository",
]
