"""
Internal bookkeeping: BotMeta key/value access and database dumps.
"""

import json
import logging
from typing import Optional

from packages.database.repository import Repository

log = logging.getLogger(__name__)


class MetaKey:
    """Known BotMeta keys."""
    VOICE_HEARTBEAT = "voice_heartbeat"
    BOT_VERSION = "bot_version"


class InternalService:
    """Cross-restart state and maintenance helpers."""

    def __init__(self, repository: Repository):
        self.repository = repository

    async def get_meta(self, key: str) -> Optional[str]:
        return await self.repository.get_meta(key)

    async def set_meta(self, key: str, value: str) -> None:
        await self.repository.set_meta(key, value)

    async def delete_meta(self, key: str) -> bool:
        return await self.repository.delete_meta(key)

    async def record_version(self, version: str) -> Optional[str]:
        """Store the running version and return the previous one."""
        previous = await self.get_meta(MetaKey.BOT_VERSION)
        if previous != version:
            log.info(f"[STARTUP] Version change: {previous or 'none'} -> {version}")
            await self.set_meta(MetaKey.BOT_VERSION, version)
        return previous

    async def dump_database(self) -> str:
        """Every table as pretty-printed JSON."""
        tables = await self.repository.dump_tables()
        return json.dumps(tables, indent=2, default=str)
