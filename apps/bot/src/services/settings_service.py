"""
Per-guild settings.

Settings are one JSON document per guild. Missing rows read as defaults.
Writers are notified to listeners so in-memory caches (the voice
tracker's disabled-guild set) stay in step with the database.
"""

import logging
from typing import Awaitable, Callable

from pydantic import ValidationError

from packages.database.repository import Repository
from packages.shared.python.models import ServerSettings

log = logging.getLogger(__name__)


SettingsListener = Callable[[int, ServerSettings], Awaitable[None]]


class SettingsService:
    """Read and write ServerSettings."""

    def __init__(self, repository: Repository):
        self.repository = repository
        self._listeners: list[SettingsListener] = []

    def add_listener(self, listener: SettingsListener) -> None:
        """Call `listener(guild_id, settings)` after every successful update."""
        self._listeners.append(listener)

    @staticmethod
    def _parse(guild_id: int, raw: str) -> ServerSettings:
        try:
            return ServerSettings.model_validate_json(raw)
        except ValidationError as e:
            log.warning(f"[SETTINGS] Unreadable settings for guild {guild_id}, using defaults: {e}")
            return ServerSettings()

    async def get(self, guild_id: int) -> ServerSettings:
        row = await self.repository.get_server_settings(guild_id)
        if row is None:
            return ServerSettings()
        return self._parse(guild_id, row.settings)

    async def list_all(self) -> dict[int, ServerSettings]:
        rows = await self.repository.list_server_settings()
        return {row.guild_id: self._parse(row.guild_id, row.settings) for row in rows}

    async def update(self, guild_id: int, settings: ServerSettings) -> None:
        await self.repository.upsert_server_settings(
            guild_id, settings.model_dump_json(exclude_none=True)
        )
        for listener in self._listeners:
            try:
                await listener(guild_id, settings)
            except Exception as e:
                log.error(f"[SETTINGS] Listener failed for guild {guild_id}: {e}")
