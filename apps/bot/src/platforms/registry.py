"""
Platform registry.

Holds the adapter set and routes a URL to the adapter whose API domain
appears in the URL's host. Adapters are keyed by PlatformInfo.name, which
is what feeds store as platform_id.
"""

import logging
from typing import Iterable, Iterator, Optional

import httpx

from apps.bot.src.config import BotSettings
from apps.bot.src.platforms import anilist, comick, mangadex
from apps.bot.src.platforms.anilist import AniListPlatform
from apps.bot.src.platforms.base import FeedPlatform, extract_host
from apps.bot.src.platforms.comick import ComickPlatform
from apps.bot.src.platforms.errors import UnsupportedUrl
from apps.bot.src.platforms.mangadex import MangaDexPlatform

log = logging.getLogger(__name__)


class PlatformRegistry:
    """Set of platform adapters, addressable by id or by URL."""

    def __init__(self, platforms: Iterable[FeedPlatform] = ()):
        self._platforms: dict[str, FeedPlatform] = {}
        for platform in platforms:
            self.register(platform)

    def register(self, platform: FeedPlatform) -> None:
        """
        Add an adapter. Adding one equal to an existing adapter is a no-op.

        Raises:
            ValueError: A different adapter already uses the same name
        """
        existing = self._platforms.get(platform.name())
        if existing is not None:
            if existing == platform:
                return
            raise ValueError(f"Platform id already registered: {platform.name()}")
        if any(p == platform for p in self._platforms.values()):
            return
        self._platforms[platform.name()] = platform
        log.debug(f"Registered platform {platform.name()} ({platform.domain()})")

    def get(self, platform_id: str) -> Optional[FeedPlatform]:
        return self._platforms.get(platform_id)

    def get_by_url(self, url: str) -> Optional[FeedPlatform]:
        host = extract_host(url)
        if not host:
            return None
        for platform in self._platforms.values():
            if platform.domain() in host:
                return platform
        return None

    def route(self, url: str) -> FeedPlatform:
        """Adapter owning `url`. Raises UnsupportedUrl."""
        platform = self.get_by_url(url)
        if platform is None:
            raise UnsupportedUrl(url)
        return platform

    def __iter__(self) -> Iterator[FeedPlatform]:
        return iter(list(self._platforms.values()))

    def __len__(self) -> int:
        return len(self._platforms)

    async def aclose(self) -> None:
        for platform in self._platforms.values():
            await platform.aclose()


def create_default_registry(
    settings: BotSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PlatformRegistry:
    """AniList, MangaDex and Comick with quotas and timeouts from settings."""
    return PlatformRegistry([
        AniListPlatform(
            quota=settings.quota_for("AniList Anime", anilist.DEFAULT_QUOTA),
            timeout=settings.request_timeout,
            transport=transport,
        ),
        MangaDexPlatform(
            quota=settings.quota_for("MangaDex", mangadex.DEFAULT_QUOTA),
            timeout=settings.request_timeout,
            user_agent=settings.user_agent,
            transport=transport,
        ),
        ComickPlatform(
            quota=settings.quota_for("Comick", comick.DEFAULT_QUOTA),
            timeout=settings.request_timeout,
            user_agent=settings.user_agent,
            transport=transport,
        ),
    ])
