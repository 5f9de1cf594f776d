"""
Comick manga platform (REST).

Sources are addressed by slug in URLs, but chapters are listed by the
comic's hid, so FeedSource.items_id differs from FeedSource.id here.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from apps.bot.src.platforms.base import PlatformClient, PlatformInfo, nth_path_segment, require
from apps.bot.src.platforms.errors import ApiError, ItemNotFound, MissingField, UnexpectedResult
from apps.bot.src.rate_limiter import Quota
from packages.shared.python.models import FeedSource, LatestItem

log = logging.getLogger(__name__)


# Undocumented; matches the x-ratelimit-limit header the API sends
DEFAULT_QUOTA = Quota.per_minute(200)

COVER_URL = "https://meo.comick.pictures/{b2key}"


class ComickPlatform:
    """Comick API platform for manga tracking."""

    def __init__(
        self,
        quota: Quota = DEFAULT_QUOTA,
        timeout: float = 30.0,
        user_agent: str = "feedwatch/0.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.info = PlatformInfo(
            name="Comick",
            feed_item_name="Chapter",
            api_hostname="api.comick.dev",
            api_domain="comick.dev",
            api_url="https://api.comick.dev",
            copyright_notice="© Comick 2021-2026",
            logo_url="https://comick.dev/_next/image?url=%2Fstatic%2Ficons%2Funicorn-64.png&w=144&q=75",
            tags="series",
        )
        self.client = PlatformClient(
            self.info,
            quota,
            timeout=timeout,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        response = await self.client.get_json(path, params=params)
        if not isinstance(response, dict):
            raise UnexpectedResult("Response body is not a JSON object")

        # Errors come back as {"statusCode": 404, "message": "..."}
        if "statusCode" in response:
            message = response.get("message")
            raise ApiError(message if isinstance(message, str) else "Unknown error")
        return response

    async def fetch_source(self, source_id: str) -> FeedSource:
        log.debug(f"Fetching info from {self.info.name} for source_id: {source_id}")
        response = await self._get(f"/comic/{source_id}")

        comic = require(response, "comic", "comic", dict)
        covers = require(comic, "md_covers", "comic.md_covers", list)
        if not covers:
            raise MissingField("comic.md_covers.0")
        if not isinstance(covers[0], dict):
            raise UnexpectedResult("Failed converting comic.md_covers.0 to JSON")
        b2key = require(covers[0], "b2key", "comic.md_covers.0.b2key")

        source = FeedSource(
            id=source_id,
            items_id=require(comic, "hid", "comic.hid"),
            name=require(comic, "title", "comic.title"),
            description=require(comic, "desc", "comic.desc"),
            source_url=self.url_from_id(source_id),
            cover_url=COVER_URL.format(b2key=b2key),
        )
        log.info(f"Successfully fetched source info for source_id: {source_id}")
        return source

    async def fetch_latest(self, items_id: str) -> LatestItem:
        log.debug(f"Fetching latest from {self.info.name} for source_id: {items_id}")
        response = await self._get(f"/comic/{items_id}/chapters", params={"lang": "en"})

        chapters = require(response, "chapters", "chapters", list)
        if not chapters:
            raise ItemNotFound(items_id)
        chapter = chapters[0]
        if not isinstance(chapter, dict):
            raise UnexpectedResult("Failed converting chapters.0 to JSON")

        title = require(chapter, "chap", "chapters.0.chap")
        publish_at = require(chapter, "publish_at", "chapters.0.publish_at")
        try:
            published = datetime.fromisoformat(publish_at)
        except ValueError as e:
            raise UnexpectedResult("API returned invalid format of chapters.0.publish_at") from e
        if published.tzinfo is None:
            raise UnexpectedResult("API returned invalid format of chapters.0.publish_at")

        return LatestItem(id=items_id, title=title, published=published.astimezone(timezone.utc))

    def id_from_url(self, url: str) -> str:
        return nth_path_segment(url, self.info.api_domain, 1)

    def url_from_id(self, source_id: str) -> str:
        return f"https://{self.info.api_domain}/comic/{source_id}"

    def domain(self) -> str:
        return self.info.api_domain

    def name(self) -> str:
        return self.info.name

    async def aclose(self) -> None:
        await self.client.aclose()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ComickPlatform) and other.info.api_url == self.info.api_url

    def __hash__(self) -> int:
        return hash(self.info.api_url)
