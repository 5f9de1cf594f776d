"""
AniList anime platform (GraphQL).

Latest item is the newest aired episode from AiringSchedule; source
metadata comes from Media. IDs are AniList media ids (signed 32-bit).
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from apps.bot.src.platforms.base import PlatformClient, PlatformInfo, extract_error_message, nth_path_segment, require
from apps.bot.src.platforms.errors import (
    ApiError,
    InvalidSourceId,
    InvalidTimestamp,
    ItemNotFound,
    MissingField,
    SourceNotFound,
    UnexpectedResult,
)
from apps.bot.src.rate_limiter import Quota
from packages.shared.python.models import FeedSource, LatestItem

log = logging.getLogger(__name__)


# "The API is currently in a degraded state and is limited to 30 requests per minute."
DEFAULT_QUOTA = Quota.per_minute(30)

LATEST_QUERY = """
query ($id: Int) {
  AiringSchedule(mediaId: $id, sort: EPISODE_DESC, notYetAired: false) {
    airingAt
    episode
    id
  }
}
"""

SOURCE_QUERY = """
query ($id: Int) {
  Media(id: $id, type: ANIME) {
    title { romaji }
    description(asHtml: false)
    coverImage {
      extraLarge
    }
  }
}
"""

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_I32_MIN, _I32_MAX = -(2**31), 2**31 - 1


def _plain(value: Any) -> str:
    """Render a JSON scalar without quotes (12 -> "12", "12" -> "12")."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return json.dumps(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return json.dumps(value)


class AniListPlatform:
    """AniList GraphQL API platform for anime tracking."""

    def __init__(
        self,
        quota: Quota = DEFAULT_QUOTA,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.info = PlatformInfo(
            name="AniList Anime",
            feed_item_name="Episode",
            api_hostname="graphql.anilist.co",
            api_domain="anilist.co",
            api_url="https://graphql.anilist.co",
            copyright_notice="© AniList LLC 2025",
            logo_url="https://anilist.co/img/icons/android-chrome-192x192.png",
            tags="series",
        )
        self.client = PlatformClient(self.info, quota, timeout=timeout, transport=transport)

    @staticmethod
    def validate_id(source_id: str) -> int:
        """Parse an AniList media id; must fit a signed 32-bit integer."""
        if not _INT_PATTERN.fullmatch(source_id):
            raise InvalidSourceId(source_id)
        value = int(source_id)
        if not _I32_MIN <= value <= _I32_MAX:
            raise InvalidSourceId(source_id)
        return value

    async def _query(self, source_id: str, query: str) -> dict:
        payload = {"query": query, "variables": {"id": self.validate_id(source_id)}}
        response = await self.client.post_json("", payload)
        if not isinstance(response, dict):
            raise UnexpectedResult("Response body is not a JSON object")

        errors = response.get("errors")
        if isinstance(errors, list) and errors:
            raise ApiError(" | ".join(extract_error_message(e) for e in errors))
        return response

    async def fetch_latest(self, items_id: str) -> LatestItem:
        log.debug(f"Fetching latest from {self.info.name} for source_id: {items_id}")
        response = await self._query(items_id, LATEST_QUERY)

        schedule = (response.get("data") or {}).get("AiringSchedule")
        if not isinstance(schedule, dict):
            raise ItemNotFound(items_id)

        airing_at = schedule.get("airingAt")
        if airing_at is None:
            raise MissingField("data.AiringSchedule.airingAt")
        if not isinstance(airing_at, int) or isinstance(airing_at, bool):
            raise UnexpectedResult(f"Invalid data.AiringSchedule.airingAt: {json.dumps(airing_at)}")

        episode = schedule.get("episode")
        if episode is None:
            raise MissingField("data.AiringSchedule.episode")
        schedule_id = schedule.get("id")
        if schedule_id is None:
            raise MissingField("data.AiringSchedule.id")

        try:
            published = datetime.fromtimestamp(airing_at, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise InvalidTimestamp(airing_at) from e

        return LatestItem(id=_plain(schedule_id), title=_plain(episode), published=published)

    async def fetch_source(self, source_id: str) -> FeedSource:
        log.debug(f"Fetching info from {self.info.name} for source_id: {source_id}")
        response = await self._query(source_id, SOURCE_QUERY)

        media = (response.get("data") or {}).get("Media")
        if not isinstance(media, dict):
            raise SourceNotFound(source_id)

        title = media.get("title")
        if not isinstance(title, dict) or not isinstance(title.get("romaji"), str):
            raise MissingField("data.Media.title.romaji")

        if "description" not in media:
            raise MissingField("data.Media.description")
        description = media["description"] or ""

        cover = media.get("coverImage")
        if not isinstance(cover, dict):
            raise MissingField("data.Media.coverImage.extraLarge")
        cover_url = require(cover, "extraLarge", "data.Media.coverImage.extraLarge")

        return FeedSource(
            id=source_id,
            items_id=source_id,
            name=title["romaji"],
            description=description,
            source_url=self.url_from_id(source_id),
            cover_url=cover_url,
        )

    def id_from_url(self, url: str) -> str:
        return nth_path_segment(url, self.info.api_domain, 1)

    def url_from_id(self, source_id: str) -> str:
        return f"https://{self.info.api_domain}/anime/{source_id}"

    def domain(self) -> str:
        return self.info.api_domain

    def name(self) -> str:
        return self.info.name

    async def aclose(self) -> None:
        await self.client.aclose()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AniListPlatform) and other.info.api_url == self.info.api_url

    def __hash__(self) -> int:
        return hash(self.info.api_url)
