"""
MangaDex manga platform (REST).

IDs are manga UUIDs. The latest item is the newest English/Indonesian
chapter by creation time.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from apps.bot.src.platforms.base import PlatformClient, PlatformInfo, nth_path_segment, require
from apps.bot.src.platforms.errors import (
    ApiError,
    EmptySource,
    InvalidSourceId,
    InvalidTime,
    MissingField,
    UnexpectedResult,
)
from apps.bot.src.rate_limiter import Quota
from packages.shared.python.models import FeedSource, LatestItem

log = logging.getLogger(__name__)


# GET /manga/{id} has no endpoint-specific limit, so the global 5/s applies
DEFAULT_QUOTA = Quota.per_second(5)

COVER_URL = "https://uploads.mangadex.org/covers/{source_id}/{file_name}"

# Title priority: title.en > altTitles.en > title.ja-ro > altTitles.ja-ro > title.ja > altTitles.ja
TITLE_LANGUAGES = ("en", "ja-ro", "ja")

FEED_PARAMS = [
    ("order[createdAt]", "desc"),
    ("limit", "1"),
    ("translatedLanguage[]", "en"),
    ("translatedLanguage[]", "id"),
]


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC-3339 timestamp into UTC. Raises InvalidTime."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise InvalidTime(value) from e
    if parsed.tzinfo is None:
        raise InvalidTime(value)
    return parsed.astimezone(timezone.utc)


class MangaDexPlatform:
    """MangaDex API platform for manga tracking."""

    def __init__(
        self,
        quota: Quota = DEFAULT_QUOTA,
        timeout: float = 30.0,
        user_agent: str = "feedwatch/0.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.info = PlatformInfo(
            name="MangaDex",
            feed_item_name="Chapter",
            api_hostname="api.mangadex.org",
            api_domain="mangadex.org",
            api_url="https://api.mangadex.org",
            copyright_notice="© MangaDex 2025",
            # Discord embeds reject .svg
            logo_url="https://cdn.jsdelivr.net/gh/homarr-labs/dashboard-icons/png/manga-dex.png",
            tags="series",
        )
        # The API requires a real User-Agent
        self.client = PlatformClient(
            self.info,
            quota,
            timeout=timeout,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    @staticmethod
    def validate_uuid(source_id: str) -> None:
        try:
            uuid.UUID(source_id)
        except ValueError as e:
            raise InvalidSourceId(source_id) from e

    async def _get(self, path: str, params: Any = None) -> dict:
        response = await self.client.get_json(path, params=params)
        if not isinstance(response, dict):
            raise UnexpectedResult("Response body is not a JSON object")

        errors = response.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            detail = first.get("detail")
            title = first.get("title")
            if isinstance(detail, str):
                message = detail
            elif isinstance(title, str):
                message = title
            else:
                message = "Unknown API error"
            raise ApiError(message)
        return response

    @staticmethod
    def _title(attributes: dict) -> str:
        titles = attributes.get("title") if isinstance(attributes.get("title"), dict) else {}
        alt_titles = attributes.get("altTitles") if isinstance(attributes.get("altTitles"), list) else []

        for lang in TITLE_LANGUAGES:
            if isinstance(titles.get(lang), str):
                return titles[lang]
            for alt in alt_titles:
                if isinstance(alt, dict) and isinstance(alt.get(lang), str):
                    return alt[lang]
        raise MissingField("title or altTitles in en/ja-ro/ja")

    @staticmethod
    def _cover_file_name(data: dict) -> str:
        relationships = data.get("relationships")
        if not isinstance(relationships, list):
            raise MissingField("data.relationships")

        cover_art = next(
            (rel for rel in relationships if isinstance(rel, dict) and rel.get("type") == "cover_art"),
            None,
        )
        if cover_art is None:
            raise MissingField("cover_art relationship")

        attributes = cover_art.get("attributes")
        if not isinstance(attributes, dict) or not isinstance(attributes.get("fileName"), str):
            raise MissingField("cover_art.attributes.fileName")
        return attributes["fileName"]

    async def fetch_source(self, source_id: str) -> FeedSource:
        log.debug(f"Fetching info from {self.info.name} for source_id: {source_id}")
        self.validate_uuid(source_id)

        response = await self._get(f"/manga/{source_id}", params={"includes[]": "cover_art"})
        data = require(response, "data", "data", dict)
        attributes = data.get("attributes")
        if not isinstance(attributes, dict):
            raise MissingField("data.attributes")

        description = attributes.get("description")
        description = description.get("en") if isinstance(description, dict) else None

        return FeedSource(
            id=source_id,
            items_id=source_id,
            name=self._title(attributes),
            description=description if isinstance(description, str) else "",
            source_url=self.url_from_id(source_id),
            cover_url=COVER_URL.format(source_id=source_id, file_name=self._cover_file_name(data)),
        )

    async def fetch_latest(self, items_id: str) -> LatestItem:
        log.debug(f"Fetching latest from {self.info.name} for source_id: {items_id}")
        response = await self._get(f"/manga/{items_id}/feed", params=FEED_PARAMS)

        if response.get("data") is None:
            raise MissingField("data")
        chapters = response["data"]
        if not isinstance(chapters, list):
            raise UnexpectedResult("data field is not an array")
        if not chapters:
            log.warning(f"No chapters found in data for source_id: {items_id}")
            raise EmptySource(items_id)

        chapter = chapters[0]
        if not isinstance(chapter, dict):
            raise UnexpectedResult("data.0 is not a JSON object")
        attributes = chapter.get("attributes")
        if not isinstance(attributes, dict):
            raise MissingField("chapter.attributes")

        return LatestItem(
            id=require(chapter, "id", "chapter.id"),
            title=require(attributes, "chapter", "attributes.chapter"),
            published=parse_rfc3339(require(attributes, "publishAt", "attributes.publishAt")),
        )

    def id_from_url(self, url: str) -> str:
        return nth_path_segment(url, self.info.api_domain, 1)

    def url_from_id(self, source_id: str) -> str:
        return f"https://{self.info.api_domain}/title/{source_id}"

    def domain(self) -> str:
        return self.info.api_domain

    def name(self) -> str:
        return self.info.name

    async def aclose(self) -> None:
        await self.client.aclose()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, MangaDexPlatform) and other.info.api_url == self.info.api_url

    def __hash__(self) -> int:
        return hash(self.info.api_url)
