"""
Platform Adapter Contract

Every content platform (AniList, MangaDex, Comick, ...) is wrapped by an
adapter that satisfies FeedPlatform:

- fetch_source(id)      -> FeedSource   (metadata, canonical URL, cover)
- fetch_latest(items_id) -> LatestItem  (newest chapter/episode)
- id_from_url(url) / url_from_id(id)    (canonical URL <-> id)
- domain() / name()                     (identity used for routing)

Adapters share HTTP plumbing by holding a PlatformClient, which owns the
httpx client, the per-platform token bucket and JSON decoding.

INVARIANT: url_from_id(id_from_url(u)) is the canonical form of u.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable
from urllib.parse import urlsplit

import httpx

from apps.bot.src.platforms.errors import (
    InvalidFormat,
    JsonParseError,
    MissingField,
    MissingId,
    TransportError,
    UnexpectedResult,
    UnsupportedSite,
)
from apps.bot.src.rate_limiter import Quota, TokenBucket
from packages.shared.python.models import FeedSource, LatestItem

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformInfo:
    """Static description of a platform."""

    name: str  # "MangaDex", "AniList Anime"; also the registry key
    feed_item_name: str  # "Chapter", "Episode"
    api_hostname: str  # api.feed.tld
    api_domain: str  # feed.tld
    api_url: str  # https://api.feed.tld
    copyright_notice: str = ""
    logo_url: str = ""
    tags: str = "series"  # Grouping/filtering of feeds


@runtime_checkable
class FeedPlatform(Protocol):
    """Capabilities every platform adapter provides."""

    info: PlatformInfo

    async def fetch_source(self, source_id: str) -> FeedSource: ...

    async def fetch_latest(self, items_id: str) -> LatestItem: ...

    def id_from_url(self, url: str) -> str: ...

    def url_from_id(self, source_id: str) -> str: ...

    def domain(self) -> str: ...

    def name(self) -> str: ...

    async def aclose(self) -> None: ...


# =============================================================================
# Helpers
# =============================================================================

def nth_path_segment(url: str, domain: str, n: int) -> str:
    """
    Return the n-th non-empty path segment of a URL on `domain`.

    Query strings and fragments are ignored; a missing scheme is tolerated.

    Raises:
        InvalidFormat: Not a URL, or no path at all
        UnsupportedSite: Host is not `domain` or one of its subdomains
        MissingId: Fewer than n + 1 path segments
    """
    parts = urlsplit(url.strip() if "://" in url else f"https://{url.strip()}")
    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidFormat(url)
    if host != domain and not host.endswith("." + domain):
        raise UnsupportedSite(host)

    segments = [segment for segment in parts.path.split("/") if segment]
    if not segments:
        raise InvalidFormat(url)
    if n >= len(segments):
        raise MissingId(url)
    return segments[n]


def extract_host(url: str) -> str:
    """Host part of a URL, with or without scheme."""
    parts = urlsplit(url.strip() if "://" in url else f"https://{url.strip()}")
    return (parts.hostname or "").lower()


def extract_error_message(error: Any) -> str:
    """
    Flatten one upstream error object into a readable string.

    Uses title/detail/status/code when present, then message, then the
    raw JSON.
    """
    if not isinstance(error, dict):
        return f"raw_error: {json.dumps(error)}"

    parts = []
    for key in ("title", "detail", "status", "code"):
        value = error.get(key)
        if isinstance(value, str):
            parts.append(f"{key}: {value}")

    if not parts and isinstance(error.get("message"), str):
        parts.append(f"message: {error['message']}")

    if not parts:
        return f"raw_error: {json.dumps(error)}"
    return ", ".join(parts)


_TYPE_NAMES = {str: "string", dict: "JSON", list: "array", int: "integer"}


def require(obj: dict, key: str, path: str, expected: type = str) -> Any:
    """
    Read obj[key], insisting on presence and type.

    Raises:
        MissingField: Key absent or null
        UnexpectedResult: Value has the wrong type
    """
    value = obj.get(key)
    if value is None:
        raise MissingField(path)
    if not isinstance(value, expected):
        raise UnexpectedResult(f"Failed converting {path} to {_TYPE_NAMES.get(expected, expected.__name__)}")
    return value


# =============================================================================
# HTTP Client
# =============================================================================

class PlatformClient:
    """
    Rate-limited JSON client for one platform.

    Non-2xx responses are still decoded: the platforms report their own
    errors in the body and each adapter knows how to read them.
    """

    def __init__(
        self,
        info: PlatformInfo,
        quota: Quota,
        timeout: float = 30.0,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.info = info
        self.limiter = TokenBucket.from_quota(quota, name=info.name)
        self._client = httpx.AsyncClient(
            base_url=info.api_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def get_json(self, path: str, params: Any = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post_json(self, path: str, payload: dict) -> Any:
        return await self._request("POST", path, json=payload)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        await self.limiter.until_ready()

        request = self._client.build_request(method, path, **kwargs)
        log.debug(f"[{self.info.name}] {method} {request.url}")
        try:
            response = await self._client.send(request)
        except httpx.HTTPError as e:
            raise TransportError(f"{self.info.name} request failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise JsonParseError(
                f"{self.info.name} returned non-JSON body (HTTP {response.status_code})"
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()
