"""
Feed platform errors.

Adapters raise these; the registry raises UnsupportedUrl. The publisher
logs them per feed, the subscription service hands them back to the
caller for rendering.
"""

from typing import Any


class FeedError(Exception):
    """Base class for everything a platform adapter can raise."""


class UnsupportedUrl(FeedError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Unsupported URL: {url}")


# =============================================================================
# URL / ID parsing
# =============================================================================

class UrlParseError(FeedError):
    """A URL could not be turned into a source id."""


class UnsupportedSite(UrlParseError):
    def __init__(self, site: str):
        self.site = site
        super().__init__(f"Unsupported site: {site}")


class InvalidFormat(UrlParseError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Invalid URL format: {url}")


class MissingId(UrlParseError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Missing ID in URL: {url}")


class InvalidSourceId(FeedError):
    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Invalid source id: {source_id}")


# =============================================================================
# Upstream returned no data
# =============================================================================

class SourceNotFound(FeedError):
    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Source not found: {source_id}")


class ItemNotFound(FeedError):
    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"No items found for source: {source_id}")


class EmptySource(FeedError):
    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Source has no items: {source_id}")


# =============================================================================
# Upstream contract violations
# =============================================================================

class MissingField(FeedError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Missing field in response: {path}")


class UnexpectedResult(FeedError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Unexpected result: {message}")


class InvalidTimestamp(FeedError):
    def __init__(self, timestamp: Any):
        self.timestamp = timestamp
        super().__init__(f"Invalid timestamp: {timestamp}")


class InvalidTime(FeedError):
    def __init__(self, time: str):
        self.time = time
        super().__init__(f"Invalid time: {time}")


class ApiError(FeedError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"API error: {message}")


# =============================================================================
# Wrapped I/O
# =============================================================================

class TransportError(FeedError):
    """Network failure or timeout talking to a platform."""


class JsonParseError(FeedError):
    """A platform answered with something that is not JSON."""
