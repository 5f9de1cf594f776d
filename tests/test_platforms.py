#!/usr/bin/env python3
"""
Test platform adapters against stubbed HTTP (httpx.MockTransport).
"""

import sys
import json
import asyncio
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from apps.bot.src.platforms.anilist import AniListPlatform
from apps.bot.src.platforms.comick import ComickPlatform
from apps.bot.src.platforms.errors import (
    ApiError,
    EmptySource,
    InvalidSourceId,
    ItemNotFound,
    InvalidTime,
    JsonParseError,
    MissingField,
    SourceNotFound,
    TransportError,
    UnexpectedResult,
)
from apps.bot.src.platforms.mangadex import MangaDexPlatform
from apps.bot.src.rate_limiter import Quota

FAST = Quota.per_second(100)
MANGA_ID = "eb39d2c6-5c4f-4a3a-8a59-5c8c0b1f2a11"


def _run(platform, coro_factory):
    async def scenario():
        try:
            return await coro_factory(platform)
        finally:
            await platform.aclose()
    return asyncio.run(scenario())


# =============================================================================
# AniList
# =============================================================================

def test_anilist_latest():
    """Test AniList latest episode (GraphQL AiringSchedule)."""
    print("Testing AniList fetch_latest...")
    print("=" * 50)

    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen["variables"] = body["variables"]
        seen["method"] = request.method
        return httpx.Response(200, json={
            "data": {"AiringSchedule": {"id": 401043, "airingAt": 1766327400, "episode": 12}}
        })

    platform = AniListPlatform(quota=FAST, transport=httpx.MockTransport(handler))
    latest = _run(platform, lambda p: p.fetch_latest("401043"))

    assert seen["method"] == "POST"
    assert seen["variables"] == {"id": 401043}
    assert latest.id == "401043"
    assert latest.title == "12"
    assert latest.published == datetime.fromtimestamp(1766327400, tz=timezone.utc)
    print(f"✓ Latest: episode {latest.title} at {latest.published.isoformat()}")
    print()


def test_anilist_errors():
    """Test AniList error mapping."""
    print("Testing AniList errors...")
    print("=" * 50)

    def api_error(request):
        return httpx.Response(404, json={
            "errors": [{"message": "Not Found.", "status": 404}],
            "data": {"AiringSchedule": None},
        })

    platform = AniListPlatform(quota=FAST, transport=httpx.MockTransport(api_error))
    with pytest.raises(ApiError) as exc:
        _run(platform, lambda p: p.fetch_latest("1"))
    assert "Not Found." in str(exc.value)
    print("✓ GraphQL errors -> ApiError")

    def no_schedule(request):
        return httpx.Response(200, json={"data": {"AiringSchedule": None}})

    platform = AniListPlatform(quota=FAST, transport=httpx.MockTransport(no_schedule))
    with pytest.raises(ItemNotFound):
        _run(platform, lambda p: p.fetch_latest("1"))
    print("✓ Missing schedule -> ItemNotFound")

    def no_episode(request):
        return httpx.Response(200, json={"data": {"AiringSchedule": {"id": 1, "airingAt": 1}}})

    platform = AniListPlatform(quota=FAST, transport=httpx.MockTransport(no_episode))
    with pytest.raises(MissingField) as exc:
        _run(platform, lambda p: p.fetch_latest("1"))
    assert exc.value.path == "data.AiringSchedule.episode"
    print("✓ Missing episode -> MissingField")

    def string_time(request):
        return httpx.Response(200, json={
            "data": {"AiringSchedule": {"id": 1, "airingAt": "soon", "episode": 1}}
        })

    platform = AniListPlatform(quota=FAST, transport=httpx.MockTransport(string_time))
    with pytest.raises(UnexpectedResult):
        _run(platform, lambda p: p.fetch_latest("1"))
    print("✓ Non-integer airingAt -> UnexpectedResult")

    platform = AniListPlatform(quota=FAST, transport=httpx.MockTransport(no_schedule))
    for bad_id in ("abc", "99999999999", ""):
        with pytest.raises(InvalidSourceId):
            _run(platform, lambda p: p.fetch_latest(bad_id))
    print("✓ Invalid ids rejected before any request")
    print()


def test_anilist_source():
    """Test AniList media metadata."""
    print("Testing AniList fetch_source...")
    print("=" * 50)

    def handler(request):
        return httpx.Response(200, json={"data": {"Media": {
            "title": {"romaji": "Frieren"},
            "description": None,
            "coverImage": {"extraLarge": "https://img.anili.st/cover.png"},
        }}})

    platform = AniListPlatform(quota=FAST, transport=httpx.MockTransport(handler))
    source = _run(platform, lambda p: p.fetch_source("154587"))

    assert source.name == "Frieren"
    assert source.description == ""
    assert source.items_id == "154587"
    assert source.source_url == "https://anilist.co/anime/154587"
    assert source.cover_url == "https://img.anili.st/cover.png"
    print(f"✓ Source: {source.name}")

    def missing_media(request):
        return httpx.Response(200, json={"data": {"Media": None}})

    platform = AniListPlatform(quota=FAST, transport=httpx.MockTransport(missing_media))
    with pytest.raises(SourceNotFound):
        _run(platform, lambda p: p.fetch_source("1"))
    print("✓ Missing media -> SourceNotFound")
    print()


# =============================================================================
# MangaDex
# =============================================================================

def test_mangadex_feed():
    """Test MangaDex latest chapter from /manga/{id}/feed."""
    print("Testing MangaDex fetch_latest...")
    print("=" * 50)

    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = request.url.params
        seen["user_agent"] = request.headers.get("user-agent")
        return httpx.Response(200, json={"result": "ok", "data": [{
            "id": "eb39f0aa-0000-4000-8000-000000000001",
            "attributes": {"chapter": "105", "publishAt": "2025-12-23T03:19:29+00:00"},
        }]})

    platform = MangaDexPlatform(
        quota=FAST, user_agent="feedwatch-test", transport=httpx.MockTransport(handler)
    )
    latest = _run(platform, lambda p: p.fetch_latest(MANGA_ID))

    assert seen["path"] == f"/manga/{MANGA_ID}/feed"
    assert seen["params"]["order[createdAt]"] == "desc"
    assert seen["params"].get_list("translatedLanguage[]") == ["en", "id"]
    assert seen["user_agent"] == "feedwatch-test"
    assert latest.id == "eb39f0aa-0000-4000-8000-000000000001"
    assert latest.title == "105"
    assert latest.published == datetime(2025, 12, 23, 3, 19, 29, tzinfo=timezone.utc)
    print(f"✓ Latest: chapter {latest.title} at {latest.published.isoformat()}")
    print()


def test_mangadex_errors():
    """Test MangaDex error mapping."""
    print("Testing MangaDex errors...")
    print("=" * 50)

    def api_error(request):
        return httpx.Response(404, json={"result": "error", "errors": [
            {"title": "Not found", "detail": "Manga could not be found"}
        ]})

    platform = MangaDexPlatform(quota=FAST, transport=httpx.MockTransport(api_error))
    with pytest.raises(ApiError) as exc:
        _run(platform, lambda p: p.fetch_latest(MANGA_ID))
    assert exc.value.message == "Manga could not be found"
    print("✓ errors[0].detail -> ApiError")

    def empty(request):
        return httpx.Response(200, json={"result": "ok", "data": []})

    platform = MangaDexPlatform(quota=FAST, transport=httpx.MockTransport(empty))
    with pytest.raises(EmptySource):
        _run(platform, lambda p: p.fetch_latest(MANGA_ID))
    print("✓ No chapters -> EmptySource")

    def not_a_list(request):
        return httpx.Response(200, json={"result": "ok", "data": {"id": "x"}})

    platform = MangaDexPlatform(quota=FAST, transport=httpx.MockTransport(not_a_list))
    with pytest.raises(UnexpectedResult):
        _run(platform, lambda p: p.fetch_latest(MANGA_ID))
    print("✓ Non-array data -> UnexpectedResult")

    def naive_time(request):
        return httpx.Response(200, json={"result": "ok", "data": [{
            "id": "c1", "attributes": {"chapter": "1", "publishAt": "2025-12-23T03:19:29"},
        }]})

    platform = MangaDexPlatform(quota=FAST, transport=httpx.MockTransport(naive_time))
    with pytest.raises(InvalidTime):
        _run(platform, lambda p: p.fetch_latest(MANGA_ID))
    print("✓ Timestamp without offset -> InvalidTime")

    platform = MangaDexPlatform(quota=FAST, transport=httpx.MockTransport(empty))
    with pytest.raises(InvalidSourceId):
        _run(platform, lambda p: p.fetch_source("not-a-uuid"))
    print("✓ Non-UUID id rejected")
    print()


def test_mangadex_source_and_titles():
    """Test MangaDex metadata, cover URL and title priority."""
    print("Testing MangaDex fetch_source...")
    print("=" * 50)

    seen = {}

    def handler(request):
        seen["params"] = request.url.params
        return httpx.Response(200, json={"result": "ok", "data": {
            "id": MANGA_ID,
            "attributes": {
                "title": {"ja-ro": "Kusuriya no Hitorigoto"},
                "altTitles": [{"ja": "薬屋のひとりごと"}, {"en": "The Apothecary Diaries"}],
                "description": {"en": "A tale of poison."},
            },
            "relationships": [
                {"type": "author", "id": "a"},
                {"type": "cover_art", "id": "c", "attributes": {"fileName": "cover.jpg"}},
            ],
        }})

    platform = MangaDexPlatform(quota=FAST, transport=httpx.MockTransport(handler))
    source = _run(platform, lambda p: p.fetch_source(MANGA_ID))

    assert seen["params"]["includes[]"] == "cover_art"
    assert source.name == "The Apothecary Diaries"
    assert source.description == "A tale of poison."
    assert source.cover_url == f"https://uploads.mangadex.org/covers/{MANGA_ID}/cover.jpg"
    assert source.source_url == f"https://mangadex.org/title/{MANGA_ID}"
    print(f"✓ Source: {source.name}")

    title = MangaDexPlatform._title
    assert title({"title": {"en": "A", "ja": "B"}}) == "A"
    assert title({"title": {"ja-ro": "R"}, "altTitles": [{"en": "E"}]}) == "E"
    assert title({"title": {"ja-ro": "R", "ja": "J"}}) == "R"
    assert title({"title": {"fr": "F"}, "altTitles": [{"ja": "J"}]}) == "J"
    with pytest.raises(MissingField):
        title({"title": {"fr": "F"}, "altTitles": []})
    print("✓ Title priority en > ja-ro > ja")

    with pytest.raises(MissingField) as exc:
        MangaDexPlatform._cover_file_name({"relationships": [{"type": "author"}]})
    assert exc.value.path == "cover_art relationship"
    print("✓ Missing cover_art -> MissingField")
    print()


# =============================================================================
# Comick
# =============================================================================

def test_comick_round_trip():
    """Test Comick slug -> hid -> latest chapter."""
    print("Testing Comick fetch_source + fetch_latest...")
    print("=" * 50)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/comic/02-tonikaku-kawaii":
            return httpx.Response(200, json={"comic": {
                "hid": "DqrXZDbr",
                "title": "Tonikaku Kawaii",
                "desc": "Fly me to the moon.",
                "md_covers": [{"b2key": "ZkR9q.jpg"}],
            }})
        if request.url.path == "/comic/DqrXZDbr/chapters":
            assert request.url.params["lang"] == "en"
            return httpx.Response(200, json={"chapters": [
                {"chap": "333", "publish_at": "2025-12-27T14:44:40Z"},
                {"chap": "332", "publish_at": "2025-12-20T14:44:40Z"},
            ]})
        return httpx.Response(404, json={"statusCode": 404, "message": "Not Found"})

    async def round_trip(platform):
        source = await platform.fetch_source("02-tonikaku-kawaii")
        latest = await platform.fetch_latest(source.items_id)
        return source, latest

    platform = ComickPlatform(quota=FAST, transport=httpx.MockTransport(handler))
    source, latest = _run(platform, round_trip)

    assert source.items_id == "DqrXZDbr"
    assert source.cover_url == "https://meo.comick.pictures/ZkR9q.jpg"
    assert source.source_url == "https://comick.dev/comic/02-tonikaku-kawaii"
    assert latest.title == "333"
    assert latest.published == datetime(2025, 12, 27, 14, 44, 40, tzinfo=timezone.utc)
    print(f"✓ {source.name}: chapter {latest.title}")

    platform = ComickPlatform(quota=FAST, transport=httpx.MockTransport(handler))
    with pytest.raises(ApiError) as exc:
        _run(platform, lambda p: p.fetch_source("unknown"))
    assert exc.value.message == "Not Found"
    print("✓ statusCode body -> ApiError")

    def no_chapters(request):
        return httpx.Response(200, json={"chapters": []})

    platform = ComickPlatform(quota=FAST, transport=httpx.MockTransport(no_chapters))
    with pytest.raises(ItemNotFound):
        _run(platform, lambda p: p.fetch_latest("DqrXZDbr"))
    print("✓ No chapters -> ItemNotFound")
    print()


# =============================================================================
# Transport
# =============================================================================

def test_transport_failures():
    """Test network and decoding failures."""
    print("Testing transport failures...")
    print("=" * 50)

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    platform = ComickPlatform(quota=FAST, transport=httpx.MockTransport(refuse))
    with pytest.raises(TransportError):
        _run(platform, lambda p: p.fetch_latest("abc"))
    print("✓ Connection error -> TransportError")

    def html(request):
        return httpx.Response(502, text="<html>Bad Gateway</html>")

    platform = ComickPlatform(quota=FAST, transport=httpx.MockTransport(html))
    with pytest.raises(JsonParseError):
        _run(platform, lambda p: p.fetch_latest("abc"))
    print("✓ Non-JSON body -> JsonParseError")
    print()


def main():
    """Run all platform tests."""
    print("\n" + "=" * 60)
    print("PLATFORM ADAPTER TESTS")
    print("=" * 60 + "\n")

    test_anilist_latest()
    test_anilist_errors()
    test_anilist_source()
    test_mangadex_feed()
    test_mangadex_errors()
    test_mangadex_source_and_titles()
    test_comick_round_trip()
    test_transport_failures()

    print("=" * 60)
    print("✓ All platform tests passed!")
    print("=" * 60)


if __name__ == "__main__":
    main()
