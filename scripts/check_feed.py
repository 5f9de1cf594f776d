#!/usr/bin/env python3
"""
Feed Check Script - Resolves a series URL and prints its latest item.

Usage:
    python scripts/check_feed.py https://mangadex.org/title/<uuid>
    python scripts/check_feed.py https://anilist.co/anime/1 --source
"""

import sys
import asyncio
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from apps.bot.src.config import get_bot_settings
from apps.bot.src.platforms.errors import FeedError
from apps.bot.src.platforms.registry import create_default_registry


async def check(url: str, show_source: bool) -> int:
    registry = create_default_registry(get_bot_settings())
    try:
        platform = registry.route(url)
        source_id = platform.id_from_url(url)
        source = await platform.fetch_source(source_id)

        print("\n" + "=" * 60)
        print(f"{platform.name()} - {source.name}")
        print("=" * 60)
        print(f"Canonical URL: {source.source_url}")
        if show_source:
            print(f"Items id:      {source.items_id}")
            print(f"Cover:         {source.cover_url}")
            print(f"Description:   {source.description[:200]}")

        latest = await platform.fetch_latest(source.items_id)
        print(f"\nLatest {platform.info.feed_item_name}: {latest.title}")
        print(f"Published:     {latest.published.isoformat()}")
        return 0
    except FeedError as e:
        print(f"✗ {type(e).__name__}: {e}")
        return 1
    finally:
        await registry.aclose()


def main():
    parser = argparse.ArgumentParser(description="Fetch the latest item of a series URL")
    parser.add_argument("url", help="AniList, MangaDex or Comick URL")
    parser.add_argument("--source", action="store_true", help="Also print source metadata")
    args = parser.parse_args()

    sys.exit(asyncio.run(check(args.url, args.source)))


if __name__ == "__main__":
    main()
