#!/usr/bin/env python3
"""
Database Dump Script - Writes every table as JSON.

Usage:
    python scripts/dump_database.py
    python scripts/dump_database.py --output dump.json
    python scripts/dump_database.py --db-url sqlite+aiosqlite:///data/feeds.sqlite
"""

import sys
import asyncio
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from apps.bot.src.config import get_bot_settings
from apps.bot.src.services.internal_service import InternalService
from packages.database.repository import Repository


async def dump(db_url: str) -> str:
    repository = Repository(db_url)
    try:
        return await InternalService(repository).dump_database()
    finally:
        await repository.dispose()


def main():
    parser = argparse.ArgumentParser(description="Dump the feed/voice database as JSON")
    parser.add_argument("--db-url", help="SQLAlchemy URL (default: from settings)")
    parser.add_argument("--output", type=Path, help="Write to file instead of stdout")
    args = parser.parse_args()

    db_url = args.db_url or get_bot_settings().database_url
    text = asyncio.run(dump(db_url))

    if args.output:
        args.output.write_text(text, encoding="utf-8")
        print(f"✓ Wrote {len(text):,} bytes to {args.output}")
    else:
        print(text)


if __name__ == "__main__":
    main()
