#!/usr/bin/env python3
"""Apply the database schema and record it in the ``migrations`` table.

Usage:
    DATABASE_URL=postgresql://... python scripts/migrate.py
    python scripts/migrate.py --list
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def migrate(database_url: str, list_only: bool) -> int:
    from hikariauth.storage.migrations import run_migrations
    from hikariauth.storage.postgres import PostgresStore

    store = PostgresStore(database_url, min_size=1, max_size=2)
    await store.open()
    try:
        if not list_only:
            applied = await run_migrations(store)
            if applied:
                for name in applied:
                    print(f"Applied {name}")
            else:
                print("Schema is up to date")
        for name in await store.applied_migration_names():
            print(f"  {name}")
    finally:
        await store.close()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Apply Hikari Chat auth migrations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL DSN (defaults to DATABASE_URL)",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="Only list applied migrations",
    )
    args = parser.parse_args()

    from hikariauth.config import get_settings

    database_url = args.database_url or get_settings().database_url
    if not database_url:
        print("Error: --database-url or DATABASE_URL required")
        sys.exit(1)

    try:
        sys.exit(asyncio.run(migrate(database_url, args.list)))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
