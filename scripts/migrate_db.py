#!/usr/bin/env python3
"""
Database Migration — Create the status store tables from the ORM models.

Usage:
    python scripts/migrate_db.py                  # create missing tables
    python scripts/migrate_db.py --check          # report only, no changes
    python scripts/migrate_db.py --url sqlite:///./other.db
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _existing_tables(sync_conn) -> list[str]:
    from sqlalchemy import inspect
    return inspect(sync_conn).get_table_names()


async def run_migration(check_only: bool = False, url: str = None) -> int:
    from config.settings import load_settings
    from database.models import Base
    from database.session import create_engine

    settings = load_settings()
    engine = create_engine(url or settings.database.url, config=settings.database)
    defined = set(Base.metadata.tables.keys())

    try:
        async with engine.connect() as conn:
            existing = set(await conn.run_sync(_existing_tables))

        print(f"Database: {engine.dialect.name}")
        print(f"Tables defined: {', '.join(sorted(defined))}")
        print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

        missing = defined - existing
        if check_only:
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        if missing:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print(f"Tables created: {', '.join(sorted(missing))}")
        print("Migration complete. ✓")
        return 0
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Status store migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, url=args.url)))


if __name__ == "__main__":
    main()
