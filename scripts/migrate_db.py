#!/usr/bin/env python3
"""
Database Migration — Create the pipeline tables from the SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Different config file:
    AUTOPAIR_CONFIG=/etc/autopair.yaml python scripts/migrate_db.py
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _table_listing_sql(dialect: str) -> str:
    if dialect == "postgresql":
        return "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    if dialect == "mysql":
        return "SHOW TABLES"
    return "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"


async def existing_tables(db) -> list[str]:
    from sqlalchemy import text

    async with db.engine.connect() as conn:
        result = await conn.execute(text(_table_listing_sql(db.dialect)))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings()
    db = Database(settings.database.url)
    await db.connect(create_tables=False)

    try:
        defined = list(Base.metadata.tables.keys())
        if check_only:
            print(f"Database: {db.dialect}")
            print(f"Tables defined: {', '.join(defined)}")
            existing = await existing_tables(db)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = sorted(set(defined) - set(existing))
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        await db.create_all()
        tables = await existing_tables(db)
        print(f"Tables created/verified: {', '.join(t for t in tables if t in defined)}")
        print("Migration complete. ✓")
        return 0
    finally:
        await db.close()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
