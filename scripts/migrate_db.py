#!/usr/bin/env python3
"""
Create the CRM tables and optionally seed the built-in message templates.

    python scripts/migrate_db.py                       # create missing tables
    python scripts/migrate_db.py --check               # report only
    python scripts/migrate_db.py --seed-templates [--overwrite]
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _table_names(engine) -> set[str]:
    from sqlalchemy import inspect

    async with engine.connect() as conn:
        return set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))


async def run_migration(check_only: bool = False, seed: bool = False, overwrite: bool = False) -> int:
    from config.settings import load_settings
    from database.models import Base
    from database.session import close_db, get_engine, init_db

    load_settings()
    engine = get_engine()
    defined = set(Base.metadata.tables)

    try:
        if check_only:
            missing = defined - await _table_names(engine)
            print(f"{engine.dialect.name}: {len(defined) - len(missing)}/{len(defined)} CRM tables present")
            if missing:
                print(f"missing: {', '.join(sorted(missing))}")
            return 1 if missing else 0

        await init_db()
        print(f"tables ready: {', '.join(sorted(defined & await _table_names(engine)))}")

        if seed:
            from database.store import SqlStore
            from templates.registry import TemplateStore

            written = await TemplateStore(SqlStore()).seed_defaults(overwrite=overwrite)
            print(f"templates written: {written}")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="CRM database setup")
    parser.add_argument("--check", action="store_true", help="report missing tables without changing anything")
    parser.add_argument("--seed-templates", action="store_true", help="insert the built-in message templates")
    parser.add_argument("--overwrite", action="store_true", help="replace templates that already exist")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(args.check, args.seed_templates, args.overwrite)))


if __name__ == "__main__":
    main()
