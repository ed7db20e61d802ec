#!/usr/bin/env python3
"""Install the Postgres schema and seed the default roles and permissions.

Usage:
    DATABASE_URL=postgresql://localhost:5432/tessera python scripts/migrate.py
    python scripts/migrate.py --schema path/to/schema.sql
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    from tessera.config import get_settings
    from tessera.storage.postgres import PostgresStore

    parser = argparse.ArgumentParser(description="Apply the Tessera database schema")
    parser.add_argument("--dsn", default=None, help="Database URL (defaults to DATABASE_URL)")
    parser.add_argument("--schema", type=Path, default=None, help="Alternative schema file")
    args = parser.parse_args()

    settings = get_settings()
    store = PostgresStore(
        args.dsn or settings.database_url,
        timeout=settings.db_pool_timeout_seconds,
        statement_timeout_ms=0,
        verify_schema=False,
    )
    try:
        store.apply_schema(args.schema)
        store.seed_defaults()
    finally:
        store.close()
    print("Schema applied and default roles seeded.")


if __name__ == "__main__":
    main()
