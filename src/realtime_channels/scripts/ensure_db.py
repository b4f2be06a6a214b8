"""Create the configured Postgres database when it does not exist yet.

SQLite URLs need no bootstrap and are skipped.
"""
from __future__ import annotations

import argparse
import sys

import psycopg
from psycopg import sql
from sqlalchemy.engine import URL, make_url

from realtime_channels.core.settings import settings


def to_psycopg_dsn(url: URL) -> str:
    """Render a SQLAlchemy URL as a libpq connection string."""
    plain = url.set(drivername="postgresql")
    return plain.render_as_string(hide_password=False)


def split_admin_target(raw_url: str) -> tuple[str, str]:
    """Return ``(admin_dsn, database_name)``; the admin DSN targets ``postgres``."""
    url = make_url(raw_url.strip().strip("'\""))
    if not url.drivername.startswith("postgresql"):
        raise ValueError(f"Not a Postgres URL: {url.drivername}")
    target = url.database or "postgres"
    return to_psycopg_dsn(url.set(database="postgres")), target


def ensure_database_exists(raw_url: str) -> bool:
    """Create the database named in ``raw_url``; return True when it was created."""
    admin_dsn, target = split_admin_target(raw_url)
    with psycopg.connect(admin_dsn, autocommit=True) as conn, conn.cursor() as cur:
        cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (target,))
        if cur.fetchone() is not None:
            print(f"[ensure_db] database {target} already exists")
            return False
        cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(target)))
    print(f"[ensure_db] created database {target}")
    return True


def reset_schema(raw_url: str) -> None:
    """Drop and recreate the ``public`` schema."""
    dsn = to_psycopg_dsn(make_url(raw_url))
    with psycopg.connect(dsn, autocommit=True) as conn, conn.cursor() as cur:
        cur.execute("DROP SCHEMA IF EXISTS public CASCADE")
        cur.execute("CREATE SCHEMA public")
    print("[ensure_db] reset public schema")


def main() -> None:
    parser = argparse.ArgumentParser(description="Ensure the configured database exists")
    parser.add_argument("--url", default=None, help="Override the database URL")
    parser.add_argument(
        "--reset", action="store_true", help="Drop and recreate the public schema afterwards"
    )
    args = parser.parse_args()

    raw_url = args.url or settings.database_url_sync
    if raw_url.startswith("sqlite"):
        print("[ensure_db] SQLite database, nothing to do")
        return
    try:
        ensure_database_exists(raw_url)
        if args.reset:
            reset_schema(raw_url)
    except Exception as exc:
        print(f"[ensure_db] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
