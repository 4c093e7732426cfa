"""
Release phase: migrate the database to head, then seed the first lab.

    python scripts/release.py            # migrate + seed
    python scripts/release.py --no-seed  # migrate only

Seeding is idempotent and never resets an existing admin password.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is not set; the release phase needs the production database.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("ENV is production but DATABASE_URL points at SQLite. Use Postgres.")
    return db_url


def _alembic_config(db_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def _current_revision(db_url: str) -> str | None:
    from alembic.runtime.migration import MigrationContext

    from scripts._db_utils import create_script_engine

    engine = create_script_engine(db_url)
    try:
        with engine.connect() as conn:
            return MigrationContext.configure(conn).get_current_revision()
    finally:
        engine.dispose()


def run_release(*, seed: bool = True) -> None:
    from alembic import command

    db_url = _database_url()
    print("=== LIMS release start ===", flush=True)
    print(f"Database revision before: {_current_revision(db_url) or '(empty)'}", flush=True)
    command.upgrade(_alembic_config(db_url), "head")
    print(f"Database revision after: {_current_revision(db_url)}", flush=True)

    if seed:
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
        print("Lab, roles and admin seeded.", flush=True)
    print("=== LIMS release done ===", flush=True)


def main() -> None:
    ap = argparse.ArgumentParser(description="Run migrations and seed the LIMS database.")
    ap.add_argument("--no-seed", action="store_true", help="only run migrations")
    args = ap.parse_args()
    run_release(seed=not args.no_seed)


if __name__ == "__main__":
    main()
