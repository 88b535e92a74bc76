"""Utility for applying Alembic migrations to the orchestrator database."""
from __future__ import annotations

import argparse
import os
from pathlib import Path

from alembic import command
from alembic.config import Config


SERVICE_DIR = Path(__file__).resolve().parents[1]
ALEMBIC_INI = SERVICE_DIR / "alembic.ini"


def build_config(database_url: str) -> Config:
    cfg = Config(str(ALEMBIC_INI))
    cfg.set_main_option("script_location", str(SERVICE_DIR / "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def run_migrations(database_url: str, revision: str = "head") -> None:
    command.upgrade(build_config(database_url), revision)


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply Alembic migrations")
    parser.add_argument(
        "--database-url",
        dest="database_url",
        default=None,
        help="Database URL to migrate (falls back to DATABASE_URL env var)",
    )
    parser.add_argument("--revision", default="head", help="Target revision (default: head)")
    args = parser.parse_args()

    db_url = args.database_url or os.environ.get("DATABASE_URL")
    if not db_url:
        parser.error("DATABASE_URL must be provided via flag or environment variable")

    run_migrations(db_url, args.revision)


if __name__ == "__main__":
    main()
