"""
Release phase: upgrade the schema to head, then seed permissions/admin.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.petmemorial.config import load_settings  # noqa: E402


def alembic_config(database_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def run_release() -> None:
    settings = load_settings()
    # Same guardrail create_app() applies; fail before touching the schema.
    if settings.env in ("prod", "production") and settings.database_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")

    from alembic import command

    print(f"Upgrading schema (ENV={settings.env})...", flush=True)
    command.upgrade(alembic_config(settings.database_url), "head")

    from scripts import init_db

    init_db.seed_only(database_url=settings.database_url)
    print("Release complete.", flush=True)


if __name__ == "__main__":
    run_release()
