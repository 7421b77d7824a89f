"""
Release phase: run once per deploy, before the web workers start.

- refuses to run without DATABASE_URL, or against SQLite in production
- creates missing tables from the ORM metadata
- seeds the permission catalog, default roles and the superadmin account
  (idempotent; existing passwords are never overwritten)

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against a sqlite DATABASE_URL in production.")
    return db_url


def run_release() -> None:
    db_url = _database_url()
    from scripts import init_db

    print("=== Tenantdesk release: schema + catalog ===", flush=True)
    init_db.seed_only(database_url=db_url)
    print("=== Tenantdesk release done ===", flush=True)


if __name__ == "__main__":
    run_release()
