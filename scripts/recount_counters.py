"""
Repair the denormalized tenant counters (users_count, projects_count).

Every company's counters are reset to the number of its kept children.
Running it twice changes nothing the second time.

Usage:
  python scripts/recount_counters.py
"""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.tenantdesk.soft_delete import recount_all
from scripts._db_utils import script_session


def run_recount(database_url: str | None = None) -> dict[int, dict[str, int]]:
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///tenantdesk.db").strip()
    with script_session(db_url) as s:
        return recount_all(s)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    repaired = run_recount()
    print(f"Recounted {len(repaired)} companies.", flush=True)


if __name__ == "__main__":
    main()
