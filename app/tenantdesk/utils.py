from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import func, select

if TYPE_CHECKING:
    from sqlalchemy import Select
    from sqlalchemy.orm import Session

T = TypeVar("T")

MAX_PER_PAGE = 100


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    page: int
    per_page: int
    total: int

    @property
    def pages(self) -> int:
        return max(1, math.ceil(self.total / self.per_page)) if self.per_page else 1

    @property
    def has_next(self) -> bool:
        return self.page < self.pages


def paginate(s: "Session", stmt: "Select", page: int = 1, per_page: int = 25) -> Page:
    """Count and slice a scoped statement in the database (never client-side)."""
    page = max(1, int(page or 1))
    per_page = min(MAX_PER_PAGE, max(1, int(per_page or 25)))
    total = s.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    items = list(s.execute(stmt.limit(per_page).offset((page - 1) * per_page)).scalars().all())
    return Page(items=items, page=page, per_page=per_page, total=total)


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string."""
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def parse_int(raw: Any, default: int | None = None) -> int | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def parse_bool(raw: Any, default: bool = False) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def parse_id_list(raw: Any) -> list[int]:
    """Form multi-selects arrive as lists of strings; blanks are dropped."""
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raw = [raw]
    out = []
    for v in raw:
        n = parse_int(v)
        if n is not None:
            out.append(n)
    return out
