"""
Soft delete (discard/undiscard) with denormalized counter maintenance.

Counter columns on a parent always equal the number of its kept children.
The hot path moves a counter by exactly one, in SQL (`col = col - 1`), and
only when the guarded `discarded_at` transition actually changed a row.
`recount` is the out-of-band repair.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from app.tenantdesk.errors import HasActiveChildren
from app.tenantdesk.models import Company, Project, Role, User

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterCache:
    child: type
    foreign_key: str
    parent: type
    column: str


COUNTER_CACHES: tuple[CounterCache, ...] = (
    CounterCache(Project, "company_id", Company, "projects_count"),
    CounterCache(User, "company_id", Company, "users_count"),
)


@dataclass(frozen=True)
class ChildGuard:
    child: type
    foreign_key: str
    message: str
    kept_only: bool = True


# Parents that may not be discarded while these children exist.
CHILD_GUARDS: dict[type, tuple[ChildGuard, ...]] = {
    Company: (ChildGuard(Project, "company_id", "Cannot delete company with active projects."),),
    Role: (ChildGuard(User, "role_id", "Cannot delete role with associated users.", kept_only=False),),
}

_NO_UPDATE_SYNC = {"synchronize_session": False}


def counters_for_child(model: type) -> list[CounterCache]:
    return [cc for cc in COUNTER_CACHES if cc.child is model]


def counters_for_parent(model: type) -> list[CounterCache]:
    return [cc for cc in COUNTER_CACHES if cc.parent is model]


def _expire_loaded(s: "Session", model: type, pk: int, attrs: list[str]) -> None:
    for obj in list(s.identity_map.values()):
        if isinstance(obj, model) and obj.id == pk:
            s.expire(obj, attrs)


def _bump(s: "Session", cc: CounterCache, parent_id: int | None, delta: int) -> None:
    if parent_id is None:
        return
    col = getattr(cc.parent, cc.column)
    s.execute(
        update(cc.parent).where(cc.parent.id == parent_id).values({cc.column: col + delta}),
        execution_options=_NO_UPDATE_SYNC,
    )
    _expire_loaded(s, cc.parent, parent_id, [cc.column])


def ensure_no_kept_children(s: "Session", record: Any) -> None:
    for guard in CHILD_GUARDS.get(type(record), ()):
        fk = getattr(guard.child, guard.foreign_key)
        stmt = select(func.count()).select_from(guard.child).where(fk == record.id)
        if guard.kept_only:
            stmt = stmt.where(guard.child.discarded_at.is_(None))
        if s.execute(stmt).scalar_one() > 0:
            raise HasActiveChildren(guard.message)


def _transition(s: "Session", record: Any, *, discard: bool, now: datetime | None = None) -> bool:
    model = type(record)
    s.flush()
    stamp = (now or datetime.utcnow()) if discard else None
    guard = model.discarded_at.is_(None) if discard else model.discarded_at.is_not(None)
    res = s.execute(
        update(model).where(model.id == record.id, guard).values(discarded_at=stamp, updated_at=datetime.utcnow()),
        execution_options=_NO_UPDATE_SYNC,
    )
    if res.rowcount != 1:
        # Someone else already made this transition; counters were moved then.
        s.expire(record, ["discarded_at", "updated_at"])
        return False
    set_committed_value(record, "discarded_at", stamp)
    s.expire(record, ["updated_at"])
    delta = -1 if discard else 1
    for cc in counters_for_child(model):
        _bump(s, cc, getattr(record, cc.foreign_key), delta)
    return True


def discard(s: "Session", record: Any, now: datetime | None = None) -> bool:
    """
    Active -> Discarded. Returns False when the record was already discarded.
    Raises HasActiveChildren when the record still owns kept children.
    """
    ensure_no_kept_children(s, record)
    changed = _transition(s, record, discard=True, now=now)
    if changed:
        logger.info("discarded %s #%s", type(record).__name__, record.id)
    return changed


def undiscard(s: "Session", record: Any) -> bool:
    """Discarded -> Active. Returns False when the record was already kept."""
    changed = _transition(s, record, discard=False)
    if changed:
        logger.info("restored %s #%s", type(record).__name__, record.id)
    return changed


def count_created(s: "Session", record: Any) -> None:
    """Count a freshly inserted kept child on its parent."""
    s.flush()
    if record.discarded_at is not None:
        return
    for cc in counters_for_child(type(record)):
        _bump(s, cc, getattr(record, cc.foreign_key), 1)


def reparent(s: "Session", record: Any, old_parent_id: int | None, foreign_key: str = "company_id") -> None:
    """Move a kept child's count from its old parent to its current one."""
    new_parent_id = getattr(record, foreign_key)
    if record.discarded_at is not None or old_parent_id == new_parent_id:
        return
    for cc in counters_for_child(type(record)):
        if cc.foreign_key != foreign_key:
            continue
        _bump(s, cc, old_parent_id, -1)
        _bump(s, cc, new_parent_id, 1)


def recount(s: "Session", parent: Any) -> dict[str, int]:
    """
    Reset every counter of `parent` to the number of kept children.
    Idempotent; one UPDATE per counter with the count computed in SQL.
    """
    model = type(parent)
    result: dict[str, int] = {}
    for cc in counters_for_parent(model):
        fk = getattr(cc.child, cc.foreign_key)
        kept = (
            select(func.count())
            .select_from(cc.child)
            .where(fk == parent.id, cc.child.discarded_at.is_(None))
            .scalar_subquery()
        )
        s.execute(
            update(model).where(model.id == parent.id).values({cc.column: kept}),
            execution_options=_NO_UPDATE_SYNC,
        )
        result[cc.column] = s.execute(select(getattr(model, cc.column)).where(model.id == parent.id)).scalar_one()
    _expire_loaded(s, model, parent.id, list(result))
    return result


def recount_all(s: "Session", model: type = Company) -> dict[int, dict[str, int]]:
    """Repair every row of `model`; logs the rows whose counters had drifted."""
    repaired: dict[int, dict[str, int]] = {}
    columns = [cc.column for cc in counters_for_parent(model)]
    rows = s.execute(select(model.id, *[getattr(model, c) for c in columns]).order_by(model.id)).all()
    for row in rows:
        parent = s.get(model, row[0])
        before = dict(zip(columns, row[1:]))
        after = recount(s, parent)
        if before != after:
            logger.info("recount %s #%s: %s -> %s", model.__name__, row[0], before, after)
        repaired[row[0]] = after
    return repaired
