"""
Audit ledger: append-only record of who did what to which record.

Order of operations in every mutating code path:
    1. the mutation is committed,
    2. the entry is appended (its own commit).
A failed append never rolls back the mutation; it is logged for operators.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from app.tenantdesk.errors import AuditWriteFailed, ValidationFailed
from app.tenantdesk.models import AuditLog, User
from app.tenantdesk.utils import Page, paginate, parse_date, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.tenantdesk.rbac import AccessContext

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = ("create", "update", "delete", "restore", "login", "logout", "view", "export")

# Never written to a snapshot, whoever the caller is.
SENSITIVE_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "password_confirmation",
        "encrypted_password",
        "current_password",
        "reset_password_token",
        "api_key",
        "secret",
        "token",
    }
)


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return str(value)


def sanitize(doc: Any) -> Any:
    """Drop credential keys at any depth."""
    if isinstance(doc, dict):
        return {k: sanitize(v) for k, v in doc.items() if str(k).lower() not in SENSITIVE_KEYS}
    if isinstance(doc, list):
        return [sanitize(v) for v in doc]
    return doc


def snapshot(record: Any, **extra: Any) -> dict[str, Any]:
    """Full column snapshot of a mapped record, JSON-safe and without credentials."""
    mapper = sa_inspect(record).mapper
    data = {attr.key: getattr(record, attr.key) for attr in mapper.column_attrs}
    data.update(extra)
    return sanitize(_json_safe(data))


def human_model_name(record: Any) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", " ", type(record).__name__).lower()


def record_display_name(record: Any) -> str:
    for attr in ("name", "title", "email"):
        value = getattr(record, attr, None)
        if value:
            return str(value)
    return f"#{record.id}"


def _has_pending_changes(s: "Session") -> bool:
    return bool(s.new or s.deleted or any(s.is_modified(o) for o in s.dirty))


def record(
    s: "Session",
    *,
    action: str,
    module: str,
    actor: User | None = None,
    target: Any = None,
    summary: str | None = None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    request: "AccessContext | None" = None,
) -> AuditLog:
    """
    Append one entry and commit it.
    The caller must have committed the mutation being described.
    """
    if action not in AUDIT_ACTIONS:
        raise ValidationFailed(f"Unknown audit action {action!r}")
    if not (module or "").strip():
        raise ValidationFailed("Audit module is required.")
    if _has_pending_changes(s):
        raise RuntimeError("Commit the mutation before recording its audit entry.")
    if actor is None and request is not None:
        actor = request.actor

    entry = AuditLog(
        user_id=actor.id if actor else None,
        user_name=actor.display_name if actor else None,
        module_name=module,
        action=action,
        auditable_type=type(target).__name__ if target is not None else None,
        auditable_id=str(target.id) if target is not None and getattr(target, "id", None) is not None else None,
        summary=summary,
        data_before=sanitize(_json_safe(before)) if before is not None else None,
        data_after=sanitize(_json_safe(after)) if after is not None else None,
        ip_address=request.ip if request else None,
        user_agent=request.user_agent[:512] if request and request.user_agent else None,
        request_id=request.request_id if request else None,
    )
    try:
        s.add(entry)
        s.commit()
    except SQLAlchemyError as e:
        s.rollback()
        raise AuditWriteFailed(f"could not append audit entry ({module}.{action})") from e
    return entry


def _record_best_effort(s: "Session", **kwargs: Any) -> AuditLog | None:
    try:
        return record(s, **kwargs)
    except AuditWriteFailed:
        ctx = kwargs.get("request")
        logger.exception(
            "Audit write failed: module=%s action=%s request_id=%s",
            kwargs.get("module"),
            kwargs.get("action"),
            ctx.request_id if ctx else None,
        )
        return None


# ---------- helpers for controllers (call after commit) ----------


def audit_create(s: "Session", ctx: "AccessContext", target: Any, *, module: str, summary: str | None = None, after: dict | None = None) -> AuditLog | None:
    return _record_best_effort(
        s,
        action="create",
        module=module,
        target=target,
        summary=summary or f"Created {human_model_name(target)}: {record_display_name(target)}",
        after=after if after is not None else snapshot(target),
        request=ctx,
    )


def audit_update(
    s: "Session",
    ctx: "AccessContext",
    target: Any,
    *,
    module: str,
    before: dict,
    summary: str | None = None,
    after: dict | None = None,
) -> AuditLog | None:
    return _record_best_effort(
        s,
        action="update",
        module=module,
        target=target,
        summary=summary or f"Updated {human_model_name(target)}: {record_display_name(target)}",
        before=before,
        after=after if after is not None else snapshot(target),
        request=ctx,
    )


def audit_delete(s: "Session", ctx: "AccessContext", target: Any, *, module: str, before: dict, summary: str | None = None) -> AuditLog | None:
    return _record_best_effort(
        s,
        action="delete",
        module=module,
        target=target,
        summary=summary or f"Deleted {human_model_name(target)}: {record_display_name(target)}",
        before=before,
        request=ctx,
    )


def audit_restore(s: "Session", ctx: "AccessContext", target: Any, *, module: str, summary: str | None = None) -> AuditLog | None:
    return _record_best_effort(
        s,
        action="restore",
        module=module,
        target=target,
        summary=summary or f"Restored {human_model_name(target)}: {record_display_name(target)}",
        after=snapshot(target),
        request=ctx,
    )


def audit_event(s: "Session", ctx: "AccessContext", *, action: str, module: str, target: Any = None, summary: str | None = None, actor: User | None = None) -> AuditLog | None:
    return _record_best_effort(s, action=action, module=module, target=target, summary=summary, actor=actor, request=ctx)


# ---------- query side ----------


@dataclass(frozen=True)
class AuditFilters:
    action: str | None = None
    module: str | None = None
    actor_id: int | None = None
    date_from: date | None = None
    date_to: date | None = None

    @classmethod
    def from_args(cls, args: Any) -> "AuditFilters":
        errors = []
        dates: dict[str, date | None] = {}
        for key in ("date_from", "date_to"):
            try:
                dates[key] = parse_date(args.get(key))
            except ValueError:
                errors.append(f"{key} must be YYYY-MM-DD")
        if errors:
            raise ValidationFailed(errors)
        return cls(
            action=(args.get("action") or "").strip() or None,
            module=(args.get("module") or "").strip() or None,
            actor_id=parse_int(args.get("actor_id")),
            date_from=dates["date_from"],
            date_to=dates["date_to"],
        )


def find(
    s: "Session",
    ctx: "AccessContext",
    filters: AuditFilters | None = None,
    page: int = 1,
    per_page: int = 25,
) -> Page:
    """Newest first; ties broken by insertion id. Restricted to the actor's visible trail."""
    from app.tenantdesk.policies import policy_for

    f = filters or AuditFilters()
    stmt = policy_for("audit_logs").scope(ctx, "index")
    if f.action:
        stmt = stmt.where(AuditLog.action == f.action)
    if f.module:
        stmt = stmt.where(AuditLog.module_name == f.module)
    if f.actor_id is not None:
        stmt = stmt.where(AuditLog.user_id == f.actor_id)
    if f.date_from:
        stmt = stmt.where(AuditLog.created_at >= datetime.combine(f.date_from, time.min))
    if f.date_to:
        # inclusive end-date (treat as whole day)
        stmt = stmt.where(AuditLog.created_at < datetime.combine(f.date_to + timedelta(days=1), time.min))
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    return paginate(s, stmt, page, per_page)
