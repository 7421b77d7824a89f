from __future__ import annotations

from flask import Blueprint, jsonify
from sqlalchemy import func, select

from app.tenantdesk import policies
from app.tenantdesk.audit import find
from app.tenantdesk.db import db_session
from app.tenantdesk.rbac import current_context, login_required
from app.tenantdesk.serializers import audit_log_json

bp = Blueprint("home", __name__)


def _count(s, stmt) -> int:
    return s.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()


@bp.get("/dashboard")
@login_required
def index():
    """Landing page: what the actor can see, counted in the database."""
    s = db_session()
    ctx = current_context()
    policies.require(ctx, "home", "index")

    recent = find(s, ctx, page=1, per_page=10)
    return jsonify(
        {
            "projects_count": _count(s, policies.scope(ctx, "projects", "index")),
            "dashboards_count": _count(s, policies.scope(ctx, "bi_dashboards", "index")),
            "users_count": _count(s, policies.scope(ctx, "users", "index")),
            "audit_logs_count": recent.total,
            "recent_logs": [audit_log_json(a) for a in recent.items],
        }
    )
