from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.tenantdesk import policies
from app.tenantdesk.audit import AUDIT_ACTIONS, AuditFilters, find
from app.tenantdesk.db import db_session
from app.tenantdesk.rbac import current_context, login_required
from app.tenantdesk.serializers import audit_log_json, page_json
from app.tenantdesk.utils import parse_int

bp = Blueprint("audit_logs", __name__)


@bp.get("/audit-logs")
@login_required
def audit_logs_list():
    s = db_session()
    ctx = current_context()
    policies.require(ctx, "audit_logs", "index")

    filters = AuditFilters.from_args(request.args)
    per_page = parse_int(request.args.get("per_page"), current_app.config.get("AUDIT_PAGE_SIZE", 25))
    page = find(s, ctx, filters, page=parse_int(request.args.get("page"), 1), per_page=per_page)
    out = page_json(page, audit_log_json)
    out["actions"] = list(AUDIT_ACTIONS)
    return jsonify(out)


@bp.get("/audit-logs/<int:audit_log_id>")
@login_required
def audit_log_detail(audit_log_id: int):
    s = db_session()
    entry = policies.fetch(s, current_context(), "audit_logs", audit_log_id, action="show")
    return jsonify(audit_log_json(entry, full=True))
