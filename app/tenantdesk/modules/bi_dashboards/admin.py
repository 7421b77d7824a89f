from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.tenantdesk import policies
from app.tenantdesk.db import db_session
from app.tenantdesk.modules.projects.models import Dashboard, Project
from app.tenantdesk.rbac import current_context, login_required
from app.tenantdesk.serializers import dashboard_json
from app.tenantdesk.utils import parse_int

bp = Blueprint("bi_dashboards", __name__)


@bp.get("/bi-dashboards")
@login_required
def index():
    """
    Embedded dashboard viewer: the visible projects, the selected project's
    dashboards, and the selected dashboard (first ones by default).
    """
    s = db_session()
    ctx = current_context()
    policies.require(ctx, "bi_dashboards", "index")
    policy = policies.policy_for("bi_dashboards")

    projects = list(
        s.execute(
            policy.projects(ctx)
            .where(Project.status == "active")
            .order_by(Project.sidebar_position.asc(), Project.name.asc())
        ).scalars()
    )

    project_id = parse_int(request.args.get("project_id"))
    if project_id is not None:
        selected_project = next((p for p in projects if p.id == project_id), None)
    else:
        selected_project = projects[0] if projects else None

    dashboards: list[Dashboard] = []
    if selected_project is not None:
        stmt = (
            policies.scope(ctx, "bi_dashboards", "index")
            .where(Dashboard.project_id == selected_project.id, Dashboard.status == "active")
            .order_by(Dashboard.position.asc(), Dashboard.created_at.desc())
        )
        dashboards = list(s.execute(stmt).scalars())

    dashboard_id = parse_int(request.args.get("dashboard_id"))
    if dashboard_id is not None:
        selected_dashboard = next((d for d in dashboards if d.id == dashboard_id), None)
    else:
        selected_dashboard = dashboards[0] if dashboards else None

    return jsonify(
        {
            "projects": [{"id": p.id, "name": p.name, "icon": p.icon} for p in projects],
            "selected_project_id": selected_project.id if selected_project else None,
            "dashboards": [dashboard_json(d) for d in dashboards],
            "selected_dashboard": dashboard_json(selected_dashboard) if selected_dashboard else None,
        }
    )


@bp.get("/bi-dashboards/<int:dashboard_id>")
@login_required
def show(dashboard_id: int):
    s = db_session()
    dashboard = policies.fetch(s, current_context(), "bi_dashboards", dashboard_id, action="show")
    return jsonify(dashboard_json(dashboard))
