from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.tenantdesk import policies
from app.tenantdesk.db import db_session
from app.tenantdesk.errors import NotFound
from app.tenantdesk.modules.projects.models import Dashboard, Project
from app.tenantdesk.modules.projects.service import (
    create_dashboard,
    create_project,
    discard_dashboard,
    discard_project,
    restore_dashboard,
    restore_project,
    update_dashboard,
    update_project,
)
from app.tenantdesk.rbac import current_context, login_required
from app.tenantdesk.serializers import dashboard_json, page_json, project_json
from app.tenantdesk.utils import paginate, parse_bool, parse_int
from app.tenantdesk.web import done, payload

bp = Blueprint("projects", __name__)


# ---------- Projects ----------
@bp.get("/projects")
@login_required
def projects_list():
    s = db_session()
    ctx = current_context()
    policies.require(ctx, "projects", "index")

    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()
    discarded = parse_bool(request.args.get("discarded"))

    if discarded:
        # Trash view: only for actors who may restore.
        stmt = policies.scope(ctx, "projects", "restore", include_discarded=True).where(Project.discarded_at.is_not(None))
    else:
        stmt = policies.scope(ctx, "projects", "index")
    if search:
        stmt = stmt.where(Project.name.ilike(f"%{search}%"))
    if status_filter:
        stmt = stmt.where(Project.status == status_filter)
    stmt = stmt.order_by(Project.created_at.desc(), Project.id.desc())

    page = paginate(s, stmt, parse_int(request.args.get("page"), 1), parse_int(request.args.get("per_page"), 25))
    return jsonify(page_json(page, project_json))


@bp.post("/projects/new")
@login_required
def projects_new_post():
    s = db_session()
    project = create_project(s, current_context(), payload())
    return done("Project was successfully created.", "projects.project_detail", data=project_json(project), status=201, project_id=project.id)


@bp.get("/projects/<int:project_id>")
@login_required
def project_detail(project_id: int):
    s = db_session()
    ctx = current_context()
    project = policies.fetch(s, ctx, "projects", project_id, action="show")
    out = project_json(project)
    dashboards_stmt = policies.scope(ctx, "dashboards", "index").where(Dashboard.project_id == project.id)
    out["dashboards"] = [
        dashboard_json(d)
        for d in s.execute(dashboards_stmt.order_by(Dashboard.position.asc(), Dashboard.created_at.desc())).scalars()
    ]
    return jsonify(out)


@bp.post("/projects/<int:project_id>/edit")
@login_required
def project_edit_post(project_id: int):
    s = db_session()
    project = update_project(s, current_context(), project_id, payload())
    return done("Project was successfully updated.", "projects.project_detail", data=project_json(project), project_id=project.id)


@bp.post("/projects/<int:project_id>/delete")
@login_required
def project_delete(project_id: int):
    s = db_session()
    project = discard_project(s, current_context(), project_id)
    return done("Project was successfully deleted.", "projects.projects_list", data=project_json(project))


@bp.post("/projects/<int:project_id>/restore")
@login_required
def project_restore(project_id: int):
    s = db_session()
    project = restore_project(s, current_context(), project_id)
    return done("Project was successfully restored.", "projects.project_detail", data=project_json(project), project_id=project.id)


# ---------- Dashboards (nested) ----------
@bp.get("/projects/<int:project_id>/dashboards")
@login_required
def dashboards_list(project_id: int):
    s = db_session()
    ctx = current_context()
    project = policies.fetch(s, ctx, "projects", project_id, action="show")
    policies.require(ctx, "dashboards", "index")
    stmt = (
        policies.scope(ctx, "dashboards", "index")
        .where(Dashboard.project_id == project.id)
        .order_by(Dashboard.position.asc(), Dashboard.created_at.desc())
    )
    return jsonify({"project": project_json(project), "items": [dashboard_json(d) for d in s.execute(stmt).scalars()]})


@bp.post("/projects/<int:project_id>/dashboards/new")
@login_required
def dashboards_new_post(project_id: int):
    s = db_session()
    dashboard = create_dashboard(s, current_context(), project_id, payload())
    return done("Dashboard was successfully created.", "projects.project_detail", data=dashboard_json(dashboard), status=201, project_id=project_id)


@bp.get("/projects/<int:project_id>/dashboards/<int:dashboard_id>")
@login_required
def dashboard_detail(project_id: int, dashboard_id: int):
    s = db_session()
    ctx = current_context()
    dashboard = policies.fetch(s, ctx, "dashboards", dashboard_id, action="show")
    if dashboard.project_id != project_id:
        raise NotFound()
    return jsonify(dashboard_json(dashboard))


@bp.post("/projects/<int:project_id>/dashboards/<int:dashboard_id>/edit")
@login_required
def dashboard_edit_post(project_id: int, dashboard_id: int):
    s = db_session()
    dashboard = update_dashboard(s, current_context(), project_id, dashboard_id, payload())
    return done("Dashboard was successfully updated.", "projects.project_detail", data=dashboard_json(dashboard), project_id=project_id)


@bp.post("/projects/<int:project_id>/dashboards/<int:dashboard_id>/delete")
@login_required
def dashboard_delete(project_id: int, dashboard_id: int):
    s = db_session()
    dashboard = discard_dashboard(s, current_context(), project_id, dashboard_id)
    return done("Dashboard was successfully deleted.", "projects.project_detail", data=dashboard_json(dashboard), project_id=project_id)


@bp.post("/projects/<int:project_id>/dashboards/<int:dashboard_id>/restore")
@login_required
def dashboard_restore(project_id: int, dashboard_id: int):
    s = db_session()
    dashboard = restore_dashboard(s, current_context(), project_id, dashboard_id)
    return done("Dashboard was successfully restored.", "projects.project_detail", data=dashboard_json(dashboard), project_id=project_id)


@bp.get("/projects/sidebar")
@login_required
def projects_sidebar():
    """Projects the actor can open from the navigation, in sidebar order."""
    s = db_session()
    ctx = current_context()
    stmt = (
        policies.scope(ctx, "projects", "index")
        .where(Project.show_in_sidebar.is_(True), Project.status == "active")
        .order_by(Project.sidebar_position.asc(), Project.name.asc())
    )
    return jsonify({"items": [{"id": p.id, "name": p.name, "icon": p.icon} for p in s.execute(stmt).scalars()]})
