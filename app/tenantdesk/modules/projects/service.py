from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.orm.attributes import set_committed_value

from app.tenantdesk import policies, soft_delete
from app.tenantdesk.audit import audit_create, audit_delete, audit_restore, audit_update, snapshot
from app.tenantdesk.errors import NotAuthorized, NotFound, ValidationFailed
from app.tenantdesk.models import Company, User
from app.tenantdesk.modules.projects.models import DEFAULT_ICON, VALID_EMBED_TYPES, VALID_STATUSES, Dashboard, Project
from app.tenantdesk.utils import parse_bool, parse_id_list, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.tenantdesk.rbac import AccessContext


def _require_or_rollback(s: "Session", ctx: "AccessContext", tag: str, action: str, record) -> None:
    # Re-check after applying changes: the record must still be inside the actor's tenant.
    try:
        policies.require(ctx, tag, action, record)
    except NotAuthorized:
        s.rollback()
        raise


def _kept_company(s: "Session", company_id: int | None, message: str = "Company must exist.") -> Company:
    """Lock the parent company so a concurrent discard_company waits for this write."""
    company = None
    if company_id is not None:
        stmt = select(Company).where(Company.id == company_id).with_for_update()
        company = s.execute(stmt.execution_options(populate_existing=True)).scalars().first()
    if company is None or company.discarded_at is not None:
        raise ValidationFailed(message)
    return company


# ---------- projects ----------


def validate_project_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    status = (payload.get("status") or "active").strip()
    if status not in VALID_STATUSES:
        errors.append(f"Status must be one of: {', '.join(VALID_STATUSES)}.")
    if payload.get("sidebar_position") not in (None, "") and parse_int(payload.get("sidebar_position")) is None:
        errors.append("Sidebar position must be a number.")
    return errors


def _apply_project(project: Project, payload: dict) -> None:
    project.name = payload["name"].strip()
    project.description = (payload.get("description") or "").strip() or None
    project.status = (payload.get("status") or "active").strip()
    project.icon = (payload.get("icon") or "").strip() or DEFAULT_ICON
    project.show_in_sidebar = parse_bool(payload.get("show_in_sidebar"), default=True)
    project.sidebar_position = parse_int(payload.get("sidebar_position"), 0)
    project.updated_at = datetime.utcnow()


def create_project(s: "Session", ctx: "AccessContext", payload: dict) -> Project:
    errors = validate_project_payload(payload)
    if errors:
        raise ValidationFailed(errors)
    company_id = parse_int(payload.get("company_id"))
    if company_id is None and ctx.actor is not None:
        company_id = ctx.actor.company_id
    company = _kept_company(s, company_id)

    project = Project(company_id=company.id, created_at=datetime.utcnow())
    _apply_project(project, payload)
    policies.require(ctx, "projects", "create", project)
    s.add(project)
    soft_delete.count_created(s, project)
    s.commit()
    audit_create(s, ctx, project, module="projects")
    return project


def update_project(s: "Session", ctx: "AccessContext", project_id: int, payload: dict) -> Project:
    project = policies.fetch(s, ctx, "projects", project_id, action="update", for_update=True)
    before = snapshot(project)
    payload = {
        "name": project.name,
        "description": project.description,
        "status": project.status,
        "icon": project.icon,
        "show_in_sidebar": project.show_in_sidebar,
        "sidebar_position": project.sidebar_position,
        **payload,
    }
    errors = validate_project_payload(payload)
    if errors:
        raise ValidationFailed(errors)

    old_company_id = project.company_id
    if "company_id" in payload:
        project.company_id = _kept_company(s, parse_int(payload.get("company_id"))).id
    _apply_project(project, payload)
    _require_or_rollback(s, ctx, "projects", "update", project)
    s.flush()
    soft_delete.reparent(s, project, old_company_id)
    s.expire(project, ["company"])
    s.commit()
    audit_update(s, ctx, project, module="projects", before=before)
    return project


def discard_project(s: "Session", ctx: "AccessContext", project_id: int) -> Project:
    project = policies.fetch(s, ctx, "projects", project_id, action="destroy", for_update=True)
    before = snapshot(project)
    soft_delete.discard(s, project)
    s.commit()
    audit_delete(s, ctx, project, module="projects", before=before)
    return project


def restore_project(s: "Session", ctx: "AccessContext", project_id: int) -> Project:
    project = policies.fetch(s, ctx, "projects", project_id, action="restore", include_discarded=True, for_update=True)
    _kept_company(s, project.company_id, "Restore the project's company first.")
    soft_delete.undiscard(s, project)
    s.commit()
    audit_restore(s, ctx, project, module="projects")
    return project


# ---------- dashboards (nested in a project) ----------


def _valid_embed_url(raw: str) -> bool:
    parsed = urlparse(raw)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_dashboard_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    embed_url = (payload.get("embed_url") or "").strip()
    if not embed_url:
        errors.append("Embed URL is required.")
    elif not _valid_embed_url(embed_url):
        errors.append("Embed URL must be a valid http or https URL.")
    embed_type = (payload.get("embed_type") or "iframe").strip()
    if embed_type not in VALID_EMBED_TYPES:
        errors.append(f"Embed type must be one of: {', '.join(VALID_EMBED_TYPES)}.")
    status = (payload.get("status") or "active").strip()
    if status not in VALID_STATUSES:
        errors.append(f"Status must be one of: {', '.join(VALID_STATUSES)}.")
    return errors


def _assignable_users(s: "Session", project: Project, user_ids: list[int]) -> list[User]:
    """Dashboards can only be assigned to kept users of the project's company."""
    if not user_ids:
        return []
    users = (
        s.execute(
            select(User).where(
                User.id.in_(user_ids),
                User.company_id == project.company_id,
                User.discarded_at.is_(None),
            )
        )
        .scalars()
        .all()
    )
    if len(users) != len(set(user_ids)):
        raise ValidationFailed("Dashboards can only be assigned to users of the project's company.")
    return list(users)


def dashboard_snapshot(dashboard: Dashboard) -> dict:
    return snapshot(dashboard, user_ids=sorted(u.id for u in dashboard.users))


def _apply_dashboard(dashboard: Dashboard, payload: dict) -> None:
    dashboard.name = payload["name"].strip()
    dashboard.embed_url = payload["embed_url"].strip()
    dashboard.embed_type = (payload.get("embed_type") or "iframe").strip()
    dashboard.status = (payload.get("status") or "active").strip()
    dashboard.position = parse_int(payload.get("position"), 0)
    dashboard.updated_at = datetime.utcnow()


def _project_dashboard(s: "Session", ctx: "AccessContext", project_id: int, dashboard_id: int, action: str, **kw) -> Dashboard:
    dashboard = policies.fetch(s, ctx, "dashboards", dashboard_id, action=action, **kw)
    if dashboard.project_id != project_id:
        raise NotFound()
    return dashboard


def create_dashboard(s: "Session", ctx: "AccessContext", project_id: int, payload: dict) -> Dashboard:
    project = policies.fetch(s, ctx, "projects", project_id, action="show")
    errors = validate_dashboard_payload(payload)
    if errors:
        raise ValidationFailed(errors)
    dashboard = Dashboard(project_id=project.id, created_at=datetime.utcnow())
    # Attach without touching project.dashboards until the row is actually added.
    set_committed_value(dashboard, "project", project)
    _apply_dashboard(dashboard, payload)
    policies.require(ctx, "dashboards", "create", dashboard)
    dashboard.users = _assignable_users(s, project, parse_id_list(payload.get("user_ids")))
    s.add(dashboard)
    s.commit()
    audit_create(s, ctx, dashboard, module="dashboards", after=dashboard_snapshot(dashboard))
    return dashboard


def update_dashboard(s: "Session", ctx: "AccessContext", project_id: int, dashboard_id: int, payload: dict) -> Dashboard:
    dashboard = _project_dashboard(s, ctx, project_id, dashboard_id, "update", for_update=True)
    before = dashboard_snapshot(dashboard)
    payload = {
        "name": dashboard.name,
        "embed_url": dashboard.embed_url,
        "embed_type": dashboard.embed_type,
        "status": dashboard.status,
        "position": dashboard.position,
        **payload,
    }
    errors = validate_dashboard_payload(payload)
    if errors:
        raise ValidationFailed(errors)
    _apply_dashboard(dashboard, payload)
    if "user_ids" in payload:
        dashboard.users = _assignable_users(s, dashboard.project, parse_id_list(payload.get("user_ids")))
    s.commit()
    audit_update(s, ctx, dashboard, module="dashboards", before=before, after=dashboard_snapshot(dashboard))
    return dashboard


def discard_dashboard(s: "Session", ctx: "AccessContext", project_id: int, dashboard_id: int) -> Dashboard:
    dashboard = _project_dashboard(s, ctx, project_id, dashboard_id, "destroy", for_update=True)
    before = dashboard_snapshot(dashboard)
    soft_delete.discard(s, dashboard)
    s.commit()
    audit_delete(s, ctx, dashboard, module="dashboards", before=before)
    return dashboard


def restore_dashboard(s: "Session", ctx: "AccessContext", project_id: int, dashboard_id: int) -> Dashboard:
    dashboard = _project_dashboard(s, ctx, project_id, dashboard_id, "restore", include_discarded=True, for_update=True)
    if dashboard.project is None or dashboard.project.discarded_at is not None:
        raise ValidationFailed("Restore the dashboard's project first.")
    soft_delete.undiscard(s, dashboard)
    s.commit()
    audit_restore(s, ctx, dashboard, module="dashboards")
    return dashboard
