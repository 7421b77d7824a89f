"""JSON shapes returned by the blueprints."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from app.tenantdesk.models import AuditLog, Company, Dashboard, Permission, Project, Role, User
from app.tenantdesk.utils import Page


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def page_json(page: Page, item) -> dict[str, Any]:
    return {
        "items": [item(i) for i in page.items],
        "page": page.page,
        "per_page": page.per_page,
        "total": page.total,
        "pages": page.pages,
        "has_next": page.has_next,
    }


def company_json(c: Company) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "status": c.status,
        "users_count": c.users_count,
        "projects_count": c.projects_count,
        "discarded_at": _ts(c.discarded_at),
        "created_at": _ts(c.created_at),
    }


def project_json(p: Project) -> dict[str, Any]:
    return {
        "id": p.id,
        "company_id": p.company_id,
        "name": p.name,
        "description": p.description,
        "status": p.status,
        "icon": p.icon,
        "show_in_sidebar": p.show_in_sidebar,
        "sidebar_position": p.sidebar_position,
        "dashboards_count": p.dashboards_count,
        "discarded_at": _ts(p.discarded_at),
        "created_at": _ts(p.created_at),
    }


def dashboard_json(d: Dashboard) -> dict[str, Any]:
    return {
        "id": d.id,
        "project_id": d.project_id,
        "name": d.name,
        "embed_url": d.embed_url,
        "embed_type": d.embed_type,
        "status": d.status,
        "position": d.position,
        "user_ids": sorted(u.id for u in d.users),
        "discarded_at": _ts(d.discarded_at),
    }


def user_json(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "is_active": u.is_active,
        "role_id": u.role_id,
        "role": u.role.name if u.role else None,
        "company_id": u.company_id,
        "dashboard_ids": sorted(d.id for d in u.dashboards),
        "sign_in_count": u.sign_in_count,
        "last_sign_in_at": _ts(u.last_sign_in_at),
        "discarded_at": _ts(u.discarded_at),
    }


def permission_json(p: Permission) -> dict[str, Any]:
    return {"id": p.id, "code": p.code, "name": p.name, "resource": p.resource, "section": p.section}


def role_json(r: Role, with_permissions: bool = False) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "permissions_version": r.permissions_version,
        "permission_ids": [p.id for p in r.permissions],
        "discarded_at": _ts(r.discarded_at),
    }
    if with_permissions:
        out["permissions"] = [permission_json(p) for p in r.permissions]
    return out


def audit_log_json(a: AuditLog, full: bool = False) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": a.id,
        "created_at": _ts(a.created_at),
        "user_id": a.user_id,
        "user_name": a.user_name,
        "module_name": a.module_name,
        "action": a.action,
        "auditable_type": a.auditable_type,
        "auditable_id": a.auditable_id,
        "summary": a.summary,
    }
    if full:
        out.update(
            {
                "data_before": a.data_before,
                "data_after": a.data_after,
                "ip_address": a.ip_address,
                "user_agent": a.user_agent,
                "request_id": a.request_id,
            }
        )
    return out
