"""
Permission catalog: the static set of `namespace.resource.action` codes.
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING

from app.tenantdesk.errors import ValidationFailed

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.tenantdesk.models import Permission, Role

CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")
RESOURCE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")

SUPERADMIN_ROLE = "Superadmin"
CLIENT_ROLE = "Client"

# (code, name, resource, section)
PERMISSION_DEFINITIONS: tuple[tuple[str, str, str, str], ...] = (
    ("dashboard.index", "View", "dashboard", "Dashboard"),
    # Projects and the dashboards nested in them
    ("projects.index", "List", "projects", "Project Management"),
    ("projects.show", "View", "projects", "Project Management"),
    ("projects.create", "Create", "projects", "Project Management"),
    ("projects.update", "Update", "projects", "Project Management"),
    ("projects.destroy", "Delete", "projects", "Project Management"),
    ("dashboards.index", "List", "dashboards", "Project Management"),
    ("dashboards.show", "View", "dashboards", "Project Management"),
    ("dashboards.create", "Create", "dashboards", "Project Management"),
    ("dashboards.update", "Update", "dashboards", "Project Management"),
    ("dashboards.destroy", "Delete", "dashboards", "Project Management"),
    # Embedded BI dashboards (sidebar viewer)
    ("bi_dashboards.index", "List", "bi_dashboards", "Project Management"),
    ("bi_dashboards.show", "View", "bi_dashboards", "Project Management"),
    # Companies
    ("company_management.companies.index", "List", "company_management.companies", "Company Management"),
    ("company_management.companies.show", "View", "company_management.companies", "Company Management"),
    ("company_management.companies.create", "Create", "company_management.companies", "Company Management"),
    ("company_management.companies.update", "Update", "company_management.companies", "Company Management"),
    ("company_management.companies.destroy", "Delete", "company_management.companies", "Company Management"),
    # Users and roles
    ("user_management.users.index", "List", "user_management.users", "User Management"),
    ("user_management.users.show", "View", "user_management.users", "User Management"),
    ("user_management.users.create", "Create", "user_management.users", "User Management"),
    ("user_management.users.update", "Update", "user_management.users", "User Management"),
    ("user_management.users.destroy", "Delete", "user_management.users", "User Management"),
    ("user_management.roles.index", "List", "user_management.roles", "User Management"),
    ("user_management.roles.show", "View", "user_management.roles", "User Management"),
    ("user_management.roles.create", "Create", "user_management.roles", "User Management"),
    ("user_management.roles.update", "Update", "user_management.roles", "User Management"),
    ("user_management.roles.destroy", "Delete", "user_management.roles", "User Management"),
    # Audit trail
    ("audit_logs.index", "List", "audit_logs", "Audit Logs"),
    ("audit_logs.show", "View", "audit_logs", "Audit Logs"),
)

CLIENT_PERMISSION_CODES = (
    "dashboard.index",
    "projects.index",
    "projects.show",
    "bi_dashboards.index",
    "bi_dashboards.show",
)


def is_superadmin_role(role: "Role | None") -> bool:
    return role is not None and role.name.casefold() == SUPERADMIN_ROLE.casefold()


def build_code(resource: str, action: str) -> str:
    return f"{resource}.{action}"


def validate_permission(code: str, resource: str, name: str) -> list[str]:
    """Returns a list of validation errors (empty when valid)."""
    errors = []
    if not CODE_RE.match(code or ""):
        errors.append(
            "Code must follow format: namespace.resource.action (e.g., 'user_management.users.index')"
        )
    if not RESOURCE_RE.match(resource or ""):
        errors.append("Resource must follow format: namespace.resource (e.g., 'user_management.users')")
    if not (name or "").strip():
        errors.append("Name is required.")
    return errors


def ensure_permission(s: "Session", code: str, name: str, resource: str, section: str | None = None) -> "Permission":
    """Find-or-create a permission by code (idempotent)."""
    from app.tenantdesk.models import Permission

    errors = validate_permission(code, resource, name)
    if errors:
        raise ValidationFailed(errors)
    p = s.query(Permission).filter(Permission.code == code).one_or_none()
    if not p:
        p = Permission(code=code, name=name, resource=resource, section=section)
        s.add(p)
        s.flush()
    return p


def ensure_role(s: "Session", name: str, description: str | None = None) -> "Role":
    from app.tenantdesk.models import Role

    r = s.query(Role).filter(Role.name == name).one_or_none()
    if not r:
        r = Role(name=name, description=description)
        s.add(r)
        s.flush()
    return r


def seed_catalog(s: "Session") -> dict[str, "Permission"]:
    """
    Populate the permission catalog and the default roles.
    Safe to run repeatedly: nothing is duplicated and existing grants are only extended.
    """
    from app.tenantdesk.modules.user_management.service import grant_permissions

    perms = {}
    for code, name, resource, section in PERMISSION_DEFINITIONS:
        perms[code] = ensure_permission(s, code, name, resource, section)

    # Superadmin bypasses checks; the grants are only for visibility in the role screens.
    superadmin = ensure_role(
        s,
        SUPERADMIN_ROLE,
        "Full system access - bypasses all permission checks.",
    )
    grant_permissions(s, superadmin, list(perms.values()))

    client = ensure_role(
        s,
        CLIENT_ROLE,
        "Client company users - read-only access to their company's projects and dashboards",
    )
    grant_permissions(s, client, [perms[c] for c in CLIENT_PERMISSION_CODES])
    return perms
