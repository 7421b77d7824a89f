from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from werkzeug.security import generate_password_hash

from app.tenantdesk import policies, soft_delete
from app.tenantdesk.audit import audit_create, audit_delete, audit_restore, audit_update, snapshot
from app.tenantdesk.catalog import SUPERADMIN_ROLE, is_superadmin_role
from app.tenantdesk.errors import NotAuthorized, ValidationFailed
from app.tenantdesk.models import Company, Permission, Role, User

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.tenantdesk.rbac import AccessContext

MODULE = "user_management"
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ---------- role / permission graph ----------


def bump_permissions_version(role: Role) -> None:
    role.permissions_version = (role.permissions_version or 0) + 1
    role.updated_at = datetime.utcnow()


def grant_permissions(s: "Session", role: Role, permissions: list[Permission]) -> bool:
    """Add missing grants; existing ones are kept. Returns True when the set changed."""
    have = {p.id for p in role.permissions}
    added = False
    for p in permissions:
        if p.id not in have:
            role.permissions.append(p)
            have.add(p.id)
            added = True
    if added:
        bump_permissions_version(role)
    return added


def set_role_permissions(s: "Session", role: Role, permissions: list[Permission]) -> bool:
    """Replace the role's grants. Returns True when the set changed."""
    wanted = {p.id: p for p in permissions}
    if set(wanted) == {p.id for p in role.permissions}:
        return False
    role.permissions = sorted(wanted.values(), key=lambda p: p.code)
    bump_permissions_version(role)
    return True


def load_permissions(s: "Session", permission_ids: list[int]) -> list[Permission]:
    if not permission_ids:
        return []
    perms = (
        s.execute(select(Permission).where(Permission.id.in_(permission_ids)))
        .scalars()
        .all()
    )
    if len(perms) != len(set(permission_ids)):
        raise ValidationFailed("Unknown permission selected.")
    return list(perms)


def delete_permission(s: "Session", permission: Permission) -> None:
    """Remove a permission and every grant of it; every affected role sees the change."""
    for role in list(permission.roles):
        role.permissions = [p for p in role.permissions if p.id != permission.id]
        bump_permissions_version(role)
    s.flush()
    s.delete(permission)
    s.flush()


def _role_name_taken(s: "Session", name: str, exclude_id: int | None = None) -> bool:
    stmt = select(Role.id).where(func.lower(Role.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Role.id != exclude_id)
    return s.execute(stmt).first() is not None


def validate_role_payload(s: "Session", payload: dict, role: Role | None = None) -> list[str]:
    errors = []
    name = (payload.get("name") or "").strip()
    if not name:
        errors.append("Name is required.")
    elif _role_name_taken(s, name, role.id if role else None):
        errors.append("Name has already been taken.")
    return errors


def role_snapshot(role: Role) -> dict:
    return snapshot(role, permission_ids=sorted(p.id for p in role.permissions))


def create_role(s: "Session", ctx: "AccessContext", payload: dict) -> Role:
    policies.require(ctx, "roles", "create")
    errors = validate_role_payload(s, payload)
    if errors:
        raise ValidationFailed(errors)
    now = datetime.utcnow()
    role = Role(
        name=payload["name"].strip(),
        description=(payload.get("description") or "").strip() or None,
        permissions_version=1,
        created_at=now,
        updated_at=now,
    )
    role.permissions = load_permissions(s, payload.get("permission_ids") or [])
    s.add(role)
    s.commit()
    audit_create(s, ctx, role, module=MODULE, after=role_snapshot(role))
    return role


def update_role(s: "Session", ctx: "AccessContext", role_id: int, payload: dict) -> Role:
    role = policies.fetch(s, ctx, "roles", role_id, action="update", for_update=True)
    before = role_snapshot(role)
    payload = {"name": role.name, "description": role.description, **payload}
    errors = validate_role_payload(s, payload, role)
    if errors:
        raise ValidationFailed(errors)
    if role.name.casefold() == SUPERADMIN_ROLE.casefold() and payload["name"].strip() != role.name:
        raise ValidationFailed("The Superadmin role cannot be renamed.")

    role.name = payload["name"].strip()
    role.description = (payload.get("description") or "").strip() or None
    if "permission_ids" in payload:
        set_role_permissions(s, role, load_permissions(s, payload.get("permission_ids") or []))
    role.updated_at = datetime.utcnow()
    s.commit()
    audit_update(s, ctx, role, module=MODULE, before=before, after=role_snapshot(role))
    return role


def delete_role(s: "Session", ctx: "AccessContext", role_id: int) -> Role:
    role = policies.fetch(s, ctx, "roles", role_id, action="destroy", for_update=True)
    before = role_snapshot(role)
    soft_delete.discard(s, role)
    s.commit()
    audit_delete(s, ctx, role, module=MODULE, before=before)
    return role


# ---------- users ----------


def _email_taken(s: "Session", email: str, exclude_id: int | None = None) -> bool:
    stmt = select(User.id).where(func.lower(User.email) == email.lower())
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return s.execute(stmt).first() is not None


def _resolve_role(s: "Session", role_id: int | None) -> Role | None:
    if role_id is None:
        return None
    role = s.get(Role, role_id)
    if role is None or role.discarded_at is not None:
        raise ValidationFailed("Unknown role selected.")
    return role


def _resolve_company(s: "Session", company_id: int | None) -> Company | None:
    if company_id is None:
        return None
    company = s.get(Company, company_id)
    if company is None or company.discarded_at is not None:
        raise ValidationFailed("Unknown company selected.")
    return company


def validate_user_payload(s: "Session", payload: dict, user: User | None = None) -> list[str]:
    errors = []
    name = (payload.get("name") or "").strip()
    email = (payload.get("email") or "").strip().lower()
    if not name:
        errors.append("Name is required.")
    if not email or not EMAIL_RE.match(email):
        errors.append("Email is invalid.")
    elif _email_taken(s, email, user.id if user else None):
        errors.append("Email has already been taken.")
    password = payload.get("password") or ""
    if user is None and not password:
        errors.append("Password is required.")
    if password:
        if len(password) < 6:
            errors.append("Password is too short (minimum is 6 characters).")
        confirmation = payload.get("password_confirmation")
        if confirmation is not None and confirmation != password:
            errors.append("Password confirmation doesn't match Password.")
    return errors


def _check_company_requirement(role: Role | None, company: Company | None) -> None:
    if is_superadmin_role(role):
        if company is not None:
            raise ValidationFailed("Superadmin users cannot belong to a company.")
        return
    if role is not None and company is None:
        raise ValidationFailed(f"Company must be selected for {role.name} role.")


def _check_role_assignable(ctx: "AccessContext", role: Role | None) -> None:
    # Only a superadmin can hand out the bypass role.
    if is_superadmin_role(role) and not ctx.is_superadmin:
        raise ValidationFailed("Unknown role selected.")


def user_snapshot(user: User) -> dict:
    return snapshot(user, dashboard_ids=sorted(d.id for d in user.dashboards))


def change_user_company(s: "Session", user: User, company_id: int | None) -> bool:
    """
    Move a user to another tenant. Dashboard assignments belong to the old
    tenant and are cleared; the users_count moves with the user.
    """
    old_company_id = user.company_id
    if old_company_id == company_id:
        return False
    user.dashboards = []
    user.company_id = company_id
    user.updated_at = datetime.utcnow()
    s.flush()
    soft_delete.reparent(s, user, old_company_id)
    s.expire(user, ["company"])
    return True


def create_user(s: "Session", ctx: "AccessContext", payload: dict) -> User:
    errors = validate_user_payload(s, payload)
    if errors:
        raise ValidationFailed(errors)
    role = _resolve_role(s, payload.get("role_id"))
    company = _resolve_company(s, payload.get("company_id"))
    _check_role_assignable(ctx, role)
    _check_company_requirement(role, company)

    now = datetime.utcnow()
    user = User(
        name=payload["name"].strip(),
        email=payload["email"].strip().lower(),
        password_hash=generate_password_hash(payload["password"]),
        is_active=True,
        role_id=role.id if role else None,
        company_id=company.id if company else None,
        created_at=now,
        updated_at=now,
    )
    policies.require(ctx, "users", "create", user)
    s.add(user)
    soft_delete.count_created(s, user)
    s.commit()
    audit_create(s, ctx, user, module=MODULE, summary=f"Created user: {user.email}")
    return user


def update_user(s: "Session", ctx: "AccessContext", user_id: int, payload: dict) -> User:
    user = policies.fetch(s, ctx, "users", user_id, action="update", for_update=True)
    before = user_snapshot(user)
    payload = {"name": user.name, "email": user.email, **payload}
    errors = validate_user_payload(s, payload, user)
    if errors:
        raise ValidationFailed(errors)

    role = _resolve_role(s, payload.get("role_id")) if "role_id" in payload else user.role
    company_id = payload.get("company_id") if "company_id" in payload else user.company_id
    if is_superadmin_role(role) and "company_id" not in payload:
        # Promotion takes the user out of their tenant.
        company_id = None
    company = _resolve_company(s, company_id)
    if role is not user.role:
        _check_role_assignable(ctx, role)
    _check_company_requirement(role, company)

    user.name = payload["name"].strip()
    user.email = payload["email"].strip().lower()
    if payload.get("password"):
        user.password_hash = generate_password_hash(payload["password"])
    user.role = role
    user.updated_at = datetime.utcnow()
    change_user_company(s, user, company.id if company else None)
    # The edited record must still be inside the editor's tenant.
    try:
        policies.require(ctx, "users", "update", user)
    except NotAuthorized:
        s.rollback()
        raise
    s.commit()
    audit_update(s, ctx, user, module=MODULE, before=before, after=user_snapshot(user), summary=f"Updated user: {user.email}")
    return user


def discard_user(s: "Session", ctx: "AccessContext", user_id: int) -> User:
    user = policies.fetch(s, ctx, "users", user_id, action="destroy", for_update=True)
    if ctx.actor is not None and user.id == ctx.actor.id:
        raise ValidationFailed("You cannot delete your own account.")
    before = user_snapshot(user)
    soft_delete.discard(s, user)
    s.commit()
    audit_delete(s, ctx, user, module=MODULE, before=before, summary=f"Deleted user: {user.email}")
    return user


def restore_user(s: "Session", ctx: "AccessContext", user_id: int) -> User:
    user = policies.fetch(s, ctx, "users", user_id, action="restore", include_discarded=True, for_update=True)
    if user.company is not None and user.company.discarded_at is not None:
        raise ValidationFailed("Restore the user's company first.")
    soft_delete.undiscard(s, user)
    s.commit()
    audit_restore(s, ctx, user, module=MODULE, summary=f"Restored user: {user.email}")
    return user
