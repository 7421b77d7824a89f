from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from app.tenantdesk import policies, soft_delete
from app.tenantdesk.audit import audit_create, audit_delete, audit_event, audit_restore, audit_update, snapshot
from app.tenantdesk.catalog import SUPERADMIN_ROLE, is_superadmin_role
from app.tenantdesk.errors import NotFound, ValidationFailed
from app.tenantdesk.models import Role, User
from app.tenantdesk.modules.companies.models import VALID_STATUSES, Company
from app.tenantdesk.modules.user_management.service import change_user_company

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.tenantdesk.rbac import AccessContext

MODULE = "company_management"


def _name_taken(s: "Session", name: str, exclude_id: int | None = None) -> bool:
    stmt = select(Company.id).where(func.lower(Company.name) == name.lower(), Company.discarded_at.is_(None))
    if exclude_id is not None:
        stmt = stmt.where(Company.id != exclude_id)
    return s.execute(stmt).first() is not None


def validate_company_payload(s: "Session", payload: dict, company: Company | None = None) -> list[str]:
    errors = []
    name = (payload.get("name") or "").strip()
    if not name:
        errors.append("Name is required.")
    elif _name_taken(s, name, company.id if company else None):
        errors.append("Name has already been taken.")
    status = (payload.get("status") or "active").strip()
    if status not in VALID_STATUSES:
        errors.append(f"Status must be one of: {', '.join(VALID_STATUSES)}.")
    return errors


def create_company(s: "Session", ctx: "AccessContext", payload: dict) -> Company:
    policies.require(ctx, "companies", "create")
    errors = validate_company_payload(s, payload)
    if errors:
        raise ValidationFailed(errors)
    now = datetime.utcnow()
    company = Company(
        name=payload["name"].strip(),
        description=(payload.get("description") or "").strip() or None,
        status=(payload.get("status") or "active").strip(),
        users_count=0,
        projects_count=0,
        created_at=now,
        updated_at=now,
    )
    s.add(company)
    s.commit()
    audit_create(s, ctx, company, module=MODULE)
    return company


def update_company(s: "Session", ctx: "AccessContext", company_id: int, payload: dict) -> Company:
    company = policies.fetch(s, ctx, "companies", company_id, action="update", for_update=True)
    before = snapshot(company)
    payload = {"name": company.name, "description": company.description, "status": company.status, **payload}
    errors = validate_company_payload(s, payload, company)
    if errors:
        raise ValidationFailed(errors)
    company.name = payload["name"].strip()
    company.description = (payload.get("description") or "").strip() or None
    company.status = (payload.get("status") or "active").strip()
    company.updated_at = datetime.utcnow()
    s.commit()
    audit_update(s, ctx, company, module=MODULE, before=before)
    return company


def discard_company(s: "Session", ctx: "AccessContext", company_id: int) -> Company:
    company = policies.fetch(s, ctx, "companies", company_id, action="destroy", for_update=True)
    before = snapshot(company)
    soft_delete.discard(s, company)
    s.commit()
    audit_delete(s, ctx, company, module=MODULE, before=before)
    return company


def restore_company(s: "Session", ctx: "AccessContext", company_id: int) -> Company:
    company = policies.fetch(s, ctx, "companies", company_id, action="restore", include_discarded=True, for_update=True)
    soft_delete.undiscard(s, company)
    s.commit()
    audit_restore(s, ctx, company, module=MODULE)
    return company


# ---------- membership ----------


def assignable_users(s: "Session", ctx: "AccessContext", company: Company) -> list[User]:
    """
    Kept, non-superadmin users not already in this company.
    Non-superadmin actors are offered unassigned users only.
    """
    stmt = (
        select(User)
        .outerjoin(Role, User.role_id == Role.id)
        .where(
            User.discarded_at.is_(None),
            (User.company_id.is_(None)) | (User.company_id != company.id),
            (Role.id.is_(None)) | (func.lower(Role.name) != SUPERADMIN_ROLE.lower()),
        )
        .order_by(User.name.asc())
    )
    if not ctx.is_superadmin:
        stmt = stmt.where(User.company_id.is_(None))
    return list(s.execute(stmt).scalars().all())


def update_users(s: "Session", ctx: "AccessContext", company_id: int, user_ids: list[int]) -> list[User]:
    """Move the given users into the company. Returns the users that actually moved."""
    company = policies.fetch(s, ctx, "companies", company_id, action="update_users", for_update=True)
    if not user_ids:
        raise ValidationFailed("Select at least one user.")
    users = s.execute(select(User).where(User.id.in_(user_ids), User.discarded_at.is_(None))).scalars().all()
    if len(users) != len(set(user_ids)):
        raise ValidationFailed("Unknown user selected.")
    if any(is_superadmin_role(u.role) for u in users):
        raise ValidationFailed("Superadmin users cannot be assigned to a company.")
    if not ctx.is_superadmin and any(u.company_id not in (None, company.id) for u in users):
        raise ValidationFailed("Unknown user selected.")

    moved = [u for u in users if change_user_company(s, u, company.id)]
    s.commit()
    for u in moved:
        audit_event(
            s,
            ctx,
            action="update",
            module=MODULE,
            target=company,
            summary=f"Assigned user {u.email} to company: {company.name}",
        )
    return moved


def remove_user(s: "Session", ctx: "AccessContext", company_id: int, user_id: int) -> User:
    company = policies.fetch(s, ctx, "companies", company_id, action="remove_user", for_update=True)
    user = s.get(User, user_id)
    if user is None or user.company_id != company.id:
        raise NotFound()
    if ctx.actor is not None and user.id == ctx.actor.id:
        raise ValidationFailed("You cannot remove yourself from your company.")
    if user.role is not None and not is_superadmin_role(user.role):
        # Non-superadmin roles always need a company.
        raise ValidationFailed(f"Company must be selected for {user.role.name} role.")
    change_user_company(s, user, None)
    s.commit()
    audit_event(
        s,
        ctx,
        action="update",
        module=MODULE,
        target=company,
        summary=f"Removed user {user.email} from company: {company.name}",
    )
    return user
