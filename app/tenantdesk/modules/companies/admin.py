from __future__ import annotations

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from app.tenantdesk import policies
from app.tenantdesk.db import db_session
from app.tenantdesk.models import User
from app.tenantdesk.modules.companies.models import Company
from app.tenantdesk.modules.companies.service import (
    assignable_users,
    create_company,
    discard_company,
    remove_user,
    restore_company,
    update_company,
    update_users,
)
from app.tenantdesk.rbac import current_context, login_required
from app.tenantdesk.serializers import company_json, page_json, user_json
from app.tenantdesk.utils import paginate, parse_bool, parse_id_list, parse_int
from app.tenantdesk.web import done, payload

bp = Blueprint("companies", __name__)


def _members(s, company: Company) -> list[User]:
    stmt = select(User).where(User.company_id == company.id, User.discarded_at.is_(None)).order_by(User.name.asc())
    return list(s.execute(stmt).scalars())


# ---------- List ----------
@bp.get("/companies")
@login_required
def companies_list():
    s = db_session()
    ctx = current_context()
    policies.require(ctx, "companies", "index")

    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()
    if parse_bool(request.args.get("discarded")):
        stmt = policies.scope(ctx, "companies", "restore", include_discarded=True).where(Company.discarded_at.is_not(None))
    else:
        stmt = policies.scope(ctx, "companies", "index")
    if search:
        stmt = stmt.where(Company.name.ilike(f"%{search}%"))
    if status_filter:
        stmt = stmt.where(Company.status == status_filter)
    stmt = stmt.order_by(Company.created_at.desc(), Company.id.desc())

    page = paginate(s, stmt, parse_int(request.args.get("page"), 1), parse_int(request.args.get("per_page"), 25))
    return jsonify(page_json(page, company_json))


@bp.post("/companies/new")
@login_required
def companies_new_post():
    s = db_session()
    company = create_company(s, current_context(), payload())
    return done("Company was successfully created.", "companies.companies_list", data=company_json(company), status=201)


# ---------- Detail ----------
@bp.get("/companies/<int:company_id>")
@login_required
def company_detail(company_id: int):
    s = db_session()
    company = policies.fetch(s, current_context(), "companies", company_id, action="show")
    out = company_json(company)
    out["users"] = [user_json(u) for u in _members(s, company)]
    return jsonify(out)


@bp.post("/companies/<int:company_id>/edit")
@login_required
def company_edit_post(company_id: int):
    s = db_session()
    company = update_company(s, current_context(), company_id, payload())
    return done("Company was successfully updated.", "companies.companies_list", data=company_json(company))


@bp.post("/companies/<int:company_id>/delete")
@login_required
def company_delete(company_id: int):
    s = db_session()
    company = discard_company(s, current_context(), company_id)
    return done("Company was successfully deleted.", "companies.companies_list", data=company_json(company))


@bp.post("/companies/<int:company_id>/restore")
@login_required
def company_restore(company_id: int):
    s = db_session()
    company = restore_company(s, current_context(), company_id)
    return done("Company was successfully restored.", "companies.companies_list", data=company_json(company))


# ---------- Membership ----------
@bp.get("/companies/<int:company_id>/users")
@login_required
def company_assign_users(company_id: int):
    s = db_session()
    company = policies.fetch(s, current_context(), "companies", company_id, action="assign_users")
    return jsonify(
        {
            "assigned": [user_json(u) for u in _members(s, company)],
            "available": [user_json(u) for u in assignable_users(s, current_context(), company)],
        }
    )


@bp.post("/companies/<int:company_id>/users")
@login_required
def company_update_users(company_id: int):
    s = db_session()
    moved = update_users(s, current_context(), company_id, parse_id_list(payload().get("user_ids")))
    return done(
        "Users assigned successfully.",
        "companies.company_detail",
        data={"moved_user_ids": [u.id for u in moved]},
        company_id=company_id,
    )


@bp.post("/companies/<int:company_id>/users/<int:user_id>/remove")
@login_required
def company_remove_user(company_id: int, user_id: int):
    s = db_session()
    user = remove_user(s, current_context(), company_id, user_id)
    return done(
        "User was successfully removed from the company.",
        "companies.company_detail",
        data=user_json(user),
        company_id=company_id,
    )
