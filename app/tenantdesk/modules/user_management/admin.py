from __future__ import annotations

from collections import OrderedDict

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from app.tenantdesk import policies
from app.tenantdesk.db import db_session
from app.tenantdesk.models import Permission, Role, User
from app.tenantdesk.modules.user_management.service import (
    create_role,
    create_user,
    delete_role,
    discard_user,
    restore_user,
    update_role,
    update_user,
)
from app.tenantdesk.rbac import current_context, login_required
from app.tenantdesk.serializers import page_json, permission_json, role_json, user_json
from app.tenantdesk.utils import paginate, parse_bool, parse_id_list, parse_int
from app.tenantdesk.web import done, payload

bp = Blueprint("user_management", __name__)


def _user_payload() -> dict:
    data = payload()
    for key in ("role_id", "company_id"):
        if key in data:
            data[key] = parse_int(data[key])
    return data


def _role_payload() -> dict:
    data = payload()
    if "permission_ids" in data:
        data["permission_ids"] = parse_id_list(data["permission_ids"])
    return data


# ---------- Users ----------
@bp.get("/users")
@login_required
def users_list():
    s = db_session()
    ctx = current_context()
    policies.require(ctx, "users", "index")

    search = (request.args.get("q") or "").strip()
    role_filter = parse_int(request.args.get("role_id"))
    if parse_bool(request.args.get("discarded")):
        stmt = policies.scope(ctx, "users", "restore", include_discarded=True).where(User.discarded_at.is_not(None))
    else:
        stmt = policies.scope(ctx, "users", "index")
    if search:
        like = f"%{search}%"
        stmt = stmt.where(User.name.ilike(like) | User.email.ilike(like))
    if role_filter is not None:
        stmt = stmt.where(User.role_id == role_filter)
    stmt = stmt.order_by(User.created_at.desc(), User.id.desc())

    page = paginate(s, stmt, parse_int(request.args.get("page"), 1), parse_int(request.args.get("per_page"), 25))
    return jsonify(page_json(page, user_json))


@bp.post("/users/new")
@login_required
def users_new_post():
    s = db_session()
    user = create_user(s, current_context(), _user_payload())
    return done("User was successfully created.", "user_management.users_list", data=user_json(user), status=201)


@bp.get("/users/<int:user_id>")
@login_required
def user_detail(user_id: int):
    s = db_session()
    user = policies.fetch(s, current_context(), "users", user_id, action="show")
    return jsonify(user_json(user))


@bp.post("/users/<int:user_id>/edit")
@login_required
def user_edit_post(user_id: int):
    s = db_session()
    user = update_user(s, current_context(), user_id, _user_payload())
    return done("User was successfully updated.", "user_management.users_list", data=user_json(user))


@bp.post("/users/<int:user_id>/delete")
@login_required
def user_delete(user_id: int):
    s = db_session()
    user = discard_user(s, current_context(), user_id)
    return done("User was successfully deleted.", "user_management.users_list", data=user_json(user))


@bp.post("/users/<int:user_id>/restore")
@login_required
def user_restore(user_id: int):
    s = db_session()
    user = restore_user(s, current_context(), user_id)
    return done("User was successfully restored.", "user_management.users_list", data=user_json(user))


# ---------- Roles ----------
@bp.get("/roles")
@login_required
def roles_list():
    s = db_session()
    ctx = current_context()
    policies.require(ctx, "roles", "index")
    stmt = policies.scope(ctx, "roles", "index").order_by(Role.name.asc())
    search = (request.args.get("q") or "").strip()
    if search:
        stmt = stmt.where(Role.name.ilike(f"%{search}%"))
    page = paginate(s, stmt, parse_int(request.args.get("page"), 1), parse_int(request.args.get("per_page"), 25))
    return jsonify(page_json(page, role_json))


@bp.get("/roles/permissions")
@login_required
def permissions_catalog():
    """The permission checklist for the role form, grouped by section."""
    s = db_session()
    ctx = current_context()
    policies.require(ctx, "roles", "new")
    perms = s.execute(
        select(Permission).order_by(Permission.section, Permission.code)
    ).scalars()
    sections: OrderedDict[str, list[dict]] = OrderedDict()
    for p in perms:
        sections.setdefault(p.section or "Other", []).append(permission_json(p))
    return jsonify({"sections": [{"name": k, "permissions": v} for k, v in sections.items()]})


@bp.post("/roles/new")
@login_required
def roles_new_post():
    s = db_session()
    role = create_role(s, current_context(), _role_payload())
    return done("Role was successfully created.", "user_management.roles_list", data=role_json(role, with_permissions=True), status=201)


@bp.get("/roles/<int:role_id>")
@login_required
def role_detail(role_id: int):
    s = db_session()
    role = policies.fetch(s, current_context(), "roles", role_id, action="show")
    return jsonify(role_json(role, with_permissions=True))


@bp.post("/roles/<int:role_id>/edit")
@login_required
def role_edit_post(role_id: int):
    s = db_session()
    role = update_role(s, current_context(), role_id, _role_payload())
    return done("Role was successfully updated.", "user_management.roles_list", data=role_json(role, with_permissions=True))


@bp.post("/roles/<int:role_id>/delete")
@login_required
def role_delete(role_id: int):
    s = db_session()
    role = delete_role(s, current_context(), role_id)
    return done("Role was successfully deleted.", "user_management.roles_list", data=role_json(role))
