from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, jsonify, redirect, request, session, url_for
from sqlalchemy import func, select
from werkzeug.security import check_password_hash, generate_password_hash

from app.tenantdesk.audit import audit_event, audit_update
from app.tenantdesk.db import db_session
from app.tenantdesk.errors import ValidationFailed
from app.tenantdesk.models import User
from app.tenantdesk.rbac import current_context, first_accessible_endpoint, login_required
from app.tenantdesk.security import ensure_csrf_token, safe_next
from app.tenantdesk.web import done, payload, wants_json

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id (for audit/log correlation); the
    access context built from both is created lazily by rbac.current_context().
    """
    if not getattr(g, "request_id", None):
        g.request_id = (request.headers.get("X-Request-ID") or "").strip()[:64] or uuid.uuid4().hex
    g.access_context = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active or user.discarded_at is not None:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def _login_failed(message: str, status: int, nxt: str | None):
    if wants_json():
        return jsonify({"error": "invalid_credentials", "message": message}), status
    flash(message, "danger")
    return redirect(url_for("auth.login_get", next=nxt) if nxt else url_for("auth.login_get"))


@bp.get("/login")
def login_get():
    nxt = safe_next(request.args.get("next"))
    return jsonify({"next": nxt, "csrf_token": ensure_csrf_token()})


@bp.post("/login")
def login_post():
    data = payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    nxt = safe_next(data.get("next"))
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return _login_failed("Too many login attempts. Please wait 5 minutes.", 429, nxt)

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.execute(select(User).where(func.lower(User.email) == email)).scalars().one_or_none()
        if (
            not user
            or not user.is_active
            or user.discarded_at is not None
            or not check_password_hash(user.password_hash, password)
        ):
            current_app.logger.warning("Login failed (email=%s request_id=%s)", email, g.request_id)
            return _login_failed("Invalid credentials.", 401, nxt)

        user.sign_in_count = (user.sign_in_count or 0) + 1
        user.last_sign_in_at = datetime.utcnow()
        s.commit()

        session["user_id"] = user.id
        _login_attempts[ip].clear()
        g.current_user = user
        g.access_context = None
        ctx = current_context()
        audit_event(s, ctx, action="login", module="sessions", target=user, summary=f"Signed in: {user.email}")

        target = nxt or url_for(first_accessible_endpoint(ctx))
        if wants_json():
            return jsonify({"ok": True, "user_id": user.id, "next": target})
        return redirect(target)
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.route("/logout", methods=["GET", "POST"])
def logout():
    s = db_session()
    ctx = current_context()
    user = ctx.actor
    if user:
        audit_event(s, ctx, action="logout", module="sessions", target=user, summary=f"Signed out: {user.email}")
    session.pop("user_id", None)
    if wants_json():
        return jsonify({"ok": True})
    return redirect(url_for("auth.login_get"))


# ---------- own profile (any signed-in user) ----------


def _profile_json(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.name if user.role else None,
        "company": user.company.name if user.company else None,
        "sign_in_count": user.sign_in_count,
        "last_sign_in_at": user.last_sign_in_at.isoformat() if user.last_sign_in_at else None,
    }


@bp.get("/profile")
@login_required
def profile():
    return jsonify(_profile_json(current_context().actor))


@bp.post("/profile")
@login_required
def profile_update():
    from app.tenantdesk.modules.user_management.service import user_snapshot, validate_user_payload

    s = db_session()
    ctx = current_context()
    user = ctx.actor
    data = payload()
    before = user_snapshot(user)

    merged = {"name": user.name, "email": user.email, **{k: data[k] for k in ("name", "email") if k in data}}
    password = data.get("password") or ""
    if password:
        # A password change needs the current one.
        if not check_password_hash(user.password_hash, data.get("current_password") or ""):
            raise ValidationFailed("Current password is invalid.")
        merged["password"] = password
        merged["password_confirmation"] = data.get("password_confirmation")
    errors = validate_user_payload(s, merged, user)
    if errors:
        raise ValidationFailed(errors)

    user.name = merged["name"].strip()
    user.email = merged["email"].strip().lower()
    if password:
        user.password_hash = generate_password_hash(password)
    user.updated_at = datetime.utcnow()
    s.commit()
    audit_update(s, ctx, user, module="profile", before=before, after=user_snapshot(user), summary=f"Updated profile: {user.email}")
    message = "Profile and password updated successfully." if password else "Profile updated successfully."
    return done(message, "auth.profile", data=_profile_json(user))
