from flask import Blueprint, current_app, redirect, url_for
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.tenantdesk.db import db_session
from app.tenantdesk.rbac import current_context, first_accessible_endpoint

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    ctx = current_context()
    if not ctx.is_authenticated:
        return redirect(url_for("auth.login_get"))
    return redirect(url_for(first_accessible_endpoint(ctx)))


@bp.get("/health")
def health():
    """Liveness plus a one-row database round trip."""
    try:
        db_session().execute(text("SELECT 1"))
    except SQLAlchemyError:
        current_app.logger.exception("Health check could not reach the database")
        return {"ok": False, "db": False}, 503
    return {"ok": True, "db": True}


@bp.get("/healthz")
def healthz():
    # Probe endpoint; never touches the database.
    return "ok", 200
