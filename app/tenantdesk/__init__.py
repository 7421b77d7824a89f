import logging
import os
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv

from app.tenantdesk.config import load_config
from app.tenantdesk.db import init_db, teardown_db_session
from app.tenantdesk.errors import HasActiveChildren, NotAuthorized, NotFound, ValidationFailed
from app.tenantdesk.routes import bp as routes_bp
from app.tenantdesk.auth import bp as auth_bp, load_current_user
from app.tenantdesk.policies import build_registry
from app.tenantdesk.modules.home.admin import bp as home_bp
from app.tenantdesk.modules.projects.admin import bp as projects_bp
from app.tenantdesk.modules.bi_dashboards.admin import bp as bi_dashboards_bp
from app.tenantdesk.modules.companies.admin import bp as companies_bp
from app.tenantdesk.modules.user_management.admin import bp as user_management_bp
from app.tenantdesk.modules.audit_logs.admin import bp as audit_logs_bp

_CSRF_EXEMPT_ENDPOINTS = ("auth.login_post", "auth.logout")


def _refuse_unsafe_production(config) -> None:
    """Production needs Postgres and a real SECRET_KEY; anything else aborts startup."""
    if (config.get("ENV") or "").strip().lower() not in ("prod", "production"):
        return
    db_url = str(config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("Production tenancy data must live in Postgres, not sqlite.")
    if str(config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production.")


def _dispose_engine_after_fork(app: Flask) -> None:
    # gunicorn --preload forks workers; pooled connections must not cross the fork.
    if not hasattr(os, "register_at_fork"):
        return

    def _after_fork_child():
        engine = app.extensions.get("sqlalchemy_engine")
        if engine is not None:
            engine.dispose()
            app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

    os.register_at_fork(after_in_child=_after_fork_child)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    logging.getLogger("app.tenantdesk").setLevel(app.config["LOG_LEVEL"])

    # CSRF protection (minimal)
    from app.tenantdesk.security import ensure_csrf_token, validate_csrf
    from app.tenantdesk.web import denied, failed, wants_json

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout carry no privileged state change
            if request.endpoint in _CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                return jsonify({"error": "csrf", "message": "CSRF token missing or invalid."}), 400

    _refuse_unsafe_production(app.config)
    init_db(app)
    _dispose_engine_after_fork(app)

    # One registry per app; the tenancy model is fixed for the deployment.
    registry = build_registry(app.config["TENANCY_MODEL"])
    app.extensions["policy_registry"] = registry
    app.logger.info("Policy registry ready (tenancy_model=%s, policies=%s)", registry.tenancy_model.value, ",".join(registry.tags()))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(home_bp)
    app.register_blueprint(projects_bp)
    app.register_blueprint(bi_dashboards_bp)
    app.register_blueprint(companies_bp)
    app.register_blueprint(user_management_bp, url_prefix="/user-management")
    app.register_blueprint(audit_logs_bp)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Denied and not-found look the same from the outside.
    @app.errorhandler(NotAuthorized)
    def _err_not_authorized(e):  # type: ignore[no-redef]
        app.logger.warning(
            "Forbidden: path=%s request_id=%s",
            request.path,
            getattr(g, "request_id", None),
        )
        return denied()

    @app.errorhandler(NotFound)
    def _err_not_found(e):  # type: ignore[no-redef]
        return denied()

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if wants_json():
            return jsonify({"error": "not_found"}), 404
        return e

    @app.errorhandler(HasActiveChildren)
    def _err_has_children(e):  # type: ignore[no-redef]
        return failed(e.message, 409, "has_active_children")

    @app.errorhandler(ValidationFailed)
    def _err_validation(e):  # type: ignore[no-redef]
        if wants_json():
            return jsonify({"error": "validation_failed", "errors": e.errors}), 422
        return failed("; ".join(e.errors), 422, "validation_failed", errors=e.errors)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "request_id": getattr(g, "request_id", None)}), 500

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return failed("Request too large.", 413, "too_large")

    # Startup logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
