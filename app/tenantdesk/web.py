"""
Response helpers shared by the blueprints.

Handlers answer JSON to API clients and flash + redirect to browsers, the
same way for every resource.
"""
from __future__ import annotations

from typing import Any

from flask import flash, jsonify, redirect, request, url_for

from app.tenantdesk.errors import DENIAL_MESSAGE
from app.tenantdesk.security import safe_referrer


def wants_json() -> bool:
    if request.is_json:
        return True
    best = request.accept_mimetypes.best_match(["application/json", "text/html"])
    return best == "application/json" and request.accept_mimetypes[best] > request.accept_mimetypes["text/html"]


def payload() -> dict[str, Any]:
    """Request body as a plain dict; multi-value form fields (`*_ids`) stay lists."""
    if request.is_json:
        data = request.get_json(silent=True)
        return dict(data) if isinstance(data, dict) else {}
    out: dict[str, Any] = {}
    for key in request.form:
        if key == "csrf_token":
            continue
        out[key] = request.form.getlist(key) if key.endswith("_ids") else request.form.get(key)
    return out


def done(message: str, endpoint: str, data: Any = None, status: int = 200, **values: Any):
    if wants_json():
        return jsonify(data if data is not None else {"ok": True}), status
    flash(message, "success")
    return redirect(url_for(endpoint, **values))


def _back() -> str:
    from app.tenantdesk.rbac import current_context, first_accessible_endpoint

    target = safe_referrer(request) or url_for(first_accessible_endpoint(current_context()))
    if target == request.path:
        # The fallback page is the one that was refused; send the user to their profile.
        target = url_for("auth.profile")
    return target


def failed(message: str, status: int, error: str, **extra: Any):
    """Flash + redirect back (browser) or a JSON error body."""
    if wants_json():
        return jsonify({"error": error, "message": message, **extra}), status
    flash(message, "danger")
    return redirect(_back())


def denied():
    """Identical outcome for 'not allowed' and 'not there'."""
    if wants_json():
        return jsonify({"error": "not_found"}), 404
    flash(DENIAL_MESSAGE, "danger")
    return redirect(_back())
