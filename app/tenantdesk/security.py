import secrets
from urllib.parse import urlparse

from flask import session, Request


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form, header, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")

    # Also check JSON body for API-style requests
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")

    return bool(token and secrets.compare_digest(str(token), str(session.get("csrf_token") or "")))


def safe_referrer(req: Request) -> str | None:
    """
    The referrer, but only when it points back at this host and is not the
    page being requested (which would loop).
    """
    referrer = req.referrer
    if not referrer:
        return None
    parsed = urlparse(referrer)
    if parsed.scheme not in ("http", "https") or parsed.netloc != req.host:
        return None
    if referrer == req.url:
        return None
    return referrer


def safe_next(nxt: str | None) -> str | None:
    """Only allow local paths (no scheme, no host) to avoid open redirects."""
    nxt = (nxt or "").strip()
    if not nxt.startswith("/") or nxt.startswith("//") or "\\" in nxt:
        return None
    return nxt
