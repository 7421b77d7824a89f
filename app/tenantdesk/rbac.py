from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any

from flask import g, has_request_context, redirect, request, url_for

from app.tenantdesk.catalog import is_superadmin_role
from app.tenantdesk.models import User

CacheKey = tuple[int, int, int]


def _role_of(user: User | None):
    if not user or not user.is_active or user.discarded_at is not None:
        return None
    role = user.role
    if role is None or role.discarded_at is not None:
        return None
    return role


def is_superadmin(user: User | None) -> bool:
    role = _role_of(user)
    return is_superadmin_role(role)


class PermissionResolver:
    """
    Effective permission codes per actor, cached for one unit-of-work.

    An entry is reused only while (user id, role id, role.permissions_version)
    is unchanged, so a role edit or a role reassignment is seen on the next call.
    Create one per request; never share an instance between requests.
    """

    def __init__(self) -> None:
        self._cache: dict[int, tuple[CacheKey, frozenset[str]]] = {}

    def resolve(self, user: User | None) -> frozenset[str]:
        role = _role_of(user)
        if role is None:
            return frozenset()
        key: CacheKey = (user.id, role.id, role.permissions_version)
        hit = self._cache.get(user.id)
        if hit is not None and hit[0] == key:
            return hit[1]
        codes = frozenset(p.code for p in role.permissions)
        self._cache[user.id] = (key, codes)
        return codes


def has_permission(user: User | None, code: str, resolver: PermissionResolver | None = None) -> bool:
    if not _role_of(user):
        return False
    if is_superadmin(user):
        return True
    return code in (resolver or PermissionResolver()).resolve(user)


def has_resource_permission(user: User | None, resource: str, resolver: PermissionResolver | None = None) -> bool:
    if not _role_of(user):
        return False
    if is_superadmin(user):
        return True
    prefix = f"{resource}."
    return any(code.startswith(prefix) for code in (resolver or PermissionResolver()).resolve(user))


@dataclass
class AccessContext:
    """Everything the policy engine and the audit ledger need to know about the caller."""

    actor: User | None
    resolver: PermissionResolver = field(default_factory=PermissionResolver)
    ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.actor is not None and self.actor.is_active and self.actor.discarded_at is None

    @property
    def is_superadmin(self) -> bool:
        return is_superadmin(self.actor)

    def has_permission(self, code: str) -> bool:
        return has_permission(self.actor, code, self.resolver)


def current_context() -> AccessContext:
    ctx = getattr(g, "access_context", None)
    if ctx is None:
        ctx = AccessContext(actor=getattr(g, "current_user", None))
        if has_request_context():
            ctx.ip = request.remote_addr
            ctx.user_agent = request.user_agent.string or None
            ctx.request_id = getattr(g, "request_id", None)
        g.access_context = ctx
    return ctx


def first_accessible_endpoint(ctx: AccessContext) -> str:
    if ctx.is_superadmin or ctx.has_permission("dashboard.index"):
        return "home.index"
    if ctx.has_permission("bi_dashboards.index"):
        return "bi_dashboards.index"
    if ctx.has_permission("user_management.users.index"):
        return "user_management.users_list"
    if ctx.has_permission("audit_logs.index"):
        return "audit_logs.audit_logs_list"
    return "home.index"


def _login_redirect():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if not current_context().is_authenticated:
            return _login_redirect()
        return fn(*args, **kwargs)

    return wrapped

