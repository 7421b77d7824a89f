"""
Policy engine: one policy per protected resource type.

Every policy answers `authorize(ctx, action, record)` for single records and
`scope(ctx, action)` for listings. The tenant predicate of a resource lives
in exactly two places, `permits` (Python, for one loaded record) and
`criteria` (SQL, pushed into the listing query), and the two must agree.

Policies are looked up through an explicit registry built once in create_app.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy import and_, false, func, select, true

from app.tenantdesk.catalog import SUPERADMIN_ROLE, build_code, is_superadmin_role
from app.tenantdesk.errors import NotAuthorized, NotFound
from app.tenantdesk.models import AuditLog, Company, Dashboard, Project, Role, User
from app.tenantdesk.tenancy import CompanyTenancy, TenancyModel, actor_company_id, tenancy_for

if TYPE_CHECKING:
    from sqlalchemy import Select
    from sqlalchemy.orm import Session
    from sqlalchemy.sql.elements import ColumnElement
    from app.tenantdesk.rbac import AccessContext

logger = logging.getLogger(__name__)

# Confirmation and restore steps use the same check as the mutation they lead to.
ACTION_ALIASES = {
    "new": "create",
    "edit": "update",
    "confirm_delete": "destroy",
    "restore": "destroy",
    "assign_users": "update",
    "update_users": "update",
    "remove_user": "update",
}


def canonical_action(action: str) -> str:
    return ACTION_ALIASES.get(action, action)


class Policy:
    tag: str = ""
    resource: str = ""
    model: Any = None

    def permission_code(self, action: str) -> str:
        return build_code(self.resource, canonical_action(action))

    # -- tenant predicate --------------------------------------------------
    def permits(self, ctx: "AccessContext", record: Any) -> bool:
        return True

    def criteria(self, ctx: "AccessContext") -> "ColumnElement[bool]":
        return true()

    # -- public interface --------------------------------------------------
    def authorize(self, ctx: "AccessContext", action: str, record: Any = None) -> bool:
        if ctx.is_superadmin:
            return True
        if not ctx.is_authenticated:
            return False
        if not ctx.has_permission(self.permission_code(action)):
            return False
        if record is None:
            return True
        return self.permits(ctx, record)

    def scope(
        self,
        ctx: "AccessContext",
        action: str = "index",
        stmt: "Select | None" = None,
        include_discarded: bool = False,
    ) -> "Select":
        if self.model is None:
            raise TypeError(f"policy {self.tag!r} has no record type to scope")
        if stmt is None:
            stmt = select(self.model)
        if not include_discarded and hasattr(self.model, "discarded_at"):
            stmt = stmt.where(self.model.discarded_at.is_(None))
        if ctx.is_superadmin:
            return stmt
        if not ctx.is_authenticated or not ctx.has_permission(self.permission_code(action)):
            return stmt.where(false())
        return stmt.where(self.criteria(ctx))

    def fetch(
        self,
        s: "Session",
        ctx: "AccessContext",
        record_id: int,
        action: str = "show",
        include_discarded: bool = False,
        for_update: bool = False,
    ) -> Any:
        """
        Load one record through the actor's scope, then authorize it.
        Missing, discarded and out-of-scope records all raise NotFound.
        """
        stmt = self.scope(ctx, action, include_discarded=include_discarded).where(self.model.id == record_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        record = s.execute(stmt).scalars().first()
        if record is None:
            logger.info("policy %s: %s #%s not in scope (request_id=%s)", self.tag, action, record_id, ctx.request_id)
            raise NotFound()
        self.require(ctx, action, record)
        return record

    def require(self, ctx: "AccessContext", action: str, record: Any = None) -> None:
        if not self.authorize(ctx, action, record):
            logger.warning(
                "policy %s: denied %s (needs %s) for user_id=%s (request_id=%s)",
                self.tag,
                action,
                self.permission_code(action),
                ctx.actor.id if ctx.actor is not None else None,
                ctx.request_id,
            )
            raise NotAuthorized()


class HomePolicy(Policy):
    tag = "home"
    resource = "dashboard"


class ProjectPolicy(Policy):
    tag = "projects"
    resource = "projects"
    model = Project

    def permits(self, ctx, record):
        cid = actor_company_id(ctx)
        return cid is not None and record.company_id == cid

    def criteria(self, ctx):
        cid = actor_company_id(ctx)
        return false() if cid is None else Project.company_id == cid


class DashboardPolicy(Policy):
    """Management of dashboards inside a project; follows the project predicate."""

    tag = "dashboards"
    resource = "dashboards"
    model = Dashboard

    def permits(self, ctx, record):
        cid = actor_company_id(ctx)
        project = record.project
        return cid is not None and project is not None and project.company_id == cid

    def criteria(self, ctx):
        cid = actor_company_id(ctx)
        return false() if cid is None else Dashboard.project.has(Project.company_id == cid)


class BiDashboardPolicy(Policy):
    """Viewing embedded dashboards; visibility comes from the deployment's tenancy model."""

    tag = "bi_dashboards"
    resource = "bi_dashboards"
    model = Dashboard

    def __init__(self, tenancy: CompanyTenancy) -> None:
        self.tenancy = tenancy

    def permits(self, ctx, record):
        return self.tenancy.dashboard_visible(ctx, record)

    def criteria(self, ctx):
        return self.tenancy.dashboard_criteria(ctx)

    def projects(self, ctx: "AccessContext", stmt: "Select | None" = None) -> "Select":
        """Kept projects whose dashboards the viewer lists."""
        if stmt is None:
            stmt = select(Project)
        stmt = stmt.where(Project.discarded_at.is_(None))
        if ctx.is_superadmin:
            return stmt
        if not ctx.is_authenticated or not ctx.has_permission(self.permission_code("index")):
            return stmt.where(false())
        return stmt.where(self.tenancy.project_criteria(ctx))


class CompanyPolicy(Policy):
    tag = "companies"
    resource = "company_management.companies"
    model = Company

    def permits(self, ctx, record):
        cid = actor_company_id(ctx)
        return cid is not None and record.id == cid

    def criteria(self, ctx):
        cid = actor_company_id(ctx)
        return false() if cid is None else Company.id == cid


class UserPolicy(Policy):
    """Tenant members, never superadmin accounts: those are managed by superadmins only."""

    tag = "users"
    resource = "user_management.users"
    model = User

    def permits(self, ctx, record):
        cid = actor_company_id(ctx)
        return cid is not None and record.company_id == cid and not is_superadmin_role(record.role)

    def criteria(self, ctx):
        cid = actor_company_id(ctx)
        if cid is None:
            return false()
        return and_(User.company_id == cid, ~User.role.has(func.lower(Role.name) == SUPERADMIN_ROLE.lower()))


class RolePolicy(Policy):
    """Roles are a global catalog: the permission code is the whole check."""

    tag = "roles"
    resource = "user_management.roles"
    model = Role


class AuditLogPolicy(Policy):
    """Actors see only their own trail."""

    tag = "audit_logs"
    resource = "audit_logs"
    model = AuditLog

    def permits(self, ctx, record):
        return ctx.actor is not None and record.user_id == ctx.actor.id

    def criteria(self, ctx):
        return false() if ctx.actor is None else AuditLog.user_id == ctx.actor.id


class PolicyRegistry:
    def __init__(self, policies: list[Policy], tenancy_model: TenancyModel) -> None:
        self.tenancy_model = tenancy_model
        self._policies: dict[str, Policy] = {}
        for p in policies:
            if p.tag in self._policies:
                raise ValueError(f"duplicate policy tag {p.tag!r}")
            self._policies[p.tag] = p

    def get(self, tag: str) -> Policy:
        try:
            return self._policies[tag]
        except KeyError:
            raise LookupError(f"No policy registered for resource {tag!r}") from None

    def __contains__(self, tag: str) -> bool:
        return tag in self._policies

    def tags(self) -> list[str]:
        return sorted(self._policies)


def build_registry(tenancy_model: "str | TenancyModel | None" = None) -> PolicyRegistry:
    tenancy = tenancy_for(tenancy_model)
    return PolicyRegistry(
        [
            HomePolicy(),
            ProjectPolicy(),
            DashboardPolicy(),
            BiDashboardPolicy(tenancy),
            CompanyPolicy(),
            UserPolicy(),
            RolePolicy(),
            AuditLogPolicy(),
        ],
        tenancy.model,
    )


def policy_for(tag: str) -> Policy:
    return current_app.extensions["policy_registry"].get(tag)


def authorize(ctx: "AccessContext", tag: str, action: str, record: Any = None) -> bool:
    return policy_for(tag).authorize(ctx, action, record)


def require(ctx: "AccessContext", tag: str, action: str, record: Any = None) -> None:
    policy_for(tag).require(ctx, action, record)


def scope(
    ctx: "AccessContext",
    tag: str,
    action: str = "index",
    stmt: "Select | None" = None,
    include_discarded: bool = False,
) -> "Select":
    return policy_for(tag).scope(ctx, action, stmt, include_discarded=include_discarded)


def fetch(
    s: "Session",
    ctx: "AccessContext",
    tag: str,
    record_id: int,
    action: str = "show",
    include_discarded: bool = False,
    for_update: bool = False,
) -> Any:
    return policy_for(tag).fetch(
        s, ctx, record_id, action, include_discarded=include_discarded, for_update=for_update
    )
