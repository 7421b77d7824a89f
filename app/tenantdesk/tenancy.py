"""
Tenant predicates for dashboard visibility.

Exactly one tenancy model is active per deployment (config TENANCY_MODEL).
Each model answers the same two questions: may this actor see this dashboard
(record check), and which SQL criterion selects the dashboards it may see
(collection scoping). Both answers must always agree.
"""
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import and_, false

from app.tenantdesk.models import Company, Dashboard, Project, User

if TYPE_CHECKING:
    from sqlalchemy.sql.elements import ColumnElement
    from app.tenantdesk.rbac import AccessContext


class TenancyModel(str, Enum):
    COMPANY = "company"
    DASHBOARD_ASSIGNMENT = "dashboard_assignment"

    @classmethod
    def parse(cls, value: "str | TenancyModel | None") -> "TenancyModel":
        if isinstance(value, cls):
            return value
        raw = (value or cls.COMPANY.value).strip().lower()
        try:
            return cls(raw)
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown TENANCY_MODEL {raw!r}; expected one of: {valid}") from None


def actor_company_id(ctx: "AccessContext") -> int | None:
    return ctx.actor.company_id if ctx.actor is not None else None


def tenant_is_open(company: Company | None) -> bool:
    """A tenant whose users may see anything: active and still listed in the directory."""
    return company is not None and company.is_active and company.directory_visible


def _open_company_criteria(company_id: int) -> "ColumnElement[bool]":
    return and_(Company.id == company_id, Company.status == "active", Company.discarded_at.is_(None))


class CompanyTenancy:
    """Dashboards belong to the actor's company through their project."""

    model = TenancyModel.COMPANY

    def project_visible(self, ctx: "AccessContext", project: Project) -> bool:
        company = ctx.actor.company if ctx.actor is not None else None
        if not tenant_is_open(company):
            return False
        return project.discarded_at is None and project.company_id == company.id

    def dashboard_visible(self, ctx: "AccessContext", dashboard: Dashboard) -> bool:
        return self.project_visible(ctx, dashboard.project)

    def project_criteria(self, ctx: "AccessContext") -> "ColumnElement[bool]":
        cid = actor_company_id(ctx)
        if cid is None:
            return false()
        return and_(
            Project.company_id == cid,
            Project.discarded_at.is_(None),
            Project.company.has(_open_company_criteria(cid)),
        )

    def dashboard_criteria(self, ctx: "AccessContext") -> "ColumnElement[bool]":
        return Dashboard.project.has(self.project_criteria(ctx))


class DashboardAssignmentTenancy(CompanyTenancy):
    """Company tenancy, further narrowed to dashboards explicitly assigned to the actor."""

    model = TenancyModel.DASHBOARD_ASSIGNMENT

    def dashboard_visible(self, ctx: "AccessContext", dashboard: Dashboard) -> bool:
        if not super().dashboard_visible(ctx, dashboard):
            return False
        return any(u.id == ctx.actor.id for u in dashboard.users)

    def dashboard_criteria(self, ctx: "AccessContext") -> "ColumnElement[bool]":
        if ctx.actor is None:
            return false()
        return and_(super().dashboard_criteria(ctx), Dashboard.users.any(User.id == ctx.actor.id))


_TENANCIES = {
    TenancyModel.COMPANY: CompanyTenancy,
    TenancyModel.DASHBOARD_ASSIGNMENT: DashboardAssignmentTenancy,
}


def tenancy_for(model: "str | TenancyModel | None") -> CompanyTenancy:
    return _TENANCIES[TenancyModel.parse(model)]()
