from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.tenantdesk.models import Base, SoftDeleteMixin

if TYPE_CHECKING:
    from app.tenantdesk.models import User
    from app.tenantdesk.modules.companies.models import Company

VALID_STATUSES = ("active", "inactive")
VALID_EMBED_TYPES = ("iframe", "embed_url")
DEFAULT_ICON = "bi-folder"


class Project(SoftDeleteMixin, Base):
    __tablename__ = "projects"
    __table_args__ = (
        Index("idx_projects_status", "status"),
        Index("idx_projects_sidebar", "show_in_sidebar", "sidebar_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")

    # Sidebar presentation
    icon: Mapped[str] = mapped_column(String(64), nullable=False, default=DEFAULT_ICON)
    show_in_sidebar: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sidebar_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    company: Mapped["Company"] = relationship(lazy="selectin")
    dashboards: Mapped[list["Dashboard"]] = relationship(
        back_populates="project",
        lazy="select",
        order_by="[Dashboard.position.asc(), Dashboard.created_at.desc()]",
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def kept_dashboards(self) -> list["Dashboard"]:
        return [d for d in self.dashboards if d.discarded_at is None]

    @property
    def dashboards_count(self) -> int:
        return len(self.kept_dashboards)


class DashboardUser(Base):
    __tablename__ = "dashboards_users"
    dashboard_id: Mapped[int] = mapped_column(ForeignKey("dashboards.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)


class Dashboard(SoftDeleteMixin, Base):
    __tablename__ = "dashboards"
    __table_args__ = (
        Index("idx_dashboards_project_position", "project_id", "position"),
        Index("idx_dashboards_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    embed_url: Mapped[str] = mapped_column(Text, nullable=False)
    embed_type: Mapped[str] = mapped_column(String(32), nullable=False, default="iframe")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    project: Mapped[Project] = relationship(back_populates="dashboards", lazy="selectin")
    users: Mapped[list["User"]] = relationship(
        secondary="dashboards_users",
        back_populates="dashboards",
        lazy="selectin",
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"
