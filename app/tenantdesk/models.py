from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.tenantdesk.errors import AuditLogImmutable

if TYPE_CHECKING:
    from app.tenantdesk.modules.companies.models import Company
    from app.tenantdesk.modules.projects.models import Dashboard

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class SoftDeleteMixin:
    """Active -> Discarded -> Active; `discarded_at` is the only discriminator."""

    discarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True, index=True)

    @property
    def is_kept(self) -> bool:
        return self.discarded_at is None

    @property
    def is_discarded(self) -> bool:
        return self.discarded_at is not None


class RolePermission(Base):
    __tablename__ = "roles_permissions"
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id: Mapped[int] = mapped_column(ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)


class User(SoftDeleteMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    role_id: Mapped[int | None] = mapped_column(ForeignKey("roles.id"), nullable=True, index=True)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id"), nullable=True, index=True)

    sign_in_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_sign_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    role: Mapped["Role | None"] = relationship(back_populates="users", lazy="selectin")
    company: Mapped["Company | None"] = relationship(lazy="selectin")
    dashboards: Mapped[list["Dashboard"]] = relationship(
        secondary="dashboards_users",
        back_populates="users",
        lazy="selectin",
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email


class Role(SoftDeleteMixin, Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # "Superadmin" is the bypass sentinel
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Bumped on every change to the permission set; part of the resolver cache key.
    permissions_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    users: Mapped[list[User]] = relationship(back_populates="role", lazy="select")
    permissions: Mapped[list["Permission"]] = relationship(
        secondary="roles_permissions",
        back_populates="roles",
        lazy="selectin",
        order_by="Permission.code",
    )


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # e.g. "user_management.users.index"
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    resource: Mapped[str] = mapped_column(String(128), nullable=False, index=True)  # e.g. "user_management.users"
    section: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    roles: Mapped[list[Role]] = relationship(secondary="roles_permissions", back_populates="permissions", lazy="select")

    @property
    def action(self) -> str:
        return self.code.split(".")[-1]

    @property
    def namespace(self) -> str | None:
        parts = self.resource.split(".")
        return parts[0] if len(parts) > 1 else None


class AuditLog(Base):
    """
    Append-only audit trail entry.
    `user_name` is copied at write time so entries stay readable after the actor is gone.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_listing", "module_name", "action", "user_id", "created_at"),
        Index("idx_audit_logs_created_at", "created_at"),
        Index("idx_audit_logs_auditable", "auditable_type", "auditable_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(320), nullable=True)

    module_name: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "projects"
    action: Mapped[str] = mapped_column(String(32), nullable=False)  # create, update, delete, ...
    auditable_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "Project"
    auditable_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_before: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    data_after: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    user: Mapped[User | None] = relationship(lazy="select", viewonly=True)


@event.listens_for(AuditLog, "before_update")
def _audit_log_no_update(mapper, connection, target):  # type: ignore[no-redef]
    raise AuditLogImmutable(f"audit log entry {target.id} is append-only")


@event.listens_for(AuditLog, "before_delete")
def _audit_log_no_delete(mapper, connection, target):  # type: ignore[no-redef]
    raise AuditLogImmutable(f"audit log entry {target.id} is append-only")


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.tenantdesk.modules.companies.models import Company  # noqa: E402,F401
from app.tenantdesk.modules.projects.models import Dashboard, DashboardUser, Project  # noqa: E402,F401
