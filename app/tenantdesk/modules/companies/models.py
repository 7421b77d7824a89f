from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.tenantdesk.models import Base, SoftDeleteMixin

VALID_STATUSES = ("active", "inactive")


class Company(SoftDeleteMixin, Base):
    __tablename__ = "companies"
    __table_args__ = (
        Index("idx_companies_name", "name"),
        Index("idx_companies_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")

    # Denormalized; always equal to the number of kept children.
    # Only soft_delete.py writes these.
    users_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    projects_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def directory_visible(self) -> bool:
        return self.discarded_at is None
