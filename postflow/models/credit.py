from __future__ import annotations

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from postflow.models.base import OrganizationScopedBase


class Credit(OrganizationScopedBase):
    __tablename__ = "credits"
    __table_args__ = (
        Index("ix_credits_organization_type_created", "organization_id", "type", "created_at"),
    )

    type: Mapped[str] = mapped_column(String(30), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
