from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from postflow.models.base import OrganizationScopedBase


class Subscription(OrganizationScopedBase):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_active_organization",
            "organization_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    subscription_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="FREE")
    period: Mapped[str] = mapped_column(String(20), nullable=False, default="MONTHLY")
    total_channels: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    identifier: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    is_lifetime: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
