from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from postflow.models.base import OrganizationScopedBase


class Integration(OrganizationScopedBase):
    __tablename__ = "integrations"

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    provider_identifier: Mapped[str] = mapped_column(String(80), nullable=False)
    disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
