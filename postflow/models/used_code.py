from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from postflow.models.base import OrganizationScopedBase


class UsedCode(OrganizationScopedBase):
    __tablename__ = "used_codes"

    code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
