from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from postflow.models.base import OrganizationScopedBase

ModelT = TypeVar("ModelT", bound=OrganizationScopedBase)


class OrganizationRepository(Generic[ModelT]):
    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self.session = session
        self.model = model

    def _scoped_select(self, organization_id: UUID) -> Select[tuple[ModelT]]:
        return select(self.model).where(self.model.organization_id == organization_id)

    async def create(self, organization_id: UUID, **values: Any) -> ModelT:
        instance = self.model(organization_id=organization_id, **values)
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def get(self, organization_id: UUID, entity_id: UUID) -> ModelT | None:
        result = await self.session.execute(
            self._scoped_select(organization_id).where(self.model.id == entity_id)
        )
        return result.scalar_one_or_none()

    async def list(
        self,
        organization_id: UUID,
        *criteria: Any,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ModelT]:
        stmt = (
            self._scoped_select(organization_id)
            .where(*criteria)
            .order_by(self.model.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, organization_id: UUID, entity_id: UUID) -> bool:
        result = await self.session.execute(
            delete(self.model)
            .where(self.model.id == entity_id)
            .where(self.model.organization_id == organization_id)
        )
        return (result.rowcount or 0) > 0
