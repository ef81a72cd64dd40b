from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.core.db import AsyncSessionLocal
from postflow.core.repositories.base import OrganizationRepository
from postflow.models.base import utcnow
from postflow.models.credit import Credit
from postflow.models.integration import Integration
from postflow.models.organization import MemberRole, Organization, OrganizationMember
from postflow.models.payment_transaction import PaymentTransaction, PaymentTransactionStatus
from postflow.models.subscription import Subscription
from postflow.models.used_code import UsedCode
from postflow.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TransactionDraft:
    organization_id: UUID
    provider: str
    status: str
    type: str
    amount: int = 0
    currency: str = "USD"
    subscription_id: UUID | None = None
    provider_transaction_id: str | None = None
    payment_method: str | None = None
    description: str | None = None
    failure_reason: str | None = None
    raw_payload: dict[str, Any] | None = field(default=None, repr=False)
    processed_at: datetime | None = None


class SubscriptionStore(Protocol):
    async def get_organization(self, organization_id: UUID) -> Organization | None: ...

    async def find_active_by_organization(self, organization_id: UUID) -> Subscription | None: ...

    async def find_organization_by_external_customer_id(self, customer_id: str) -> Organization | None: ...

    async def find_organization_by_external_subscription_id(self, subscription_id: str) -> Organization | None: ...

    async def set_external_customer_id(self, organization_id: UUID, customer_id: str) -> None: ...

    async def upsert_subscription(
        self,
        organization_id: UUID,
        tier: str,
        period: str,
        total_channels: int,
        external_identifier: str | None,
        is_lifetime: bool,
        cancel_at: datetime | None,
        lifetime_code: str | None = None,
    ) -> None: ...

    async def soft_delete_subscription(self, organization_id: UUID) -> bool: ...

    async def list_active_integrations(self, organization_id: UUID) -> list[Integration]: ...

    async def disable_integrations(self, organization_id: UUID, count: int) -> int: ...

    async def set_members_disabled(self, organization_id: UUID, disabled: bool) -> int: ...

    async def append_transaction(self, draft: TransactionDraft) -> UUID: ...

    async def get_transaction(self, organization_id: UUID, transaction_id: UUID) -> PaymentTransaction | None: ...

    async def list_transactions(
        self, organization_id: UUID, limit: int = 20, offset: int = 0
    ) -> list[PaymentTransaction]: ...

    async def list_failed_transactions(self, organization_id: UUID) -> list[PaymentTransaction]: ...

    async def update_transaction_status(
        self, transaction_id: UUID, status: str, failure_reason: str | None = None
    ) -> None: ...

    async def sum_usage(self, organization_id: UUID, usage_type: str, since: datetime) -> int: ...

    async def insert_usage_unit(self, organization_id: UUID, usage_type: str) -> UUID: ...

    async def delete_usage_unit(self, usage_id: UUID) -> None: ...

    async def is_code_used(self, code: str) -> bool: ...

    async def claim_webhook_event(self, provider: str, event_id: str, event_type: str) -> bool: ...


class SqlSubscriptionStore:
    """Billing persistence on the request session.

    Writes are flushed, not committed; the route commits. Usage units are the
    exception: they go through their own short-lived session so concurrent
    quota checks see them at once without committing the caller's work.
    """

    def __init__(
        self,
        session: AsyncSession,
        usage_session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    ) -> None:
        self.session = session
        self.transactions = OrganizationRepository(session, PaymentTransaction)
        self._usage_session_factory = usage_session_factory

    async def get_organization(self, organization_id: UUID) -> Organization | None:
        return await self.session.get(Organization, organization_id)

    async def find_active_by_organization(self, organization_id: UUID) -> Subscription | None:
        return await self.session.scalar(
            select(Subscription).where(
                Subscription.organization_id == organization_id,
                Subscription.deleted_at.is_(None),
            )
        )

    async def find_organization_by_external_customer_id(self, customer_id: str) -> Organization | None:
        return await self.session.scalar(
            select(Organization).where(Organization.payment_id == customer_id).limit(1)
        )

    async def find_organization_by_external_subscription_id(self, subscription_id: str) -> Organization | None:
        # Provider ids have been written to Subscription.identifier, as a
        # substring of payment_id (paypal_<id>) and as payment_id itself.
        # Keep the lookup order until payment_id is migrated to the typed form.
        lookups = (
            select(Organization)
            .join(Subscription, Subscription.organization_id == Organization.id)
            .where(Subscription.identifier == subscription_id)
            .order_by(Subscription.deleted_at.is_(None).desc(), Subscription.created_at.desc())
            .limit(1),
            select(Organization)
            .where(Organization.payment_id.contains(subscription_id, autoescape=True))
            .limit(1),
            select(Organization).where(Organization.payment_id == subscription_id).limit(1),
        )
        for stmt in lookups:
            organization = await self.session.scalar(stmt)
            if organization is not None:
                return organization
        return None

    async def set_external_customer_id(self, organization_id: UUID, customer_id: str) -> None:
        await self.session.execute(
            update(Organization)
            .where(Organization.id == organization_id)
            .values(payment_id=customer_id)
        )

    async def upsert_subscription(
        self,
        organization_id: UUID,
        tier: str,
        period: str,
        total_channels: int,
        external_identifier: str | None,
        is_lifetime: bool,
        cancel_at: datetime | None,
        lifetime_code: str | None = None,
    ) -> None:
        if lifetime_code:
            current = await self.find_active_by_organization(organization_id)
            if current is not None and current.identifier != external_identifier:
                current.deleted_at = utcnow()
                await self.session.flush()

        now = utcnow()
        values = {
            "subscription_tier": tier,
            "period": period,
            "total_channels": total_channels,
            "identifier": external_identifier,
            "is_lifetime": is_lifetime,
            "cancel_at": cancel_at,
            "deleted_at": None,
            "updated_at": now,
        }
        stmt = insert(Subscription).values(
            id=uuid4(), organization_id=organization_id, created_at=now, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.organization_id],
            index_where=Subscription.deleted_at.is_(None),
            set_=values,
        )
        await self.session.execute(stmt)

        await self.session.execute(
            update(Organization)
            .where(Organization.id == organization_id)
            .values(is_trailing=False, allow_trial=False)
        )
        if lifetime_code:
            self.session.add(UsedCode(organization_id=organization_id, code=lifetime_code))
        await self.session.flush()

    async def soft_delete_subscription(self, organization_id: UUID) -> bool:
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.organization_id == organization_id,
                Subscription.deleted_at.is_(None),
            )
            .values(deleted_at=utcnow())
        )
        return (result.rowcount or 0) > 0

    async def list_active_integrations(self, organization_id: UUID) -> list[Integration]:
        result = await self.session.execute(
            select(Integration)
            .where(
                Integration.organization_id == organization_id,
                Integration.disabled.is_(False),
                Integration.deleted_at.is_(None),
            )
            .order_by(Integration.created_at)
        )
        return list(result.scalars().all())

    async def disable_integrations(self, organization_id: UUID, count: int) -> int:
        if count <= 0:
            return 0
        newest = (
            select(Integration.id)
            .where(
                Integration.organization_id == organization_id,
                Integration.disabled.is_(False),
                Integration.deleted_at.is_(None),
            )
            .order_by(Integration.created_at.desc())
            .limit(count)
        )
        result = await self.session.execute(
            update(Integration)
            .where(Integration.id.in_(newest.scalar_subquery()))
            .values(disabled=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def set_members_disabled(self, organization_id: UUID, disabled: bool) -> int:
        result = await self.session.execute(
            update(OrganizationMember)
            .where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.role != MemberRole.SUPERADMIN.value,
            )
            .values(disabled=disabled)
        )
        return result.rowcount or 0

    async def append_transaction(self, draft: TransactionDraft) -> UUID:
        transaction = await self.transactions.create(
            draft.organization_id,
            subscription_id=draft.subscription_id,
            provider=draft.provider,
            provider_transaction_id=draft.provider_transaction_id,
            amount=draft.amount,
            currency=draft.currency,
            status=draft.status,
            type=draft.type,
            payment_method=draft.payment_method,
            description=draft.description,
            failure_reason=draft.failure_reason,
            raw_payload=draft.raw_payload,
            processed_at=draft.processed_at,
        )
        return transaction.id

    async def get_transaction(self, organization_id: UUID, transaction_id: UUID) -> PaymentTransaction | None:
        return await self.transactions.get(organization_id, transaction_id)

    async def list_transactions(
        self, organization_id: UUID, limit: int = 20, offset: int = 0
    ) -> list[PaymentTransaction]:
        return await self.transactions.list(organization_id, limit=limit, offset=offset)

    async def list_failed_transactions(self, organization_id: UUID) -> list[PaymentTransaction]:
        return await self.transactions.list(
            organization_id,
            PaymentTransaction.status == PaymentTransactionStatus.FAILED.value,
        )

    async def update_transaction_status(
        self, transaction_id: UUID, status: str, failure_reason: str | None = None
    ) -> None:
        values: dict[str, Any] = {"status": status}
        if status == PaymentTransactionStatus.SUCCEEDED.value:
            values["processed_at"] = utcnow()
        if failure_reason:
            values["failure_reason"] = failure_reason
        await self.session.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id)
            .values(**values)
        )

    async def sum_usage(self, organization_id: UUID, usage_type: str, since: datetime) -> int:
        total = await self.session.scalar(
            select(func.coalesce(func.sum(Credit.credits), 0)).where(
                Credit.organization_id == organization_id,
                Credit.type == usage_type,
                Credit.created_at >= since,
            )
        )
        return int(total or 0)

    async def insert_usage_unit(self, organization_id: UUID, usage_type: str) -> UUID:
        async with self._usage_session_factory() as usage_session:
            credit = await OrganizationRepository(usage_session, Credit).create(
                organization_id, id=uuid4(), type=usage_type, credits=1
            )
            await usage_session.commit()
        return credit.id

    async def delete_usage_unit(self, usage_id: UUID) -> None:
        async with self._usage_session_factory() as usage_session:
            result = await usage_session.execute(delete(Credit).where(Credit.id == usage_id))
            await usage_session.commit()
        if not result.rowcount:
            logger.warning("Usage unit %s already removed", usage_id)

    async def is_code_used(self, code: str) -> bool:
        found = await self.session.scalar(select(UsedCode.id).where(UsedCode.code == code))
        return found is not None

    async def claim_webhook_event(self, provider: str, event_id: str, event_type: str) -> bool:
        now = utcnow()
        stmt = (
            insert(WebhookEvent)
            .values(
                id=uuid4(),
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[WebhookEvent.provider, WebhookEvent.event_id])
            .returning(WebhookEvent.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None
