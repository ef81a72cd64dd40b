from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import pytest

from postflow.core.repositories.subscriptions import TransactionDraft
from postflow.core.subscriptions import SubscriptionReconciler
from postflow.models.base import utcnow
from postflow.models.integration import Integration
from postflow.models.organization import MemberRole, Organization, OrganizationMember
from postflow.models.payment_transaction import PaymentTransaction, PaymentTransactionStatus
from postflow.models.subscription import Subscription


class InMemorySubscriptionStore:
    def __init__(self) -> None:
        self.organizations: dict[UUID, Organization] = {}
        self.subscriptions: list[Subscription] = []
        self.integrations: list[Integration] = []
        self.members: list[OrganizationMember] = []
        self.transactions: list[PaymentTransaction] = []
        self.credits: list[tuple[UUID, UUID, str, datetime]] = []
        self.used_codes: set[str] = set()
        self.webhook_events: set[tuple[str, str]] = set()
        self.usage_commits = 0

    def add_organization(self, *, payment_id: str | None = None, name: str = "Acme") -> Organization:
        organization = Organization(
            id=uuid4(),
            name=name,
            payment_id=payment_id,
            is_trailing=True,
            allow_trial=True,
        )
        self.organizations[organization.id] = organization
        return organization

    def add_subscription(
        self,
        organization_id: UUID,
        *,
        tier: str = "FREE",
        period: str = "MONTHLY",
        total_channels: int = 1,
        identifier: str | None = None,
        is_lifetime: bool = False,
        deleted: bool = False,
    ) -> Subscription:
        now = utcnow()
        subscription = Subscription(
            id=uuid4(),
            organization_id=organization_id,
            subscription_tier=tier,
            period=period,
            total_channels=total_channels,
            identifier=identifier,
            is_lifetime=is_lifetime,
            cancel_at=None,
            deleted_at=now if deleted else None,
            created_at=now,
            updated_at=now,
        )
        self.subscriptions.append(subscription)
        return subscription

    def add_integrations(self, organization_id: UUID, count: int) -> list[Integration]:
        start = utcnow() - timedelta(days=count)
        created = []
        for index in range(count):
            integration = Integration(
                id=uuid4(),
                organization_id=organization_id,
                name=f"channel-{index}",
                provider_identifier="x",
                disabled=False,
                deleted_at=None,
                created_at=start + timedelta(days=index),
            )
            self.integrations.append(integration)
            created.append(integration)
        return created

    def add_member(self, organization_id: UUID, role: MemberRole = MemberRole.USER, disabled: bool = False) -> OrganizationMember:
        member = OrganizationMember(
            id=uuid4(),
            organization_id=organization_id,
            email=f"{uuid4().hex[:8]}@example.com",
            role=role.value,
            disabled=disabled,
        )
        self.members.append(member)
        return member

    def add_usage(self, organization_id: UUID, usage_type: str, count: int, at: datetime | None = None) -> None:
        for _ in range(count):
            self.credits.append((uuid4(), organization_id, usage_type, at or utcnow()))

    async def get_organization(self, organization_id: UUID) -> Organization | None:
        return self.organizations.get(organization_id)

    async def find_active_by_organization(self, organization_id: UUID) -> Subscription | None:
        for subscription in self.subscriptions:
            if subscription.organization_id == organization_id and subscription.deleted_at is None:
                return subscription
        return None

    async def find_organization_by_external_customer_id(self, customer_id: str) -> Organization | None:
        for organization in self.organizations.values():
            if organization.payment_id == customer_id:
                return organization
        return None

    async def find_organization_by_external_subscription_id(self, subscription_id: str) -> Organization | None:
        linked = sorted(
            (s for s in self.subscriptions if s.identifier == subscription_id),
            key=lambda s: (s.deleted_at is None, s.created_at),
            reverse=True,
        )
        if linked:
            return self.organizations.get(linked[0].organization_id)
        for organization in self.organizations.values():
            if organization.payment_id and subscription_id in organization.payment_id:
                return organization
        return None

    async def set_external_customer_id(self, organization_id: UUID, customer_id: str) -> None:
        self.organizations[organization_id].payment_id = customer_id

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
        current = await self.find_active_by_organization(organization_id)
        if lifetime_code and current is not None and current.identifier != external_identifier:
            current.deleted_at = utcnow()
            current = None

        if current is None:
            current = self.add_subscription(organization_id)
        current.subscription_tier = tier
        current.period = period
        current.total_channels = total_channels
        current.identifier = external_identifier
        current.is_lifetime = is_lifetime
        current.cancel_at = cancel_at
        current.updated_at = utcnow()

        organization = self.organizations[organization_id]
        organization.is_trailing = False
        organization.allow_trial = False
        if lifetime_code:
            self.used_codes.add(lifetime_code)

    async def soft_delete_subscription(self, organization_id: UUID) -> bool:
        current = await self.find_active_by_organization(organization_id)
        if current is None:
            return False
        current.deleted_at = utcnow()
        return True

    async def list_active_integrations(self, organization_id: UUID) -> list[Integration]:
        return sorted(
            (
                i
                for i in self.integrations
                if i.organization_id == organization_id and not i.disabled and i.deleted_at is None
            ),
            key=lambda i: i.created_at,
        )

    async def disable_integrations(self, organization_id: UUID, count: int) -> int:
        active = await self.list_active_integrations(organization_id)
        newest = list(reversed(active))[: max(count, 0)]
        for integration in newest:
            integration.disabled = True
        return len(newest)

    async def set_members_disabled(self, organization_id: UUID, disabled: bool) -> int:
        toggled = 0
        for member in self.members:
            if member.organization_id == organization_id and member.role != MemberRole.SUPERADMIN.value:
                member.disabled = disabled
                toggled += 1
        return toggled

    async def append_transaction(self, draft: TransactionDraft) -> UUID:
        return self.add_transaction(draft).id

    def add_transaction(self, draft: TransactionDraft) -> PaymentTransaction:
        transaction = PaymentTransaction(
            id=uuid4(),
            organization_id=draft.organization_id,
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
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        self.transactions.append(transaction)
        return transaction

    async def get_transaction(self, organization_id: UUID, transaction_id: UUID) -> PaymentTransaction | None:
        for transaction in self.transactions:
            if transaction.id == transaction_id and transaction.organization_id == organization_id:
                return transaction
        return None

    async def list_transactions(
        self, organization_id: UUID, limit: int = 20, offset: int = 0
    ) -> list[PaymentTransaction]:
        owned = [t for t in reversed(self.transactions) if t.organization_id == organization_id]
        return owned[offset : offset + limit]

    async def list_failed_transactions(self, organization_id: UUID) -> list[PaymentTransaction]:
        return [
            t
            for t in reversed(self.transactions)
            if t.organization_id == organization_id and t.status == PaymentTransactionStatus.FAILED.value
        ]

    async def update_transaction_status(
        self, transaction_id: UUID, status: str, failure_reason: str | None = None
    ) -> None:
        for transaction in self.transactions:
            if transaction.id == transaction_id:
                transaction.status = status
                if status == PaymentTransactionStatus.SUCCEEDED.value:
                    transaction.processed_at = utcnow()
                if failure_reason:
                    transaction.failure_reason = failure_reason

    async def sum_usage(self, organization_id: UUID, usage_type: str, since: datetime) -> int:
        return sum(
            1
            for _, org_id, kind, created_at in self.credits
            if org_id == organization_id and kind == usage_type and created_at >= since
        )

    async def insert_usage_unit(self, organization_id: UUID, usage_type: str) -> UUID:
        usage_id = uuid4()
        self.credits.append((usage_id, organization_id, usage_type, utcnow()))
        self.usage_commits += 1
        return usage_id

    async def delete_usage_unit(self, usage_id: UUID) -> None:
        self.credits = [credit for credit in self.credits if credit[0] != usage_id]
        self.usage_commits += 1

    async def is_code_used(self, code: str) -> bool:
        return code in self.used_codes

    async def claim_webhook_event(self, provider: str, event_id: str, event_type: str) -> bool:
        key = (provider, event_id)
        if key in self.webhook_events:
            return False
        self.webhook_events.add(key)
        return True

    def transactions_for(self, organization_id: UUID) -> list[PaymentTransaction]:
        return [t for t in self.transactions if t.organization_id == organization_id]


class RecordingScheduleDeactivator:
    def __init__(self) -> None:
        self.calls: list[UUID] = []

    async def deactivate_schedules(self, organization_id: UUID) -> None:
        self.calls.append(organization_id)


class RecordingLock:
    def __init__(self) -> None:
        self.acquired: list[UUID] = []

    @contextlib.asynccontextmanager
    async def __call__(self, organization_id: UUID) -> AsyncIterator[None]:
        self.acquired.append(organization_id)
        yield


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def schedules() -> RecordingScheduleDeactivator:
    return RecordingScheduleDeactivator()


@pytest.fixture
def lock() -> RecordingLock:
    return RecordingLock()


@pytest.fixture
def reconciler(
    store: InMemorySubscriptionStore,
    schedules: RecordingScheduleDeactivator,
    lock: RecordingLock,
) -> SubscriptionReconciler:
    return SubscriptionReconciler(store, schedules=schedules, lock_factory=lock)
