from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from postflow.core.config import settings
from postflow.core.exceptions import BillingError, UnknownPeriodError, UnknownTierError
from postflow.core.pricing import (
    BillingPeriod,
    SubscriptionTier,
    limits_for,
    normalize_period,
    normalize_tier,
    price_in_minor_units,
)
from postflow.core.repositories.subscriptions import SubscriptionStore, TransactionDraft
from postflow.core.subscriptions import SubscriptionReconciler
from postflow.models.base import utcnow
from postflow.models.organization import Organization, PaymentProvider
from postflow.models.payment_transaction import PaymentTransactionStatus, PaymentType

logger = logging.getLogger(__name__)

PlanNameLookup = Callable[[str], Awaitable[str | None]]
EventHandler = Callable[[Mapping[str, Any]], Awaitable["WebhookOutcome"]]

_TIER_KEYWORDS = (
    ("ultimate", SubscriptionTier.ULTIMATE),
    ("team", SubscriptionTier.TEAM),
    ("pro", SubscriptionTier.PRO),
    ("standard", SubscriptionTier.STANDARD),
)


@dataclass(slots=True)
class WebhookOutcome:
    handled: bool
    action: str
    organization_id: UUID | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class CustomReference:
    """``<organization_id>:<TIER>:<PERIOD>`` attached to checkouts we create."""

    organization_id: UUID | None = None
    tier: str | None = None
    period: str | None = None

    @classmethod
    def parse(cls, value: Any) -> CustomReference:
        if not isinstance(value, str) or not value:
            return cls()
        parts = value.split(":")
        try:
            organization_id = UUID(parts[0])
        except ValueError:
            organization_id = None
        tier = parts[1] if len(parts) > 1 and parts[1] else None
        period = parts[2] if len(parts) > 2 and parts[2] else None
        return cls(organization_id=organization_id, tier=tier, period=period)

    def encode(self) -> str:
        return f"{self.organization_id}:{self.tier or ''}:{self.period or ''}"


def tier_from_name(name: str | None) -> SubscriptionTier | None:
    lowered = (name or "").lower()
    for keyword, tier in _TIER_KEYWORDS:
        if keyword in lowered:
            return tier
    return None


def period_from_name(name: str | None) -> BillingPeriod | None:
    lowered = (name or "").lower()
    if "year" in lowered or "annual" in lowered:
        return BillingPeriod.YEARLY
    if "month" in lowered:
        return BillingPeriod.MONTHLY
    return None


def to_minor_units(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def as_text(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, int):
        return str(value)
    return None


def as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def normalize_currency(value: Any) -> str:
    return (as_text(value) or settings.billing_currency).upper()[:3]


class WebhookEventMapper(ABC):
    """Shared translation of provider events into reconciler calls and ledger rows.

    Subclasses map their provider's event types onto ``activate``,
    ``cancel``, ``record_payment`` and ``record_failure``. Nothing here
    commits; the webhook route owns the transaction.
    """

    provider: PaymentProvider

    def __init__(
        self,
        store: SubscriptionStore,
        reconciler: SubscriptionReconciler,
        plan_lookup: PlanNameLookup | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.plan_lookup = plan_lookup

    @abstractmethod
    def handlers(self) -> Mapping[str, EventHandler]: ...

    @abstractmethod
    def event_type(self, event: Mapping[str, Any]) -> str: ...

    def event_id(self, event: Mapping[str, Any]) -> str | None:
        return as_text(event.get("id"))

    async def handle(self, event: Mapping[str, Any]) -> WebhookOutcome:
        event_type = self.event_type(event)
        handler = self.handlers().get(event_type)
        if handler is None:
            logger.info("Ignoring %s event type %s", self.provider.value, event_type)
            return WebhookOutcome(handled=False, action="ignored", message=f"Unhandled event type {event_type}")
        return await handler(event)

    async def resolve_organization(
        self,
        *,
        subscription_id: str | None = None,
        customer_id: str | None = None,
        organization_id: UUID | None = None,
    ) -> Organization | None:
        organization = None
        if subscription_id:
            organization = await self.store.find_organization_by_external_subscription_id(subscription_id)
        if organization is None and customer_id:
            organization = await self.store.find_organization_by_external_customer_id(customer_id)
        if organization is None and organization_id is not None:
            organization = await self.store.get_organization(organization_id)
        return organization

    def not_found(self, event_type: str, reference: str | None) -> WebhookOutcome:
        logger.warning(
            "No organization for %s event %s (reference=%s); acknowledging",
            self.provider.value,
            event_type,
            reference,
        )
        return WebhookOutcome(handled=False, action="organization_not_found", message="Organization not found")

    async def resolve_tier(
        self,
        *,
        structured: str | None = None,
        plan_name: str | None = None,
        plan_id: str | None = None,
    ) -> tuple[SubscriptionTier, str | None]:
        if structured:
            try:
                return normalize_tier(structured), plan_name
            except UnknownTierError:
                logger.warning("Ignoring unknown structured tier %r on %s event", structured, self.provider.value)

        if plan_name:
            return tier_from_name(plan_name) or SubscriptionTier.PRO, plan_name

        if plan_id and self.plan_lookup is not None:
            try:
                fetched = await asyncio.wait_for(
                    self.plan_lookup(plan_id), timeout=settings.provider_http_timeout_seconds
                )
            except (BillingError, asyncio.TimeoutError) as exc:
                logger.warning("Plan lookup for %s failed, defaulting to PRO: %s", plan_id, exc)
                fetched = None
            if fetched:
                return tier_from_name(fetched) or SubscriptionTier.PRO, fetched

        return SubscriptionTier.PRO, None

    async def resolve_period(
        self,
        organization_id: UUID,
        *,
        structured: str | None = None,
        plan_name: str | None = None,
    ) -> BillingPeriod:
        if structured:
            try:
                return normalize_period(structured)
            except UnknownPeriodError:
                logger.warning("Ignoring unknown structured period %r", structured)

        from_name = period_from_name(plan_name)
        if from_name is not None:
            return from_name

        current = await self.store.find_active_by_organization(organization_id)
        if current is not None:
            return normalize_period(current.period)
        return BillingPeriod.MONTHLY

    async def activate(
        self,
        organization: Organization,
        *,
        tier: SubscriptionTier,
        period: BillingPeriod,
        external_identifier: str | None,
        provider_transaction_id: str | None = None,
        payment_method: str | None = None,
        cancel_at: datetime | int | None = None,
        record_payment: bool = True,
        raw: Mapping[str, Any] | None = None,
    ) -> WebhookOutcome:
        result = await self.reconciler.reconcile(
            organization.id,
            tier,
            period,
            limits_for(tier).max_channels,
            external_identifier=external_identifier,
            cancel_at=cancel_at,
        )
        if not result.applied:
            return WebhookOutcome(
                handled=True, action="skipped", organization_id=organization.id, message=result.reason
            )

        if record_payment:
            subscription = await self.store.find_active_by_organization(organization.id)
            await self.store.append_transaction(
                TransactionDraft(
                    organization_id=organization.id,
                    provider=self.provider.value,
                    status=PaymentTransactionStatus.SUCCEEDED.value,
                    type=PaymentType.SUBSCRIPTION_PAYMENT.value,
                    amount=price_in_minor_units(tier, period),
                    currency=settings.billing_currency,
                    subscription_id=subscription.id if subscription else None,
                    provider_transaction_id=provider_transaction_id,
                    payment_method=payment_method,
                    description=f"{tier.value} subscription activated ({period.value.lower()})",
                    raw_payload=dict(raw) if raw else None,
                    processed_at=utcnow(),
                )
            )
        logger.info(
            "Activated %s/%s for org=%s from %s",
            tier.value,
            period.value,
            organization.id,
            self.provider.value,
        )
        return WebhookOutcome(
            handled=True,
            action="activated",
            organization_id=organization.id,
            message=f"Subscription set to {tier.value}",
        )

    async def cancel(
        self,
        organization: Organization,
        *,
        provider_transaction_id: str | None = None,
        raw: Mapping[str, Any] | None = None,
    ) -> WebhookOutcome:
        result = await self.reconciler.reconcile(
            organization.id,
            SubscriptionTier.FREE,
            BillingPeriod.MONTHLY,
            limits_for(SubscriptionTier.FREE).max_channels,
        )
        if not result.applied:
            return WebhookOutcome(
                handled=True, action="skipped", organization_id=organization.id, message=result.reason
            )

        await self.store.append_transaction(
            TransactionDraft(
                organization_id=organization.id,
                provider=self.provider.value,
                status=PaymentTransactionStatus.SUCCEEDED.value,
                type=PaymentType.MANUAL_ADJUSTMENT.value,
                amount=0,
                currency=settings.billing_currency,
                provider_transaction_id=provider_transaction_id,
                description=f"Subscription cancelled: downgraded from {result.previous_tier.value} to FREE",
                raw_payload=dict(raw) if raw else None,
                processed_at=utcnow(),
            )
        )
        logger.info(
            "Cancelled %s subscription for org=%s from %s",
            result.previous_tier.value,
            organization.id,
            self.provider.value,
        )
        return WebhookOutcome(
            handled=True, action="cancelled", organization_id=organization.id, message="Downgraded to FREE"
        )

    async def record_payment(
        self,
        organization: Organization,
        *,
        amount_minor: int | None,
        currency: str | None,
        provider_transaction_id: str | None = None,
        payment_method: str | None = None,
        raw: Mapping[str, Any] | None = None,
    ) -> WebhookOutcome:
        if amount_minor is None:
            logger.info(
                "Skipping %s payment %s for org=%s: no amount in payload",
                self.provider.value,
                provider_transaction_id,
                organization.id,
            )
            return WebhookOutcome(
                handled=True, action="skipped", organization_id=organization.id, message="Payment has no amount"
            )

        subscription = await self.store.find_active_by_organization(organization.id)
        await self.store.append_transaction(
            TransactionDraft(
                organization_id=organization.id,
                provider=self.provider.value,
                status=PaymentTransactionStatus.SUCCEEDED.value,
                type=PaymentType.SUBSCRIPTION_PAYMENT.value,
                amount=amount_minor,
                currency=normalize_currency(currency),
                subscription_id=subscription.id if subscription else None,
                provider_transaction_id=provider_transaction_id,
                payment_method=payment_method,
                description="Subscription payment received",
                raw_payload=dict(raw) if raw else None,
                processed_at=utcnow(),
            )
        )
        return WebhookOutcome(handled=True, action="payment_recorded", organization_id=organization.id)

    async def record_failure(
        self,
        organization: Organization,
        *,
        amount_minor: int | None,
        currency: str | None,
        failure_reason: str | None,
        provider_transaction_id: str | None = None,
        payment_method: str | None = None,
        raw: Mapping[str, Any] | None = None,
    ) -> WebhookOutcome:
        subscription = await self.store.find_active_by_organization(organization.id)
        reason = failure_reason or "Payment failed"
        await self.store.append_transaction(
            TransactionDraft(
                organization_id=organization.id,
                provider=self.provider.value,
                status=PaymentTransactionStatus.FAILED.value,
                type=PaymentType.SUBSCRIPTION_PAYMENT.value,
                amount=amount_minor or 0,
                currency=normalize_currency(currency),
                subscription_id=subscription.id if subscription else None,
                provider_transaction_id=provider_transaction_id,
                payment_method=payment_method,
                description="Subscription payment failed",
                failure_reason=reason,
                raw_payload=dict(raw) if raw else None,
            )
        )
        logger.warning("Recorded failed %s payment for org=%s: %s", self.provider.value, organization.id, reason)
        return WebhookOutcome(handled=True, action="payment_failed", organization_id=organization.id)
