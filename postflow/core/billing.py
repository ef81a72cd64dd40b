from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.core.auth import AuthContext, require_auth_context
from postflow.core.config import settings
from postflow.core.db import get_db_session
from postflow.core.exceptions import (
    BillingConflictError,
    BillingError,
    ProviderAPIError,
    ProviderNotConfiguredError,
    QuotaExceededError,
    TransactionNotFoundError,
)
from postflow.core.pricing import (
    BillingPeriod,
    PricingPlan,
    SubscriptionTier,
    all_plans,
    limits_for,
    normalize_period,
    normalize_tier,
    price_for,
)
from postflow.core.providers import PayPalClient, RazorpayClient, StripeBillingClient
from postflow.core.providers.paypal import approval_link
from postflow.core.quota import QuotaDecision, QuotaGuard
from postflow.core.repositories.subscriptions import SqlSubscriptionStore, SubscriptionStore, TransactionDraft
from postflow.core.subscriptions import ReconcileResult, SubscriptionReconciler
from postflow.core.webhooks.base import CustomReference
from postflow.models.organization import PaymentProvider
from postflow.models.payment_transaction import PaymentTransactionStatus

logger = logging.getLogger(__name__)

_RETRYABLE_PROVIDERS = {PaymentProvider.PAYPAL.value, PaymentProvider.STRIPE.value}


@dataclass(slots=True)
class RetryResult:
    transaction_id: UUID
    succeeded: bool
    failure_reason: str | None = None


@dataclass(slots=True)
class CheckoutSession:
    subscription_id: str
    approval_url: str


@dataclass(slots=True)
class DowngradeHint:
    kind: str
    current: int
    limit: int
    suggestion: str


@dataclass(slots=True)
class TierChangePreview:
    current_tier: SubscriptionTier
    new_tier: SubscriptionTier
    can_change: bool
    hints: list[DowngradeHint]
    plan: PricingPlan


class BillingService:
    def __init__(
        self,
        store: SubscriptionStore,
        reconciler: SubscriptionReconciler,
        paypal: PayPalClient | None = None,
        razorpay: RazorpayClient | None = None,
        stripe_client: StripeBillingClient | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.paypal = paypal or PayPalClient()
        self.razorpay = razorpay or RazorpayClient()
        self.stripe = stripe_client or StripeBillingClient()

    async def retry_failed_payment(self, organization_id: UUID, transaction_id: UUID) -> RetryResult:
        failed = await self.store.get_transaction(organization_id, transaction_id)
        if failed is None:
            raise TransactionNotFoundError(f"Payment {transaction_id} not found")
        if failed.status != PaymentTransactionStatus.FAILED.value:
            raise BillingConflictError("Only failed payments can be retried")
        if failed.provider not in _RETRYABLE_PROVIDERS:
            raise BillingConflictError(f"{failed.provider} payments cannot be retried here")

        subscription = await self.store.find_active_by_organization(organization_id)
        if failed.provider == PaymentProvider.PAYPAL.value and (subscription is None or not subscription.identifier):
            raise BillingConflictError("No PayPal subscription to collect the balance from")
        if failed.provider == PaymentProvider.STRIPE.value and not failed.provider_transaction_id:
            raise BillingConflictError("Failed payment has no Stripe invoice reference")

        retry_id = await self.store.append_transaction(
            TransactionDraft(
                organization_id=organization_id,
                provider=failed.provider,
                status=PaymentTransactionStatus.PROCESSING.value,
                type=failed.type,
                amount=failed.amount,
                currency=failed.currency,
                subscription_id=failed.subscription_id,
                provider_transaction_id=failed.provider_transaction_id,
                payment_method=failed.payment_method,
                description=f"Retry of payment {failed.id}",
            )
        )

        try:
            if failed.provider == PaymentProvider.PAYPAL.value:
                await asyncio.to_thread(
                    self.paypal.capture_outstanding_balance,
                    subscription.identifier,
                    failed.amount,
                    failed.currency,
                )
            else:
                await asyncio.to_thread(self.stripe.pay_invoice, failed.provider_transaction_id)
        except (ProviderAPIError, ProviderNotConfiguredError) as exc:
            logger.warning("Retry of payment %s for org=%s failed: %s", failed.id, organization_id, exc)
            await self.store.update_transaction_status(
                retry_id, PaymentTransactionStatus.FAILED.value, failure_reason=str(exc)
            )
            return RetryResult(transaction_id=retry_id, succeeded=False, failure_reason=str(exc))

        await self.store.update_transaction_status(retry_id, PaymentTransactionStatus.SUCCEEDED.value)
        logger.info("Retry of payment %s for org=%s succeeded", failed.id, organization_id)
        return RetryResult(transaction_id=retry_id, succeeded=True)

    async def start_checkout(
        self,
        organization_id: UUID,
        tier: SubscriptionTier | str,
        period: BillingPeriod | str,
    ) -> CheckoutSession:
        target_tier = normalize_tier(tier)
        target_period = normalize_period(period)
        if target_tier is SubscriptionTier.FREE:
            raise BillingConflictError("The FREE tier does not need a checkout")

        plan_id = settings.paypal_plan_ids().get(f"{target_tier.value}:{target_period.value}")
        if not plan_id:
            raise ProviderNotConfiguredError(
                f"No PayPal plan configured for {target_tier.value}:{target_period.value}"
            )

        reference = CustomReference(
            organization_id=organization_id, tier=target_tier.value, period=target_period.value
        )
        subscription = await asyncio.to_thread(self.paypal.create_subscription, plan_id, reference.encode())
        link = approval_link(subscription)
        if not link:
            raise ProviderAPIError("PAYPAL", "subscription response carries no approval link")
        logger.info("Started PayPal checkout %s for org=%s", subscription.get("id"), organization_id)
        return CheckoutSession(subscription_id=subscription["id"], approval_url=link)

    async def cancel_subscription(self, organization_id: UUID) -> ReconcileResult | None:
        current = await self.store.find_active_by_organization(organization_id)
        if current is None:
            return None
        if current.is_lifetime:
            raise BillingConflictError("Lifetime subscriptions cannot be cancelled")

        organization = await self.store.get_organization(organization_id)
        customer = organization.external_customer if organization is not None else None
        identifier = current.identifier
        if identifier and customer is not None and customer.provider is not None:
            if customer.provider is PaymentProvider.PAYPAL:
                await asyncio.to_thread(self.paypal.cancel_subscription, identifier)
            elif customer.provider is PaymentProvider.STRIPE:
                await asyncio.to_thread(self.stripe.cancel_subscription, identifier)
            elif customer.provider is PaymentProvider.RAZORPAY:
                await asyncio.to_thread(self.razorpay.cancel_subscription, identifier)
            logger.info("Cancelled %s subscription %s for org=%s", customer.provider.value, identifier, organization_id)

        return await self.reconciler.cancel(organization_id)

    async def preview_tier_change(
        self,
        organization_id: UUID,
        new_tier: SubscriptionTier | str,
    ) -> TierChangePreview:
        """Describe what moving to ``new_tier`` would take away, without applying it."""
        target = limits_for(new_tier)
        current = await self.store.find_active_by_organization(organization_id)
        current_tier = normalize_tier(current.subscription_tier) if current else SubscriptionTier.FREE
        current_plan = limits_for(current_tier)

        hints: list[DowngradeHint] = []
        active_channels = len(await self.store.list_active_integrations(organization_id))
        if active_channels > target.max_channels:
            hints.append(
                DowngradeHint(
                    kind="channels",
                    current=active_channels,
                    limit=target.max_channels,
                    suggestion=(
                        f"{active_channels - target.max_channels} of your newest channels "
                        "will be disabled; disable the ones you no longer need first"
                    ),
                )
            )
        if target.max_posts_per_month < current_plan.max_posts_per_month:
            hints.append(
                DowngradeHint(
                    kind="posts",
                    current=current_plan.max_posts_per_month,
                    limit=target.max_posts_per_month,
                    suggestion="Posting will be capped from the next usage window",
                )
            )
        if current_plan.team_members and not target.team_members:
            hints.append(
                DowngradeHint(
                    kind="team_members",
                    current=current_plan.max_team_members,
                    limit=target.max_team_members,
                    suggestion="Team members other than the owner will lose access",
                )
            )

        return TierChangePreview(
            current_tier=current_tier,
            new_tier=target.tier,
            can_change=not hints and not (current is not None and current.is_lifetime),
            hints=hints,
            plan=target,
        )

    async def create_paypal_plans(self) -> dict[str, str]:
        product_id = settings.paypal_product_id or await asyncio.to_thread(
            self.paypal.create_product, "Postflow", "Postflow social media scheduling"
        )
        plan_ids: dict[str, str] = {}
        for plan in all_plans():
            if plan.tier is SubscriptionTier.FREE:
                continue
            for period in BillingPeriod:
                plan_ids[f"{plan.tier.value}:{period.value}"] = await asyncio.to_thread(
                    self.paypal.create_plan, product_id, plan.tier, period, price_for(plan.tier, period)
                )
        logger.info("Created %s PayPal plans under product %s", len(plan_ids), product_id)
        return plan_ids


async def get_subscription_store(
    session: AsyncSession = Depends(get_db_session),
) -> SqlSubscriptionStore:
    return SqlSubscriptionStore(session)


async def get_reconciler(
    store: SqlSubscriptionStore = Depends(get_subscription_store),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(store)


async def get_quota_guard(
    store: SqlSubscriptionStore = Depends(get_subscription_store),
) -> QuotaGuard:
    return QuotaGuard(store)


async def get_billing_service(
    store: SqlSubscriptionStore = Depends(get_subscription_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> BillingService:
    return BillingService(store, reconciler)


async def enforce_quota(
    request: Request,
    context: AuthContext = Depends(require_auth_context),
    guard: QuotaGuard = Depends(get_quota_guard),
) -> list[QuotaDecision]:
    try:
        return await guard.authorize_request(context.organization_id, request.method, request.url.path)
    except QuotaExceededError as exc:
        raise billing_http_error(exc) from exc


def billing_http_error(exc: BillingError) -> HTTPException:
    if isinstance(exc, QuotaExceededError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.payload())
    if isinstance(exc, TransactionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, BillingConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ProviderNotConfiguredError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, ProviderAPIError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
