from __future__ import annotations

import asyncio

from postflow.core.providers import PayPalClient, RazorpayClient, StripeBillingClient
from postflow.core.repositories.subscriptions import SubscriptionStore
from postflow.core.subscriptions import SubscriptionReconciler
from postflow.core.webhooks.base import CustomReference, WebhookEventMapper, WebhookOutcome
from postflow.core.webhooks.paypal_events import PayPalEventMapper
from postflow.core.webhooks.razorpay_events import RazorpayEventMapper
from postflow.core.webhooks.stripe_events import StripeEventMapper
from postflow.models.organization import PaymentProvider


async def paypal_plan_name(plan_id: str) -> str | None:
    plan = await asyncio.to_thread(PayPalClient().get_plan, plan_id)
    return plan.get("name")


async def razorpay_plan_name(plan_id: str) -> str | None:
    plan = await asyncio.to_thread(RazorpayClient().get_plan, plan_id)
    return (plan.get("item") or {}).get("name")


async def stripe_price_name(price_id: str) -> str | None:
    return await asyncio.to_thread(StripeBillingClient().get_price_name, price_id)


def build_mapper(
    provider: PaymentProvider,
    store: SubscriptionStore,
    reconciler: SubscriptionReconciler,
) -> WebhookEventMapper:
    if provider is PaymentProvider.PAYPAL:
        return PayPalEventMapper(store, reconciler, plan_lookup=paypal_plan_name)
    if provider is PaymentProvider.RAZORPAY:
        return RazorpayEventMapper(store, reconciler, plan_lookup=razorpay_plan_name)
    if provider is PaymentProvider.STRIPE:
        return StripeEventMapper(store, reconciler, plan_lookup=stripe_price_name)
    raise ValueError(f"No webhook mapper for provider {provider.value}")


__all__ = [
    "CustomReference",
    "PayPalEventMapper",
    "RazorpayEventMapper",
    "StripeEventMapper",
    "WebhookEventMapper",
    "WebhookOutcome",
    "build_mapper",
]
