from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from postflow.core.webhooks.base import (
    EventHandler,
    WebhookEventMapper,
    WebhookOutcome,
    as_int,
    as_mapping,
    as_text,
)
from postflow.models.organization import Organization, PaymentProvider

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = {"active", "trialing"}
_ENDED_STATUSES = {"canceled", "unpaid", "incomplete_expired"}
_INTERVAL_PERIODS = {"year": "YEARLY", "month": "MONTHLY"}


def _object(event: Mapping[str, Any]) -> Mapping[str, Any]:
    return as_mapping(as_mapping(event.get("data")).get("object"))


def _organization_id(metadata: Any) -> UUID | None:
    metadata = as_mapping(metadata)
    value = as_text(metadata.get("organization_id")) or as_text(metadata.get("org_id"))
    try:
        return UUID(value) if value else None
    except ValueError:
        return None


def _first_price(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = as_mapping(subscription.get("items")).get("data")
    if not isinstance(items, list) or not items:
        return {}
    return as_mapping(as_mapping(items[0]).get("price"))


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if isinstance(subscription, str):
        return subscription
    details = as_mapping(as_mapping(invoice.get("parent")).get("subscription_details"))
    return as_text(details.get("subscription"))


class StripeEventMapper(WebhookEventMapper):
    provider = PaymentProvider.STRIPE

    def event_type(self, event: Mapping[str, Any]) -> str:
        return as_text(event.get("type")) or "unknown"

    def handlers(self) -> Mapping[str, EventHandler]:
        return {
            "customer.subscription.created": self.on_subscription_changed,
            "customer.subscription.updated": self.on_subscription_changed,
            "customer.subscription.deleted": self.on_subscription_deleted,
            "invoice.paid": self.on_invoice_paid,
            "invoice.payment_failed": self.on_invoice_payment_failed,
        }

    async def _subscription_organization(self, subscription: Mapping[str, Any]) -> Organization | None:
        return await self.resolve_organization(
            subscription_id=as_text(subscription.get("id")),
            customer_id=as_text(subscription.get("customer")),
            organization_id=_organization_id(subscription.get("metadata")),
        )

    async def on_subscription_changed(self, event: Mapping[str, Any]) -> WebhookOutcome:
        subscription = _object(event)
        subscription_id = as_text(subscription.get("id"))
        status = as_text(subscription.get("status"))
        organization = await self._subscription_organization(subscription)
        if organization is None:
            return self.not_found(self.event_type(event), subscription_id)

        if status in _ENDED_STATUSES:
            return await self.cancel(organization, provider_transaction_id=subscription_id, raw=event)
        if status not in _ACTIVE_STATUSES:
            logger.info("Stripe subscription %s is %s; waiting for a final status", subscription_id, status)
            return WebhookOutcome(
                handled=False,
                action="ignored",
                organization_id=organization.id,
                message=f"Subscription status {status}",
            )

        metadata = as_mapping(subscription.get("metadata"))
        price = _first_price(subscription)
        tier, plan_name = await self.resolve_tier(
            structured=as_text(metadata.get("tier")),
            plan_name=as_text(price.get("nickname")),
            plan_id=as_text(price.get("id")),
        )
        interval = as_text(as_mapping(price.get("recurring")).get("interval"))
        period = await self.resolve_period(
            organization.id,
            structured=as_text(metadata.get("period")) or _INTERVAL_PERIODS.get(interval or ""),
            plan_name=plan_name,
        )

        customer_id = as_text(subscription.get("customer"))
        if customer_id and not organization.payment_id:
            await self.store.set_external_customer_id(organization.id, customer_id)

        # Stripe money movements arrive as invoice events.
        return await self.activate(
            organization,
            tier=tier,
            period=period,
            external_identifier=subscription_id,
            cancel_at=as_int(subscription.get("cancel_at")),
            record_payment=False,
            raw=event,
        )

    async def on_subscription_deleted(self, event: Mapping[str, Any]) -> WebhookOutcome:
        subscription = _object(event)
        subscription_id = as_text(subscription.get("id"))
        organization = await self._subscription_organization(subscription)
        if organization is None:
            return self.not_found(self.event_type(event), subscription_id)
        return await self.cancel(organization, provider_transaction_id=subscription_id, raw=event)

    async def _invoice_organization(self, invoice: Mapping[str, Any]) -> Organization | None:
        return await self.resolve_organization(
            subscription_id=_invoice_subscription_id(invoice),
            customer_id=as_text(invoice.get("customer")),
            organization_id=_organization_id(invoice.get("metadata")),
        )

    async def on_invoice_paid(self, event: Mapping[str, Any]) -> WebhookOutcome:
        invoice = _object(event)
        invoice_id = as_text(invoice.get("id"))
        organization = await self._invoice_organization(invoice)
        if organization is None:
            return self.not_found(self.event_type(event), invoice_id)

        return await self.record_payment(
            organization,
            amount_minor=as_int(invoice.get("amount_paid")),
            currency=invoice.get("currency"),
            provider_transaction_id=invoice_id,
            payment_method="card",
            raw=event,
        )

    async def on_invoice_payment_failed(self, event: Mapping[str, Any]) -> WebhookOutcome:
        invoice = _object(event)
        invoice_id = as_text(invoice.get("id"))
        organization = await self._invoice_organization(invoice)
        if organization is None:
            return self.not_found(self.event_type(event), invoice_id)

        error = as_text(as_mapping(invoice.get("last_finalization_error")).get("message"))
        attempts = as_int(invoice.get("attempt_count"))
        return await self.record_failure(
            organization,
            amount_minor=as_int(invoice.get("amount_due")),
            currency=invoice.get("currency"),
            failure_reason=error or f"Invoice payment failed (attempt {attempts or 1})",
            provider_transaction_id=invoice_id,
            payment_method="card",
            raw=event,
        )
