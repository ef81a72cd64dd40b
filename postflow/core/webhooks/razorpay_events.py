from __future__ import annotations

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


def _entity(event: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    return as_mapping(as_mapping(as_mapping(event.get("payload")).get(name)).get("entity"))


def _notes(entity: Mapping[str, Any]) -> Mapping[str, Any]:
    # Razorpay sends an empty list instead of an object when no notes are set.
    return as_mapping(entity.get("notes"))


def _organization_id(notes: Mapping[str, Any]) -> UUID | None:
    value = as_text(notes.get("organization_id"))
    try:
        return UUID(value) if value else None
    except ValueError:
        return None


class RazorpayEventMapper(WebhookEventMapper):
    provider = PaymentProvider.RAZORPAY

    def event_type(self, event: Mapping[str, Any]) -> str:
        return as_text(event.get("event")) or "unknown"

    def handlers(self) -> Mapping[str, EventHandler]:
        return {
            "subscription.activated": self.on_subscription_activated,
            "subscription.charged": self.on_subscription_charged,
            "subscription.cancelled": self.on_subscription_cancelled,
            "subscription.completed": self.on_subscription_cancelled,
            "payment.captured": self.on_payment_captured,
            "payment.failed": self.on_payment_failed,
        }

    async def on_subscription_activated(self, event: Mapping[str, Any]) -> WebhookOutcome:
        subscription = _entity(event, "subscription")
        subscription_id = as_text(subscription.get("id"))
        customer_id = as_text(subscription.get("customer_id"))
        notes = _notes(subscription)
        organization = await self.resolve_organization(
            subscription_id=subscription_id,
            customer_id=customer_id,
            organization_id=_organization_id(notes),
        )
        if organization is None:
            return self.not_found(self.event_type(event), subscription_id)

        tier, plan_name = await self.resolve_tier(
            structured=as_text(notes.get("tier")),
            plan_name=as_text(notes.get("plan_name")),
            plan_id=as_text(subscription.get("plan_id")),
        )
        period = await self.resolve_period(
            organization.id, structured=as_text(notes.get("period")), plan_name=plan_name
        )

        if customer_id and not organization.payment_id:
            await self.store.set_external_customer_id(organization.id, customer_id)

        return await self.activate(
            organization,
            tier=tier,
            period=period,
            external_identifier=subscription_id,
            provider_transaction_id=subscription_id,
            payment_method="razorpay",
            raw=event,
        )

    async def on_subscription_charged(self, event: Mapping[str, Any]) -> WebhookOutcome:
        subscription = _entity(event, "subscription")
        payment = _entity(event, "payment")
        subscription_id = as_text(subscription.get("id"))
        organization = await self.resolve_organization(
            subscription_id=subscription_id,
            customer_id=as_text(payment.get("customer_id")) or as_text(subscription.get("customer_id")),
            organization_id=_organization_id(_notes(subscription)),
        )
        if organization is None:
            return self.not_found(self.event_type(event), subscription_id)

        return await self.record_payment(
            organization,
            amount_minor=as_int(payment.get("amount")),
            currency=payment.get("currency"),
            provider_transaction_id=as_text(payment.get("id")),
            payment_method=as_text(payment.get("method")) or "razorpay",
            raw=event,
        )

    async def on_subscription_cancelled(self, event: Mapping[str, Any]) -> WebhookOutcome:
        subscription = _entity(event, "subscription")
        subscription_id = as_text(subscription.get("id"))
        organization = await self.resolve_organization(
            subscription_id=subscription_id,
            organization_id=_organization_id(_notes(subscription)),
        )
        if organization is None:
            return self.not_found(self.event_type(event), subscription_id)
        return await self.cancel(organization, provider_transaction_id=subscription_id, raw=event)

    async def _payment_organization(self, payment: Mapping[str, Any]) -> Organization | None:
        return await self.resolve_organization(
            subscription_id=as_text(payment.get("subscription_id")),
            customer_id=as_text(payment.get("customer_id")),
            organization_id=_organization_id(_notes(payment)),
        )

    async def on_payment_captured(self, event: Mapping[str, Any]) -> WebhookOutcome:
        payment = _entity(event, "payment")
        payment_id = as_text(payment.get("id"))
        organization = await self._payment_organization(payment)
        if organization is None:
            return self.not_found(self.event_type(event), payment_id)

        return await self.record_payment(
            organization,
            amount_minor=as_int(payment.get("amount")),
            currency=payment.get("currency"),
            provider_transaction_id=payment_id,
            payment_method=as_text(payment.get("method")) or "razorpay",
            raw=event,
        )

    async def on_payment_failed(self, event: Mapping[str, Any]) -> WebhookOutcome:
        payment = _entity(event, "payment")
        payment_id = as_text(payment.get("id"))
        organization = await self._payment_organization(payment)
        if organization is None:
            return self.not_found(self.event_type(event), payment_id)

        return await self.record_failure(
            organization,
            amount_minor=as_int(payment.get("amount")),
            currency=payment.get("currency"),
            failure_reason=as_text(payment.get("error_description")) or as_text(payment.get("error_code")),
            provider_transaction_id=payment_id,
            payment_method=as_text(payment.get("method")) or "razorpay",
            raw=event,
        )
