from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from postflow.core.webhooks.base import (
    CustomReference,
    EventHandler,
    WebhookEventMapper,
    WebhookOutcome,
    as_mapping,
    as_text,
    to_minor_units,
)
from postflow.models.organization import ExternalCustomerRef, Organization, PaymentProvider


def _resource(event: Mapping[str, Any]) -> Mapping[str, Any]:
    return as_mapping(event.get("resource"))


def _payer_customer_id(payer_id: str | None) -> str | None:
    if not payer_id:
        return None
    return ExternalCustomerRef(provider=PaymentProvider.PAYPAL, id=payer_id).encode()


class PayPalEventMapper(WebhookEventMapper):
    provider = PaymentProvider.PAYPAL

    def event_type(self, event: Mapping[str, Any]) -> str:
        return as_text(event.get("event_type")) or "unknown"

    def handlers(self) -> Mapping[str, EventHandler]:
        return {
            "BILLING.SUBSCRIPTION.ACTIVATED": self.on_subscription_activated,
            "BILLING.SUBSCRIPTION.CANCELLED": self.on_subscription_cancelled,
            "BILLING.SUBSCRIPTION.EXPIRED": self.on_subscription_cancelled,
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED": self.on_subscription_payment_failed,
            "PAYMENT.SALE.COMPLETED": self.on_payment_completed,
            "PAYMENT.CAPTURE.COMPLETED": self.on_payment_completed,
            "PAYMENT.SALE.DENIED": self.on_payment_denied,
            "PAYMENT.CAPTURE.DENIED": self.on_payment_denied,
        }

    async def on_subscription_activated(self, event: Mapping[str, Any]) -> WebhookOutcome:
        resource = _resource(event)
        subscription_id = as_text(resource.get("id"))
        reference = CustomReference.parse(resource.get("custom_id"))
        payer_id = as_text(as_mapping(resource.get("subscriber")).get("payer_id"))

        organization = await self.resolve_organization(
            subscription_id=subscription_id,
            customer_id=_payer_customer_id(payer_id),
            organization_id=reference.organization_id,
        )
        if organization is None:
            return self.not_found(self.event_type(event), subscription_id)

        tier, plan_name = await self.resolve_tier(
            structured=reference.tier,
            plan_name=as_text(as_mapping(resource.get("plan")).get("name")),
            plan_id=as_text(resource.get("plan_id")),
        )
        period = await self.resolve_period(organization.id, structured=reference.period, plan_name=plan_name)

        if payer_id and not organization.payment_id:
            await self.store.set_external_customer_id(organization.id, _payer_customer_id(payer_id))

        return await self.activate(
            organization,
            tier=tier,
            period=period,
            external_identifier=subscription_id,
            provider_transaction_id=subscription_id,
            payment_method="paypal",
            raw=event,
        )

    async def on_subscription_cancelled(self, event: Mapping[str, Any]) -> WebhookOutcome:
        resource = _resource(event)
        subscription_id = as_text(resource.get("id"))
        organization = await self.resolve_organization(
            subscription_id=subscription_id,
            organization_id=CustomReference.parse(resource.get("custom_id")).organization_id,
        )
        if organization is None:
            return self.not_found(self.event_type(event), subscription_id)
        return await self.cancel(organization, provider_transaction_id=subscription_id, raw=event)

    async def on_subscription_payment_failed(self, event: Mapping[str, Any]) -> WebhookOutcome:
        resource = _resource(event)
        subscription_id = as_text(resource.get("id"))
        organization = await self.resolve_organization(
            subscription_id=subscription_id,
            customer_id=_payer_customer_id(as_text(as_mapping(resource.get("subscriber")).get("payer_id"))),
        )
        if organization is None:
            return self.not_found(self.event_type(event), subscription_id)

        last_failed = as_mapping(as_mapping(resource.get("billing_info")).get("last_failed_payment"))
        amount = as_mapping(last_failed.get("amount"))
        return await self.record_failure(
            organization,
            amount_minor=to_minor_units(amount.get("value")),
            currency=amount.get("currency_code"),
            failure_reason=as_text(last_failed.get("reason_code")) or "PayPal subscription payment failed",
            provider_transaction_id=subscription_id,
            payment_method="paypal",
            raw=event,
        )

    async def _payment_organization(self, resource: Mapping[str, Any]) -> Organization | None:
        related_ids = as_mapping(as_mapping(resource.get("supplementary_data")).get("related_ids"))
        subscription_id = as_text(resource.get("billing_agreement_id")) or as_text(related_ids.get("subscription_id"))
        payer = as_mapping(resource.get("payer"))
        payer_id = as_text(payer.get("payer_id")) or as_text(as_mapping(payer.get("payer_info")).get("payer_id"))
        return await self.resolve_organization(
            subscription_id=subscription_id,
            customer_id=_payer_customer_id(payer_id),
            organization_id=CustomReference.parse(resource.get("custom_id") or resource.get("custom")).organization_id,
        )

    @staticmethod
    def _amount(resource: Mapping[str, Any]) -> tuple[int | None, str | None]:
        amount = as_mapping(resource.get("amount"))
        value = amount.get("value", amount.get("total"))
        currency = as_text(amount.get("currency_code", amount.get("currency")))
        return to_minor_units(value), currency

    async def on_payment_completed(self, event: Mapping[str, Any]) -> WebhookOutcome:
        resource = _resource(event)
        payment_id = as_text(resource.get("id"))
        organization = await self._payment_organization(resource)
        if organization is None:
            return self.not_found(self.event_type(event), payment_id)

        amount_minor, currency = self._amount(resource)
        return await self.record_payment(
            organization,
            amount_minor=amount_minor,
            currency=currency,
            provider_transaction_id=payment_id,
            payment_method="paypal",
            raw=event,
        )

    async def on_payment_denied(self, event: Mapping[str, Any]) -> WebhookOutcome:
        resource = _resource(event)
        payment_id = as_text(resource.get("id"))
        organization = await self._payment_organization(resource)
        if organization is None:
            return self.not_found(self.event_type(event), payment_id)

        amount_minor, currency = self._amount(resource)
        reason = as_text(as_mapping(resource.get("status_details")).get("reason")) or as_text(
            resource.get("reason_code")
        )
        return await self.record_failure(
            organization,
            amount_minor=amount_minor,
            currency=currency,
            failure_reason=reason or "PayPal payment denied",
            provider_transaction_id=payment_id,
            payment_method="paypal",
            raw=event,
        )
