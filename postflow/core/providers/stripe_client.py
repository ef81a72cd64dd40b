from __future__ import annotations

import json
from typing import Any

import stripe

from postflow.core.config import settings
from postflow.core.exceptions import (
    ProviderAPIError,
    ProviderNotConfiguredError,
    SignatureVerificationError,
)

PROVIDER = "STRIPE"


class StripeBillingClient:
    def __init__(self, secret_key: str | None = None, webhook_secret: str | None = None) -> None:
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret

    def _api_key(self) -> str:
        if not self.secret_key:
            raise ProviderNotConfiguredError("STRIPE_SECRET_KEY is not configured")
        return self.secret_key

    def construct_event(self, raw_body: bytes, signature: str | None) -> dict[str, Any]:
        if not self.webhook_secret:
            raise ProviderNotConfiguredError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise SignatureVerificationError("Missing Stripe signature", missing=True)
        try:
            stripe.Webhook.construct_event(
                payload=raw_body,
                sig_header=signature,
                secret=self.webhook_secret,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationError(f"Invalid Stripe signature: {exc}") from exc
        except ValueError as exc:
            raise SignatureVerificationError(f"Invalid Stripe payload: {exc}") from exc
        return json.loads(raw_body.decode("utf-8"))

    def get_price_name(self, price_id: str) -> str | None:
        try:
            price = stripe.Price.retrieve(price_id, expand=["product"], api_key=self._api_key())
        except stripe.StripeError as exc:
            raise ProviderAPIError(PROVIDER, str(exc), getattr(exc, "http_status", None)) from exc

        nickname = getattr(price, "nickname", None)
        if nickname:
            return nickname
        product = getattr(price, "product", None)
        return getattr(product, "name", None)

    def pay_invoice(self, invoice_id: str) -> str:
        try:
            invoice = stripe.Invoice.pay(invoice_id, api_key=self._api_key())
        except stripe.StripeError as exc:
            raise ProviderAPIError(PROVIDER, str(exc), getattr(exc, "http_status", None)) from exc
        return getattr(invoice, "status", None) or "unknown"

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_id, api_key=self._api_key())
        except stripe.StripeError as exc:
            raise ProviderAPIError(PROVIDER, str(exc), getattr(exc, "http_status", None)) from exc
