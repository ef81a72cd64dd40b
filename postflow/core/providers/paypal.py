from __future__ import annotations

import base64
import logging
import time
import zlib
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlparse

import requests
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from postflow.core.config import settings
from postflow.core.exceptions import (
    ProviderAPIError,
    ProviderNotConfiguredError,
    SignatureVerificationError,
)
from postflow.core.pricing import BillingPeriod, SubscriptionTier, normalize_period, normalize_tier

logger = logging.getLogger(__name__)

PROVIDER = "PAYPAL"

_TOKEN_CACHE: dict[str, tuple[str, float]] = {}
_CERT_CACHE: dict[str, bytes] = {}


def plan_display_name(tier: SubscriptionTier | str, period: BillingPeriod | str) -> str:
    label = "Yearly" if normalize_period(period) is BillingPeriod.YEARLY else "Monthly"
    return f"{normalize_tier(tier).value} Plan ({label})"


def approval_link(subscription: Mapping[str, Any]) -> str | None:
    for link in subscription.get("links") or []:
        if link.get("rel") == "approve":
            return link.get("href")
    return None


def is_trusted_cert_url(cert_url: str) -> bool:
    parsed = urlparse(cert_url)
    host = (parsed.hostname or "").lower()
    return parsed.scheme == "https" and (host == "paypal.com" or host.endswith(".paypal.com"))


class PayPalClient:
    def __init__(
        self,
        base_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = (base_url or settings.paypal_api_base_url).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.paypal_client_id
        self.client_secret = client_secret if client_secret is not None else settings.paypal_client_secret
        self.timeout = timeout or settings.provider_http_timeout_seconds

    def _access_token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise ProviderNotConfiguredError("PayPal client credentials are not configured")

        cached = _TOKEN_CACHE.get(self.client_id)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        try:
            response = requests.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderAPIError(PROVIDER, f"token request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderAPIError(PROVIDER, "token request rejected", response.status_code)

        body = response.json()
        token = body["access_token"]
        # Expire locally one minute before PayPal does.
        expires_in = max(int(body.get("expires_in", 300)) - 60, 0)
        _TOKEN_CACHE[self.client_id] = (token, time.monotonic() + expires_in)
        return token

    def _request(self, method: str, path: str, payload: Mapping[str, Any] | None = None) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderAPIError(PROVIDER, f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderAPIError(PROVIDER, f"{method} {path}: {response.text[:500]}", response.status_code)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def create_product(self, name: str, description: str) -> str:
        body = self._request(
            "POST",
            "/v1/catalogs/products",
            {"name": name, "description": description, "type": "SERVICE", "category": "SOFTWARE"},
        )
        return body["id"]

    def create_plan(
        self,
        product_id: str,
        tier: SubscriptionTier | str,
        period: BillingPeriod | str,
        price: int,
        currency: str | None = None,
    ) -> str:
        yearly = normalize_period(period) is BillingPeriod.YEARLY
        body = self._request(
            "POST",
            "/v1/billing/plans",
            {
                "product_id": product_id,
                "name": plan_display_name(tier, period),
                "status": "ACTIVE",
                "billing_cycles": [
                    {
                        "frequency": {"interval_unit": "YEAR" if yearly else "MONTH", "interval_count": 1},
                        "tenure_type": "REGULAR",
                        "sequence": 1,
                        "total_cycles": 0,
                        "pricing_scheme": {
                            "fixed_price": {
                                "value": f"{price}.00",
                                "currency_code": currency or settings.billing_currency,
                            }
                        },
                    }
                ],
                "payment_preferences": {
                    "auto_bill_outstanding": True,
                    "setup_fee_failure_action": "CONTINUE",
                    "payment_failure_threshold": 3,
                },
            },
        )
        return body["id"]

    def get_plan(self, plan_id: str) -> dict[str, Any]:
        return self._request("GET", f"/v1/billing/plans/{plan_id}")

    def create_subscription(
        self,
        plan_id: str,
        custom_id: str,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/v1/billing/subscriptions",
            {
                "plan_id": plan_id,
                "custom_id": custom_id,
                "application_context": {
                    "brand_name": "Postflow",
                    "user_action": "SUBSCRIBE_NOW",
                    "return_url": return_url or settings.paypal_return_url,
                    "cancel_url": cancel_url or settings.paypal_cancel_url,
                },
            },
        )

    def cancel_subscription(self, subscription_id: str, reason: str = "Cancelled by customer") -> None:
        self._request("POST", f"/v1/billing/subscriptions/{subscription_id}/cancel", {"reason": reason})

    def capture_outstanding_balance(
        self,
        subscription_id: str,
        amount_minor: int,
        currency: str,
        note: str = "Retrying failed payment",
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/capture",
            {
                "note": note,
                "capture_type": "OUTSTANDING_BALANCE",
                "amount": {"currency_code": currency, "value": f"{amount_minor / 100:.2f}"},
            },
        )

    def capture_order(self, order_id: str) -> dict[str, Any]:
        return self._request("POST", f"/v2/checkout/orders/{order_id}/capture")

    def _certificate(self, cert_url: str) -> bytes:
        if not is_trusted_cert_url(cert_url):
            raise SignatureVerificationError(f"Untrusted PayPal certificate URL: {cert_url}")

        cached = _CERT_CACHE.get(cert_url)
        if cached is not None:
            return cached
        try:
            response = requests.get(cert_url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ProviderAPIError(PROVIDER, f"certificate download failed: {exc}") from exc
        logger.info("Cached PayPal signing certificate from %s", cert_url)
        _CERT_CACHE[cert_url] = response.content
        return response.content

    def verify_webhook_signature(
        self,
        headers: Mapping[str, str],
        raw_body: bytes,
        webhook_id: str | None = None,
    ) -> None:
        webhook_id = webhook_id or settings.paypal_webhook_id
        if not webhook_id:
            raise ProviderNotConfiguredError("PAYPAL_WEBHOOK_ID is not configured")

        transmission_id = headers.get("paypal-transmission-id")
        transmission_time = headers.get("paypal-transmission-time")
        transmission_sig = headers.get("paypal-transmission-sig")
        cert_url = headers.get("paypal-cert-url")
        if not (transmission_id and transmission_time and transmission_sig and cert_url):
            raise SignatureVerificationError("Missing PayPal transmission headers", missing=True)

        auth_algo = (headers.get("paypal-auth-algo") or "SHA256withRSA").upper()
        if auth_algo != "SHA256WITHRSA":
            raise SignatureVerificationError(f"Unsupported PayPal auth algorithm: {auth_algo}")

        try:
            certificate = x509.load_pem_x509_certificate(self._certificate(cert_url))
        except ValueError as exc:
            _CERT_CACHE.pop(cert_url, None)
            raise ProviderAPIError(PROVIDER, f"unreadable signing certificate at {cert_url}") from exc
        message = f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(raw_body)}"
        try:
            certificate.public_key().verify(
                base64.b64decode(transmission_sig),
                message.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except (InvalidSignature, ValueError) as exc:
            raise SignatureVerificationError("Invalid PayPal webhook signature") from exc
