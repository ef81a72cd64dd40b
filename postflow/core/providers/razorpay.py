from __future__ import annotations

import hashlib
import hmac
from typing import Any

import requests

from postflow.core.config import settings
from postflow.core.exceptions import (
    ProviderAPIError,
    ProviderNotConfiguredError,
    SignatureVerificationError,
)

PROVIDER = "RAZORPAY"


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class RazorpayClient:
    def __init__(
        self,
        base_url: str | None = None,
        key_id: str | None = None,
        key_secret: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = (base_url or settings.razorpay_api_base_url).rstrip("/")
        self.key_id = key_id if key_id is not None else settings.razorpay_key_id
        self.key_secret = key_secret if key_secret is not None else settings.razorpay_key_secret
        self.timeout = timeout or settings.provider_http_timeout_seconds

    def get_plan(self, plan_id: str) -> dict[str, Any]:
        if not self.key_id or not self.key_secret:
            raise ProviderNotConfiguredError("Razorpay API keys are not configured")
        try:
            response = requests.get(
                f"{self.base_url}/plans/{plan_id}",
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderAPIError(PROVIDER, f"plan fetch failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderAPIError(PROVIDER, response.text[:500], response.status_code)
        return response.json()

    def cancel_subscription(self, subscription_id: str) -> None:
        if not self.key_id or not self.key_secret:
            raise ProviderNotConfiguredError("Razorpay API keys are not configured")
        try:
            response = requests.post(
                f"{self.base_url}/subscriptions/{subscription_id}/cancel",
                auth=(self.key_id, self.key_secret),
                json={"cancel_at_cycle_end": 0},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderAPIError(PROVIDER, f"cancel failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderAPIError(PROVIDER, response.text[:500], response.status_code)

    @staticmethod
    def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str | None = None) -> None:
        secret = secret or settings.razorpay_webhook_secret
        if not secret:
            raise ProviderNotConfiguredError("RAZORPAY_WEBHOOK_SECRET is not configured")
        if not signature:
            raise SignatureVerificationError("Missing Razorpay signature", missing=True)
        if not hmac.compare_digest(compute_signature(raw_body, secret), signature):
            raise SignatureVerificationError("Invalid Razorpay webhook signature")
