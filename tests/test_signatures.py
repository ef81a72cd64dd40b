from __future__ import annotations

import base64
import json
import zlib
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import requests
import stripe
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from postflow.core.exceptions import (
    ProviderAPIError,
    ProviderNotConfiguredError,
    SignatureVerificationError,
)
from postflow.core.providers import paypal as paypal_module
from postflow.core.providers.paypal import PayPalClient, is_trusted_cert_url
from postflow.core.providers.razorpay import RazorpayClient, compute_signature
from postflow.core.providers.stripe_client import StripeBillingClient

CERT_URL = "https://api.paypal.com/v1/notifications/certs/CERT-360caa42"
WEBHOOK_ID = "WH-ID-1"
BODY = b'{"id":"WH-1","event_type":"BILLING.SUBSCRIPTION.ACTIVATED"}'


@pytest.fixture(scope="module")
def signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def certificate_pem(signing_key: rsa.RSAPrivateKey) -> bytes:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "messageverificationcerts.paypal.com")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(signing_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(signing_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


def _paypal_headers(signing_key: rsa.RSAPrivateKey, body: bytes = BODY, **overrides: str) -> dict[str, str]:
    message = f"T-1|2026-10-16T09:00:00Z|{WEBHOOK_ID}|{zlib.crc32(body)}".encode("utf-8")
    signature = signing_key.sign(message, padding.PKCS1v15(), hashes.SHA256())
    headers = {
        "paypal-transmission-id": "T-1",
        "paypal-transmission-time": "2026-10-16T09:00:00Z",
        "paypal-transmission-sig": base64.b64encode(signature).decode("ascii"),
        "paypal-cert-url": CERT_URL,
        "paypal-auth-algo": "SHA256withRSA",
    }
    headers.update(overrides)
    return headers


@pytest.fixture
def cached_certificate(monkeypatch: pytest.MonkeyPatch, certificate_pem: bytes) -> None:
    monkeypatch.setitem(paypal_module._CERT_CACHE, CERT_URL, certificate_pem)


def test_trusted_cert_urls() -> None:
    assert is_trusted_cert_url(CERT_URL)
    assert is_trusted_cert_url("https://paypal.com/cert.pem")
    assert not is_trusted_cert_url("http://api.paypal.com/cert.pem")
    assert not is_trusted_cert_url("https://paypal.com.evil.example/cert.pem")
    assert not is_trusted_cert_url("https://evilpaypal.com/cert.pem")


def test_paypal_signature_accepts_valid_transmission(signing_key, cached_certificate) -> None:  # noqa: ANN001
    PayPalClient().verify_webhook_signature(_paypal_headers(signing_key), BODY, webhook_id=WEBHOOK_ID)


def test_paypal_signature_rejects_tampered_body(signing_key, cached_certificate) -> None:  # noqa: ANN001
    with pytest.raises(SignatureVerificationError) as exc:
        PayPalClient().verify_webhook_signature(_paypal_headers(signing_key), BODY + b" ", webhook_id=WEBHOOK_ID)
    assert exc.value.missing is False


def test_paypal_signature_missing_headers(signing_key) -> None:  # noqa: ANN001
    headers = _paypal_headers(signing_key)
    del headers["paypal-transmission-sig"]

    with pytest.raises(SignatureVerificationError) as exc:
        PayPalClient().verify_webhook_signature(headers, BODY, webhook_id=WEBHOOK_ID)
    assert exc.value.missing is True


def test_paypal_signature_requires_webhook_id(signing_key, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(paypal_module.settings, "paypal_webhook_id", "")
    with pytest.raises(ProviderNotConfiguredError):
        PayPalClient().verify_webhook_signature(_paypal_headers(signing_key), BODY)


def test_paypal_signature_rejects_untrusted_cert_url(signing_key, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    fetch = []
    monkeypatch.setattr(paypal_module.requests, "get", lambda *a, **k: fetch.append(a))
    headers = _paypal_headers(signing_key, **{"paypal-cert-url": "https://attacker.example/cert.pem"})

    with pytest.raises(SignatureVerificationError):
        PayPalClient().verify_webhook_signature(headers, BODY, webhook_id=WEBHOOK_ID)
    assert fetch == []


def test_paypal_signature_rejects_other_algorithms(signing_key, cached_certificate) -> None:  # noqa: ANN001
    headers = _paypal_headers(signing_key, **{"paypal-auth-algo": "SHA1withRSA"})
    with pytest.raises(SignatureVerificationError):
        PayPalClient().verify_webhook_signature(headers, BODY, webhook_id=WEBHOOK_ID)


def test_paypal_certificate_is_downloaded_once(
    signing_key, certificate_pem: bytes, monkeypatch: pytest.MonkeyPatch  # noqa: ANN001
) -> None:
    monkeypatch.setattr(paypal_module, "_CERT_CACHE", {})
    calls: list[str] = []

    def _get(url: str, timeout: float) -> SimpleNamespace:
        calls.append(url)
        return SimpleNamespace(content=certificate_pem, raise_for_status=lambda: None)

    monkeypatch.setattr(paypal_module.requests, "get", _get)
    client = PayPalClient()
    client.verify_webhook_signature(_paypal_headers(signing_key), BODY, webhook_id=WEBHOOK_ID)
    client.verify_webhook_signature(_paypal_headers(signing_key), BODY, webhook_id=WEBHOOK_ID)

    assert calls == [CERT_URL]


def test_paypal_certificate_download_failure(signing_key, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(paypal_module, "_CERT_CACHE", {})

    def _get(url: str, timeout: float) -> None:
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(paypal_module.requests, "get", _get)
    with pytest.raises(ProviderAPIError):
        PayPalClient().verify_webhook_signature(_paypal_headers(signing_key), BODY, webhook_id=WEBHOOK_ID)


def test_razorpay_signature() -> None:
    signature = compute_signature(BODY, "rzp_secret")

    RazorpayClient.verify_webhook_signature(BODY, signature, secret="rzp_secret")
    with pytest.raises(SignatureVerificationError) as invalid:
        RazorpayClient.verify_webhook_signature(BODY, signature, secret="other")
    with pytest.raises(SignatureVerificationError) as missing:
        RazorpayClient.verify_webhook_signature(BODY, None, secret="rzp_secret")

    assert invalid.value.missing is False
    assert missing.value.missing is True


def test_razorpay_signature_requires_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    from postflow.core.providers import razorpay as razorpay_module

    monkeypatch.setattr(razorpay_module.settings, "razorpay_webhook_secret", "")
    with pytest.raises(ProviderNotConfiguredError):
        RazorpayClient.verify_webhook_signature(BODY, "abc")


def test_stripe_construct_event_returns_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = {}

    def _construct(payload: bytes, sig_header: str, secret: str) -> object:
        seen.update(payload=payload, sig_header=sig_header, secret=secret)
        return object()

    monkeypatch.setattr(stripe.Webhook, "construct_event", _construct)
    body = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode()

    event = StripeBillingClient(webhook_secret="whsec_1").construct_event(body, "t=1,v1=abc")

    assert event == {"id": "evt_1", "type": "invoice.paid"}
    assert seen == {"payload": body, "sig_header": "t=1,v1=abc", "secret": "whsec_1"}


def test_stripe_construct_event_rejects_bad_signature(monkeypatch: pytest.MonkeyPatch) -> None:
    def _construct(payload: bytes, sig_header: str, secret: str) -> object:
        raise stripe.SignatureVerificationError("No signatures found", sig_header)

    monkeypatch.setattr(stripe.Webhook, "construct_event", _construct)
    client = StripeBillingClient(webhook_secret="whsec_1")

    with pytest.raises(SignatureVerificationError) as invalid:
        client.construct_event(b"{}", "t=1,v1=bad")
    with pytest.raises(SignatureVerificationError) as missing:
        client.construct_event(b"{}", None)

    assert invalid.value.missing is False
    assert missing.value.missing is True


def test_stripe_construct_event_requires_secret() -> None:
    with pytest.raises(ProviderNotConfiguredError):
        StripeBillingClient(webhook_secret="").construct_event(b"{}", "t=1,v1=abc")
