from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.core.billing import get_reconciler, get_subscription_store
from postflow.core.config import settings
from postflow.core.db import get_db_session
from postflow.core.exceptions import (
    ProviderAPIError,
    ProviderNotConfiguredError,
    SignatureVerificationError,
)
from postflow.core.providers import PayPalClient, RazorpayClient, StripeBillingClient
from postflow.core.repositories.subscriptions import SqlSubscriptionStore
from postflow.core.subscriptions import SubscriptionReconciler
from postflow.core.webhooks import build_mapper
from postflow.models.organization import PaymentProvider
from postflow.schemas.webhooks import WebhookAckResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _signature_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SignatureVerificationError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED if exc.missing else status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        )
    if isinstance(exc, ProviderNotConfiguredError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Signature check unavailable: {exc}")


def _parse_payload(raw_body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


async def _dispatch(
    provider: PaymentProvider,
    payload: dict[str, Any] | None,
    raw_body: bytes,
    header_event_id: str | None,
    store: SqlSubscriptionStore,
    reconciler: SubscriptionReconciler,
    session: AsyncSession,
) -> WebhookAckResponse | JSONResponse:
    if payload is None:
        logger.warning("Acknowledging malformed %s webhook payload", provider.value)
        return WebhookAckResponse(status="ok", message="Malformed payload ignored")

    mapper = build_mapper(provider, store, reconciler)
    event_type = mapper.event_type(payload)
    event_id = mapper.event_id(payload) or header_event_id or hashlib.sha256(raw_body).hexdigest()

    try:
        if not await store.claim_webhook_event(provider.value, event_id, event_type):
            await session.rollback()
            logger.info("Duplicate %s webhook %s (%s) acknowledged", provider.value, event_id, event_type)
            return WebhookAckResponse(status="ok", message="Duplicate delivery")

        outcome = await mapper.handle(payload)
        await session.commit()
    except Exception as exc:
        await session.rollback()
        logger.exception("Processing %s webhook %s (%s) failed", provider.value, event_id, event_type)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "message": str(exc)},
        )

    logger.info(
        "Processed %s webhook %s (%s): %s",
        provider.value,
        event_id,
        event_type,
        outcome.action,
    )
    return WebhookAckResponse(status="ok", message=outcome.message)


@router.post("/paypal", response_model=WebhookAckResponse)
async def paypal_webhook(
    request: Request,
    store: SqlSubscriptionStore = Depends(get_subscription_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    session: AsyncSession = Depends(get_db_session),
) -> WebhookAckResponse | JSONResponse:
    raw_body = await request.body()
    if settings.webhook_signature_required:
        try:
            await asyncio.to_thread(PayPalClient().verify_webhook_signature, request.headers, raw_body)
        except (SignatureVerificationError, ProviderNotConfiguredError, ProviderAPIError) as exc:
            raise _signature_http_error(exc) from exc

    return await _dispatch(
        PaymentProvider.PAYPAL,
        _parse_payload(raw_body),
        raw_body,
        request.headers.get("paypal-transmission-id"),
        store,
        reconciler,
        session,
    )


@router.post("/razorpay", response_model=WebhookAckResponse)
async def razorpay_webhook(
    request: Request,
    store: SqlSubscriptionStore = Depends(get_subscription_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    session: AsyncSession = Depends(get_db_session),
) -> WebhookAckResponse | JSONResponse:
    raw_body = await request.body()
    if settings.webhook_signature_required:
        try:
            RazorpayClient.verify_webhook_signature(raw_body, request.headers.get("x-razorpay-signature"))
        except (SignatureVerificationError, ProviderNotConfiguredError) as exc:
            raise _signature_http_error(exc) from exc

    return await _dispatch(
        PaymentProvider.RAZORPAY,
        _parse_payload(raw_body),
        raw_body,
        request.headers.get("x-razorpay-event-id"),
        store,
        reconciler,
        session,
    )


@router.post("/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    store: SqlSubscriptionStore = Depends(get_subscription_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    session: AsyncSession = Depends(get_db_session),
) -> WebhookAckResponse | JSONResponse:
    raw_body = await request.body()
    if settings.webhook_signature_required:
        try:
            StripeBillingClient().construct_event(raw_body, request.headers.get("stripe-signature"))
        except (SignatureVerificationError, ProviderNotConfiguredError) as exc:
            raise _signature_http_error(exc) from exc

    return await _dispatch(PaymentProvider.STRIPE, _parse_payload(raw_body), raw_body, None, store, reconciler, session)
