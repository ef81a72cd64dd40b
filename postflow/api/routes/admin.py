from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.core.auth import AuthContext, require_super_admin
from postflow.core.billing import (
    BillingService,
    billing_http_error,
    get_billing_service,
    get_reconciler,
    get_subscription_store,
)
from postflow.core.coordination import ReconcileLockTimeout
from postflow.core.db import get_db_session
from postflow.core.exceptions import BillingError
from postflow.core.pricing import limits_for
from postflow.core.repositories.subscriptions import SqlSubscriptionStore
from postflow.core.subscriptions import ReconcileResult, SubscriptionReconciler
from postflow.schemas.admin import (
    AdminSubscriptionRequest,
    LifetimeGrantRequest,
    PayPalPlansResponse,
    ReconcileResponse,
)

router = APIRouter(prefix="/billing/admin", tags=["admin"])


async def _existing_organization_id(store: SqlSubscriptionStore, raw_id: str) -> UUID:
    try:
        organization_id = UUID(raw_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found") from exc
    if await store.get_organization(organization_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    return organization_id


def _reconcile_response(result: ReconcileResult) -> ReconcileResponse:
    return ReconcileResponse(
        applied=result.applied,
        organization_id=str(result.organization_id),
        previous_tier=result.previous_tier,
        tier=result.tier,
        period=result.period,
        disabled_integrations=result.disabled_integrations,
        members_disabled=result.members_disabled,
        reason=result.reason,
    )


@router.post("/subscriptions", response_model=ReconcileResponse)
async def reconcile_tier(
    payload: AdminSubscriptionRequest,
    _: AuthContext = Depends(require_super_admin),
    store: SqlSubscriptionStore = Depends(get_subscription_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    session: AsyncSession = Depends(get_db_session),
) -> ReconcileResponse:
    organization_id = await _existing_organization_id(store, payload.organization_id)
    total_channels = payload.total_channels
    if total_channels is None:
        total_channels = limits_for(payload.tier).max_channels

    try:
        result = await reconciler.reconcile(
            organization_id,
            payload.tier,
            payload.period,
            total_channels,
            external_identifier=payload.external_identifier,
        )
    except ReconcileLockTimeout as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    await session.commit()

    if not result.applied:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.reason)
    return _reconcile_response(result)


@router.post("/lifetime", response_model=ReconcileResponse)
async def grant_lifetime(
    payload: LifetimeGrantRequest,
    _: AuthContext = Depends(require_super_admin),
    store: SqlSubscriptionStore = Depends(get_subscription_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    session: AsyncSession = Depends(get_db_session),
) -> ReconcileResponse:
    organization_id = await _existing_organization_id(store, payload.organization_id)
    try:
        result = await reconciler.grant_lifetime(organization_id, payload.code, payload.tier)
    except ReconcileLockTimeout as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    await session.commit()

    if not result.applied:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.reason)
    return _reconcile_response(result)


@router.post("/paypal/plans", response_model=PayPalPlansResponse)
async def create_paypal_plans(
    _: AuthContext = Depends(require_super_admin),
    service: BillingService = Depends(get_billing_service),
) -> PayPalPlansResponse:
    try:
        plan_ids = await service.create_paypal_plans()
    except BillingError as exc:
        raise billing_http_error(exc) from exc
    return PayPalPlansResponse(plan_ids=plan_ids)
