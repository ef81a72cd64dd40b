from __future__ import annotations

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.core.auth import AuthContext, require_auth_context
from postflow.core.billing import (
    BillingService,
    billing_http_error,
    get_billing_service,
    get_quota_guard,
    get_reconciler,
    get_subscription_store,
)
from postflow.core.coordination import ReconcileLockTimeout
from postflow.core.db import get_db_session
from postflow.core.exceptions import BillingError, QuotaExceededError
from postflow.core.pricing import UsageType, limits_for
from postflow.core.quota import QuotaDecision, QuotaGuard, usage_window_start
from postflow.core.repositories.subscriptions import SqlSubscriptionStore
from postflow.core.subscriptions import SubscriptionReconciler
from postflow.models.base import utcnow
from postflow.models.payment_transaction import PaymentTransaction
from postflow.schemas.billing import (
    CancelResponse,
    CheckLimitsRequest,
    DowngradeHintResponse,
    PlanLimitsResponse,
    QuotaDecisionResponse,
    RetryPaymentRequest,
    RetryPaymentResponse,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionResponse,
    TierChangePreviewRequest,
    TierChangePreviewResponse,
    TierCostResponse,
    TransactionListResponse,
    TransactionResponse,
    UsageReportResponse,
)

router = APIRouter(prefix="/billing", tags=["billing"])


def _decision_response(decision: QuotaDecision) -> QuotaDecisionResponse:
    return QuotaDecisionResponse(
        allowed=decision.allowed,
        feature=decision.feature,
        current_usage=decision.current_usage,
        limit=decision.limit,
        unlimited=decision.unlimited,
        reason=decision.reason,
    )


def _transaction_response(transaction: PaymentTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=str(transaction.id),
        provider=transaction.provider,
        provider_transaction_id=transaction.provider_transaction_id,
        amount=transaction.amount,
        currency=transaction.currency,
        status=transaction.status,
        type=transaction.type,
        payment_method=transaction.payment_method,
        description=transaction.description,
        failure_reason=transaction.failure_reason,
        created_at=transaction.created_at,
        processed_at=transaction.processed_at,
    )


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(
    context: AuthContext = Depends(require_auth_context),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    session: AsyncSession = Depends(get_db_session),
) -> SubscriptionResponse:
    subscription = await reconciler.ensure_subscription(context.organization_id)
    await session.commit()
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Subscription could not be provisioned",
        )

    return SubscriptionResponse(
        organization_id=str(context.organization_id),
        tier=subscription.subscription_tier,
        period=subscription.period,
        total_channels=subscription.total_channels,
        identifier=subscription.identifier,
        is_lifetime=subscription.is_lifetime,
        cancel_at=subscription.cancel_at,
        limits=PlanLimitsResponse(**asdict(limits_for(subscription.subscription_tier))),
    )


@router.get("/usage", response_model=UsageReportResponse)
async def get_usage(
    context: AuthContext = Depends(require_auth_context),
    guard: QuotaGuard = Depends(get_quota_guard),
) -> UsageReportResponse:
    report = await guard.usage_report(context.organization_id)
    return UsageReportResponse(
        tier=await guard.current_tier(context.organization_id),
        period_start=usage_window_start(utcnow()),
        usage=[_decision_response(decision) for decision in report.values()],
    )


@router.post("/check-limits", response_model=QuotaDecisionResponse)
async def check_limits(
    payload: CheckLimitsRequest,
    context: AuthContext = Depends(require_auth_context),
    guard: QuotaGuard = Depends(get_quota_guard),
) -> QuotaDecisionResponse:
    decision = await guard.check_and_authorize(
        context.organization_id, payload.feature, requested_units=payload.requested_units
    )
    return _decision_response(decision)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    context: AuthContext = Depends(require_auth_context),
    store: SqlSubscriptionStore = Depends(get_subscription_store),
) -> TransactionListResponse:
    transactions = await store.list_transactions(context.organization_id, limit=limit, offset=offset)
    return TransactionListResponse(
        items=[_transaction_response(transaction) for transaction in transactions],
        limit=limit,
        offset=offset,
    )


@router.get("/failed-payments", response_model=list[TransactionResponse])
async def list_failed_payments(
    context: AuthContext = Depends(require_auth_context),
    store: SqlSubscriptionStore = Depends(get_subscription_store),
) -> list[TransactionResponse]:
    transactions = await store.list_failed_transactions(context.organization_id)
    return [_transaction_response(transaction) for transaction in transactions]


@router.post("/retry-payment", response_model=RetryPaymentResponse)
async def retry_payment(
    payload: RetryPaymentRequest,
    context: AuthContext = Depends(require_auth_context),
    service: BillingService = Depends(get_billing_service),
    session: AsyncSession = Depends(get_db_session),
) -> RetryPaymentResponse:
    try:
        payment_id = UUID(payload.payment_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found") from exc

    try:
        result = await service.retry_failed_payment(context.organization_id, payment_id)
    except BillingError as exc:
        raise billing_http_error(exc) from exc
    await session.commit()

    if not result.succeeded:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"transaction_id": str(result.transaction_id), "reason": result.failure_reason},
        )
    return RetryPaymentResponse(
        success=True,
        transaction_id=str(result.transaction_id),
        message="Payment collected",
    )


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(
    payload: SubscribeRequest,
    context: AuthContext = Depends(require_auth_context),
    service: BillingService = Depends(get_billing_service),
) -> SubscribeResponse:
    try:
        checkout = await service.start_checkout(context.organization_id, payload.tier, payload.period)
    except BillingError as exc:
        raise billing_http_error(exc) from exc
    return SubscribeResponse(subscription_id=checkout.subscription_id, approval_url=checkout.approval_url)


@router.post("/upgrade-preview", response_model=TierChangePreviewResponse)
async def upgrade_preview(
    payload: TierChangePreviewRequest,
    context: AuthContext = Depends(require_auth_context),
    service: BillingService = Depends(get_billing_service),
) -> TierChangePreviewResponse:
    try:
        preview = await service.preview_tier_change(context.organization_id, payload.new_tier)
    except BillingError as exc:
        raise billing_http_error(exc) from exc
    return TierChangePreviewResponse(
        current_tier=preview.current_tier,
        new_tier=preview.new_tier,
        can_change=preview.can_change,
        hints=[DowngradeHintResponse(**asdict(hint)) for hint in preview.hints],
        cost=TierCostResponse(monthly=preview.plan.month_price, yearly=preview.plan.year_price),
        features=PlanLimitsResponse(**asdict(preview.plan)),
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel(
    context: AuthContext = Depends(require_auth_context),
    service: BillingService = Depends(get_billing_service),
    session: AsyncSession = Depends(get_db_session),
) -> CancelResponse:
    try:
        result = await service.cancel_subscription(context.organization_id)
    except BillingError as exc:
        raise billing_http_error(exc) from exc
    except ReconcileLockTimeout as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    await session.commit()

    if result is None:
        return CancelResponse(cancelled=False)
    if not result.applied:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.reason)
    return CancelResponse(cancelled=True, previous_tier=result.previous_tier)


@router.post("/guards/{feature}")
async def feature_guard(
    feature: UsageType,
    context: AuthContext = Depends(require_auth_context),
    guard: QuotaGuard = Depends(get_quota_guard),
) -> dict[str, bool]:
    decision = await guard.check_and_authorize(context.organization_id, feature)
    if not decision.allowed:
        raise billing_http_error(
            QuotaExceededError(decision.feature.value, decision.current_usage, decision.limit, decision.reason)
        )
    return {"allowed": True}
