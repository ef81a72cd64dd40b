from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from postflow.core.pricing import BillingPeriod, SubscriptionTier, UsageType


class PlanLimitsResponse(BaseModel):
    tier: SubscriptionTier
    month_price: int
    year_price: int
    max_channels: int
    max_posts_per_month: int
    max_ai_images_per_month: int
    max_ai_videos_per_month: int
    max_team_members: int
    max_webhooks: int
    ai: bool
    auto_post: bool
    public_api: bool
    import_from_channels: bool
    community_features: bool
    team_members: bool


class SubscriptionResponse(BaseModel):
    organization_id: str
    tier: SubscriptionTier
    period: BillingPeriod
    total_channels: int
    identifier: str | None = None
    is_lifetime: bool
    cancel_at: datetime | None = None
    limits: PlanLimitsResponse


class QuotaDecisionResponse(BaseModel):
    allowed: bool
    feature: UsageType
    current_usage: int
    limit: int
    unlimited: bool
    reason: str | None = None


class UsageReportResponse(BaseModel):
    tier: SubscriptionTier
    period_start: datetime
    usage: list[QuotaDecisionResponse]


class CheckLimitsRequest(BaseModel):
    feature: UsageType
    requested_units: int = Field(default=1, ge=1, le=1000)


class TransactionResponse(BaseModel):
    id: str
    provider: str
    provider_transaction_id: str | None = None
    amount: int
    currency: str
    status: str
    type: str
    payment_method: str | None = None
    description: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    limit: int
    offset: int


class RetryPaymentRequest(BaseModel):
    payment_id: str = Field(min_length=1, max_length=64)


class RetryPaymentResponse(BaseModel):
    success: bool
    transaction_id: str
    message: str


class SubscribeRequest(BaseModel):
    tier: SubscriptionTier
    period: BillingPeriod = BillingPeriod.MONTHLY


class SubscribeResponse(BaseModel):
    subscription_id: str
    approval_url: str


class CancelResponse(BaseModel):
    cancelled: bool
    previous_tier: SubscriptionTier | None = None


class TierChangePreviewRequest(BaseModel):
    new_tier: SubscriptionTier


class DowngradeHintResponse(BaseModel):
    kind: str
    current: int
    limit: int
    suggestion: str


class TierCostResponse(BaseModel):
    monthly: int
    yearly: int


class TierChangePreviewResponse(BaseModel):
    current_tier: SubscriptionTier
    new_tier: SubscriptionTier
    can_change: bool
    hints: list[DowngradeHintResponse]
    cost: TierCostResponse
    features: PlanLimitsResponse
