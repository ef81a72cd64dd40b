from __future__ import annotations

from pydantic import BaseModel, Field

from postflow.core.pricing import BillingPeriod, SubscriptionTier


class AdminSubscriptionRequest(BaseModel):
    organization_id: str
    tier: SubscriptionTier
    period: BillingPeriod = BillingPeriod.MONTHLY
    total_channels: int | None = Field(default=None, ge=0)
    external_identifier: str | None = Field(default=None, max_length=255)


class LifetimeGrantRequest(BaseModel):
    organization_id: str
    code: str = Field(min_length=4, max_length=255)
    tier: SubscriptionTier = SubscriptionTier.PRO


class ReconcileResponse(BaseModel):
    applied: bool
    organization_id: str
    previous_tier: SubscriptionTier
    tier: SubscriptionTier
    period: BillingPeriod
    disabled_integrations: int
    members_disabled: bool | None = None
    reason: str | None = None


class PayPalPlansResponse(BaseModel):
    plan_ids: dict[str, str]
