"""Subscription tiers and their limits.

This table is the only place tier limits and prices are declared. The
reconciler, the quota guard and the webhook mappers all read from it, so a
price change here is a price change everywhere.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from postflow.core.exceptions import UnknownPeriodError, UnknownTierError

UNLIMITED = 1_000_000


class SubscriptionTier(str, Enum):
    FREE = "FREE"
    STANDARD = "STANDARD"
    TEAM = "TEAM"
    PRO = "PRO"
    ULTIMATE = "ULTIMATE"


class BillingPeriod(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class UsageType(str, Enum):
    POSTS = "posts"
    AI_IMAGES = "ai_images"
    AI_VIDEOS = "ai_videos"


@dataclass(frozen=True, slots=True)
class PricingPlan:
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


_PRICING: Mapping[SubscriptionTier, PricingPlan] = MappingProxyType(
    {
        SubscriptionTier.FREE: PricingPlan(
            tier=SubscriptionTier.FREE,
            month_price=0,
            year_price=0,
            max_channels=1,
            max_posts_per_month=5,
            max_ai_images_per_month=0,
            max_ai_videos_per_month=0,
            max_team_members=1,
            max_webhooks=0,
            ai=False,
            auto_post=False,
            public_api=False,
            import_from_channels=False,
            community_features=False,
            team_members=False,
        ),
        SubscriptionTier.STANDARD: PricingPlan(
            tier=SubscriptionTier.STANDARD,
            month_price=29,
            year_price=278,
            max_channels=5,
            max_posts_per_month=200,
            max_ai_images_per_month=10,
            max_ai_videos_per_month=0,
            max_team_members=1,
            max_webhooks=2,
            ai=True,
            auto_post=False,
            public_api=True,
            import_from_channels=True,
            community_features=False,
            team_members=False,
        ),
        SubscriptionTier.TEAM: PricingPlan(
            tier=SubscriptionTier.TEAM,
            month_price=39,
            year_price=374,
            max_channels=10,
            max_posts_per_month=UNLIMITED,
            max_ai_images_per_month=100,
            max_ai_videos_per_month=10,
            max_team_members=10,
            max_webhooks=10,
            ai=True,
            auto_post=True,
            public_api=True,
            import_from_channels=True,
            community_features=True,
            team_members=True,
        ),
        SubscriptionTier.PRO: PricingPlan(
            tier=SubscriptionTier.PRO,
            month_price=49,
            year_price=470,
            max_channels=20,
            max_posts_per_month=UNLIMITED,
            max_ai_images_per_month=200,
            max_ai_videos_per_month=20,
            max_team_members=UNLIMITED,
            max_webhooks=20,
            ai=True,
            auto_post=True,
            public_api=True,
            import_from_channels=True,
            community_features=True,
            team_members=True,
        ),
        SubscriptionTier.ULTIMATE: PricingPlan(
            tier=SubscriptionTier.ULTIMATE,
            month_price=99,
            year_price=950,
            max_channels=100,
            max_posts_per_month=UNLIMITED,
            max_ai_images_per_month=500,
            max_ai_videos_per_month=60,
            max_team_members=UNLIMITED,
            max_webhooks=100,
            ai=True,
            auto_post=True,
            public_api=True,
            import_from_channels=True,
            community_features=True,
            team_members=True,
        ),
    }
)


def normalize_tier(tier: SubscriptionTier | str) -> SubscriptionTier:
    if isinstance(tier, SubscriptionTier):
        return tier
    try:
        return SubscriptionTier((tier or "").strip().upper())
    except (ValueError, AttributeError):
        raise UnknownTierError(tier) from None


def normalize_period(period: BillingPeriod | str | None) -> BillingPeriod:
    if isinstance(period, BillingPeriod):
        return period
    try:
        return BillingPeriod((period or BillingPeriod.MONTHLY.value).strip().upper())
    except (ValueError, AttributeError):
        raise UnknownPeriodError(period) from None


def limits_for(tier: SubscriptionTier | str) -> PricingPlan:
    return _PRICING[normalize_tier(tier)]


def all_plans() -> list[PricingPlan]:
    return list(_PRICING.values())


def is_unlimited(value: int) -> bool:
    return value >= UNLIMITED


def limit_for_feature(tier: SubscriptionTier | str, feature: UsageType) -> int:
    plan = limits_for(tier)
    if feature is UsageType.POSTS:
        return plan.max_posts_per_month
    if feature is UsageType.AI_IMAGES:
        return plan.max_ai_images_per_month
    return plan.max_ai_videos_per_month


def price_for(tier: SubscriptionTier | str, period: BillingPeriod | str) -> int:
    plan = limits_for(tier)
    if normalize_period(period) is BillingPeriod.YEARLY:
        return plan.year_price
    return plan.month_price


def price_in_minor_units(tier: SubscriptionTier | str, period: BillingPeriod | str) -> int:
    return price_for(tier, period) * 100
