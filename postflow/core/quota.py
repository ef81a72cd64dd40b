from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from postflow.core.exceptions import QuotaExceededError
from postflow.core.pricing import (
    SubscriptionTier,
    UsageType,
    is_unlimited,
    limit_for_feature,
    normalize_tier,
)
from postflow.core.repositories.subscriptions import SubscriptionStore
from postflow.models.base import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNMETERED_PATHS = ("/billing/usage", "/admin", "/organization/update", "/auth")
_POST_METHODS = {"POST", "PUT", "PATCH"}


@dataclass(slots=True)
class QuotaDecision:
    allowed: bool
    feature: UsageType
    current_usage: int
    limit: int
    reason: str | None = None

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.limit)


def usage_window_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def classify_operation(method: str, path: str) -> list[UsageType]:
    method = method.upper()
    if method not in _POST_METHODS:
        return []
    path = path.lower()
    if any(marker in path for marker in _UNMETERED_PATHS):
        return []

    kinds: list[UsageType] = []
    if "/posts" in path or ("/publish" in path and method == "POST"):
        kinds.append(UsageType.POSTS)

    if method == "POST":
        if "/copilot" in path:
            kinds.append(UsageType.AI_VIDEOS if "/video" in path else UsageType.AI_IMAGES)
        elif "/ai/" in path and "/image" in path:
            kinds.append(UsageType.AI_IMAGES)
        elif "/ai/" in path and "/video" in path:
            kinds.append(UsageType.AI_VIDEOS)
    return kinds


class QuotaGuard:
    def __init__(self, store: SubscriptionStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    async def current_tier(self, organization_id: UUID) -> SubscriptionTier:
        subscription = await self.store.find_active_by_organization(organization_id)
        if subscription is None:
            return SubscriptionTier.FREE
        return normalize_tier(subscription.subscription_tier)

    async def check_and_authorize(
        self,
        organization_id: UUID,
        operation_kind: UsageType | str,
        requested_units: int = 1,
    ) -> QuotaDecision:
        feature = UsageType(operation_kind)
        tier = await self.current_tier(organization_id)
        limit = limit_for_feature(tier, feature)
        usage = await self.store.sum_usage(
            organization_id, feature.value, usage_window_start(self._clock())
        )

        # FREE post counts are reported but not enforced.
        if tier is SubscriptionTier.FREE and feature is UsageType.POSTS:
            return QuotaDecision(allowed=True, feature=feature, current_usage=usage, limit=limit)

        if is_unlimited(limit) or usage + requested_units <= limit:
            return QuotaDecision(allowed=True, feature=feature, current_usage=usage, limit=limit)

        logger.info(
            "Quota denied for org=%s feature=%s usage=%s limit=%s tier=%s",
            organization_id,
            feature.value,
            usage,
            limit,
            tier.value,
        )
        return QuotaDecision(
            allowed=False,
            feature=feature,
            current_usage=usage,
            limit=limit,
            reason=f"Usage limit exceeded: {usage}/{limit}",
        )

    async def authorize_request(self, organization_id: UUID, method: str, path: str) -> list[QuotaDecision]:
        decisions: list[QuotaDecision] = []
        for kind in classify_operation(method, path):
            decision = await self.check_and_authorize(organization_id, kind)
            if not decision.allowed:
                raise QuotaExceededError(
                    decision.feature.value, decision.current_usage, decision.limit, decision.reason
                )
            decisions.append(decision)
        return decisions

    async def usage_report(self, organization_id: UUID) -> dict[str, QuotaDecision]:
        report: dict[str, QuotaDecision] = {}
        for feature in UsageType:
            report[feature.value] = await self.check_and_authorize(organization_id, feature, requested_units=0)
        return report

    async def use_credit(
        self,
        organization_id: UUID,
        usage_type: UsageType | str,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        usage_id = await self.store.insert_usage_unit(organization_id, UsageType(usage_type).value)
        try:
            return await action()
        except Exception:
            logger.warning(
                "Action failed, releasing %s unit for org=%s", UsageType(usage_type).value, organization_id
            )
            await self.store.delete_usage_unit(usage_id)
            raise

    async def use_feature(
        self,
        organization_id: UUID,
        feature: UsageType | str,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        decision = await self.check_and_authorize(organization_id, feature)
        if not decision.allowed:
            raise QuotaExceededError(
                decision.feature.value, decision.current_usage, decision.limit, decision.reason
            )
        return await self.use_credit(organization_id, decision.feature, action)
