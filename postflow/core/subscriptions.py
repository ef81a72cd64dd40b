from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from postflow.core.coordination import RedisScheduleDeactivator, ScheduleDeactivator, organization_lock
from postflow.core.pricing import (
    BillingPeriod,
    SubscriptionTier,
    limits_for,
    normalize_period,
    normalize_tier,
)
from postflow.core.repositories.subscriptions import SubscriptionStore
from postflow.models.subscription import Subscription

logger = logging.getLogger(__name__)

LockFactory = Callable[[UUID], AbstractAsyncContextManager[None]]


@dataclass(slots=True)
class ReconcileResult:
    applied: bool
    organization_id: UUID
    previous_tier: SubscriptionTier
    tier: SubscriptionTier
    period: BillingPeriod
    disabled_integrations: int = 0
    members_disabled: bool | None = None
    reason: str | None = None


def to_cancel_at(value: datetime | int | float | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SubscriptionReconciler:
    """Moves an organization onto a new tier and trims what the tier no longer allows.

    The database steps (integration disabling, member toggling, the
    subscription upsert) run on the store's session and become visible with
    the caller's commit. Calls for the same organization are serialized by
    ``lock_factory``.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        schedules: ScheduleDeactivator | None = None,
        lock_factory: LockFactory = organization_lock,
    ) -> None:
        self.store = store
        self.schedules = schedules or RedisScheduleDeactivator()
        self._lock_factory = lock_factory

    async def reconcile(
        self,
        organization_id: UUID,
        tier: SubscriptionTier | str,
        period: BillingPeriod | str,
        total_channels: int,
        *,
        external_identifier: str | None = None,
        cancel_at: datetime | int | float | None = None,
        lifetime_code: str | None = None,
    ) -> ReconcileResult:
        target_tier = normalize_tier(tier)
        target_period = normalize_period(period)
        async with self._lock_factory(organization_id):
            return await self._apply(
                organization_id,
                target_tier,
                target_period,
                total_channels,
                external_identifier=external_identifier,
                cancel_at=to_cancel_at(cancel_at),
                lifetime_code=lifetime_code,
            )

    async def _apply(
        self,
        organization_id: UUID,
        tier: SubscriptionTier,
        period: BillingPeriod,
        total_channels: int,
        *,
        external_identifier: str | None,
        cancel_at: datetime | None,
        lifetime_code: str | None,
    ) -> ReconcileResult:
        current = await self.store.find_active_by_organization(organization_id)
        previous_tier = normalize_tier(current.subscription_tier) if current else SubscriptionTier.FREE
        result = ReconcileResult(
            applied=False,
            organization_id=organization_id,
            previous_tier=previous_tier,
            tier=tier,
            period=period,
        )

        if current is not None and current.is_lifetime:
            logger.warning(
                "Skipping reconciliation for org=%s: lifetime subscription is locked at %s",
                organization_id,
                previous_tier.value,
            )
            result.reason = "Lifetime subscriptions cannot change tier"
            return result

        active_integrations = await self.store.list_active_integrations(organization_id)
        excess = len(active_integrations) - total_channels
        if excess > 0:
            result.disabled_integrations = await self.store.disable_integrations(organization_id, excess)
            logger.info(
                "Disabled %s of %s active integrations for org=%s (allowed=%s)",
                result.disabled_integrations,
                len(active_integrations),
                organization_id,
                total_channels,
            )

        had_team = limits_for(previous_tier).team_members
        has_team = limits_for(tier).team_members
        if had_team and not has_team:
            toggled = await self.store.set_members_disabled(organization_id, True)
            result.members_disabled = True
            logger.info("Disabled %s team members for org=%s", toggled, organization_id)
        elif has_team and not had_team:
            toggled = await self.store.set_members_disabled(organization_id, False)
            result.members_disabled = False
            logger.info("Re-enabled %s team members for org=%s", toggled, organization_id)

        if tier is SubscriptionTier.FREE:
            await self.schedules.deactivate_schedules(organization_id)
            logger.info("Requested schedule deactivation for org=%s", organization_id)

        if external_identifier is None and current is not None:
            external_identifier = current.identifier

        await self.store.upsert_subscription(
            organization_id,
            tier.value,
            period.value,
            total_channels,
            external_identifier,
            bool(lifetime_code),
            cancel_at,
            lifetime_code=lifetime_code,
        )
        logger.info(
            "Subscription for org=%s moved %s -> %s (%s, channels=%s)",
            organization_id,
            previous_tier.value,
            tier.value,
            period.value,
            total_channels,
        )
        result.applied = True
        return result

    async def ensure_subscription(self, organization_id: UUID) -> Subscription | None:
        current = await self.store.find_active_by_organization(organization_id)
        if current is not None:
            return current

        logger.info("Provisioning FREE subscription for org=%s", organization_id)
        await self.store.upsert_subscription(
            organization_id,
            SubscriptionTier.FREE.value,
            BillingPeriod.MONTHLY.value,
            limits_for(SubscriptionTier.FREE).max_channels,
            f"FREE_{organization_id}",
            False,
            None,
        )
        return await self.store.find_active_by_organization(organization_id)

    async def cancel(self, organization_id: UUID) -> ReconcileResult | None:
        """Downgrade to FREE and retire the active row.

        Returns ``None`` when there was nothing to cancel. The result keeps the
        tier the organization was on before the cancellation.
        """
        free = limits_for(SubscriptionTier.FREE)
        async with self._lock_factory(organization_id):
            current = await self.store.find_active_by_organization(organization_id)
            if current is None:
                logger.info("No active subscription to cancel for org=%s", organization_id)
                return None

            result = await self._apply(
                organization_id,
                SubscriptionTier.FREE,
                BillingPeriod.MONTHLY,
                free.max_channels,
                external_identifier=None,
                cancel_at=None,
                lifetime_code=None,
            )
            if not result.applied:
                return result

            await self.store.soft_delete_subscription(organization_id)
        logger.info(
            "Cancelled %s subscription for org=%s; soft-deleted the FREE row",
            result.previous_tier.value,
            organization_id,
        )
        return result

    async def grant_lifetime(
        self,
        organization_id: UUID,
        code: str,
        tier: SubscriptionTier | str = SubscriptionTier.PRO,
    ) -> ReconcileResult:
        target_tier = normalize_tier(tier)
        if await self.store.is_code_used(code):
            logger.warning("Lifetime code already redeemed, org=%s", organization_id)
            return ReconcileResult(
                applied=False,
                organization_id=organization_id,
                previous_tier=target_tier,
                tier=target_tier,
                period=BillingPeriod.MONTHLY,
                reason="Lifetime code already used",
            )
        return await self.reconcile(
            organization_id,
            target_tier,
            BillingPeriod.MONTHLY,
            limits_for(target_tier).max_channels,
            external_identifier=code,
            lifetime_code=code,
        )
