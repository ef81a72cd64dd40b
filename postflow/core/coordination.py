from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Protocol
from uuid import UUID

import redis.asyncio as redis
from redis.exceptions import LockError

from postflow.core.config import settings

logger = logging.getLogger(__name__)


class ReconcileLockTimeout(RuntimeError):
    pass


class ScheduleDeactivator(Protocol):
    async def deactivate_schedules(self, organization_id: UUID) -> None: ...


@contextlib.asynccontextmanager
async def organization_lock(organization_id: UUID) -> AsyncIterator[None]:
    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    lock = redis_client.lock(
        f"billing:reconcile:{organization_id}",
        timeout=settings.reconcile_lock_timeout_seconds,
        blocking_timeout=settings.reconcile_lock_wait_seconds,
    )
    try:
        if not await lock.acquire():
            raise ReconcileLockTimeout(
                f"Timed out waiting for reconciliation lock of organization {organization_id}"
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Reconciliation lock expired before release for org=%s", organization_id)
    finally:
        await redis_client.aclose()


class RedisScheduleDeactivator:
    """Asks the posting workers to stop the organization's scheduled jobs."""

    async def deactivate_schedules(self, organization_id: UUID) -> None:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        try:
            await redis_client.set(f"integrations:cron_active:{organization_id}", "0")
            await redis_client.publish("integrations:cron:deactivate", str(organization_id))
        finally:
            await redis_client.aclose()
