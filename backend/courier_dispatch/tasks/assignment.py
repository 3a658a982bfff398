"""
Background assignment tasks using Celery.
"""
import asyncio
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from courier_dispatch.core.celery_app import celery_app
from courier_dispatch.core.config import settings
from courier_dispatch.core.redis import RedisClient
from courier_dispatch.models.base import utcnow
from courier_dispatch.services.container import DispatchServices, build_dispatch_services


def run_async(coro):
    """Run async coroutine in sync context."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_services(work) -> dict[str, Any]:
    """Build the dispatch services for one task run and tear them down after."""
    # Each run has its own event loop, so pooled connections cannot outlive it
    engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
    redis = RedisClient()
    try:
        client = await redis.get_client() if settings.GEO_INDEX_BACKEND == "redis" else None
        services = build_dispatch_services(
            settings,
            async_sessionmaker(engine, expire_on_commit=False),
            redis=client,
        )
        try:
            return await work(services)
        finally:
            await services.publisher.close()
    finally:
        await redis.close()
        await engine.dispose()


@celery_app.task(bind=True, name="courier_dispatch.tasks.assignment.sweep_expired_leases")
def sweep_expired_leases_task(self) -> dict[str, Any]:
    """
    Expire lapsed leases and retry stalled pending orders.

    Returns:
        Dictionary with sweep counts
    """
    return run_async(_with_services(lambda services: _sweep(services, self.request.id)))


async def _sweep(services: DispatchServices, task_id: str) -> dict[str, Any]:
    expired = await services.sweeper.sweep()
    retried = await services.sweeper.retry_stalled()
    return {
        "status": "success",
        "task_id": task_id,
        "expired": expired,
        "stalled_retried": retried,
        "timestamp": utcnow().isoformat(),
    }


@celery_app.task(bind=True, name="courier_dispatch.tasks.assignment.reconcile_partner_capacity")
def reconcile_partner_capacity_task(self) -> dict[str, Any]:
    """
    Repair partner load drift.

    Returns:
        Reconciliation report
    """
    return run_async(_with_services(lambda services: _reconcile(services, self.request.id)))


async def _reconcile(services: DispatchServices, task_id: str) -> dict[str, Any]:
    report = await services.sweeper.reconcile()
    return {
        "status": "success",
        "task_id": task_id,
        **report.to_dict(),
    }


@celery_app.task(name="courier_dispatch.tasks.assignment.health_check")
def health_check_task() -> dict[str, str]:
    """Simple health check task."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
    }
