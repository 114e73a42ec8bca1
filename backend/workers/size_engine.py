"""
Size Engine Worker — nightly size-curve recompute per tenant.

Dispatched per tenant by workers.scheduler.dispatch_active_tenants at
2:00 AM UTC, or enqueued from the engine runs API.

Schedule: crontab(hour=2, minute=0) — nightly
Queue: engine

A rejected run (another run in flight) is retried later; a failed run is
retried too, since the orchestrator discards failed runs and reruns are
safe. Committed and cancelled runs are final.
"""

import asyncio
from datetime import date

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


class RunNotCommitted(Exception):
    """The run was rejected or failed; Celery retries it."""


@celery_app.task(
    name="workers.size_engine.run_size_engine",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def run_size_engine(self, tenant_id: str, as_of_date: str | None = None):
    """
    Run the size engine for one tenant and return the run result dict.

    Args:
        tenant_id: Tenant to recompute
        as_of_date: ISO date to run for (defaults to today UTC)
    """
    task_id = self.request.id or "manual"
    logger.info("size_engine.task_started", tenant_id=tenant_id, task_id=task_id)

    async def _run():
        from core.config import get_settings
        from core.types import TenantId
        from db.session import task_session_factory
        from engine.notifier import SnapshotNotifier
        from engine.orchestrator import SizeEngineOrchestrator

        settings = get_settings()
        async with task_session_factory(settings.database_url) as session_factory:
            notifier = SnapshotNotifier(redis_url=settings.redis_url if settings.snapshot_publish_redis else None)
            orchestrator = SizeEngineOrchestrator(session_factory, settings, notifier=notifier)
            as_of = date.fromisoformat(as_of_date) if as_of_date else None
            return await orchestrator.trigger_run(TenantId(tenant_id), as_of_date=as_of)

    result = asyncio.run(_run())
    summary = result.to_dict()
    summary["task_id"] = task_id

    if result.status.value in ("rejected", "failed"):
        logger.warning(
            "size_engine.task_not_committed",
            tenant_id=tenant_id,
            status=result.status.value,
            retries=self.request.retries,
        )
        if self.request.retries < self.max_retries:
            raise self.retry(exc=RunNotCommitted(result.status.value))
        return summary

    logger.info("size_engine.task_complete", tenant_id=tenant_id, status=result.status.value)
    return summary
