"""
Tenant fan-out for Celery beat.

The nightly beat entry calls dispatch_active_tenants with the size engine
task; every active or trial tenant gets its own run_size_engine task on
the engine queue. All tenants in one dispatch share the same as_of_date,
pinned here, so a fan-out that straddles midnight UTC does not split the
night's snapshots across two dates.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select

from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_ACTIVE_STATUSES = ("active", "trial")
SIZE_ENGINE_TASK = "workers.size_engine.run_size_engine"


@celery_app.task(
    name="workers.scheduler.dispatch_active_tenants",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_tenants(
    self,
    task_name: str = SIZE_ENGINE_TASK,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """
    Send one tenant-scoped task per tenant in the selected statuses.

    Size engine dispatches without an explicit as_of_date get today's UTC
    date, resolved once for the whole fan-out.
    """
    from core.config import get_settings
    from db.models import Tenant
    from db.session import task_session_factory

    dispatch_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})
    selected_statuses = tuple(statuses or DEFAULT_ACTIVE_STATUSES)

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}
    if task_name == SIZE_ENGINE_TASK and not payload.get("as_of_date"):
        payload["as_of_date"] = datetime.now(timezone.utc).date().isoformat()

    async def _dispatch():
        settings = get_settings()
        async with task_session_factory(settings.database_url) as session_factory:
            async with session_factory() as db:
                result = await db.execute(
                    select(Tenant.tenant_id)
                    .where(Tenant.status.in_(selected_statuses))
                    .order_by(Tenant.created_at, Tenant.tenant_id)
                )
                tenants = [str(row.tenant_id) for row in result.all()]

        for tenant_id in tenants:
            celery_app.send_task(task_name, kwargs={**payload, "tenant_id": tenant_id})

        summary = {
            "status": "success",
            "task_name": task_name,
            "as_of_date": payload.get("as_of_date"),
            "tenant_count": len(tenants),
            "dispatched_count": len(tenants),
            "statuses": list(selected_statuses),
            "triggered_at": datetime.now(timezone.utc).isoformat(),
            "dispatch_id": dispatch_id,
        }
        logger.info("scheduler.dispatch_complete", **summary)
        return summary

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
