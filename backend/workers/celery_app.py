"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "sizeops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.size_engine", "workers.scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.size_engine.*": {"queue": "engine"},
        "workers.scheduler.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Fans out across active tenants via workers.scheduler.dispatch_active_tenants.
    beat_schedule={
        "size-engine-nightly": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(hour=2, minute=0),  # After the nightly position load
            "kwargs": {"task_name": "workers.size_engine.run_size_engine"},
            "options": {"queue": "sync"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
