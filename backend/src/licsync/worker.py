"""Celery worker configuration for license-sync.

Runs the periodic external license sync. The beat entry is only installed
when scheduled sync is enabled.
"""

import asyncio

from celery import Celery
from celery.schedules import schedule

from .config import get_settings
from .errors import SyncInProgressError
from .logging import get_logger

settings = get_settings()
logger = get_logger(__name__)

# Create Celery app
app = Celery(
    "licsync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,  # Acknowledge tasks after completion
    task_reject_on_worker_lost=True,  # Requeue tasks if worker dies
    task_time_limit=int(settings.sync.timeout_seconds) + 120,
    task_soft_time_limit=int(settings.sync.timeout_seconds) + 60,
    # Worker settings
    worker_prefetch_multiplier=1,  # Fetch one task at a time
    # Result backend
    result_expires=86400,  # Results expire after 24 hours
    task_routes={
        "licsync.worker.*": {"queue": "sync"},
    },
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {}
if settings.enable_scheduled_sync:
    app.conf.beat_schedule["sync-external-licenses"] = {
        "task": "licsync.worker.sync_external_licenses",
        "schedule": schedule(run_every=settings.sync_schedule_minutes * 60),
        "options": {"queue": "sync"},
    }


async def _run_sync(**options) -> dict:
    from .cache import close_cache
    from .db import close_all_connections
    from .reconciliation import SyncOptions, close_coordinator, get_coordinator

    coordinator = await get_coordinator()
    try:
        result = await coordinator.run_sync(SyncOptions(**options))
    finally:
        await close_coordinator()
        await close_cache()
        await close_all_connections()
    return result.model_dump(mode="json")


@app.task(name="licsync.worker.sync_external_licenses")
def sync_external_licenses(
    comprehensive: bool = True,
    detect_duplicates: bool = True,
    bidirectional: bool = False,
) -> dict:
    """Scheduled external license sync.

    An overlapping run is skipped rather than queued.
    """
    try:
        return asyncio.run(
            _run_sync(
                comprehensive=comprehensive,
                detect_duplicates=detect_duplicates,
                bidirectional=bidirectional,
            )
        )
    except SyncInProgressError as e:
        logger.info(
            "Scheduled sync skipped: another sync is running",
            extra={"operation_id": e.operation_id},
        )
        return {"success": False, "skipped": True, "error": e.message}
