"""
app/services/scheduler.py
APScheduler-based background job scheduler.

Two recurring jobs:
  1. Store flush: every STORE_FLUSH_SECONDS (default 5s), writes dirty blobs
  2. Registry health check: every HEALTH_CHECK_INTERVAL_SECONDS (default 60s)

The application lifespan owns the scheduler: stop_scheduler() waits for a
running flush to finish, then the lifespan calls flush_all() one last time.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.services.coordinator import Coordinator

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def _job_store_flush(coordinator: Coordinator) -> None:
    """Scheduled job: write every dirty store (runs in the executor thread)."""
    try:
        coordinator.flush()
    except Exception as exc:
        logger.error("Store flush failed: %s", exc)


async def _job_health_check(coordinator: Coordinator) -> None:
    """Scheduled job: health-check external agents."""
    try:
        online = await coordinator.registry.run_health_checks()
        logger.debug("Health check complete: %d external agents online", online)
    except Exception as exc:
        logger.error("Health check failed: %s", exc)


def start_scheduler(coordinator: Coordinator) -> None:
    """Initialize and start the APScheduler with all jobs."""
    global _scheduler

    if _scheduler is not None:
        logger.warning("Scheduler already running")
        return

    settings = coordinator.settings
    _scheduler = AsyncIOScheduler()

    # Job 1: Store flush
    _scheduler.add_job(
        _job_store_flush,
        "interval",
        seconds=settings.STORE_FLUSH_SECONDS,
        args=[coordinator],
        id="store_flush",
        name="Store Flush",
        max_instances=1,
        coalesce=True,
    )

    # Job 2: Registry health checks
    _scheduler.add_job(
        _job_health_check,
        "interval",
        seconds=settings.HEALTH_CHECK_INTERVAL_SECONDS,
        args=[coordinator],
        id="health_check",
        name="Registry Health Check",
        max_instances=1,
        coalesce=True,
    )

    _scheduler.start()
    logger.info(
        "Scheduler started: flush every %ds, health check every %ds",
        settings.STORE_FLUSH_SECONDS,
        settings.HEALTH_CHECK_INTERVAL_SECONDS,
    )


def stop_scheduler() -> None:
    """Shut down the scheduler, waiting for running jobs."""
    global _scheduler

    if _scheduler is None:
        return

    _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler stopped")
