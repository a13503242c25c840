"""
Background jobs for the ingestion engine.

- job_runner: polls for users with queued work and runs one runner pass each
- stale_job_sweep: returns jobs stuck in processing to the queue
- job_cleanup: deletes terminal jobs past the retention window and expired
  AI usage windows

Each scheduler survives errors from a single iteration; a failed pass is
logged and the next iteration retries.
"""

import asyncio
from datetime import UTC, datetime

from app.config import settings
from app.features.ingestion.repository.job_repository import JobRepository
from app.features.ingestion.repository.usage_repository import UsageRepository
from app.features.ingestion.services.runner import JobRunner, job_runner
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Job configuration
USERS_PER_POLL = 100
STALE_SWEEP_INTERVAL_SECONDS = 60
ERROR_BACKOFF_SECONDS = 30


async def run_job_runner_once(runner: JobRunner | None = None) -> dict:
    """
    One poll: a runner pass for every user with queued jobs.

    Users are visited oldest-waiting first. A pass aborted by a store error
    for one user does not stop the others.
    """
    runner = runner or job_runner
    start_time = datetime.now(UTC)
    totals = dict.fromkeys(
        ("users", "processed", "succeeded", "failed", "deferred", "skipped", "aborted"), 0
    )

    user_ids = await JobRepository.list_users_with_queued_jobs(limit=USERS_PER_POLL)
    for user_id in user_ids:
        totals["users"] += 1
        try:
            summary = await runner.process_user_jobs(user_id)
        except Exception as e:
            totals["aborted"] += 1
            logger.error(
                "Runner pass aborted", user_id=user_id, error=str(e), error_type=type(e).__name__
            )
            continue

        totals["processed"] += summary.processed
        totals["succeeded"] += summary.succeeded
        totals["failed"] += summary.failed
        totals["deferred"] += summary.deferred
        totals["skipped"] += summary.skipped

    if totals["users"]:
        duration = (datetime.now(UTC) - start_time).total_seconds()
        logger.info("Job runner poll completed", duration_seconds=round(duration, 2), **totals)
    return totals


async def start_job_runner_scheduler():
    """Poll for queued work forever."""
    logger.info(
        "Starting job runner scheduler", poll_interval_seconds=settings.WORKER_POLL_INTERVAL_SECONDS
    )

    while True:
        try:
            await run_job_runner_once()
            await asyncio.sleep(settings.WORKER_POLL_INTERVAL_SECONDS)
        except Exception as e:
            logger.error("Error in job runner scheduler", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)


async def run_stale_job_sweep() -> int:
    """Reclaim processing jobs of every user that outlived the processing timeout."""
    return await JobRepository.reclaim_stale(
        settings.JOB_PROCESSING_TIMEOUT_SECONDS, settings.JOB_MAX_ATTEMPTS
    )


async def start_stale_job_sweep_scheduler():
    logger.info(
        "Starting stale job sweep scheduler",
        interval_seconds=STALE_SWEEP_INTERVAL_SECONDS,
        processing_timeout_seconds=settings.JOB_PROCESSING_TIMEOUT_SECONDS,
    )

    while True:
        try:
            await run_stale_job_sweep()
            await asyncio.sleep(STALE_SWEEP_INTERVAL_SECONDS)
        except Exception as e:
            logger.error("Error in stale job sweep", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)


async def run_job_cleanup() -> dict:
    """Delete terminal jobs past retention and closed AI usage windows."""
    return {
        "jobs": await JobRepository.cleanup_old_jobs(settings.JOB_RETENTION_DAYS),
        "usage_windows": await UsageRepository.delete_expired_windows(
            settings.AI_USAGE_RETENTION_HOURS
        ),
    }


async def start_job_cleanup_scheduler():
    logger.info(
        "Starting job cleanup scheduler",
        interval_hours=settings.WORKER_CLEANUP_INTERVAL_HOURS,
        retention_days=settings.JOB_RETENTION_DAYS,
        usage_retention_hours=settings.AI_USAGE_RETENTION_HOURS,
    )

    while True:
        try:
            await run_job_cleanup()
            await asyncio.sleep(settings.WORKER_CLEANUP_INTERVAL_HOURS * 3600)
        except Exception as e:
            logger.error("Error in job cleanup scheduler", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(1800)
