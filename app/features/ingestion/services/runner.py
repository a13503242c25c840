"""
Job runner: one pass over a user's queued jobs.

A pass sweeps the user's stale processing jobs, lists a bounded batch of
queued jobs, skips the ones still inside their backoff window, claims the
rest one by one and runs them sequentially. Jobs rejected by the usage
guardrail are deferred to the next quota window instead of consuming an
attempt. Handler failures always end in a state transition; failures of the
runner's own store calls propagate and abort the pass.
"""

import asyncio
import re
from collections.abc import Callable
from datetime import UTC, datetime

from app.config import settings
from app.features.ingestion.domain import (
    Job,
    JobStatus,
    PayloadValidationError,
    PermanentJobError,
    RateLimitExceeded,
    RunSummary,
    UnknownJobKindError,
)
from app.features.ingestion.repository.job_repository import JobRepository
from app.features.ingestion.services.backoff import is_eligible
from app.features.ingestion.services.dispatcher import JobDispatcher, job_dispatcher
from app.infrastructure.observability.logging import (
    bind_job_context,
    clear_job_context,
    get_logger,
    log_job_transition,
)

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 500

_SECRET_PATTERNS = [
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"ya29\.[A-Za-z0-9._-]+"), "[REDACTED]"),
    (re.compile(r"sk-[A-Za-z0-9_-]{8,}"), "[REDACTED]"),
    (re.compile(r"(access_token|refresh_token)(['\"]?\s*[:=]\s*['\"]?)[^\s'\",}]+"), r"\1\2[REDACTED]"),
]


def sanitize_error(error: BaseException) -> str:
    """``"<ErrorType>: <message>"`` with credentials redacted, single line, bounded."""
    message = " ".join(str(error).split())
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    text = f"{type(error).__name__}: {message}" if message else type(error).__name__
    return text[:MAX_ERROR_LENGTH]


def is_permanent_failure(error: BaseException) -> bool:
    """Permanent failures skip the retry budget and go straight to error."""
    if isinstance(error, UnknownJobKindError | PayloadValidationError | PermanentJobError):
        return True
    if isinstance(error, RateLimitExceeded | TimeoutError):
        return False
    return getattr(error, "recoverable", True) is False


class JobRunner:
    def __init__(
        self,
        dispatcher: JobDispatcher | None = None,
        *,
        batch_size: int | None = None,
        max_attempts: int | None = None,
        max_deferrals: int | None = None,
        job_timeout: float | None = None,
        processing_timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.dispatcher = dispatcher or job_dispatcher
        self.batch_size = batch_size or settings.JOB_BATCH_SIZE
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
        self.max_deferrals = (
            settings.JOB_MAX_DEFERRALS if max_deferrals is None else max_deferrals
        )
        self.job_timeout = job_timeout or settings.JOB_TIMEOUT_SECONDS
        self.processing_timeout = processing_timeout or settings.JOB_PROCESSING_TIMEOUT_SECONDS
        self._clock = clock or (lambda: datetime.now(UTC))

    async def process_user_jobs(self, user_id: str) -> RunSummary:
        """Run one pass for a user and return the outcome counts."""
        summary = RunSummary()
        summary.reclaimed = await JobRepository.reclaim_stale(
            self.processing_timeout, self.max_attempts, user_id=user_id
        )

        jobs = await JobRepository.list_queued(user_id, limit=self.batch_size)
        for job in jobs:
            if not is_eligible(job, self._clock()):
                summary.skipped += 1
                continue

            if not await JobRepository.claim(job.id, user_id):
                logger.debug("Job claimed by another worker", job_id=job.id)
                summary.skipped += 1
                continue

            summary.processed += 1
            await self._run_claimed(job, summary)

        logger.info("Runner pass finished", user_id=user_id, **summary.as_dict())
        return summary

    async def _run_claimed(self, job: Job, summary: RunSummary) -> None:
        bind_job_context(job.id, job.user_id, job.kind)
        try:
            try:
                await asyncio.wait_for(self.dispatcher.dispatch(job), timeout=self.job_timeout)
            except TimeoutError as e:
                error = e if str(e) else TimeoutError(f"handler timed out after {self.job_timeout:g}s")
                await self._record_failure(job, error, summary)
                return
            except Exception as e:
                await self._record_failure(job, e, summary)
                return

            await JobRepository.mark_done(job.id)
            summary.succeeded += 1
            log_job_transition(job.id, job.user_id, job.kind, "done", job.attempts)
        finally:
            clear_job_context()

    async def _record_failure(self, job: Job, error: BaseException, summary: RunSummary) -> None:
        message = sanitize_error(error)

        if isinstance(error, RateLimitExceeded):
            # Quota rejections wait out the window without using an attempt
            deferred = await JobRepository.mark_deferred(
                job.id, message, error.retry_after, self.max_deferrals
            )
            if deferred is not None:
                summary.deferred += 1
                log_job_transition(
                    job.id, job.user_id, job.kind, "deferred", deferred.attempts, message
                )
                return
            logger.warning("Job used up its deferrals", job_id=job.id, operation=error.operation)

        if is_permanent_failure(error):
            updated = await JobRepository.mark_error(job.id, message)
            outcome = "error"
        else:
            updated = await JobRepository.mark_failed(job.id, message, self.max_attempts)
            outcome = "retry" if updated and updated.status == JobStatus.QUEUED else "error"

        summary.failed += 1
        summary.errors.append({"job_id": job.id, "kind": job.kind, "error": message})
        attempts = updated.attempts if updated else job.attempts + 1
        log_job_transition(job.id, job.user_id, job.kind, outcome, attempts, message)


job_runner = JobRunner()
