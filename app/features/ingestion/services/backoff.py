"""
Backoff scheduling for failed jobs.

A job's ``updated_at`` is stamped when it fails, so the next eligible time
is ``updated_at + delay(attempts)``. A job deferred by the usage guardrail
also carries ``available_at`` and is not eligible before it.
"""

import hashlib
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.features.ingestion.domain import Job


def backoff_delay_ms(
    attempts: int,
    base_ms: int | None = None,
    max_ms: int | None = None,
) -> int:
    """min(base * 2**attempts, max). Monotonic in attempts and capped."""
    base = settings.JOB_BACKOFF_BASE_MS if base_ms is None else base_ms
    cap = settings.JOB_BACKOFF_MAX_MS if max_ms is None else max_ms
    if attempts <= 0:
        return min(base, cap)
    # Past this point 2**attempts only overflows the cap
    if attempts >= 32:
        return cap
    return min(base * (2**attempts), cap)


def _jitter_fraction(job_id: str) -> float:
    """Stable value in [0, 1) derived from the job id."""
    digest = hashlib.sha256(job_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / 2**64


def backoff_delay(job: Job) -> timedelta:
    """Delay a failed job must wait after its last failure before it is eligible again."""
    delay_ms = backoff_delay_ms(job.attempts)
    ratio = settings.JOB_BACKOFF_JITTER_RATIO
    if ratio > 0:
        delay_ms = int(delay_ms * (1 + ratio * _jitter_fraction(job.id)))
    return timedelta(milliseconds=delay_ms)


def next_eligible_at(job: Job) -> datetime:
    if job.attempts == 0:
        return job.updated_at
    return job.updated_at + backoff_delay(job)


def is_eligible(job: Job, now: datetime | None = None) -> bool:
    """
    True when a queued job may be claimed.

    Fresh jobs are eligible unless deferred. A job that has failed ``n``
    times waits ``delay(n)`` after its last failure.
    """
    now = now or datetime.now(UTC)
    if job.available_at is not None and now < job.available_at:
        return False
    if job.attempts == 0:
        return True
    return now >= next_eligible_at(job)
