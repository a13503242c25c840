from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from app.features.ingestion.services import backoff
from app.features.ingestion.services.backoff import (
    backoff_delay,
    backoff_delay_ms,
    is_eligible,
    next_eligible_at,
)


def test_delay_doubles_from_base():
    assert backoff_delay_ms(1, base_ms=200, max_ms=60_000) == 400
    assert backoff_delay_ms(2, base_ms=200, max_ms=60_000) == 800
    assert backoff_delay_ms(4, base_ms=200, max_ms=60_000) == 3200


def test_delay_is_monotonic_and_capped():
    delays = [backoff_delay_ms(n, base_ms=200, max_ms=60_000) for n in range(0, 80)]
    assert delays == sorted(delays)
    assert max(delays) == 60_000
    assert backoff_delay_ms(500, base_ms=200, max_ms=60_000) == 60_000


def test_fresh_job_is_always_eligible(make_job):
    job = make_job(attempts=0, updated_at=datetime.now(UTC) + timedelta(hours=1))
    assert is_eligible(job) is True


def test_failed_job_waits_for_its_window(monkeypatch, make_job):
    monkeypatch.setattr(backoff.settings, "JOB_BACKOFF_BASE_MS", 200)
    monkeypatch.setattr(backoff.settings, "JOB_BACKOFF_MAX_MS", 60_000)
    monkeypatch.setattr(backoff.settings, "JOB_BACKOFF_JITTER_RATIO", 0.0)

    failed_at = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    job = make_job(attempts=3, updated_at=failed_at)

    assert backoff_delay(job) == timedelta(milliseconds=1600)
    assert next_eligible_at(job) == failed_at + timedelta(milliseconds=1600)
    assert is_eligible(job, now=failed_at + timedelta(milliseconds=1599)) is False
    assert is_eligible(job, now=failed_at + timedelta(milliseconds=1600)) is True


@pytest.mark.parametrize("job_id", ["a", "job-42", "6f1c2a7e-0000-4000-8000-000000000000"])
def test_jitter_is_deterministic_and_bounded(monkeypatch, make_job, job_id):
    monkeypatch.setattr(backoff.settings, "JOB_BACKOFF_BASE_MS", 200)
    monkeypatch.setattr(backoff.settings, "JOB_BACKOFF_MAX_MS", 60_000)
    monkeypatch.setattr(backoff.settings, "JOB_BACKOFF_JITTER_RATIO", 0.5)

    job = make_job(job_id=job_id, attempts=2)
    first = backoff_delay(job)

    assert first == backoff_delay(job)
    assert timedelta(milliseconds=800) <= first <= timedelta(milliseconds=1200)


def test_deferred_job_waits_for_available_at(make_job):
    now = datetime.now(UTC)
    job = replace(make_job(updated_at=now), available_at=now + timedelta(seconds=30))

    assert not is_eligible(job, now)
    assert not is_eligible(job, now + timedelta(seconds=29))
    assert is_eligible(job, now + timedelta(seconds=30))
