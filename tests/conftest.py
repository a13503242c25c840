from contextlib import asynccontextmanager
from datetime import UTC, datetime

import pytest

from app.auth.verify import auth_dependency
from app.features.ingestion.domain import Job, JobStatus


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class FakeConnection:
    """Stands in for the connection a stage transaction hands to repositories."""


@pytest.fixture
def fake_transaction():
    """Replacement for app.db.pool.get_db_transaction that records commits."""
    opened: list[FakeConnection] = []

    @asynccontextmanager
    async def _transaction():
        conn = FakeConnection()
        opened.append(conn)
        yield conn

    async def _get_db_transaction():
        return _transaction()

    _get_db_transaction.opened = opened
    return _get_db_transaction


@pytest.fixture
def make_job():
    def _make(
        kind: str = "normalize_record",
        payload: dict | None = None,
        *,
        job_id: str = "job-1",
        user_id: str = "user-123",
        status: JobStatus = JobStatus.QUEUED,
        attempts: int = 0,
        batch_id: str | None = None,
        updated_at: datetime | None = None,
    ) -> Job:
        now = datetime.now(UTC)
        return Job(
            id=job_id,
            user_id=user_id,
            kind=kind,
            payload=payload or {},
            status=status,
            attempts=attempts,
            last_error=None,
            batch_id=batch_id,
            created_at=now,
            updated_at=updated_at or now,
        )

    return _make
