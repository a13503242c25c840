"""
End-to-end pass over the real runner, dispatcher and stages with the
stores swapped for in-memory tables.
"""

import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.features.ingestion.domain import Job, JobKind, JobStatus, RawRecord, SyncCursor
from app.features.ingestion.domain.payloads import serialize_payload, validate_payload
from app.features.ingestion.pipeline import normalize
from app.features.ingestion.pipeline import sync as sync_module
from app.features.ingestion.pipeline.normalize import handle_normalize_job
from app.features.ingestion.pipeline.sync import SyncStage
from app.features.ingestion.repository.interaction_repository import InteractionRepository
from app.features.ingestion.repository.job_repository import JobRepository
from app.features.ingestion.repository.raw_record_repository import RawRecordRepository
from app.features.ingestion.repository.sync_cursor_repository import SyncCursorRepository
from app.features.ingestion.services.dispatcher import JobDispatcher
from app.features.ingestion.services.runner import JobRunner
from app.services.provider_client import ProviderEntry, ProviderItem, ProviderPage

USER_ID = "user-123"
BATCH_ID = str(uuid.uuid4())
BASE_TIME = datetime(2024, 2, 1, 9, 0, tzinfo=UTC)


def _message(i: int) -> dict:
    return {
        "id": f"msg-{i}",
        "internalDate": str(int((BASE_TIME + timedelta(hours=i)).timestamp() * 1000)),
        "snippet": f"note {i}",
        "labelIds": ["INBOX"],
        "payload": {
            "headers": [
                {"name": "From", "value": f"Client {i} <client{i}@example.com>"},
                {"name": "To", "value": "me@example.org"},
                {"name": "Subject", "value": f"Follow-up {i}"},
            ]
        },
    }


class ThreeMessageInbox:
    provider = "gmail"

    def __init__(self):
        self.items = [
            ProviderItem(
                source_id=f"msg-{i}",
                payload=_message(i),
                occurred_at=BASE_TIME + timedelta(hours=i),
                cursor_value=BASE_TIME + timedelta(hours=i),
            )
            for i in range(3)
        ]

    async def list_items_since(self, access_token, since, page_token=None, query=None, page_size=100):
        return ProviderPage(
            entries=[ProviderEntry(ref=item.source_id, item=item) for item in self.items],
            next_page_token=None,
        )

    async def fetch_item(self, access_token, ref):
        raise AssertionError("listing already carries full items")


class Tables:
    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self.raw: dict[str, RawRecord] = {}
        self.interactions: dict[tuple, str] = {}
        self.cursor: SyncCursor | None = None
        self._tick = 0

    def _now(self) -> datetime:
        self._tick += 1
        return BASE_TIME + timedelta(seconds=self._tick)

    # jobs
    async def enqueue(self, user_id, kind, payload=None, batch_id=None, *, connection=None):
        model = validate_payload(kind, payload)
        job_id = str(uuid.uuid4())
        now = self._now()
        self.jobs[job_id] = Job(
            id=job_id,
            user_id=user_id,
            kind=JobKind(kind).value,
            payload=serialize_payload(model),
            status=JobStatus.QUEUED,
            attempts=0,
            last_error=None,
            batch_id=batch_id,
            created_at=now,
            updated_at=now,
        )
        return job_id

    async def enqueue_batch(self, user_id, kind, payloads, batch_id=None, *, connection=None):
        return [await self.enqueue(user_id, kind, p, batch_id) for p in payloads]

    async def reclaim_stale(self, timeout_seconds, max_attempts, user_id=None):
        return 0

    async def list_queued(self, user_id, limit=25):
        queued = [j for j in self.jobs.values() if j.user_id == user_id and j.status == JobStatus.QUEUED]
        return sorted(queued, key=lambda j: j.updated_at)[:limit]

    async def claim(self, job_id, user_id):
        if self.jobs[job_id].status != JobStatus.QUEUED:
            return False
        self.jobs[job_id] = replace(self.jobs[job_id], status=JobStatus.PROCESSING)
        return True

    async def mark_done(self, job_id):
        self.jobs[job_id] = replace(self.jobs[job_id], status=JobStatus.DONE)
        return True

    async def mark_failed(self, job_id, error, max_attempts):
        job = self.jobs[job_id]
        self.jobs[job_id] = replace(job, status=JobStatus.QUEUED, attempts=job.attempts + 1, last_error=error)
        return self.jobs[job_id]

    async def mark_error(self, job_id, error):
        job = self.jobs[job_id]
        self.jobs[job_id] = replace(job, status=JobStatus.ERROR, attempts=job.attempts + 1, last_error=error)
        return self.jobs[job_id]

    # raw records
    async def insert_new(self, user_id, provider, items, batch_id, *, connection=None):
        inserted = []
        for source_id, payload, occurred_at in items:
            if any(r.source_id == source_id for r in self.raw.values()):
                continue
            record_id = str(uuid.uuid4())
            self.raw[record_id] = RawRecord(
                id=record_id,
                user_id=user_id,
                provider=provider,
                source_id=source_id,
                payload=payload,
                occurred_at=occurred_at,
                batch_id=batch_id,
            )
            inserted.append(record_id)
        return inserted

    async def existing_source_ids(self, user_id, provider, source_ids):
        return {r.source_id: r.occurred_at for r in self.raw.values() if r.source_id in source_ids}

    async def latest_occurred_at(self, user_id, provider):
        return None

    async def get_raw(self, user_id, record_id):
        return self.raw.get(record_id)

    # cursor
    async def get_cursor(self, user_id, provider):
        return replace(self.cursor) if self.cursor else SyncCursor(user_id=user_id, provider=provider)

    async def save_checkpoint(self, cursor, *, connection=None):
        self.cursor = replace(cursor)

    async def commit_window(self, user_id, provider, high_water, *, connection=None):
        self.cursor = SyncCursor(user_id=user_id, provider=provider, cursor_at=high_water)

    # interactions
    async def upsert_interaction(self, interaction, *, connection=None):
        key = (interaction.user_id, interaction.source, interaction.source_id)
        return self.interactions.setdefault(key, str(uuid.uuid4()))


@pytest.fixture
def tables(monkeypatch, fake_transaction):
    t = Tables()
    for name in ("enqueue", "enqueue_batch", "reclaim_stale", "list_queued", "claim", "mark_done", "mark_failed", "mark_error"):
        monkeypatch.setattr(JobRepository, name, getattr(t, name))
    monkeypatch.setattr(RawRecordRepository, "insert_new", t.insert_new)
    monkeypatch.setattr(RawRecordRepository, "existing_source_ids", t.existing_source_ids)
    monkeypatch.setattr(RawRecordRepository, "latest_occurred_at", t.latest_occurred_at)
    monkeypatch.setattr(RawRecordRepository, "get", t.get_raw)
    monkeypatch.setattr(RawRecordRepository, "mark_processed", AsyncMock())
    monkeypatch.setattr(RawRecordRepository, "mark_skipped", AsyncMock())
    monkeypatch.setattr(SyncCursorRepository, "get", t.get_cursor)
    monkeypatch.setattr(SyncCursorRepository, "save_checkpoint", t.save_checkpoint)
    monkeypatch.setattr(SyncCursorRepository, "commit_window", t.commit_window)
    monkeypatch.setattr(InteractionRepository, "upsert", t.upsert_interaction)
    monkeypatch.setattr(sync_module, "get_db_transaction", fake_transaction)
    monkeypatch.setattr(normalize, "get_db_transaction", fake_transaction)
    return t


@pytest.fixture
def runner():
    stage = SyncStage(
        {"gmail": ThreeMessageInbox()},
        credential_provider=AsyncMock(return_value="access-token"),
        sleep=AsyncMock(),
        deadline_seconds=10_000,
    )
    dispatcher = JobDispatcher(
        {
            JobKind.SYNC_PROVIDER: stage.run,
            JobKind.NORMALIZE_RECORD: handle_normalize_job,
            JobKind.GENERATE_EMBEDDING: AsyncMock(return_value="embedded"),
            JobKind.EXTRACT_CONTACTS: AsyncMock(return_value={}),
        }
    )
    return JobRunner(dispatcher, clock=lambda: BASE_TIME + timedelta(days=1))


def _of_kind(tables, kind):
    return [j for j in tables.jobs.values() if j.kind == kind.value]


@pytest.mark.asyncio
async def test_sync_then_normalize_over_two_passes(tables, runner):
    sync_job_id = await JobRepository.enqueue(USER_ID, JobKind.SYNC_PROVIDER, {"provider": "gmail"}, BATCH_ID)

    first = await runner.process_user_jobs(USER_ID)

    assert first.processed == 1 and first.succeeded == 1
    assert tables.jobs[sync_job_id].status == JobStatus.DONE
    assert len(tables.raw) == 3
    normalize_jobs = _of_kind(tables, JobKind.NORMALIZE_RECORD)
    assert len(normalize_jobs) == 3
    assert {j.batch_id for j in normalize_jobs} == {BATCH_ID}
    assert tables.interactions == {}

    second = await runner.process_user_jobs(USER_ID)

    assert second.processed == 3 and second.succeeded == 3
    assert len(tables.interactions) == 3
    assert all(j.status == JobStatus.DONE for j in _of_kind(tables, JobKind.NORMALIZE_RECORD))
    assert len(_of_kind(tables, JobKind.GENERATE_EMBEDDING)) == 3
    assert len(_of_kind(tables, JobKind.EXTRACT_CONTACTS)) == 3
    assert tables.cursor.cursor_at == BASE_TIME + timedelta(hours=2)
