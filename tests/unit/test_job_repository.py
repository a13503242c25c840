from unittest.mock import AsyncMock

import pytest

from app.db.helpers import DatabaseError
from app.features.ingestion.repository import job_repository
from app.features.ingestion.repository.job_repository import JobRepository, JobRepositoryError


@pytest.mark.asyncio
async def test_undo_batch_runs_one_transaction_and_reports_counts(monkeypatch):
    transaction = AsyncMock(return_value=[2, 5, 5, 6])
    monkeypatch.setattr(job_repository, "execute_transaction", transaction)

    deleted = await JobRepository.undo_batch("user-123", "batch-1")

    assert deleted == {"jobs": 2, "embeddings": 5, "interactions": 5, "raw_records": 6}
    statements = transaction.await_args.args[0]
    assert [params for _, params in statements] == [("user-123", "batch-1")] * 4
    assert statements[0][0].startswith("DELETE FROM jobs")
    assert "status = 'queued'" in statements[0][0]


@pytest.mark.asyncio
async def test_undo_batch_failure_is_a_repository_error(monkeypatch):
    transaction = AsyncMock(side_effect=DatabaseError("Transaction failed", operation="transaction"))
    monkeypatch.setattr(job_repository, "execute_transaction", transaction)

    with pytest.raises(JobRepositoryError) as exc:
        await JobRepository.undo_batch("user-123", "batch-1")

    assert exc.value.operation == "undo_batch"
