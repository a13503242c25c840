"""
Persistence layer for the job queue.

All state transitions are single conditional statements so that the
database, not the worker, decides who owns a job.
"""

from typing import Any
from uuid import uuid4

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import (
    DatabaseError,
    execute_query,
    execute_transaction,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from app.features.ingestion.domain import Job, JobKind, JobStatus
from app.features.ingestion.domain.payloads import serialize_payload, validate_payload
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class JobRepositoryError(DatabaseError):
    """More specific exception for job queue failures."""


class JobRepository:
    """Queue operations backing the job runner and the pipeline stages."""

    JOB_SELECT_COLUMNS = """
        id, user_id, kind, payload, status, attempts,
        last_error, batch_id, created_at, updated_at,
        deferrals, available_at
    """

    @classmethod
    def _row_to_job(cls, row: dict | None) -> Job | None:
        if not row:
            return None

        return Job(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=row["kind"],
            payload=row.get("payload") or {},
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row.get("last_error"),
            batch_id=str(row["batch_id"]) if row.get("batch_id") else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deferrals=row.get("deferrals") or 0,
            available_at=row.get("available_at"),
        )

    @classmethod
    async def enqueue(
        cls,
        user_id: str,
        kind: JobKind | str,
        payload: dict[str, Any] | None = None,
        batch_id: str | None = None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> str:
        """
        Validate and insert a queued job, returning its id.

        Validation happens before anything is written, so a rejected payload
        leaves no trace in the table.
        """
        model = validate_payload(kind, payload)
        job_kind = JobKind(kind)

        query = """
            INSERT INTO jobs (user_id, kind, payload, status, attempts, batch_id)
            VALUES (%s, %s, %s, 'queued', 0, %s)
            RETURNING id
        """

        job_id = await fetch_val(
            query,
            (user_id, job_kind.value, Jsonb(serialize_payload(model)), batch_id),
            connection=connection,
        )
        if not job_id:
            raise JobRepositoryError("Failed to enqueue job", operation="enqueue")

        logger.info(
            "Job enqueued",
            job_id=str(job_id),
            user_id=user_id,
            kind=job_kind.value,
            batch_id=batch_id,
        )
        return str(job_id)

    @classmethod
    async def enqueue_batch(
        cls,
        user_id: str,
        kind: JobKind | str,
        payloads: list[dict[str, Any]],
        batch_id: str | None = None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> list[str]:
        """Enqueue several jobs of one kind. Every payload is validated before the first insert."""
        job_kind = JobKind(kind)
        models = [validate_payload(job_kind, payload) for payload in payloads]

        query = """
            INSERT INTO jobs (user_id, kind, payload, status, attempts, batch_id)
            VALUES (%s, %s, %s, 'queued', 0, %s)
            RETURNING id
        """

        job_ids = []
        for model in models:
            job_id = await fetch_val(
                query,
                (user_id, job_kind.value, Jsonb(serialize_payload(model)), batch_id),
                connection=connection,
            )
            job_ids.append(str(job_id))

        if job_ids:
            logger.info(
                "Jobs enqueued",
                user_id=user_id,
                kind=job_kind.value,
                batch_id=batch_id,
                count=len(job_ids),
            )
        return job_ids

    @classmethod
    async def get_job(cls, job_id: str, user_id: str | None = None) -> Job | None:
        if user_id:
            query = f"SELECT {cls.JOB_SELECT_COLUMNS} FROM jobs WHERE id = %s AND user_id = %s"
            row = await fetch_one(query, (job_id, user_id))
        else:
            query = f"SELECT {cls.JOB_SELECT_COLUMNS} FROM jobs WHERE id = %s"
            row = await fetch_one(query, (job_id,))
        return cls._row_to_job(row)

    @classmethod
    async def list_queued(cls, user_id: str, limit: int = 25) -> list[Job]:
        """Queued jobs for one user, most overdue first."""
        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM jobs
            WHERE user_id = %s AND status = 'queued'
            ORDER BY updated_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (user_id, limit))
        return [cls._row_to_job(row) for row in rows]

    @classmethod
    async def list_users_with_queued_jobs(cls, limit: int = 100) -> list[str]:
        query = """
            SELECT user_id
            FROM jobs
            WHERE status = 'queued'
            GROUP BY user_id
            ORDER BY MIN(updated_at) ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (limit,))
        return [str(row["user_id"]) for row in rows]

    @classmethod
    async def claim(cls, job_id: str, user_id: str) -> bool:
        """
        Atomically move a queued job to processing.

        Returns True only for the single caller whose update matched the row.
        """
        query = """
            UPDATE jobs
            SET status = 'processing',
                updated_at = NOW()
            WHERE id = %s
              AND user_id = %s
              AND status = 'queued'
        """
        affected = await execute_query(query, (job_id, user_id))
        return affected == 1

    @classmethod
    async def mark_done(cls, job_id: str) -> bool:
        query = """
            UPDATE jobs
            SET status = 'done',
                last_error = NULL,
                updated_at = NOW()
            WHERE id = %s AND status = 'processing'
        """
        affected = await execute_query(query, (job_id,))
        if affected != 1:
            logger.warning("Job was no longer processing when marked done", job_id=job_id)
        return affected == 1

    @classmethod
    async def mark_failed(cls, job_id: str, error: str, max_attempts: int) -> Job | None:
        """
        Record a failed attempt.

        The job returns to the queue while attempts remain, otherwise it
        becomes terminal. Returns the updated job, or None if it was no
        longer processing.
        """
        query = f"""
            UPDATE jobs
            SET attempts = attempts + 1,
                status = CASE WHEN attempts + 1 >= %s THEN 'error' ELSE 'queued' END,
                last_error = %s,
                updated_at = NOW()
            WHERE id = %s AND status = 'processing'
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (max_attempts, (error or "")[:500], job_id))
        return cls._row_to_job(row)

    @classmethod
    async def mark_deferred(
        cls, job_id: str, error: str, delay_seconds: float, max_deferrals: int
    ) -> Job | None:
        """
        Put a processing job back in the queue until a quota window resets.

        Deferral does not consume an attempt. Returns None once the job has
        used up its deferrals or is no longer processing, in which case the
        caller records an ordinary failure instead.
        """
        query = f"""
            UPDATE jobs
            SET status = 'queued',
                deferrals = deferrals + 1,
                available_at = NOW() + make_interval(secs => %s),
                last_error = %s,
                updated_at = NOW()
            WHERE id = %s
              AND status = 'processing'
              AND deferrals < %s
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """
        row = await fetch_one(
            query, (max(delay_seconds, 0.0), (error or "")[:500], job_id, max_deferrals)
        )
        return cls._row_to_job(row)

    @classmethod
    async def mark_error(cls, job_id: str, error: str) -> Job | None:
        """Move a processing job straight to the terminal error state."""
        query = f"""
            UPDATE jobs
            SET attempts = attempts + 1,
                status = 'error',
                last_error = %s,
                updated_at = NOW()
            WHERE id = %s AND status = 'processing'
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """
        row = await fetch_one(query, ((error or "")[:500], job_id))
        return cls._row_to_job(row)

    @classmethod
    @with_db_retry(max_retries=2)
    async def reclaim_stale(
        cls, timeout_seconds: float, max_attempts: int, user_id: str | None = None
    ) -> int:
        """
        Return jobs stuck in processing past the timeout to the queue.

        A reclaimed job counts as a failed attempt, so a job that keeps
        crashing its worker still ends in the error state.
        """
        query = """
            UPDATE jobs
            SET attempts = attempts + 1,
                status = CASE WHEN attempts + 1 >= %s THEN 'error' ELSE 'queued' END,
                last_error = 'processing timed out',
                updated_at = NOW()
            WHERE status = 'processing'
              AND updated_at < NOW() - make_interval(secs => %s)
        """
        params: tuple = (max_attempts, timeout_seconds)
        if user_id:
            query += " AND user_id = %s"
            params = (*params, user_id)

        reclaimed = await execute_query(query, params)
        if reclaimed:
            logger.warning("Reclaimed stale processing jobs", count=reclaimed, user_id=user_id)
        return reclaimed

    @classmethod
    async def list_jobs(
        cls,
        user_id: str,
        status: JobStatus | None = None,
        kind: JobKind | None = None,
        batch_id: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        conditions = ["user_id = %s"]
        params: list[Any] = [user_id]
        if status:
            conditions.append("status = %s")
            params.append(JobStatus(status).value)
        if kind:
            conditions.append("kind = %s")
            params.append(JobKind(kind).value)
        if batch_id:
            conditions.append("batch_id = %s")
            params.append(batch_id)
        params.append(limit)

        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM jobs
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC
            LIMIT %s
        """
        rows = await fetch_all(query, tuple(params))
        return [cls._row_to_job(row) for row in rows]

    @classmethod
    async def get_batch_status(cls, user_id: str, batch_id: str) -> dict[str, Any]:
        """Job counts for a batch, by status and by kind."""
        query = """
            SELECT kind, status, COUNT(*) AS count
            FROM jobs
            WHERE user_id = %s AND batch_id = %s
            GROUP BY kind, status
        """
        rows = await fetch_all(query, (user_id, batch_id))

        by_status = {status.value: 0 for status in JobStatus}
        by_kind: dict[str, dict[str, int]] = {}
        for row in rows:
            count = int(row["count"])
            by_status[row["status"]] = by_status.get(row["status"], 0) + count
            by_kind.setdefault(row["kind"], {})[row["status"]] = count

        total = sum(by_status.values())
        return {
            "batch_id": batch_id,
            "total": total,
            "by_status": by_status,
            "by_kind": by_kind,
            "complete": total > 0 and by_status["queued"] == 0 and by_status["processing"] == 0,
        }

    @classmethod
    @with_db_retry(max_retries=2)
    async def cleanup_old_jobs(cls, older_than_days: int) -> int:
        """Delete terminal jobs whose last update is older than the retention window."""
        query = """
            DELETE FROM jobs
            WHERE status IN ('done', 'error')
              AND updated_at < NOW() - make_interval(days => %s)
        """
        deleted = await execute_query(query, (older_than_days,))
        logger.info("Old jobs cleaned up", deleted=deleted, older_than_days=older_than_days)
        return deleted

    @classmethod
    async def undo_batch(cls, user_id: str, batch_id: str) -> dict[str, int]:
        """
        Remove everything a batch produced.

        Queued jobs are dropped so nothing new lands after the undo. Jobs
        already processing are left alone and finish against deleted rows.
        """
        statements = [
            (
                "jobs",
                "DELETE FROM jobs WHERE user_id = %s AND batch_id = %s AND status = 'queued'",
            ),
            (
                "embeddings",
                """
                DELETE FROM embeddings e
                USING interactions i
                WHERE e.owner_type = 'interaction'
                  AND e.owner_id = i.id
                  AND i.user_id = %s
                  AND i.batch_id = %s
                """,
            ),
            (
                "interactions",
                "DELETE FROM interactions WHERE user_id = %s AND batch_id = %s",
            ),
            (
                "raw_records",
                "DELETE FROM raw_records WHERE user_id = %s AND batch_id = %s",
            ),
        ]

        try:
            counts = await execute_transaction(
                [(query, (user_id, batch_id)) for _, query in statements]
            )
        except DatabaseError as e:
            logger.error("Batch undo failed", user_id=user_id, batch_id=batch_id, error=str(e))
            raise JobRepositoryError(f"Batch undo failed: {e}", operation="undo_batch") from e

        deleted = {table: count for (table, _), count in zip(statements, counts, strict=True)}
        logger.info("Batch undone", user_id=user_id, batch_id=batch_id, **deleted)
        return deleted

    @staticmethod
    def new_batch_id() -> str:
        return str(uuid4())
