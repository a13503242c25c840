"""
Postgres repository for raw provider records.

Rows are written once by the sync stage and only their processing
status changes afterward.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one, fetch_val
from app.features.ingestion.domain import RawRecord, RawRecordStatus
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RawRecordRepository:
    """Persistence helpers for raw_records."""

    SELECT_COLUMNS = """
        id, user_id, provider, source_id, payload, occurred_at, batch_id, status
    """

    @classmethod
    def _row_to_record(cls, row: dict | None) -> RawRecord | None:
        if not row:
            return None

        return RawRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            source_id=row["source_id"],
            payload=row.get("payload") or {},
            occurred_at=row.get("occurred_at"),
            batch_id=str(row["batch_id"]) if row.get("batch_id") else None,
            status=RawRecordStatus(row["status"]),
        )

    @classmethod
    async def insert_new(
        cls,
        user_id: str,
        provider: str,
        items: Iterable[tuple[str, dict[str, Any], datetime | None]],
        batch_id: str | None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> list[str]:
        """
        Insert (source_id, payload, occurred_at) items, ignoring ones already stored.

        Returns the ids of rows that were actually inserted.
        """
        query = """
            INSERT INTO raw_records (
                user_id, provider, source_id, payload, occurred_at, batch_id, status
            )
            VALUES (%s, %s, %s, %s, %s, %s, 'pending')
            ON CONFLICT (user_id, provider, source_id) DO NOTHING
            RETURNING id
        """

        inserted = []
        for source_id, payload, occurred_at in items:
            record_id = await fetch_val(
                query,
                (user_id, provider, source_id, Jsonb(payload), occurred_at, batch_id),
                connection=connection,
            )
            if record_id:
                inserted.append(str(record_id))
        return inserted

    @staticmethod
    async def existing_source_ids(
        user_id: str, provider: str, source_ids: list[str]
    ) -> dict[str, datetime | None]:
        """Map of already stored source ids to their occurred_at."""
        if not source_ids:
            return {}
        query = """
            SELECT source_id, occurred_at
            FROM raw_records
            WHERE user_id = %s AND provider = %s AND source_id = ANY(%s)
        """
        rows = await fetch_all(query, (user_id, provider, list(source_ids)))
        return {row["source_id"]: row.get("occurred_at") for row in rows}

    @classmethod
    async def get(cls, user_id: str, record_id: str) -> RawRecord | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM raw_records WHERE id = %s AND user_id = %s"
        row = await fetch_one(query, (record_id, user_id))
        return cls._row_to_record(row)

    @classmethod
    async def list_pending_for_batch(
        cls, user_id: str, batch_id: str, limit: int = 100
    ) -> list[RawRecord]:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM raw_records
            WHERE user_id = %s AND batch_id = %s AND status = 'pending'
            ORDER BY occurred_at ASC NULLS LAST
            LIMIT %s
        """
        rows = await fetch_all(query, (user_id, batch_id, limit))
        return [cls._row_to_record(row) for row in rows]

    @classmethod
    async def latest_occurred_at(cls, user_id: str, provider: str) -> datetime | None:
        query = """
            SELECT MAX(occurred_at)
            FROM raw_records
            WHERE user_id = %s AND provider = %s
        """
        return await fetch_val(query, (user_id, provider))

    @staticmethod
    async def mark_processed(
        record_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        query = """
            UPDATE raw_records
            SET status = 'processed',
                skip_reason = NULL,
                processed_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (record_id,), connection=connection)

    @staticmethod
    async def mark_skipped(
        record_id: str, reason: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        query = """
            UPDATE raw_records
            SET status = 'skipped',
                skip_reason = %s,
                processed_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, ((reason or "")[:500], record_id), connection=connection)
        logger.info("Raw record skipped", record_id=record_id, reason=reason)
