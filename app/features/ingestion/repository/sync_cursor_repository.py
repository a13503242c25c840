"""
Postgres repository for per-provider sync cursors.

A cursor has two parts: ``cursor_at`` marks the end of the last fully
stored listing window, while the checkpoint columns describe a window
that is still in progress.
"""

from datetime import datetime

import psycopg

from app.db.helpers import execute_query, fetch_one
from app.features.ingestion.domain import SyncCursor
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SyncCursorRepository:
    """Persistence helpers for sync_cursors."""

    @staticmethod
    async def get(user_id: str, provider: str) -> SyncCursor:
        query = """
            SELECT user_id, provider, cursor_at, window_started_at,
                   pending_high_water, page_token, last_synced_at
            FROM sync_cursors
            WHERE user_id = %s AND provider = %s
        """
        row = await fetch_one(query, (user_id, provider))
        if not row:
            return SyncCursor(user_id=user_id, provider=provider)

        return SyncCursor(
            user_id=str(row["user_id"]),
            provider=row["provider"],
            cursor_at=row.get("cursor_at"),
            window_started_at=row.get("window_started_at"),
            pending_high_water=row.get("pending_high_water"),
            page_token=row.get("page_token"),
            last_synced_at=row.get("last_synced_at"),
        )

    @staticmethod
    async def save_checkpoint(
        cursor: SyncCursor, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        """Persist progress inside an open window without moving cursor_at."""
        query = """
            INSERT INTO sync_cursors (
                user_id, provider, cursor_at, window_started_at,
                pending_high_water, page_token, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, provider)
            DO UPDATE SET
                window_started_at = EXCLUDED.window_started_at,
                pending_high_water = EXCLUDED.pending_high_water,
                page_token = EXCLUDED.page_token,
                updated_at = NOW()
        """
        await execute_query(
            query,
            (
                cursor.user_id,
                cursor.provider,
                cursor.cursor_at,
                cursor.window_started_at,
                cursor.pending_high_water,
                cursor.page_token,
            ),
            connection=connection,
        )

    @staticmethod
    async def commit_window(
        user_id: str,
        provider: str,
        high_water: datetime | None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        """Close the current window: advance cursor_at and clear the checkpoint."""
        query = """
            INSERT INTO sync_cursors (user_id, provider, cursor_at, last_synced_at, updated_at)
            VALUES (%s, %s, %s, NOW(), NOW())
            ON CONFLICT (user_id, provider)
            DO UPDATE SET
                cursor_at = GREATEST(sync_cursors.cursor_at, EXCLUDED.cursor_at),
                window_started_at = NULL,
                pending_high_water = NULL,
                page_token = NULL,
                last_synced_at = NOW(),
                updated_at = NOW()
        """
        await execute_query(query, (user_id, provider, high_water), connection=connection)
        logger.info(
            "Sync window committed",
            user_id=user_id,
            provider=provider,
            cursor_at=high_water.isoformat() if high_water else None,
        )
