"""
Per-user AI usage counters, one row per (user, operation, minute).
"""

from app.db.helpers import execute_query, fetch_val, with_db_retry
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class UsageRepository:
    @staticmethod
    async def increment_if_below(user_id: str, operation: str, limit: int) -> int | None:
        """
        Count one request in the current minute if the limit allows it.

        Check and increment happen in one statement: the conflict branch
        only updates while the stored count is below the limit, and no row
        comes back when it is not. Returns the new count, or None when the
        request is rejected.
        """
        query = """
            INSERT INTO ai_usage_windows (user_id, operation, window_start, request_count)
            VALUES (%s, %s, date_trunc('minute', NOW()), 1)
            ON CONFLICT (user_id, operation, window_start)
            DO UPDATE SET request_count = ai_usage_windows.request_count + 1
            WHERE ai_usage_windows.request_count < %s
            RETURNING request_count
        """
        return await fetch_val(query, (user_id, operation, limit))

    @staticmethod
    async def current_count(user_id: str, operation: str) -> int:
        query = """
            SELECT request_count
            FROM ai_usage_windows
            WHERE user_id = %s AND operation = %s AND window_start = date_trunc('minute', NOW())
        """
        return await fetch_val(query, (user_id, operation)) or 0

    @staticmethod
    @with_db_retry(max_retries=2)
    async def delete_expired_windows(older_than_hours: int) -> int:
        """Drop closed windows. Only the current minute is ever read for enforcement."""
        query = """
            DELETE FROM ai_usage_windows
            WHERE window_start < date_trunc('minute', NOW()) - make_interval(hours => %s)
        """
        deleted = await execute_query(query, (older_than_hours,))
        logger.info("Expired usage windows deleted", deleted=deleted, older_than_hours=older_than_hours)
        return deleted
