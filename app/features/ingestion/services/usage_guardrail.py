"""
Per-user quota for costed AI calls.

Windows are fixed one-minute buckets keyed by ``date_trunc('minute', NOW())``
on the database clock, so every worker agrees on the current window.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from app.config import settings
from app.features.ingestion.domain import RateLimitExceeded
from app.features.ingestion.repository.usage_repository import UsageRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

AI_EMBEDDING = "ai_embedding"

# Slack for skew between the worker clock and the database clock
WINDOW_RESET_SLACK_SECONDS = 1.0


def seconds_until_next_window(now: datetime | None = None) -> float:
    now = now or datetime.now(UTC)
    elapsed = now.second + now.microsecond / 1_000_000
    return 60.0 - elapsed + WINDOW_RESET_SLACK_SECONDS


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    operation: str
    limit: int
    count: int | None = None

    @property
    def remaining(self) -> int:
        if self.count is None:
            return 0
        return max(0, self.limit - self.count)


class UsageGuardrail:
    """Atomic check-and-increment against the ai_usage_windows table."""

    async def try_acquire(
        self, user_id: str, operation: str, limit: int | None = None
    ) -> RateLimitDecision:
        quota = settings.quota_for(operation) if limit is None else limit
        if quota <= 0:
            logger.warning("AI operation disabled by quota", user_id=user_id, operation=operation)
            return RateLimitDecision(allowed=False, operation=operation, limit=quota)

        count = await UsageRepository.increment_if_below(user_id, operation, quota)
        if count is None:
            logger.info(
                "AI usage limit reached", user_id=user_id, operation=operation, limit=quota
            )
            return RateLimitDecision(allowed=False, operation=operation, limit=quota)

        return RateLimitDecision(allowed=True, operation=operation, limit=quota, count=count)

    async def require(self, user_id: str, operation: str, limit: int | None = None) -> RateLimitDecision:
        """Consume one unit of quota or raise RateLimitExceeded."""
        decision = await self.try_acquire(user_id, operation, limit)
        if not decision.allowed:
            raise RateLimitExceeded(
                user_id, operation, decision.limit, retry_after=seconds_until_next_window()
            )
        return decision


usage_guardrail = UsageGuardrail()
