"""
Provider sync stage.

Pulls items newer than the user's sync cursor in chunks. Each chunk's raw
records, the normalize jobs for newly inserted records and the cursor
checkpoint commit in one transaction, so a crash between chunks loses at
most the chunk in flight. A wall-clock deadline and an item cap bound
every invocation; work left over is handed to a continuation job that
resumes from the checkpoint.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.db.pool import get_db_transaction
from app.features.ingestion.domain import Job, JobKind, Provider, ProviderError, SyncCursor, SyncResult
from app.features.ingestion.domain.payloads import SyncProviderPayload, serialize_payload
from app.features.ingestion.repository.job_repository import JobRepository
from app.features.ingestion.repository.raw_record_repository import RawRecordRepository
from app.features.ingestion.repository.sync_cursor_repository import SyncCursorRepository
from app.infrastructure.observability.logging import get_logger
from app.services.calendar.google_client import google_calendar_service
from app.services.google_gmail_service import google_gmail_service
from app.services.provider_client import ProviderClient, ProviderEntry, ProviderItem
from app.services.token_service import get_valid_credential

logger = get_logger(__name__)

STOP_DEADLINE = "deadline"
STOP_ITEM_CAP = "item_cap"
STOP_EXHAUSTED = "exhausted"

PROVIDER_CLIENTS: dict[str, ProviderClient] = {
    Provider.GMAIL.value: google_gmail_service,
    Provider.GOOGLE_CALENDAR.value: google_calendar_service,
}


def _latest(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


class SyncStage:
    """Incremental, budgeted provider sync."""

    def __init__(
        self,
        clients: dict[str, ProviderClient] | None = None,
        *,
        credential_provider: Callable[[str, str], Awaitable[str]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        chunk_size: int | None = None,
        chunk_delay_ms: int | None = None,
        deadline_seconds: float | None = None,
        item_cap: int | None = None,
        page_size: int | None = None,
    ):
        self._clients = clients
        self._credential_provider = credential_provider
        self._clock = clock
        self._sleep = sleep
        self.chunk_size = chunk_size or settings.SYNC_CHUNK_SIZE
        self.chunk_delay_ms = settings.SYNC_CHUNK_DELAY_MS if chunk_delay_ms is None else chunk_delay_ms
        self.deadline_seconds = deadline_seconds or settings.SYNC_DEADLINE_SECONDS
        self.item_cap = item_cap or settings.SYNC_ITEM_CAP
        self.page_size = page_size or settings.SYNC_PAGE_SIZE

    def client_for(self, provider: str) -> ProviderClient:
        clients = self._clients if self._clients is not None else PROVIDER_CLIENTS
        client = clients.get(provider)
        if client is None:
            raise ValueError(f"No client registered for provider '{provider}'")
        return client

    async def _credential(self, user_id: str, provider: str) -> str:
        provider_fn = self._credential_provider or get_valid_credential
        return await provider_fn(user_id, provider)

    async def _window_start(self, user_id: str, provider: str, cursor: SyncCursor) -> datetime:
        """Lower bound for a fresh window: saved cursor, else newest stored record, else lookback."""
        if cursor.cursor_at:
            return cursor.cursor_at
        latest = await RawRecordRepository.latest_occurred_at(user_id, provider)
        if latest:
            return latest
        return datetime.now(UTC) - timedelta(days=settings.SYNC_DEFAULT_LOOKBACK_DAYS)

    def _budget_exhausted(self, started: float, result: SyncResult) -> str | None:
        if result.fetched >= self.item_cap:
            return STOP_ITEM_CAP
        if self._clock() - started >= self.deadline_seconds:
            return STOP_DEADLINE
        return None

    async def _fetch_chunk(
        self,
        client: ProviderClient,
        access_token: str,
        job: Job,
        provider: str,
        chunk: list[ProviderEntry],
        started: float,
        result: SyncResult,
    ) -> tuple[list[ProviderItem], int, datetime | None, str | None]:
        """
        Resolve a chunk of listing entries into items.

        Returns (items, entries consumed, newest cursor value seen, stop reason).
        Entries whose records are already stored are consumed without a fetch.
        """
        needs_fetch = [entry.ref for entry in chunk if entry.item is None]
        stored = await RawRecordRepository.existing_source_ids(job.user_id, provider, needs_fetch)

        items: list[ProviderItem] = []
        newest: datetime | None = None
        consumed = 0
        for entry in chunk:
            if entry.item is None and entry.ref in stored:
                consumed += 1
                result.already_stored += 1
                newest = _latest(newest, stored[entry.ref])
                continue

            stop = self._budget_exhausted(started, result)
            if stop:
                return items, consumed, newest, stop

            consumed += 1
            result.fetched += 1

            if entry.item is not None:
                item = entry.item
            else:
                try:
                    item = await client.fetch_item(access_token, entry.ref)
                except ProviderError as e:
                    if e.status_code == 401:
                        raise
                    result.errors += 1
                    logger.warning(
                        "Failed to fetch provider item, continuing",
                        provider=provider,
                        ref=entry.ref,
                        status_code=e.status_code,
                        error=str(e),
                    )
                    continue

            items.append(item)
            newest = _latest(newest, item.cursor_value or item.occurred_at)

        return items, consumed, newest, None

    async def _store_chunk(
        self,
        job: Job,
        provider: str,
        items: list[ProviderItem],
        batch_id: str,
        checkpoint: SyncCursor,
    ) -> int:
        async with await get_db_transaction() as conn:
            new_ids = await RawRecordRepository.insert_new(
                job.user_id,
                provider,
                [(item.source_id, item.payload, item.occurred_at) for item in items],
                batch_id,
                connection=conn,
            )
            if new_ids:
                await JobRepository.enqueue_batch(
                    job.user_id,
                    JobKind.NORMALIZE_RECORD,
                    [{"raw_record_id": record_id} for record_id in new_ids],
                    batch_id,
                    connection=conn,
                )
            await SyncCursorRepository.save_checkpoint(checkpoint, connection=conn)
        return len(new_ids)

    async def run(self, job: Job, payload: SyncProviderPayload) -> SyncResult:
        provider = Provider(payload.provider).value
        client = self.client_for(provider)
        batch_id = job.batch_id or job.id

        access_token = await self._credential(job.user_id, provider)

        cursor = await SyncCursorRepository.get(job.user_id, provider)
        if cursor.has_open_window:
            since = cursor.window_started_at
            page_token = cursor.page_token
            high_water = cursor.pending_high_water
            logger.info(
                "Resuming interrupted sync window",
                provider=provider,
                since=since.isoformat() if since else None,
                has_page_token=bool(page_token),
            )
        else:
            since = await self._window_start(job.user_id, provider, cursor)
            page_token = None
            high_water = None

        result = SyncResult()
        started = self._clock()
        stop: str | None = None

        while stop is None:
            stop = self._budget_exhausted(started, result)
            if stop:
                break

            page = await client.list_items_since(
                access_token, since, page_token, payload.query, self.page_size
            )

            index = 0
            while index < len(page.entries):
                chunk = page.entries[index : index + self.chunk_size]
                items, consumed, newest, stop = await self._fetch_chunk(
                    client, access_token, job, provider, chunk, started, result
                )
                index += consumed
                high_water = _latest(high_water, newest)

                if consumed:
                    checkpoint = SyncCursor(
                        user_id=job.user_id,
                        provider=provider,
                        window_started_at=since,
                        pending_high_water=high_water,
                        page_token=page_token,
                    )
                    result.inserted += await self._store_chunk(
                        job, provider, items, batch_id, checkpoint
                    )
                    result.chunks += 1

                if stop:
                    break
                if index < len(page.entries) or page.next_page_token:
                    await self._sleep(self.chunk_delay_ms / 1000)

            if stop:
                break

            if not page.next_page_token:
                async with await get_db_transaction() as conn:
                    await SyncCursorRepository.commit_window(
                        job.user_id, provider, high_water or since, connection=conn
                    )
                stop = STOP_EXHAUSTED
                break

            page_token = page.next_page_token
            await SyncCursorRepository.save_checkpoint(
                SyncCursor(
                    user_id=job.user_id,
                    provider=provider,
                    window_started_at=since,
                    pending_high_water=high_water,
                    page_token=page_token,
                )
            )

        result.stopped_reason = stop
        if stop != STOP_EXHAUSTED:
            continuation_id = await JobRepository.enqueue(
                job.user_id, JobKind.SYNC_PROVIDER, serialize_payload(payload), batch_id
            )
            logger.info(
                "Sync budget reached, continuation enqueued",
                provider=provider,
                reason=stop,
                continuation_job_id=continuation_id,
            )

        logger.info(
            "Sync run finished",
            provider=provider,
            fetched=result.fetched,
            inserted=result.inserted,
            already_stored=result.already_stored,
            errors=result.errors,
            chunks=result.chunks,
            stopped_reason=result.stopped_reason,
        )
        return result


sync_stage = SyncStage()


async def handle_sync_job(job: Job, payload: SyncProviderPayload) -> SyncResult:
    return await sync_stage.run(job, payload)
