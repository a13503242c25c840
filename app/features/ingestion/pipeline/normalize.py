"""
Normalize stage: raw record -> interaction, then fan out to embed and
extract-contacts.

The interaction upsert, the raw record's processed marker and both
downstream enqueues commit together.
"""

from app.db.pool import get_db_transaction
from app.features.ingestion.domain import Job, JobKind, RawRecord
from app.features.ingestion.domain.payloads import NormalizeRecordPayload
from app.features.ingestion.pipeline.normalizers import NormalizationSkip, normalize_record
from app.features.ingestion.repository.interaction_repository import InteractionRepository
from app.features.ingestion.repository.job_repository import JobRepository
from app.features.ingestion.repository.raw_record_repository import RawRecordRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

BATCH_NORMALIZE_LIMIT = 200


async def normalize_one(job: Job, record: RawRecord) -> str | None:
    """Normalize a single raw record. Returns the interaction id, or None when skipped."""
    try:
        interaction = normalize_record(record)
    except NormalizationSkip as skip:
        await RawRecordRepository.mark_skipped(record.id, skip.reason)
        return None

    batch_id = record.batch_id or job.batch_id
    interaction.batch_id = batch_id

    async with await get_db_transaction() as conn:
        interaction_id = await InteractionRepository.upsert(interaction, connection=conn)
        await RawRecordRepository.mark_processed(record.id, connection=conn)
        await JobRepository.enqueue(
            job.user_id,
            JobKind.GENERATE_EMBEDDING,
            {"interaction_id": interaction_id},
            batch_id,
            connection=conn,
        )
        await JobRepository.enqueue(
            job.user_id,
            JobKind.EXTRACT_CONTACTS,
            {"interaction_id": interaction_id},
            batch_id,
            connection=conn,
        )

    logger.debug(
        "Raw record normalized",
        raw_record_id=record.id,
        interaction_id=interaction_id,
        source=interaction.source,
    )
    return interaction_id


async def handle_normalize_job(job: Job, payload: NormalizeRecordPayload) -> dict[str, int]:
    if payload.raw_record_id:
        record = await RawRecordRepository.get(job.user_id, str(payload.raw_record_id))
        if record is None:
            logger.warning(
                "Raw record not found, nothing to normalize",
                raw_record_id=str(payload.raw_record_id),
            )
            return {"normalized": 0, "skipped": 1}
        records = [record]
    else:
        records = await RawRecordRepository.list_pending_for_batch(
            job.user_id, str(payload.batch_id), limit=BATCH_NORMALIZE_LIMIT
        )

    normalized = skipped = 0
    for record in records:
        if await normalize_one(job, record):
            normalized += 1
        else:
            skipped += 1

    if payload.batch_id and len(records) >= BATCH_NORMALIZE_LIMIT:
        await JobRepository.enqueue(
            job.user_id,
            JobKind.NORMALIZE_RECORD,
            {"batch_id": str(payload.batch_id)},
            job.batch_id,
        )

    logger.info("Normalize job finished", normalized=normalized, skipped=skipped)
    return {"normalized": normalized, "skipped": skipped}
