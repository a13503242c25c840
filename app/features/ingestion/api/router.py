"""
Job engine routes.

Thin glue over the job store and the runner: approving a sync enqueues a
sync job under a fresh batch, and a process call runs one runner pass for
the caller.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import auth_dependency
from app.db.helpers import DatabaseError
from app.features.ingestion.domain import JobKind, JobStatus, PayloadValidationError
from app.features.ingestion.domain.payloads import SyncProviderPayload, serialize_payload
from app.features.ingestion.repository.job_repository import JobRepository
from app.features.ingestion.services.runner import job_runner
from app.infrastructure.observability.logging import get_logger
from app.models.api.job_request import SyncRequest
from app.models.api.job_response import (
    BatchStatusResponse,
    BatchUndoResponse,
    JobResponse,
    JobsListResponse,
    RunSummaryResponse,
    SyncEnqueuedResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _user_id(claims: dict) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


@router.post("/sync", response_model=SyncEnqueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def approve_sync(request: SyncRequest, claims: dict = Depends(auth_dependency)):
    """Enqueue a provider sync under a new batch."""
    user_id = _user_id(claims)
    payload = SyncProviderPayload(provider=request.provider, query=request.query)
    batch_id = JobRepository.new_batch_id()

    try:
        job_id = await JobRepository.enqueue(
            user_id, JobKind.SYNC_PROVIDER, serialize_payload(payload), batch_id
        )
    except PayloadValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except DatabaseError as e:
        logger.error("Failed to enqueue sync", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to enqueue sync"
        )

    logger.info("Sync approved", user_id=user_id, provider=payload.provider.value, batch_id=batch_id)
    return SyncEnqueuedResponse(job_id=job_id, batch_id=batch_id, provider=payload.provider.value)


@router.post("/process", response_model=RunSummaryResponse)
async def process_jobs(claims: dict = Depends(auth_dependency)):
    """Run one runner pass over the caller's queued jobs."""
    user_id = _user_id(claims)
    try:
        summary = await job_runner.process_user_jobs(user_id)
    except DatabaseError as e:
        logger.error("Runner pass aborted", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job store unavailable"
        )
    return RunSummaryResponse(**summary.as_dict())


@router.get("", response_model=JobsListResponse)
async def list_jobs(
    claims: dict = Depends(auth_dependency),
    job_status: JobStatus | None = Query(None, alias="status"),
    kind: JobKind | None = None,
    batch_id: UUID | None = None,
    limit: int = Query(100, ge=1, le=500),
):
    user_id = _user_id(claims)
    jobs = await JobRepository.list_jobs(
        user_id,
        status=job_status,
        kind=kind,
        batch_id=str(batch_id) if batch_id else None,
        limit=limit,
    )
    return JobsListResponse(
        jobs=[
            JobResponse(
                id=job.id,
                kind=job.kind,
                status=job.status.value,
                attempts=job.attempts,
                last_error=job.last_error,
                batch_id=job.batch_id,
                created_at=job.created_at,
                updated_at=job.updated_at,
            )
            for job in jobs
        ],
        total_count=len(jobs),
    )


@router.get("/batches/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(batch_id: UUID, claims: dict = Depends(auth_dependency)):
    user_id = _user_id(claims)
    batch = await JobRepository.get_batch_status(user_id, str(batch_id))
    if batch["total"] == 0:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return BatchStatusResponse(**batch)


@router.delete("/batches/{batch_id}", response_model=BatchUndoResponse)
async def undo_batch(batch_id: UUID, claims: dict = Depends(auth_dependency)):
    """Delete every record and queued job the batch produced."""
    user_id = _user_id(claims)
    try:
        deleted = await JobRepository.undo_batch(user_id, str(batch_id))
    except DatabaseError as e:
        logger.error("Batch undo failed", user_id=user_id, batch_id=str(batch_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to undo batch"
        )
    return BatchUndoResponse(batch_id=str(batch_id), deleted=deleted)
