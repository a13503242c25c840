# app/models/api/job_response.py
"""
Job API response models.
Used by the jobs router for output formatting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SyncEnqueuedResponse(BaseModel):
    """Response model for an approved sync."""

    job_id: str = Field(..., description="Queued sync job ID")
    batch_id: str = Field(..., description="Batch grouping every job the sync produces")
    provider: str = Field(..., description="Provider being synced")


class RunSummaryResponse(BaseModel):
    """Response model for one runner pass."""

    processed: int = Field(..., description="Jobs claimed and run")
    succeeded: int = Field(..., description="Jobs that completed")
    failed: int = Field(..., description="Jobs whose handler failed")
    deferred: int = Field(0, description="Jobs pushed to the next quota window")
    skipped: int = Field(..., description="Jobs not yet eligible or claimed elsewhere")
    reclaimed: int = Field(0, description="Stale processing jobs returned to the queue")
    errors: list[dict[str, str]] = Field(default_factory=list, description="Sanitized failures")


class JobResponse(BaseModel):
    """Response model for a single job."""

    id: str
    kind: str
    status: str
    attempts: int
    last_error: str | None = None
    batch_id: str | None = None
    created_at: datetime
    updated_at: datetime


class JobsListResponse(BaseModel):
    jobs: list[JobResponse]
    total_count: int


class BatchStatusResponse(BaseModel):
    """Response model for batch progress."""

    batch_id: str
    total: int
    by_status: dict[str, int]
    by_kind: dict[str, dict[str, int]]
    complete: bool


class BatchUndoResponse(BaseModel):
    batch_id: str
    deleted: dict[str, Any] = Field(..., description="Rows deleted per table")
