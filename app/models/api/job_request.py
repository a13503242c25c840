# app/models/api/job_request.py
"""
Job API request models.
Used by the jobs router for input validation.
"""

from pydantic import BaseModel, Field

from app.features.ingestion.domain import Provider


class SyncRequest(BaseModel):
    """Request model for approving a provider sync."""

    provider: Provider = Field(..., description="Provider to sync from")
    query: str | None = Field(
        None, max_length=500, description="Optional provider-side filter (Gmail search syntax)"
    )
