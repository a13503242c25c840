"""
Per-kind payload schemas.

Payloads only ever reference persisted records by id; handlers re-fetch
the current state themselves.
"""

import json
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from app.features.ingestion.domain.errors import PayloadValidationError, UnknownJobKindError
from app.features.ingestion.domain.models import JobKind, Provider

MAX_PAYLOAD_BYTES = 1024 * 1024
MAX_PAYLOAD_DEPTH = 10


class JobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class SyncProviderPayload(JobPayload):
    provider: Provider
    query: str | None = None


class NormalizeRecordPayload(JobPayload):
    """Either one raw record, or every pending raw record of a batch."""

    raw_record_id: UUID | None = None
    batch_id: UUID | None = None

    @model_validator(mode="after")
    def _exactly_one_target(self):
        if (self.raw_record_id is None) == (self.batch_id is None):
            raise ValueError("exactly one of raw_record_id or batch_id is required")
        return self


class GenerateEmbeddingPayload(JobPayload):
    interaction_id: UUID


class ExtractContactsPayload(JobPayload):
    interaction_id: UUID


PAYLOAD_MODELS: dict[JobKind, type[JobPayload]] = {
    JobKind.SYNC_PROVIDER: SyncProviderPayload,
    JobKind.NORMALIZE_RECORD: NormalizeRecordPayload,
    JobKind.GENERATE_EMBEDDING: GenerateEmbeddingPayload,
    JobKind.EXTRACT_CONTACTS: ExtractContactsPayload,
}


def parse_kind(kind: str | JobKind) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError:
        raise UnknownJobKindError(str(kind)) from None


def _depth(value: Any, level: int = 1) -> int:
    if isinstance(value, dict):
        return max((_depth(v, level + 1) for v in value.values()), default=level)
    if isinstance(value, list):
        return max((_depth(v, level + 1) for v in value), default=level)
    return level


def validate_payload(kind: str | JobKind, payload: dict[str, Any] | None) -> JobPayload:
    """
    Validate a raw payload against its kind's schema.

    Raises:
        UnknownJobKindError: kind is not one of JobKind
        PayloadValidationError: payload is oversized, too deep or fails the schema
    """
    job_kind = parse_kind(kind)
    payload = payload or {}

    if not isinstance(payload, dict):
        raise PayloadValidationError(job_kind.value, "payload must be an object")

    try:
        size = len(json.dumps(payload, default=str))
    except (TypeError, ValueError) as e:
        raise PayloadValidationError(job_kind.value, f"payload is not serializable: {e}") from e

    if size > MAX_PAYLOAD_BYTES:
        raise PayloadValidationError(job_kind.value, f"payload too large ({size} bytes)")
    if _depth(payload) > MAX_PAYLOAD_DEPTH:
        raise PayloadValidationError(job_kind.value, "payload nested too deeply")

    try:
        return PAYLOAD_MODELS[job_kind].model_validate(payload)
    except ValidationError as e:
        raise PayloadValidationError(
            job_kind.value, f"{e.error_count()} validation error(s)", errors=e.errors()
        ) from e


def serialize_payload(model: JobPayload) -> dict[str, Any]:
    """JSON-ready dict for the jobs.payload column."""
    return model.model_dump(mode="json", exclude_none=True)
