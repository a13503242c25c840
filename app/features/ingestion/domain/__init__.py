"""
Domain subpackage for the ingestion feature.
"""

from .errors import (
    JobEngineError,
    PayloadValidationError,
    PermanentJobError,
    ProviderError,
    RateLimitExceeded,
    UnknownJobKindError,
)
from .models import (
    ContactCandidate,
    EmbeddingRecord,
    Interaction,
    Job,
    JobKind,
    JobStatus,
    Participant,
    Provider,
    RawRecord,
    RawRecordStatus,
    RunSummary,
    SyncCursor,
    SyncResult,
)

__all__ = [
    "ContactCandidate",
    "EmbeddingRecord",
    "Interaction",
    "Job",
    "JobEngineError",
    "JobKind",
    "JobStatus",
    "Participant",
    "PayloadValidationError",
    "PermanentJobError",
    "Provider",
    "ProviderError",
    "RateLimitExceeded",
    "RawRecord",
    "RawRecordStatus",
    "RunSummary",
    "SyncCursor",
    "SyncResult",
    "UnknownJobKindError",
]
