"""
Domain models for the ingestion job engine.

Lightweight dataclasses mirroring the persisted rows. Repositories map
database rows into these, stages and the runner pass them around.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobKind(str, Enum):
    """Closed set of job kinds understood by the dispatcher."""

    SYNC_PROVIDER = "sync_provider"
    NORMALIZE_RECORD = "normalize_record"
    GENERATE_EMBEDDING = "generate_embedding"
    EXTRACT_CONTACTS = "extract_contacts"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class Provider(str, Enum):
    GMAIL = "gmail"
    GOOGLE_CALENDAR = "google_calendar"


class RawRecordStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class Job:
    """Represents a jobs row."""

    id: str
    user_id: str
    kind: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    last_error: str | None
    batch_id: str | None
    created_at: datetime
    updated_at: datetime
    deferrals: int = 0
    available_at: datetime | None = None  # set while waiting out a quota window


@dataclass(slots=True)
class RawRecord:
    """Provider payload stored verbatim by the sync stage."""

    id: str
    user_id: str
    provider: str
    source_id: str
    payload: dict[str, Any]
    occurred_at: datetime | None
    batch_id: str | None
    status: RawRecordStatus = RawRecordStatus.PENDING


@dataclass(slots=True)
class Participant:
    email: str
    name: str | None = None
    role: str = "to"  # from | to | cc | bcc | organizer | attendee


@dataclass(slots=True)
class Interaction:
    """Normalized email or meeting, keyed by (user_id, source, source_id)."""

    user_id: str
    type: str  # "email" or "meeting"
    source: str
    source_id: str
    occurred_at: datetime
    subject: str | None = None
    body_text: str | None = None
    participants: list[Participant] = field(default_factory=list)
    source_meta: dict[str, Any] = field(default_factory=dict)
    batch_id: str | None = None
    raw_record_id: str | None = None
    contact_id: str | None = None
    id: str | None = None


@dataclass(slots=True)
class EmbeddingRecord:
    user_id: str
    owner_type: str
    owner_id: str
    content_hash: str
    model: str
    vector: list[float] | None = None


@dataclass(slots=True)
class SyncCursor:
    """
    Per-(user, provider) sync progress.

    ``cursor_at`` only moves when a listing window is fully stored.
    ``page_token`` and ``pending_high_water`` describe an interrupted window.
    """

    user_id: str
    provider: str
    cursor_at: datetime | None = None
    window_started_at: datetime | None = None
    pending_high_water: datetime | None = None
    page_token: str | None = None
    last_synced_at: datetime | None = None

    @property
    def has_open_window(self) -> bool:
        return self.page_token is not None or self.pending_high_water is not None


@dataclass(slots=True)
class ContactCandidate:
    """Identity extracted from an interaction, before resolution."""

    email: str
    display_name: str | None
    role: str


@dataclass(slots=True)
class SyncResult:
    fetched: int = 0
    inserted: int = 0
    already_stored: int = 0
    errors: int = 0
    chunks: int = 0
    stopped_reason: str = "exhausted"  # exhausted | deadline | item_cap


@dataclass(slots=True)
class RunSummary:
    """Outcome counts of one runner pass."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    reclaimed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "deferred": self.deferred,
            "skipped": self.skipped,
            "reclaimed": self.reclaimed,
            "errors": list(self.errors),
        }
