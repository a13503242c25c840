"""
Routes a claimed job to the handler registered for its kind.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from app.features.ingestion.domain import Job, JobKind, UnknownJobKindError
from app.features.ingestion.domain.payloads import JobPayload, parse_kind, validate_payload
from app.features.ingestion.pipeline.contacts import handle_extract_contacts_job
from app.features.ingestion.pipeline.embed import handle_embed_job
from app.features.ingestion.pipeline.normalize import handle_normalize_job
from app.features.ingestion.pipeline.sync import handle_sync_job

JobHandler = Callable[[Job, JobPayload], Awaitable[Any]]

DEFAULT_HANDLERS: dict[JobKind, JobHandler] = {
    JobKind.SYNC_PROVIDER: handle_sync_job,
    JobKind.NORMALIZE_RECORD: handle_normalize_job,
    JobKind.GENERATE_EMBEDDING: handle_embed_job,
    JobKind.EXTRACT_CONTACTS: handle_extract_contacts_job,
}


class JobDispatcher:
    def __init__(self, handlers: dict[JobKind, JobHandler] | None = None):
        self._handlers: dict[JobKind, JobHandler] = dict(
            DEFAULT_HANDLERS if handlers is None else handlers
        )

    def register(self, kind: JobKind, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    def handler_for(self, kind: str | JobKind) -> JobHandler:
        job_kind = parse_kind(kind)
        handler = self._handlers.get(job_kind)
        if handler is None:
            raise UnknownJobKindError(job_kind.value)
        return handler

    async def dispatch(self, job: Job) -> Any:
        """
        Validate the job's payload and run its handler.

        Raises:
            UnknownJobKindError: no handler for the kind
            PayloadValidationError: payload does not match the kind's schema
        """
        handler = self.handler_for(job.kind)
        payload = validate_payload(job.kind, job.payload)
        return await handler(job, payload)


job_dispatcher = JobDispatcher()
