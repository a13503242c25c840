"""
Provider-specific normalizers: raw provider payload -> Interaction.

Normalizers are pure functions. A payload missing the fields an
interaction needs raises NormalizationSkip, which the stage records on the
raw record instead of failing the job.
"""

from collections.abc import Callable

from app.features.ingestion.domain import Interaction, Participant, Provider, RawRecord
from app.models.domain.calendar_domain import CalendarEvent
from app.models.domain.gmail_domain import GmailMessage

BODY_EXCERPT_CHARS = 2000


class NormalizationSkip(Exception):
    """Raw record cannot become an interaction; not worth retrying."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _participant(address: dict, role: str) -> Participant | None:
    email = (address.get("email") or "").strip().lower()
    if not email:
        return None
    return Participant(email=email, name=(address.get("name") or "").strip() or None, role=role)


def normalize_gmail(record: RawRecord) -> Interaction:
    if not isinstance(record.payload, dict) or not record.payload:
        raise NormalizationSkip("empty gmail payload")
    if "payload" in record.payload and not isinstance(record.payload["payload"], dict):
        raise NormalizationSkip("gmail message payload is not an object")

    message = GmailMessage(record.payload)
    if not message.id:
        raise NormalizationSkip("gmail message has no id")

    occurred_at = message.get_received_datetime()
    if not occurred_at:
        raise NormalizationSkip("gmail message has no internalDate or Date header")

    participants = []
    sender = _participant(message.sender, "from")
    if sender:
        participants.append(sender)
    for role, addresses in (("to", message.recipients), ("cc", message.cc), ("bcc", message.bcc)):
        for address in addresses:
            participant = _participant(address, role)
            if participant:
                participants.append(participant)

    return Interaction(
        user_id=record.user_id,
        type="email",
        source=Provider.GMAIL.value,
        source_id=message.id,
        occurred_at=occurred_at,
        subject=message.subject or None,
        body_text=message.get_body_excerpt(BODY_EXCERPT_CHARS) or None,
        participants=participants,
        source_meta={
            "thread_id": message.thread_id,
            "label_ids": message.label_ids,
            "message_id": message.message_id or None,
            "direction": "outbound" if message.is_sent() else "inbound",
            "fetched_at": record.payload.get("_fetched_at"),
        },
        batch_id=record.batch_id,
        raw_record_id=record.id,
    )


def normalize_calendar(record: RawRecord) -> Interaction:
    if not isinstance(record.payload, dict) or not record.payload:
        raise NormalizationSkip("empty calendar payload")

    event = CalendarEvent(record.payload)
    if not event.id:
        raise NormalizationSkip("calendar event has no id")
    if event.is_cancelled():
        raise NormalizationSkip("calendar event cancelled")
    if not event.start_time:
        raise NormalizationSkip("calendar event has no start time")

    participants = []
    self_emails = []
    for entry in event.get_participants():
        participant = _participant(entry, entry["role"])
        if not participant:
            continue
        participants.append(participant)
        if entry.get("is_self"):
            self_emails.append(participant.email)

    return Interaction(
        user_id=record.user_id,
        type="meeting",
        source=Provider.GOOGLE_CALENDAR.value,
        source_id=event.id,
        occurred_at=event.start_time,
        subject=event.summary or None,
        body_text=event.description[:BODY_EXCERPT_CHARS] or None,
        participants=participants,
        source_meta={
            "end_time": event.end_time.isoformat() if event.end_time else None,
            "all_day": event.is_all_day(),
            "location": event.location or None,
            "html_link": event.html_link,
            "self_emails": self_emails,
        },
        batch_id=record.batch_id,
        raw_record_id=record.id,
    )


NORMALIZERS: dict[str, Callable[[RawRecord], Interaction]] = {
    Provider.GMAIL.value: normalize_gmail,
    Provider.GOOGLE_CALENDAR.value: normalize_calendar,
}


def normalize_record(record: RawRecord) -> Interaction:
    normalizer = NORMALIZERS.get(record.provider)
    if normalizer is None:
        raise NormalizationSkip(f"no normalizer for provider '{record.provider}'")
    try:
        return normalizer(record)
    except (AttributeError, TypeError, KeyError, ValueError) as e:
        # Structurally broken payloads are skipped like incomplete ones
        raise NormalizationSkip(f"malformed {record.provider} payload: {type(e).__name__}: {e}") from e
