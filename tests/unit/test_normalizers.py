import base64
from datetime import UTC, datetime

import pytest

from app.features.ingestion.domain import RawRecord
from app.features.ingestion.pipeline.normalizers import NormalizationSkip, normalize_record


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _gmail_record(payload: dict) -> RawRecord:
    return RawRecord(
        id="raw-1",
        user_id="user-123",
        provider="gmail",
        source_id=payload.get("id", "missing"),
        payload=payload,
        occurred_at=None,
        batch_id="batch-1",
    )


def _calendar_record(payload: dict) -> RawRecord:
    return RawRecord(
        id="raw-2",
        user_id="user-123",
        provider="google_calendar",
        source_id=payload.get("id", "missing"),
        payload=payload,
        occurred_at=None,
        batch_id="batch-1",
    )


GMAIL_MESSAGE = {
    "id": "18c2f0a1b2",
    "threadId": "18c2f0a1b2",
    "labelIds": ["INBOX", "UNREAD"],
    "snippet": "Quick question about the renewal",
    "internalDate": "1704110400000",
    "payload": {
        "mimeType": "multipart/alternative",
        "headers": [
            {"name": "From", "value": "Dana Reyes <Dana.Reyes@Example.com>"},
            {"name": "To", "value": "me@example.org, \"Lee, Sam\" <sam@example.net>"},
            {"name": "Cc", "value": "ops@example.com"},
            {"name": "Subject", "value": "Renewal"},
            {"name": "Message-ID", "value": "<abc@mail.example.com>"},
        ],
        "parts": [
            {"mimeType": "text/plain", "body": {"data": _b64("Can we talk Tuesday?")}},
            {"mimeType": "text/html", "body": {"data": _b64("<p>Can we talk Tuesday?</p>")}},
        ],
    },
    "_fetched_at": "2024-01-02T00:00:00+00:00",
}


def test_gmail_message_becomes_email_interaction():
    interaction = normalize_record(_gmail_record(GMAIL_MESSAGE))

    assert interaction.type == "email"
    assert interaction.source == "gmail"
    assert interaction.source_id == "18c2f0a1b2"
    assert interaction.occurred_at == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    assert interaction.subject == "Renewal"
    assert interaction.body_text == "Can we talk Tuesday?"
    assert interaction.raw_record_id == "raw-1"
    assert interaction.source_meta["direction"] == "inbound"
    assert interaction.source_meta["thread_id"] == "18c2f0a1b2"

    roles = [(p.email, p.role) for p in interaction.participants]
    assert roles == [
        ("dana.reyes@example.com", "from"),
        ("me@example.org", "to"),
        ("sam@example.net", "to"),
        ("ops@example.com", "cc"),
    ]
    assert interaction.participants[2].name == "Lee, Sam"


def test_gmail_falls_back_to_date_header_and_snippet():
    message = {
        "id": "m2",
        "labelIds": ["SENT"],
        "snippet": "see attached",
        "payload": {
            "headers": [
                {"name": "Date", "value": "Tue, 02 Jan 2024 09:30:00 +0000"},
                {"name": "From", "value": "me@example.org"},
                {"name": "To", "value": "client@example.com"},
            ]
        },
    }

    interaction = normalize_record(_gmail_record(message))

    assert interaction.occurred_at == datetime(2024, 1, 2, 9, 30, tzinfo=UTC)
    assert interaction.body_text == "see attached"
    assert interaction.source_meta["direction"] == "outbound"


def test_gmail_without_any_timestamp_is_skipped():
    with pytest.raises(NormalizationSkip, match="internalDate"):
        normalize_record(_gmail_record({"id": "m3", "payload": {"headers": []}}))


def test_gmail_without_id_is_skipped():
    with pytest.raises(NormalizationSkip):
        normalize_record(_gmail_record({"internalDate": "1704110400000"}))


CALENDAR_EVENT = {
    "id": "evt-1",
    "status": "confirmed",
    "summary": "Quarterly review",
    "description": "Agenda: pipeline",
    "start": {"dateTime": "2024-03-05T15:00:00Z"},
    "end": {"dateTime": "2024-03-05T16:00:00Z"},
    "updated": "2024-03-01T10:00:00Z",
    "organizer": {"email": "me@example.org", "self": True},
    "attendees": [
        {"email": "me@example.org", "self": True},
        {"email": "Pat@Client.io", "displayName": "Pat"},
        {"email": "room-4@resource.calendar.google.com", "resource": True},
    ],
}


def test_calendar_event_becomes_meeting_interaction():
    interaction = normalize_record(_calendar_record(CALENDAR_EVENT))

    assert interaction.type == "meeting"
    assert interaction.source == "google_calendar"
    assert interaction.occurred_at == datetime(2024, 3, 5, 15, 0, tzinfo=UTC)
    assert interaction.subject == "Quarterly review"
    assert set(interaction.source_meta["self_emails"]) == {"me@example.org"}

    emails = [(p.email, p.role) for p in interaction.participants]
    assert ("pat@client.io", "attendee") in emails
    assert all("resource.calendar" not in email for email, _ in emails)


def test_all_day_calendar_event():
    event = dict(CALENDAR_EVENT, start={"date": "2024-03-05"}, end={"date": "2024-03-06"})
    interaction = normalize_record(_calendar_record(event))

    assert interaction.occurred_at == datetime(2024, 3, 5, tzinfo=UTC)
    assert interaction.source_meta["all_day"] is True


@pytest.mark.parametrize(
    "event",
    [
        dict(CALENDAR_EVENT, status="cancelled"),
        {k: v for k, v in CALENDAR_EVENT.items() if k != "start"},
        {k: v for k, v in CALENDAR_EVENT.items() if k != "id"},
    ],
)
def test_unusable_calendar_events_are_skipped(event):
    with pytest.raises(NormalizationSkip):
        normalize_record(_calendar_record(event))


def test_unknown_provider_is_skipped():
    record = _gmail_record(GMAIL_MESSAGE)
    record.provider = "outlook"
    with pytest.raises(NormalizationSkip, match="no normalizer"):
        normalize_record(record)


@pytest.mark.parametrize(
    "message",
    [
        {"id": "m1", "internalDate": "1704110400000", "payload": "garbage"},
        {"id": "m1", "internalDate": "1704110400000", "payload": {"headers": [{"name": 7, "value": "x"}]}},
        {"id": "m1", "internalDate": "1704110400000", "payload": {"headers": "From: a@b.c"}},
        {"id": "m1", "internalDate": "1704110400000", "payload": {"parts": ["text", 3, None]}},
        {"id": "m1", "internalDate": "1704110400000", "payload": {"body": "abc"}},
        {"id": "m1", "internalDate": ["1704110400000"], "payload": {}},
        {"id": 42, "internalDate": "1704110400000"},
    ],
)
def test_structurally_wrong_gmail_payloads_never_raise_anything_but_skip(message):
    try:
        interaction = normalize_record(_gmail_record(message))
    except NormalizationSkip:
        return
    assert interaction.source_id == "m1"


def test_gmail_with_junk_parts_keeps_usable_fields():
    message = dict(GMAIL_MESSAGE, payload=dict(GMAIL_MESSAGE["payload"], parts=["junk", {"body": "x"}]))

    interaction = normalize_record(_gmail_record(message))

    assert interaction.subject == "Renewal"
    assert interaction.body_text == "Quick question about the renewal"


@pytest.mark.parametrize(
    "event",
    [
        dict(CALENDAR_EVENT, organizer="me@example.org"),
        dict(CALENDAR_EVENT, description=["not", "text"]),
        dict(CALENDAR_EVENT, attendees={"email": "pat@client.io"}),
        dict(CALENDAR_EVENT, start="2024-03-05"),
        dict(CALENDAR_EVENT, start={"dateTime": 1709650800}),
        dict(CALENDAR_EVENT, summary=None, updated=12),
    ],
)
def test_structurally_wrong_calendar_payloads_never_raise_anything_but_skip(event):
    try:
        interaction = normalize_record(_calendar_record(event))
    except NormalizationSkip:
        return
    assert interaction.source_id == "evt-1"


def test_string_organizer_does_not_hide_attendees():
    interaction = normalize_record(_calendar_record(dict(CALENDAR_EVENT, organizer="me@example.org")))

    assert [p.role for p in interaction.participants if p.email == "pat@client.io"] == ["attendee"]
    assert interaction.body_text == "Agenda: pipeline"


def test_unexpected_normalizer_failure_becomes_skip(monkeypatch):
    from app.features.ingestion.pipeline import normalizers

    def broken(record):
        raise AttributeError("'str' object has no attribute 'get'")

    monkeypatch.setitem(normalizers.NORMALIZERS, "gmail", broken)

    with pytest.raises(NormalizationSkip, match="malformed gmail payload: AttributeError"):
        normalize_record(_gmail_record(GMAIL_MESSAGE))


def test_gmail_payload_that_is_not_an_object_is_skipped():
    message = {"id": "m1", "internalDate": "1704110400000", "payload": "garbage"}

    with pytest.raises(NormalizationSkip, match="not an object"):
        normalize_record(_gmail_record(message))
