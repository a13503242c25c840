from datetime import UTC, datetime

import httpx
import pytest

from app.features.ingestion.domain import ProviderError
from app.services.calendar.google_client import GoogleCalendarService
from app.services.google_gmail_service import GoogleGmailService


class FakeResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload
        self.text = "body"

    def json(self):
        return self._payload


SINCE = datetime(2024, 1, 1, tzinfo=UTC)


def test_gmail_query_uses_cursor_or_lookback(monkeypatch):
    assert GoogleGmailService.build_query(SINCE) == f"after:{int(SINCE.timestamp())}"
    assert GoogleGmailService.build_query(SINCE, "label:clients").endswith(" label:clients")

    from app.services import google_gmail_service as gmail_module

    monkeypatch.setattr(gmail_module.settings, "SYNC_DEFAULT_LOOKBACK_DAYS", 30)
    assert GoogleGmailService.build_query(None) == "newer_than:30d"


@pytest.mark.asyncio
async def test_gmail_listing_returns_refs_and_next_token(monkeypatch):
    service = GoogleGmailService()
    calls = []

    def fake_get(url, headers, params, timeout):
        calls.append((url, headers, params))
        return FakeResponse(200, {"messages": [{"id": "a"}, {"id": "b"}, {}], "nextPageToken": "p2"})

    monkeypatch.setattr(service._session, "get", fake_get)

    page = await service.list_items_since("tok", SINCE, page_token="p1", page_size=50)

    assert [e.ref for e in page.entries] == ["a", "b"]
    assert all(e.item is None for e in page.entries)
    assert page.next_page_token == "p2"
    _, headers, params = calls[0]
    assert headers["Authorization"] == "Bearer tok"
    assert params["pageToken"] == "p1"
    assert params["maxResults"] == 50


@pytest.mark.asyncio
async def test_gmail_fetch_parses_received_time(monkeypatch):
    service = GoogleGmailService()
    message = {"id": "a", "internalDate": "1704067200000", "payload": {"headers": []}}
    monkeypatch.setattr(service._session, "get", lambda *a, **k: FakeResponse(200, dict(message)))

    item = await service.fetch_item("tok", "a")

    assert item.source_id == "a"
    assert item.occurred_at == datetime(2024, 1, 1, tzinfo=UTC)
    assert item.cursor_value == item.occurred_at
    assert "_fetched_at" in item.payload


@pytest.mark.asyncio
async def test_gmail_expired_token_surfaces_status(monkeypatch):
    service = GoogleGmailService()
    monkeypatch.setattr(
        service._session,
        "get",
        lambda *a, **k: FakeResponse(401, {"error": {"code": 401, "message": "Invalid Credentials"}}),
    )

    with pytest.raises(ProviderError) as exc:
        await service.fetch_item("tok", "a")

    assert exc.value.status_code == 401
    assert exc.value.provider == "gmail"


def _calendar(handler) -> GoogleCalendarService:
    return GoogleCalendarService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_calendar_listing_attaches_items():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "items": [
                    {
                        "id": "evt-1",
                        "summary": "Quarterly review",
                        "start": {"dateTime": "2024-01-05T10:00:00Z"},
                        "updated": "2024-01-02T08:00:00Z",
                    },
                    {"summary": "no id"},
                ]
            },
        )

    service = _calendar(handler)
    page = await service.list_items_since("tok", SINCE)
    await service.close()

    assert seen["params"]["updatedMin"] == "2024-01-01T00:00:00Z"
    assert page.next_page_token is None
    assert [e.ref for e in page.entries] == ["evt-1"]
    item = page.entries[0].item
    assert item.occurred_at == datetime(2024, 1, 5, 10, tzinfo=UTC)
    assert item.cursor_value == datetime(2024, 1, 2, 8, tzinfo=UTC)


@pytest.mark.asyncio
async def test_calendar_client_error_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})

    service = _calendar(handler)
    with pytest.raises(ProviderError) as exc:
        await service.fetch_item("tok", "missing")
    await service.close()

    assert exc.value.status_code == 404
    assert len(calls) == 1
