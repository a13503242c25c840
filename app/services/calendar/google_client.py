"""
Google Calendar API client for incremental event sync.
Lists events of the primary calendar updated since a cursor.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx

from app.config import settings
from app.features.ingestion.domain.errors import ProviderError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.calendar_domain import CalendarEvent
from app.services.provider_client import ProviderEntry, ProviderItem, ProviderPage

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class GoogleCalendarError(ProviderError):
    """Calendar API failure."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(
            message,
            provider="google_calendar",
            status_code=status_code,
            error_code=error_code,
            response_data=response_data,
        )


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class GoogleCalendarService:
    """Calendar API client with retry and backoff on transient statuses."""

    provider = "google_calendar"

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        # Created lazily so the client binds to the running event loop
        if self._client is None or self._client.is_closed:
            timeout = httpx.Timeout(REQUEST_TIMEOUT)
            limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
            self._client = httpx.AsyncClient(timeout=timeout, limits=limits)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        client = self._get_client()
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Calendar API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise GoogleCalendarError(f"Calendar request failed: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Calendar API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise GoogleCalendarError("Calendar API retry loop exhausted")

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Handle and validate Calendar API response.

        Raises:
            GoogleCalendarError: If response contains errors
        """
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(f"Failed to parse Calendar API {operation} response", error=str(e))
                raise GoogleCalendarError(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                f"Calendar API {operation} failed with non-JSON response",
                status_code=response.status_code,
            )
            raise GoogleCalendarError(
                f"Calendar API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Calendar API error")

        logger.error(
            f"Calendar API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )

        raise GoogleCalendarError(
            f"Calendar error: {error_message}",
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _to_item(self, data: dict) -> ProviderItem:
        event = CalendarEvent(data)
        return ProviderItem(
            source_id=event.id,
            payload=data,
            occurred_at=event.start_time,
            cursor_value=event.updated,
        )

    async def list_items_since(
        self,
        access_token: str,
        since: datetime | None,
        page_token: str | None = None,
        query: str | None = None,
        page_size: int = 100,
    ) -> ProviderPage:
        """
        Events updated since the cursor. Listing returns full resources, so
        every entry comes back with its item attached.
        """
        params: dict = {
            "maxResults": min(page_size, 2500),
            "singleEvents": "true",
        }
        if since:
            params["updatedMin"] = _rfc3339(since)
        else:
            lookback = datetime.now(UTC) - timedelta(days=settings.SYNC_DEFAULT_LOOKBACK_DAYS)
            params["timeMin"] = _rfc3339(lookback)
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token

        url = f"{CALENDAR_API_BASE_URL}/calendars/{CALENDAR_PRIMARY}/events"
        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token), params=params
        )
        data = self._handle_api_response(response, "list_events")

        entries = [
            ProviderEntry(ref=item["id"], item=self._to_item(item))
            for item in data.get("items", [])
            if item.get("id")
        ]
        logger.info(
            "Calendar events listed",
            count=len(entries),
            has_more=bool(data.get("nextPageToken")),
        )
        return ProviderPage(entries=entries, next_page_token=data.get("nextPageToken"))

    async def fetch_item(self, access_token: str, ref: str) -> ProviderItem:
        url = f"{CALENDAR_API_BASE_URL}/calendars/{CALENDAR_PRIMARY}/events/{ref}"
        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token)
        )
        return self._to_item(self._handle_api_response(response, "get_event"))


google_calendar_service = GoogleCalendarService()
