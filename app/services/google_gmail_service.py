"""
Google Gmail API client for incremental message sync.
Lists message ids newer than a cursor and fetches full message resources.
"""

import asyncio
from datetime import UTC, datetime

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from app.config import settings
from app.features.ingestion.domain.errors import ProviderError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.gmail_domain import GmailMessage
from app.services.provider_client import ProviderEntry, ProviderItem, ProviderPage

logger = get_logger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_USER_ID = "me"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2


class GoogleGmailError(ProviderError):
    """Gmail API failure."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(
            message,
            provider="gmail",
            status_code=status_code,
            error_code=error_code,
            response_data=response_data,
        )


class GoogleGmailService:
    """
    Gmail API client.

    Uses a blocking requests session with urllib3 retries; calls run in a
    worker thread so they never stall the event loop.
    """

    provider = "gmail"

    def __init__(self):
        self._session = self._create_session()

    def _create_session(self) -> requests.Session:
        """Create requests session with retry strategy for Gmail API."""
        session = requests.Session()

        retry_strategy = Retry(
            total=MAX_RETRIES,
            backoff_factor=BACKOFF_FACTOR,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            respect_retry_after_header=True,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)

        return session

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: requests.Response, operation: str) -> dict:
        """
        Handle and validate Gmail API response.

        Raises:
            GoogleGmailError: If response contains errors
        """
        if response.ok:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(f"Failed to parse Gmail API {operation} response", error=str(e))
                raise GoogleGmailError(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                f"Gmail API {operation} failed with non-JSON response",
                status_code=response.status_code,
            )
            raise GoogleGmailError(
                f"Gmail API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Gmail API error")

        logger.error(
            f"Gmail API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )

        raise GoogleGmailError(
            self._map_gmail_error(error_code, error_message),
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _map_gmail_error(self, error_code: str, error_message: str) -> str:
        error_mappings = {
            "400": "Invalid Gmail request format.",
            "401": "Gmail authorization expired.",
            "403": "Gmail access denied.",
            "404": "Email message not found.",
            "429": "Too many Gmail requests.",
            "500": "Gmail service temporarily unavailable.",
        }
        return error_mappings.get(error_code, f"Gmail error: {error_message}")

    def _get(self, url: str, access_token: str, params: dict, operation: str) -> dict:
        try:
            response = self._session.get(
                url,
                headers=self._get_auth_headers(access_token),
                params=params,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            logger.warning(f"Gmail API {operation} request error", error=str(e))
            raise GoogleGmailError(f"Gmail request failed: {e}") from e
        return self._handle_api_response(response, operation)

    @staticmethod
    def build_query(since: datetime | None, query: str | None = None) -> str:
        """Gmail search string: ``after:<epoch>`` when a cursor exists, a lookback window otherwise."""
        if since:
            window = f"after:{int(since.timestamp())}"
        else:
            window = f"newer_than:{settings.SYNC_DEFAULT_LOOKBACK_DAYS}d"
        return f"{window} {query}".strip() if query else window

    async def list_items_since(
        self,
        access_token: str,
        since: datetime | None,
        page_token: str | None = None,
        query: str | None = None,
        page_size: int = 100,
    ) -> ProviderPage:
        params = {
            "maxResults": min(page_size, 500),
            "q": self.build_query(since, query),
            "includeSpamTrash": False,
        }
        if page_token:
            params["pageToken"] = page_token

        data = await asyncio.to_thread(
            self._get,
            f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages",
            access_token,
            params,
            "list_messages",
        )

        entries = [ProviderEntry(ref=msg["id"]) for msg in data.get("messages", []) if msg.get("id")]
        logger.info(
            "Gmail messages listed",
            count=len(entries),
            has_more=bool(data.get("nextPageToken")),
            query=params["q"],
        )
        return ProviderPage(entries=entries, next_page_token=data.get("nextPageToken"))

    async def fetch_item(self, access_token: str, ref: str) -> ProviderItem:
        data = await asyncio.to_thread(
            self._get,
            f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/{ref}",
            access_token,
            {"format": "full"},
            "get_message",
        )

        message = GmailMessage(data)
        received = message.get_received_datetime()
        data["_fetched_at"] = datetime.now(UTC).isoformat()
        return ProviderItem(
            source_id=message.id or ref,
            payload=data,
            occurred_at=received,
            cursor_value=received,
        )


google_gmail_service = GoogleGmailService()
