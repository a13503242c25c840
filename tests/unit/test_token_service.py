from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.models.domain.oauth_domain import OAuthToken
from app.services import token_service as token_module
from app.services.google_oauth_service import GoogleOAuthError, TokenResponse
from app.services.token_service import CredentialError, TokenService


def _token(expires_in_minutes: int, refresh_token: str | None = "refresh-1") -> OAuthToken:
    return OAuthToken(
        user_id="user-123",
        access_token="access-old",
        refresh_token=refresh_token,
        expires_at=datetime.now(UTC) + timedelta(minutes=expires_in_minutes),
    )


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(monkeypatch):
    service = TokenService()
    monkeypatch.setattr(service, "get_tokens", AsyncMock(return_value=_token(60)))
    refresh = AsyncMock()
    monkeypatch.setattr(token_module, "refresh_google_token", refresh)

    assert await service.get_valid_credential("user-123", "gmail") == "access-old"
    refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_stored(monkeypatch):
    service = TokenService()
    monkeypatch.setattr(service, "get_tokens", AsyncMock(return_value=_token(2)))
    monkeypatch.setattr(
        token_module,
        "refresh_google_token",
        AsyncMock(
            return_value=TokenResponse(
                {"access_token": "access-new", "refresh_token": "refresh-1", "expires_in": 3600}
            )
        ),
    )
    store = AsyncMock()
    monkeypatch.setattr(service, "store_refreshed_tokens", store)

    assert await service.get_valid_credential("user-123", "google_calendar") == "access-new"
    store.assert_awaited_once()


@pytest.mark.asyncio
async def test_missing_connection_is_not_recoverable(monkeypatch):
    service = TokenService()
    monkeypatch.setattr(service, "get_tokens", AsyncMock(return_value=None))

    with pytest.raises(CredentialError) as exc:
        await service.get_valid_credential("user-123", "gmail")
    assert exc.value.recoverable is False


@pytest.mark.asyncio
async def test_revoked_grant_is_not_recoverable(monkeypatch):
    service = TokenService()
    monkeypatch.setattr(service, "get_tokens", AsyncMock(return_value=_token(1)))
    monkeypatch.setattr(service, "_record_refresh_failure", AsyncMock())
    monkeypatch.setattr(
        token_module,
        "refresh_google_token",
        AsyncMock(side_effect=GoogleOAuthError("Token has been revoked", error_code="invalid_grant")),
    )

    with pytest.raises(CredentialError) as exc:
        await service.get_valid_credential("user-123", "gmail")
    assert exc.value.recoverable is False


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected():
    with pytest.raises(CredentialError):
        await TokenService().get_valid_credential("user-123", "outlook")
