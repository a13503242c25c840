"""
Credential vault for provider API access.

Reads Fernet-encrypted Google tokens from oauth_tokens, refreshes them
shortly before expiry and hands the sync stage a usable access token.
"""

import asyncio

from app.db.helpers import DatabaseError, execute_query, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import OAuthToken
from app.services.google_oauth_service import GoogleOAuthError, TokenResponse, refresh_google_token
from app.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
)

logger = get_logger(__name__)

TOKEN_REFRESH_BUFFER_MINUTES = 5
REFRESH_TIMEOUT_SECONDS = 30

# Every supported provider is backed by the same Google grant
OAUTH_PROVIDER_FOR = {
    "gmail": "google",
    "google_calendar": "google",
}


class CredentialError(Exception):
    """Raised when no usable credential can be produced for a provider."""

    def __init__(
        self,
        message: str,
        user_id: str | None = None,
        provider: str | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.user_id = user_id
        self.provider = provider
        self.recoverable = recoverable


class TokenService:
    """Token retrieval, decryption and on-demand refresh."""

    async def get_tokens(self, user_id: str, provider: str = "google") -> OAuthToken | None:
        """
        Retrieve and decrypt OAuth tokens for user.

        Raises:
            CredentialError: stored tokens cannot be decrypted (not recoverable)
        """
        query = """
            SELECT access_token, refresh_token, scope, expires_at, updated_at
            FROM oauth_tokens
            WHERE user_id = %s AND provider = %s
        """
        row = await fetch_one(query, (user_id, provider))
        if not row:
            return None

        try:
            access_token = decrypt_token(row["access_token"])
            refresh_token = decrypt_token(row["refresh_token"]) if row.get("refresh_token") else None
        except EncryptionError as e:
            logger.error("Token decryption failed", user_id=user_id, provider=provider, error=str(e))
            raise CredentialError(
                f"Stored credentials are unreadable: {e}",
                user_id=user_id,
                provider=provider,
                recoverable=False,
            ) from e

        return OAuthToken(
            user_id=user_id,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            scope=row.get("scope"),
            expires_at=row.get("expires_at"),
            updated_at=row.get("updated_at"),
        )

    async def store_refreshed_tokens(
        self, user_id: str, token_response: TokenResponse, provider: str = "google"
    ) -> None:
        query = """
            UPDATE oauth_tokens
            SET access_token = %s,
                refresh_token = %s,
                expires_at = %s,
                scope = COALESCE(NULLIF(%s, ''), scope),
                refresh_failure_count = 0,
                updated_at = NOW()
            WHERE user_id = %s AND provider = %s
        """
        await execute_query(
            query,
            (
                encrypt_token(token_response.access_token),
                encrypt_token(token_response.refresh_token) if token_response.refresh_token else None,
                token_response.expires_at,
                token_response.scope,
                user_id,
                provider,
            ),
        )

    async def _record_refresh_failure(self, user_id: str, provider: str) -> None:
        query = """
            UPDATE oauth_tokens
            SET refresh_failure_count = refresh_failure_count + 1,
                updated_at = NOW()
            WHERE user_id = %s AND provider = %s
        """
        try:
            await execute_query(query, (user_id, provider))
        except DatabaseError as e:
            logger.warning("Could not record refresh failure", user_id=user_id, error=str(e))

    async def _refresh(self, token: OAuthToken) -> OAuthToken:
        if not token.refresh_token:
            raise CredentialError(
                "No refresh token available - re-authentication required",
                user_id=token.user_id,
                provider=token.provider,
                recoverable=False,
            )

        try:
            response = await asyncio.wait_for(
                refresh_google_token(token.refresh_token), timeout=REFRESH_TIMEOUT_SECONDS
            )
        except GoogleOAuthError as e:
            await self._record_refresh_failure(token.user_id, token.provider)
            raise CredentialError(
                f"Token refresh failed: {e}",
                user_id=token.user_id,
                provider=token.provider,
                recoverable=e.recoverable,
            ) from e
        except TimeoutError as e:
            raise CredentialError(
                "Token refresh timed out", user_id=token.user_id, provider=token.provider
            ) from e

        await self.store_refreshed_tokens(token.user_id, response, token.provider)
        logger.info(
            "Token refresh successful",
            user_id=token.user_id,
            provider=token.provider,
            new_expires_at=response.expires_at.isoformat() if response.expires_at else None,
        )

        return token.model_copy(
            update={
                "access_token": response.access_token,
                "refresh_token": response.refresh_token,
                "expires_at": response.expires_at,
            }
        )

    async def get_valid_credential(self, user_id: str, provider: str) -> str:
        """
        Return an access token good for at least the refresh buffer.

        Raises:
            CredentialError: recoverable for transient refresh failures,
                not recoverable when the user has to reconnect
        """
        oauth_provider = OAUTH_PROVIDER_FOR.get(provider)
        if not oauth_provider:
            raise CredentialError(
                f"No credential mapping for provider '{provider}'",
                user_id=user_id,
                provider=provider,
                recoverable=False,
            )

        token = await self.get_tokens(user_id, oauth_provider)
        if not token:
            raise CredentialError(
                "No stored credentials - provider not connected",
                user_id=user_id,
                provider=provider,
                recoverable=False,
            )

        if token.needs_refresh(buffer_minutes=TOKEN_REFRESH_BUFFER_MINUTES):
            token = await self._refresh(token)

        return token.access_token


token_service = TokenService()


async def get_valid_credential(user_id: str, provider: str) -> str:
    """Convenience wrapper used by the sync stage."""
    return await token_service.get_valid_credential(user_id, provider)
