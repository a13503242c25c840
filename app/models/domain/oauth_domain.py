# models/domain/oauth_domain.py
"""
OAuth Token Domain Model (decrypted view of an oauth_tokens row).
"""

from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel


class OAuthToken(BaseModel):
    """Decrypted OAuth tokens for one user."""

    user_id: str
    provider: Literal["google"] = "google"
    access_token: str
    refresh_token: str | None = None
    scope: str | None = None
    expires_at: datetime | None = None
    updated_at: datetime | None = None

    def needs_refresh(self, buffer_minutes: int = 5) -> bool:
        """True when the access token expires within the buffer."""
        if not self.expires_at:
            return False
        return datetime.now(UTC) + timedelta(minutes=buffer_minutes) >= self.expires_at
