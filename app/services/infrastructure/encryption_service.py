"""
Encryption service for stored OAuth tokens.
Uses Fernet symmetric encryption; tokens are stored as Fernet text.
"""

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from settings.

    Raises:
        EncryptionError: If encryption key is missing or malformed
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except (TypeError, ValueError) as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> str:
    """Encrypt a token string for database storage."""
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    return _get_fernet().encrypt(token.encode("utf-8")).decode("ascii")


def decrypt_token(encrypted_token: str | bytes) -> str:
    """
    Decrypt a token from database storage.

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = bytes(encrypted_token)
    if isinstance(encrypted_token, str):
        encrypted_token = encrypted_token.encode("ascii")
    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty")

    try:
        return _get_fernet().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e


def generate_encryption_key() -> str:
    """Generate a new Fernet key (for provisioning ENCRYPTION_KEY)."""
    return Fernet.generate_key().decode("ascii")
