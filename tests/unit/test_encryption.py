"""
Test encryption service functionality.
"""

import pytest
from cryptography.fernet import Fernet

from app.services.infrastructure import encryption_service
from app.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
    generate_encryption_key,
)


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", Fernet.generate_key().decode())


def test_basic_encryption_decryption():
    """Encrypted tokens are stored as text and decrypt back to the original."""
    test_token = "ya29.fake_oauth_token_12345"

    encrypted = encrypt_token(test_token)

    assert isinstance(encrypted, str)
    assert encrypted != test_token
    assert decrypt_token(encrypted) == test_token
    assert decrypt_token(encrypted.encode("ascii")) == test_token


def test_corrupted_token_is_rejected():
    with pytest.raises(EncryptionError):
        decrypt_token("not-a-fernet-token")


def test_missing_key_is_reported(monkeypatch):
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", None)
    with pytest.raises(EncryptionError, match="not configured"):
        encrypt_token("token")


def test_empty_token_is_rejected():
    with pytest.raises(EncryptionError):
        encrypt_token("")


def test_generated_key_is_usable():
    Fernet(generate_encryption_key().encode())
