"""wabridge – Encryption for stored session credentials.

Provides symmetric encryption using Fernet with a key derived from
AUTH_SECRET.
"""

import base64
import hashlib

import structlog
from cryptography.fernet import Fernet, InvalidToken

from config.settings import get_settings

logger = structlog.get_logger()

# Prefix that marks encrypted values in the database
ENCRYPTION_PREFIX = "ENC:"

_fernet_instance = None


def _get_fernet() -> Fernet:
    """Initialize Fernet instance lazily using AUTH_SECRET."""
    global _fernet_instance
    if _fernet_instance is not None:
        return _fernet_instance

    secret = get_settings().auth_secret or "insecure-fallback-secret-for-dev-only"
    # SHA256 gives exactly 32 bytes, Fernet wants them base64 encoded
    key_bytes = hashlib.sha256(secret.encode()).digest()
    _fernet_instance = Fernet(base64.urlsafe_b64encode(key_bytes))
    return _fernet_instance


def encrypt_value(plain_text: str) -> str:
    """Encrypt a string and return it with the ENC: prefix."""
    if not plain_text or plain_text.startswith(ENCRYPTION_PREFIX):
        return plain_text
    token = _get_fernet().encrypt(plain_text.encode()).decode()
    return f"{ENCRYPTION_PREFIX}{token}"


def decrypt_value(encrypted_text: str) -> str:
    """Decrypt a string if it has the ENC: prefix.

    Raises ValueError when the token does not decrypt with the current key.
    """
    if not encrypted_text or not encrypted_text.startswith(ENCRYPTION_PREFIX):
        return encrypted_text
    token = encrypted_text[len(ENCRYPTION_PREFIX):]
    try:
        return _get_fernet().decrypt(token.encode()).decode()
    except InvalidToken as e:
        logger.error("crypto.decryption_failed")
        raise ValueError("Stored value cannot be decrypted with the current AUTH_SECRET") from e
