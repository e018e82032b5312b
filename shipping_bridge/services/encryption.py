"""
Encryption helpers for carrier credentials

Stallion API keys persisted in carrier_settings are encrypted with Fernet
(AES-128-CBC + HMAC) using a key derived from SECRET_KEY.
Keys are masked to their last four characters wherever they are logged.
"""
import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shipping_bridge.core.config import settings

logger = logging.getLogger(__name__)

_ENCRYPTION_SALT = b"shipping_bridge_carrier_credentials_v1"

# Cached Fernet instance
_fernet: Optional[Fernet] = None


def _get_fernet() -> Fernet:
    """Get or create Fernet instance with derived key."""
    global _fernet

    if _fernet is None:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_ENCRYPTION_SALT,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(settings.SECRET_KEY.encode()))
        _fernet = Fernet(key)

    return _fernet


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a credential for storage. Empty input stays empty."""
    if not plaintext:
        return ""

    try:
        return _get_fernet().encrypt(plaintext.encode()).decode()
    except Exception as e:
        logger.error(f"Encryption failed: {e}")
        raise ValueError("Failed to encrypt credential")


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a stored credential. Empty input stays empty."""
    if not ciphertext:
        return ""

    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
        raise ValueError("Failed to decrypt credential - invalid token")


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Mask a credential for logs and debug output: *****abcd."""
    if not value:
        return None
    return f"*****{str(value)[-4:]}"
