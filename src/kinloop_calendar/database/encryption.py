"""Encryption of Google tokens at rest.

Access and refresh tokens are Fernet-encrypted before they reach the
`google_credentials` table. The key is derived from SECRET_KEY with PBKDF2
(SHA-256, 480,000 iterations) and the deployment's ENCRYPTION_SALT.

```python
from kinloop_calendar.database.encryption import encrypt_token, decrypt_token

stored = encrypt_token(tokens.refresh_token)
plain = decrypt_token(stored)
```
"""

from __future__ import annotations

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Built lazily from settings on first use
_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet

    if _fernet is None:
        from kinloop_calendar.config import get_settings

        settings = get_settings()
        _fernet = create_fernet(settings.secret_key, settings.encryption_salt)

    return _fernet


def create_fernet(secret_key: str, salt: str) -> Fernet:
    """Derive a Fernet cipher from the application secret and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=480_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))
    return Fernet(key)


def encrypt_token(plaintext: str) -> str:
    """Encrypt a token for storage. Empty input stays empty."""
    if not plaintext:
        return ""

    encrypted = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return encrypted.decode("utf-8")


def decrypt_token(ciphertext: str) -> str:
    """Decrypt a stored token.

    Raises:
        ValueError: If the ciphertext was produced with another key or is corrupt
    """
    if not ciphertext:
        return ""

    try:
        decrypted = _get_fernet().decrypt(ciphertext.encode("utf-8"))
    except InvalidToken as e:
        logger.error("Failed to decrypt stored Google token: invalid token or key")
        raise ValueError("Failed to decrypt token") from e
    return decrypted.decode("utf-8")


def reset_cipher() -> None:
    """Drop the cached cipher (settings changed, e.g. in tests)."""
    global _fernet
    _fernet = None
