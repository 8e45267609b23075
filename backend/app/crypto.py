"""
Encryption at rest for Facebook access tokens.

Fernet symmetric encryption keyed by ENCRYPTION_KEY. Without a key
(development only) tokens pass through unchanged.
"""

import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from app.config import get_settings

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_warned_plaintext = False


def _get_fernet() -> Optional[Fernet]:
    global _fernet, _warned_plaintext
    if _fernet is not None:
        return _fernet

    settings = get_settings()
    if not settings.encryption_key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _warned_plaintext:
            logger.warning("ENCRYPTION_KEY not set — Facebook access tokens are stored in plaintext (dev only).")
            _warned_plaintext = True
        return None

    try:
        _fernet = Fernet(settings.encryption_key.encode())
    except (ValueError, TypeError) as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc
    return _fernet


def encrypt_token(token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    f = _get_fernet()
    if f is None:
        return token
    return f.encrypt(token.encode()).decode()


def decrypt_token(stored: Optional[str]) -> Optional[str]:
    if stored is None:
        return None
    f = _get_fernet()
    if f is None:
        return stored
    try:
        return f.decrypt(stored.encode()).decode()
    except InvalidToken:
        # Row written before encryption was enabled
        logger.warning("Stored access token is not Fernet ciphertext; using it as-is.")
        return stored
