"""Store credential encryption.

WHAT:
    Symmetric encryption for Shopify access tokens stored on the store record.

WHY:
    Keeps provider credentials out of plaintext storage and logs. The sync
    pipeline only ever sees decrypted tokens through the store lookup.
"""

import base64
import logging
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


@lru_cache()
def _get_cipher() -> Fernet:
    """Build the Fernet cipher from TOKEN_ENCRYPTION_KEY (validated once)."""
    key = os.getenv("TOKEN_ENCRYPTION_KEY", "")
    if not key:
        from shopsync.utils.env import load_env_file
        load_env_file()
        key = os.getenv("TOKEN_ENCRYPTION_KEY", "")

    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
            "or add it to .env."
        )

    try:
        base64.urlsafe_b64decode(key.encode("utf-8"))
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a store access token before persisting.

    Args:
        plaintext: Raw secret to encrypt.
        context:   Friendly label for logs (e.g. shop domain).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret")

    token = _get_cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[SECURITY] Encrypted secret for %s", context)
    return token


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored access token.

    Raises:
        ValueError: If the ciphertext was not produced with the current key.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret")

    try:
        return _get_cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[SECURITY] Failed to decrypt secret for %s", context)
        raise ValueError(f"Invalid encrypted secret for {context}") from exc
