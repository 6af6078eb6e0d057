"""Cryptographic utilities for secure data storage.
Provides encryption/decryption for vault passwords.
"""

import base64
import binascii
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from family_hub.config import settings
from family_hub.managers.logging_manager import get_logger

logger = get_logger(prefix="[Crypto Utils]")


def _get_encryption_key() -> bytes:
    """Use the FERNET_KEY from settings for Fernet encryption.
    If the key is not already a 32-byte urlsafe base64 key, derive one from it.
    """
    key_raw = (
        settings.FERNET_KEY.get_secret_value()
        if hasattr(settings.FERNET_KEY, "get_secret_value")
        else settings.FERNET_KEY
    )
    key_material = key_raw.encode("utf-8")
    try:
        if len(base64.urlsafe_b64decode(key_material)) == 32:
            return key_material
    except (binascii.Error, ValueError) as decode_error:
        logger.debug("Key not pre-encoded, will hash and encode: %s", decode_error)
    return base64.urlsafe_b64encode(hashlib.sha256(key_material).digest())


def encrypt_secret(secret: str) -> str:
    """
    Encrypt a secret for database storage.

    Args:
        secret: The plaintext value

    Returns:
        Fernet token as a string
    """
    if not isinstance(secret, str) or not secret:
        raise ValueError("Secret must be a non-empty string")
    return Fernet(_get_encryption_key()).encrypt(secret.encode("utf-8")).decode("utf-8")


def decrypt_secret(encrypted_secret: str) -> str:
    """
    Decrypt a value produced by ``encrypt_secret``.

    Raises:
        RuntimeError: the token is malformed or was encrypted under another key
    """
    if not isinstance(encrypted_secret, str) or not encrypted_secret:
        raise ValueError("Encrypted secret must be a non-empty string")
    try:
        return Fernet(_get_encryption_key()).decrypt(encrypted_secret.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        logger.error("Failed to decrypt stored secret: invalid token or key mismatch")
        raise RuntimeError("Decryption failed") from e
