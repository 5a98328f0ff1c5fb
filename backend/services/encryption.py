"""
RatePro - Secret encryption at rest (AES-256-GCM)

Platform key: CONFIG_ENCRYPTION_KEY, 64 hex chars (32 bytes).
Stored form: {"iv": hex, "authTag": hex, "ciphertext": hex}
"""

import os
import logging
from typing import Dict
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from services.errors import ConfigMissing

logger = logging.getLogger("encryption")

IV_LENGTH = 16
TAG_LENGTH = 16


class DecryptionError(Exception):
    """Raised when a stored secret cannot be authenticated/decrypted"""
    pass


def _get_key() -> bytes:
    raw = os.environ.get("CONFIG_ENCRYPTION_KEY", "")
    if len(raw) != 64:
        raise ConfigMissing("CONFIG_ENCRYPTION_KEY must be set to 64 hex characters (32 bytes)")
    try:
        return bytes.fromhex(raw)
    except ValueError:
        raise ConfigMissing("CONFIG_ENCRYPTION_KEY is not valid hex")


def encrypt(plaintext: str) -> Dict[str, str]:
    """Encrypt a string with the platform key."""
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_get_key()).encrypt(iv, plaintext.encode("utf-8"), None)
    return {
        "iv": iv.hex(),
        "authTag": sealed[-TAG_LENGTH:].hex(),
        "ciphertext": sealed[:-TAG_LENGTH].hex(),
    }


def decrypt(payload: Dict[str, str]) -> str:
    """Decrypt a payload produced by encrypt(). Raises DecryptionError on tamper."""
    try:
        iv = bytes.fromhex(payload["iv"])
        sealed = bytes.fromhex(payload["ciphertext"]) + bytes.fromhex(payload["authTag"])
    except (KeyError, TypeError, ValueError) as e:
        raise DecryptionError(f"Malformed encrypted payload: {e}")
    try:
        return AESGCM(_get_key()).decrypt(iv, sealed, None).decode("utf-8")
    except InvalidTag:
        logger.error("[CONFIG] Encrypted value failed authentication")
        raise DecryptionError("Encrypted value failed authentication")
