"""Key material for secret conversations."""

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import settings

# EXPLANATION:
# Secret conversations get a random 256-bit AES key. The engine never uses the key
# itself, clients do; we only keep it at rest, wrapped with AES-GCM under a key
# derived (PBKDF2) from CONVERSATION_KEY_SECRET with a per-conversation salt.
# Key exchange between devices is the client's job.


def generate_conversation_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def _wrapping_key(salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha256",
        settings.CONVERSATION_KEY_SECRET.encode(),
        salt,
        settings.PBKDF2_ITERATIONS,
    )


def wrap_conversation_key(raw_key: bytes) -> tuple[str, str]:
    salt = os.urandom(settings.PBKDF2_SALT_SIZE)
    cipher = AESGCM(_wrapping_key(salt))
    nonce = os.urandom(12)
    ciphertext = cipher.encrypt(nonce, raw_key, None)
    return (
        base64.b64encode(nonce + ciphertext).decode(),
        base64.b64encode(salt).decode(),
    )


def unwrap_conversation_key(wrapped_b64: str, salt_b64: str) -> bytes:
    wrapped = base64.b64decode(wrapped_b64)
    salt = base64.b64decode(salt_b64)
    cipher = AESGCM(_wrapping_key(salt))
    try:
        return cipher.decrypt(wrapped[:12], wrapped[12:], None)
    except InvalidTag:
        raise ValueError("Invalid key secret or corrupted key data")


def key_fingerprint(raw_key: bytes) -> str:
    """Short fingerprint clients can compare to verify they share a key."""
    return hashlib.sha256(raw_key).hexdigest()[:16]
