"""AES-256-GCM encryption for stored OAuth tokens.

The key is a base64-encoded 32-byte value from TOKEN_ENCRYPTION_KEY. Each
token gets a unique 12-byte nonce prepended to the ciphertext, and the whole
blob is stored as base64 text so it fits a plain string column.
"""

from __future__ import annotations

import base64
import binascii
import secrets

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.tracker.config import get_settings

NONCE_SIZE = 12
TAG_SIZE = 16


class TokenEncryptionError(Exception):
    """Raised when the encryption key is missing/invalid or a token cannot be decrypted."""


def load_key(encoded: str | None = None) -> bytes:
    """Decode the AES key from settings (or the given base64 string)."""
    if encoded is None:
        encoded = get_settings().TOKEN_ENCRYPTION_KEY
    if not encoded:
        raise TokenEncryptionError("TOKEN_ENCRYPTION_KEY is not configured")
    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise TokenEncryptionError("TOKEN_ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != 32:
        raise TokenEncryptionError(f"TOKEN_ENCRYPTION_KEY must decode to 32 bytes, got {len(key)}")
    return key


def generate_key() -> str:
    """Return a fresh base64-encoded key suitable for TOKEN_ENCRYPTION_KEY."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def encrypt_token(plaintext: str, key: bytes | None = None) -> str:
    """Encrypt a token. Returns base64(nonce + ciphertext + tag)."""
    key = key if key is not None else load_key()
    nonce = secrets.token_bytes(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_token(encoded: str, key: bytes | None = None) -> str:
    """Decrypt a value produced by encrypt_token()."""
    key = key if key is not None else load_key()
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise TokenEncryptionError("Encrypted token is not valid base64") from exc
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise TokenEncryptionError("Encrypted token too short")
    nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except Exception as exc:
        raise TokenEncryptionError("Encrypted token could not be decrypted") from exc
    return plaintext.decode("utf-8")
