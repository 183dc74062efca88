"""Tests for AES-GCM token encryption."""

from __future__ import annotations

import base64

import pytest

from src.tracker.core.crypto import (
    TokenEncryptionError,
    decrypt_token,
    encrypt_token,
    generate_key,
    load_key,
)


@pytest.fixture
def key() -> bytes:
    return load_key(generate_key())


class TestTokenEncryption:
    def test_round_trip(self, key):
        encrypted = encrypt_token("00Dxx0000001gPL!AR8AQJXg", key)
        assert encrypted != "00Dxx0000001gPL!AR8AQJXg"
        assert decrypt_token(encrypted, key) == "00Dxx0000001gPL!AR8AQJXg"

    def test_each_encryption_uses_a_fresh_nonce(self, key):
        assert encrypt_token("token", key) != encrypt_token("token", key)

    def test_wrong_key_cannot_decrypt(self, key):
        encrypted = encrypt_token("token", key)
        with pytest.raises(TokenEncryptionError):
            decrypt_token(encrypted, load_key(generate_key()))

    def test_tampered_ciphertext_is_rejected(self, key):
        raw = bytearray(base64.b64decode(encrypt_token("token", key)))
        raw[-1] ^= 0x01
        with pytest.raises(TokenEncryptionError):
            decrypt_token(base64.b64encode(bytes(raw)).decode(), key)

    def test_garbage_is_rejected(self, key):
        with pytest.raises(TokenEncryptionError):
            decrypt_token("not base64!", key)
        with pytest.raises(TokenEncryptionError):
            decrypt_token(base64.b64encode(b"short").decode(), key)


class TestKeyLoading:
    def test_missing_key(self):
        with pytest.raises(TokenEncryptionError, match="not configured"):
            load_key("")

    def test_wrong_length_key(self):
        with pytest.raises(TokenEncryptionError, match="32 bytes"):
            load_key(base64.b64encode(b"x" * 16).decode())

    def test_invalid_base64_key(self):
        with pytest.raises(TokenEncryptionError):
            load_key("%%%")
