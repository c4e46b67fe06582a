"""Encryption of OAuth tokens at rest."""

import os
import secrets
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class TokenCipher:
    """AES-256-GCM cipher for provider tokens stored in the database."""

    def __init__(self, key: bytes):
        if len(key) < 32:
            raise ValueError("Encryption key must be at least 32 bytes")
        self._aesgcm = AESGCM(key[:32])

    def encrypt(self, plaintext: Union[str, bytes]) -> bytes:
        """
        Encrypt a token.

        Returns:
            nonce + ciphertext
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def decrypt(self, encrypted_data: bytes) -> str:
        """Decrypt a value produced by encrypt()."""
        if len(encrypted_data) < NONCE_SIZE:
            raise ValueError("Invalid encrypted data: too short")

        nonce = encrypted_data[:NONCE_SIZE]
        plaintext = self._aesgcm.decrypt(nonce, encrypted_data[NONCE_SIZE:], None)
        return plaintext.decode("utf-8")


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(32)


_token_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    """Get the global cipher, loading the key file on first use."""
    global _token_cipher
    if _token_cipher is None:
        from calsync.config import get_encryption_key
        _token_cipher = TokenCipher(get_encryption_key())
    return _token_cipher


def init_token_cipher(key: bytes) -> TokenCipher:
    """Initialize the global cipher with a specific key."""
    global _token_cipher
    _token_cipher = TokenCipher(key)
    return _token_cipher


def encrypt_token(value: str) -> bytes:
    return get_token_cipher().encrypt(value)


def decrypt_token(encrypted: bytes) -> str:
    return get_token_cipher().decrypt(encrypted)
