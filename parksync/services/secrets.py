"""AES-256-GCM encryption for ERP connection passwords at rest."""

import base64
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from parksync.config import settings

_NONCE_BYTES = 12


class SecretError(Exception):
    """Secret cannot be encrypted or decrypted with the configured key."""


def generate_encryption_key() -> str:
    """Return a new base64 encoded 256-bit key for ``ENCRYPTION_KEY``."""
    return base64.b64encode(secrets.token_bytes(32)).decode("utf-8")


def _load_key(key: str | None = None) -> bytes:
    raw = key if key is not None else settings.encryption_key
    if not raw:
        raise SecretError("ENCRYPTION_KEY is not configured")
    try:
        decoded = base64.b64decode(raw, validate=True)
    except ValueError as exc:
        raise SecretError("ENCRYPTION_KEY is not valid base64") from exc
    if len(decoded) != 32:
        raise SecretError("ENCRYPTION_KEY must decode to 32 bytes")
    return decoded


def encrypt_secret(plaintext: str, key: str | None = None) -> str:
    nonce = secrets.token_bytes(_NONCE_BYTES)
    ciphertext = AESGCM(_load_key(key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("utf-8")


def decrypt_secret(token: str, key: str | None = None) -> str:
    try:
        blob = base64.b64decode(token, validate=True)
    except ValueError as exc:
        raise SecretError("Encrypted value is not valid base64") from exc
    if len(blob) <= _NONCE_BYTES:
        raise SecretError("Encrypted value is too short")
    nonce, ciphertext = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
    try:
        return AESGCM(_load_key(key)).decrypt(nonce, ciphertext, None).decode("utf-8")
    except InvalidTag as exc:
        raise SecretError("Encrypted value failed authentication") from exc
