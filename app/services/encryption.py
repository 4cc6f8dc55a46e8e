"""
Secret Key Encryption - AES-256-GCM for stored wallet keys.

Stored format is `iv:authTag:ciphertext`, each part base64. The plaintext
is the base64 of the raw secret key bytes.
"""

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import settings
from app.exceptions import EncryptionError

IV_LENGTH = 16
TAG_LENGTH = 16


def derive_key(secret: str) -> bytes:
    """32-byte key: hex-decoded when given 64 hex chars, else SHA-256 of the string."""
    if len(secret) == 64:
        try:
            return bytes.fromhex(secret)
        except ValueError:
            pass
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt(plaintext: str, secret: str | None = None) -> str:
    """Encrypt a UTF-8 string."""
    key = derive_key(secret if secret is not None else settings.ENCRYPTION_KEY)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(
        base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
    )


def decrypt(encrypted: str, secret: str | None = None) -> str:
    """Decrypt a value produced by encrypt()."""
    parts = encrypted.split(":")
    if len(parts) != 3:
        raise EncryptionError("Invalid encrypted data format")

    key = derive_key(secret if secret is not None else settings.ENCRYPTION_KEY)
    try:
        iv, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except (InvalidTag, binascii.Error, ValueError) as exc:
        raise EncryptionError("Failed to decrypt data") from exc
    return plaintext.decode("utf-8")


def encrypt_private_key(secret_key: bytes) -> str:
    return encrypt(base64.b64encode(secret_key).decode("ascii"))


def decrypt_private_key(encrypted: str) -> bytes:
    return base64.b64decode(decrypt(encrypted))
