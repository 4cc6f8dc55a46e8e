"""
Wallet Keys - Solana keypair generation, import parsing, and export.
"""

import json

import base58
from solders.keypair import Keypair

from app.exceptions import InvalidPrivateKeyError
from app.models.api import PrivateKeyExport
from app.models.domain import GeneratedWallet
from app.services.encryption import decrypt_private_key, encrypt_private_key

SECRET_KEY_LENGTH = 64
SEED_LENGTH = 32


def encrypt_keypair(keypair: Keypair) -> GeneratedWallet:
    """Pair the public key with the encrypted 64-byte secret key."""
    return GeneratedWallet(
        public_key=str(keypair.pubkey()),
        encrypted_secret_key=encrypt_private_key(bytes(keypair)),
    )


def generate_deposit_wallet() -> GeneratedWallet:
    return encrypt_keypair(Keypair())


def _from_json_array(text: str) -> Keypair | None:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if not isinstance(parsed, list) or len(parsed) != SECRET_KEY_LENGTH:
        return None
    try:
        return Keypair.from_bytes(bytes(parsed))
    except (ValueError, TypeError):
        return None


def parse_private_key(private_key: str | list[int]) -> Keypair:
    """
    Parse a user-supplied Solana private key.

    Accepts a base58 64-byte secret key, a base58 32-byte seed, or a JSON
    array of 64 byte values (the Solana CLI keypair file format).

    Raises:
        InvalidPrivateKeyError: If no format matches
    """
    if isinstance(private_key, list):
        private_key = json.dumps(private_key)

    text = private_key.strip()
    if not text:
        raise InvalidPrivateKeyError("empty key")

    if not text.startswith("["):
        try:
            raw = base58.b58decode(text)
        except ValueError:
            raw = b""
        try:
            if len(raw) == SECRET_KEY_LENGTH:
                return Keypair.from_bytes(raw)
            if len(raw) == SEED_LENGTH:
                return Keypair.from_seed(raw)
        except ValueError as exc:
            raise InvalidPrivateKeyError(str(exc)) from exc

    keypair = _from_json_array(text)
    if keypair is None:
        raise InvalidPrivateKeyError("expected base58 or a JSON array of 64 bytes")
    return keypair


def export_secret_key(secret_key: bytes) -> PrivateKeyExport:
    return PrivateKeyExport(
        base58=base58.b58encode(secret_key).decode("ascii"),
        array=list(secret_key),
    )


def export_private_key(encrypted: str) -> PrivateKeyExport:
    """Decrypt a stored key into base58 and byte-array forms."""
    return export_secret_key(decrypt_private_key(encrypted))
