"""
Tests for Solana keypair parsing, generation and export.
"""

import json

import base58
import pytest
from solders.keypair import Keypair

from app.exceptions import InvalidPrivateKeyError
from app.services.encryption import decrypt_private_key
from app.services.wallets import (
    export_private_key,
    export_secret_key,
    generate_deposit_wallet,
    parse_private_key,
)


@pytest.fixture
def keypair() -> Keypair:
    return Keypair.from_seed(bytes(range(32)))


class TestParsePrivateKey:
    """Tests for the accepted private key formats."""

    def test_base58_secret_key(self, keypair):
        text = base58.b58encode(bytes(keypair)).decode()
        assert parse_private_key(text).pubkey() == keypair.pubkey()

    def test_base58_seed(self, keypair):
        text = base58.b58encode(bytes(range(32))).decode()
        assert parse_private_key(text).pubkey() == keypair.pubkey()

    def test_json_array_string(self, keypair):
        text = json.dumps(list(bytes(keypair)))
        assert parse_private_key(text).pubkey() == keypair.pubkey()

    def test_list_of_ints(self, keypair):
        assert parse_private_key(list(bytes(keypair))).pubkey() == keypair.pubkey()

    def test_surrounding_whitespace_is_ignored(self, keypair):
        text = "  " + base58.b58encode(bytes(keypair)).decode() + "\n"
        assert parse_private_key(text).pubkey() == keypair.pubkey()

    def test_empty_key_rejected(self):
        with pytest.raises(InvalidPrivateKeyError, match="empty"):
            parse_private_key("   ")

    def test_garbage_rejected(self):
        with pytest.raises(InvalidPrivateKeyError):
            parse_private_key("definitely not a key 0OIl")

    def test_short_json_array_rejected(self):
        with pytest.raises(InvalidPrivateKeyError):
            parse_private_key(json.dumps([1, 2, 3]))

    def test_wrong_length_base58_rejected(self):
        with pytest.raises(InvalidPrivateKeyError):
            parse_private_key(base58.b58encode(b"\x01" * 10).decode())


class TestGenerateAndExport:
    def test_generated_wallet_round_trips(self):
        wallet = generate_deposit_wallet()
        secret = decrypt_private_key(wallet.encrypted_secret_key)
        assert len(secret) == 64
        assert str(Keypair.from_bytes(secret).pubkey()) == wallet.public_key

    def test_export_secret_key_forms(self, keypair):
        exported = export_secret_key(bytes(keypair))
        assert exported.array == list(bytes(keypair))
        assert base58.b58decode(exported.base58) == bytes(keypair)

    def test_export_private_key_decrypts(self):
        wallet = generate_deposit_wallet()
        exported = export_private_key(wallet.encrypted_secret_key)
        assert len(exported.array) == 64
