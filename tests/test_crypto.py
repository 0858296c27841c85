"""Tests for key derivation, AES-GCM record encryption, content hashing and challenge tokens."""

import base64
import dataclasses
from datetime import timedelta

import pytest

from core.crypto import CryptoEngine, canonical_json, content_hash
from core.errors import DecryptionError, ExpiredError, IntegrityError, ValidationError
from core.schemas import utcnow

SIG_A = b"signature-from-wallet-a" * 3
SIG_B = b"signature-from-wallet-b" * 3

SAMPLES = [
    {"id": "did:persona:abc", "nested": {"b": 2, "a": [1, 2, 3]}},
    ["list", 1, 2.5, True, None],
    "plain string with unicode: ✓ é",
    42,
    {},
]


# =============================================================================
# KEY DERIVATION
# =============================================================================


class TestDeriveKey:
    def test_deterministic(self, crypto: CryptoEngine):
        salt = b"s" * 32
        assert crypto.derive_key(SIG_A, salt) == crypto.derive_key(SIG_A, salt)

    def test_256_bit_key(self, crypto: CryptoEngine):
        assert len(crypto.derive_key(SIG_A, b"s" * 32)) == 32

    def test_salt_and_signature_change_key(self, crypto: CryptoEngine):
        base = crypto.derive_key(SIG_A, b"s" * 32)
        assert crypto.derive_key(SIG_A, b"t" * 32) != base
        assert crypto.derive_key(SIG_B, b"s" * 32) != base

    def test_rejects_non_positive_iterations(self):
        with pytest.raises(ValueError):
            CryptoEngine(iterations=0)


# =============================================================================
# ENCRYPTION
# =============================================================================


class TestEncryption:
    @pytest.mark.parametrize("data", SAMPLES)
    def test_round_trip(self, crypto: CryptoEngine, data):
        assert crypto.decrypt(crypto.encrypt(data, SIG_A), SIG_A) == data

    @pytest.mark.parametrize("data", SAMPLES)
    def test_wrong_signature_fails_closed(self, crypto: CryptoEngine, data):
        record = crypto.encrypt(data, SIG_A)
        with pytest.raises(DecryptionError):
            crypto.decrypt(record, SIG_B)

    def test_fresh_salt_and_iv_per_call(self, crypto: CryptoEngine):
        first = crypto.encrypt({"a": 1}, SIG_A)
        second = crypto.encrypt({"a": 1}, SIG_A)
        assert first.salt != second.salt
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext
        assert first.content_hash == second.content_hash

    def test_record_parameters(self, crypto: CryptoEngine):
        record = crypto.encrypt({"a": 1}, SIG_A)
        assert len(base64.b64decode(record.iv)) == 12
        assert len(base64.b64decode(record.salt)) == 32
        assert record.params()["algorithm"] == "AES-256-GCM"
        assert record.params()["iterations"] == crypto.iterations

    def test_tampered_ciphertext_fails_closed(self, crypto: CryptoEngine):
        record = crypto.encrypt({"a": 1}, SIG_A)
        raw = bytearray(base64.b64decode(record.ciphertext))
        raw[0] ^= 0x01
        tampered = dataclasses.replace(record, ciphertext=base64.b64encode(bytes(raw)).decode())
        with pytest.raises(DecryptionError):
            crypto.decrypt(tampered, SIG_A)

    def test_malformed_params_fail_closed(self, crypto: CryptoEngine):
        record = dataclasses.replace(crypto.encrypt({"a": 1}, SIG_A), salt="not base64!")
        with pytest.raises(DecryptionError):
            crypto.decrypt(record, SIG_A)

    def test_hash_mismatch_is_integrity_error(self, crypto: CryptoEngine):
        record = dataclasses.replace(crypto.encrypt({"a": 1}, SIG_A), content_hash=content_hash({"a": 2}))
        with pytest.raises(IntegrityError):
            crypto.decrypt(record, SIG_A)

    def test_decrypts_with_record_iteration_count(self, crypto: CryptoEngine):
        record = CryptoEngine(iterations=500).encrypt({"a": 1}, SIG_A)
        assert crypto.decrypt(record, SIG_A) == {"a": 1}

    def test_empty_signature_rejected(self, crypto: CryptoEngine):
        with pytest.raises(ValidationError):
            crypto.encrypt({"a": 1}, b"")


# =============================================================================
# CONTENT HASH
# =============================================================================


class TestContentHash:
    def test_deterministic(self):
        data = {"b": 1, "a": {"y": [1, 2], "x": "z"}}
        assert content_hash(data) == content_hash(data)

    def test_key_order_independent(self):
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    @pytest.mark.parametrize("mutated", [
        {"firstName": "Jane", "lastName": "Doe", "verified": False},
        {"firstName": "Jane", "lastName": "Dow", "verified": True},
        {"firstName": "Jane", "verified": True},
        {"firstName": "Jane", "lastName": "Doe", "verified": True, "extra": None},
    ])
    def test_mutation_changes_hash(self, mutated):
        original = {"firstName": "Jane", "lastName": "Doe", "verified": True}
        assert content_hash(mutated) != content_hash(original)

    def test_canonical_form(self):
        assert canonical_json({"b": 1, "a": [1, "é"]}) == '{"a":[1,"é"],"b":1}'

    def test_verify_content_hash(self, crypto: CryptoEngine):
        digest = content_hash({"a": 1})
        assert crypto.verify_content_hash({"a": 1}, digest) is True
        assert crypto.verify_content_hash({"a": 2}, digest) is False

    def test_non_json_data_propagates(self):
        with pytest.raises(TypeError):
            content_hash({"when": utcnow()})


# =============================================================================
# CHALLENGE TOKENS
# =============================================================================


class TestChallengeTokens:
    def test_round_trip(self, crypto: CryptoEngine):
        token = crypto.create_challenge_token(
            "did:persona:verifier0001", "abc", utcnow() + timedelta(minutes=5), {"purpose": "kyc"}
        )
        claims = crypto.decode_challenge_token(token)
        assert claims["sub"] == "did:persona:verifier0001"
        assert claims["challenge"] == "abc"
        assert claims["purpose"] == "kyc"

    def test_expired_token(self, crypto: CryptoEngine):
        token = crypto.create_challenge_token("did:persona:verifier0001", "abc", utcnow() - timedelta(minutes=5))
        with pytest.raises(ExpiredError):
            crypto.decode_challenge_token(token)

    def test_foreign_token(self, crypto: CryptoEngine):
        other = CryptoEngine(iterations=1_000, challenge_secret="someone-else")
        token = other.create_challenge_token("did:persona:verifier0001", "abc", utcnow() + timedelta(minutes=5))
        with pytest.raises(ValidationError):
            crypto.decode_challenge_token(token)
