"""
core/crypto.py — Key Derivation & Encryption Engine
=====================================================
Central place for ALL encryption and hashing.
Every module goes through here; never roll your own crypto elsewhere.

Provides:
- PBKDF2-SHA256 key derivation from a wallet signature + salt
- AES-256-GCM authenticated encryption / decryption
- Canonical-JSON SHA-256 content hashes (what gets anchored on the ledger)
- Signed, expiring presentation-request challenge tokens (JWT)

The wallet signature IS the key material. It is never stored; the same wallet
signing the same challenge re-derives the same key.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from core.errors import DecryptionError, ExpiredError, IntegrityError, ValidationError
from core.schemas import utcnow

logger = logging.getLogger("personachain.crypto")

ALGORITHM = "AES-256-GCM"
KEY_DERIVATION = "PBKDF2-SHA256"
KEY_BYTES = 32
IV_BYTES = 12
SALT_BYTES = 32
DEFAULT_ITERATIONS = 100_000


def canonical_json(data: Any) -> str:
    """Stable serialization: sorted keys, no whitespace, UTF-8 kept as-is."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(data: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of `data`."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


@dataclass(frozen=True)
class EncryptedRecord:
    content_hash: str
    ciphertext: str
    iv: str
    salt: str
    algorithm: str = ALGORITHM
    key_derivation: str = KEY_DERIVATION
    iterations: int = DEFAULT_ITERATIONS

    def params(self) -> dict:
        """The `encryption_params` column as persisted."""
        return {
            "iv": self.iv,
            "salt": self.salt,
            "algorithm": self.algorithm,
            "key_derivation": self.key_derivation,
            "iterations": self.iterations,
        }

    @classmethod
    def from_stored(cls, content_hash: str, ciphertext: str, params: dict) -> "EncryptedRecord":
        return cls(
            content_hash=content_hash,
            ciphertext=ciphertext,
            iv=params.get("iv", ""),
            salt=params.get("salt", ""),
            algorithm=params.get("algorithm", ALGORITHM),
            key_derivation=params.get("key_derivation", KEY_DERIVATION),
            iterations=int(params.get("iterations", DEFAULT_ITERATIONS)),
        )


class CryptoEngine:
    """
    Built once at startup and handed to every service that needs it.
    Stateless apart from its configuration, so it is safe to share.
    """

    def __init__(
        self,
        iterations: int = DEFAULT_ITERATIONS,
        challenge_secret: str = "",
        jwt_algorithm: str = "HS256",
    ):
        if iterations < 1:
            raise ValueError("PBKDF2 iteration count must be positive")
        self.iterations = iterations
        self._challenge_secret = challenge_secret
        self._jwt_algorithm = jwt_algorithm

    def is_ready(self) -> str:
        return "ok" if self._challenge_secret else "no challenge secret configured"

    # ── Key derivation ─────────────────────────────────────────────────────
    def derive_key(self, signature: bytes, salt: bytes, iterations: Optional[int] = None) -> bytes:
        """
        PBKDF2-HMAC-SHA256 over the wallet signature.
        Deterministic: same signature + salt + iterations → same 256-bit key.
        """
        return hashlib.pbkdf2_hmac(
            hash_name="sha256",
            password=signature,
            salt=salt,
            iterations=iterations or self.iterations,
            dklen=KEY_BYTES,
        )

    # ── Encryption ─────────────────────────────────────────────────────────
    def encrypt(self, data: Any, signature: bytes) -> EncryptedRecord:
        """
        Encrypts any JSON-serializable value under a key derived from `signature`.
        A fresh salt and IV are drawn on every call.
        """
        if not signature:
            raise ValidationError("A wallet signature is required to encrypt")

        plaintext = canonical_json(data).encode("utf-8")
        salt = os.urandom(SALT_BYTES)
        iv = os.urandom(IV_BYTES)
        key = self.derive_key(signature, salt)
        ciphertext = AESGCM(key).encrypt(iv, plaintext, None)

        return EncryptedRecord(
            content_hash=content_hash(data),
            ciphertext=_b64(ciphertext),
            iv=_b64(iv),
            salt=_b64(salt),
            iterations=self.iterations,
        )

    def decrypt(self, record: EncryptedRecord, signature: bytes) -> Any:
        """
        Re-derives the key from `signature` and the record's salt, then opens it.

        Fails closed:
            wrong key / tampered ciphertext / malformed params → DecryptionError
            decrypts fine but content hash differs             → IntegrityError
        """
        if record.algorithm != ALGORITHM:
            raise DecryptionError(f"Unsupported algorithm: {record.algorithm}")
        try:
            salt = base64.b64decode(record.salt, validate=True)
            iv = base64.b64decode(record.iv, validate=True)
            ciphertext = base64.b64decode(record.ciphertext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Malformed encryption parameters") from exc

        key = self.derive_key(signature or b"", salt, record.iterations)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError("Authentication tag mismatch") from exc

        try:
            data = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecryptionError("Decrypted payload is not valid JSON") from exc

        if record.content_hash and not self.verify_content_hash(data, record.content_hash):
            logger.warning(f"Content hash mismatch for record {record.content_hash[:16]}...")
            raise IntegrityError("Decrypted content does not match its content hash")
        return data

    # ── Hashing ────────────────────────────────────────────────────────────
    def content_hash(self, data: Any) -> str:
        return content_hash(data)

    def verify_content_hash(self, data: Any, expected: str) -> bool:
        return hmac.compare_digest(content_hash(data), expected)

    # ── Challenge tokens ───────────────────────────────────────────────────
    def create_challenge_token(
        self,
        verifier_did: str,
        challenge: str,
        expires_at: datetime,
        extra_data: dict = None,
    ) -> str:
        """
        Signed token a verifier hands to a holder along with its challenge.
        Presenting it back at verification time proves the challenge was
        issued by this service and has not expired.
        """
        payload = {
            "sub": verifier_did,
            "challenge": challenge,
            "exp": expires_at,
            "iat": utcnow(),
        }
        if extra_data:
            payload.update(extra_data)
        return jwt.encode(payload, self._challenge_secret, algorithm=self._jwt_algorithm)

    def decode_challenge_token(self, token: str) -> dict:
        try:
            return jwt.decode(token, self._challenge_secret, algorithms=[self._jwt_algorithm])
        except ExpiredSignatureError as exc:
            raise ExpiredError("Presentation request has expired") from exc
        except JWTError as exc:
            raise ValidationError("Presentation request token is invalid") from exc
