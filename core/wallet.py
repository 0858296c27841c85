"""
core/wallet.py — Wallet Signer Capability
===========================================
The core never talks to a browser wallet directly. Everything that needs a
wallet signature receives a WalletSigner and asks it to sign a message.

The signature over the encryption challenge doubles as key material for
core/crypto.py, so signers MUST be deterministic: the same wallet signing the
same message twice must return the same bytes.

Implementations shipped here:
    Ed25519WalletSigner  → local key (services, tests, CLI tooling)
    PresentedSignature   → a signature the client already produced and sent in
"""

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from core.crypto import canonical_json
from core.errors import ValidationError

# bech32: human-readable prefix, separator "1", then the data charset (no 1, b, i, o)
ADDRESS_PATTERN = re.compile(r"^[a-z]{1,20}1[02-9ac-hj-np-z]{20,90}$")
ENCRYPTION_PURPOSE = "encryption"


class WalletSigner(Protocol):
    async def sign_arbitrary(self, chain_id: str, address: str, message: str) -> bytes:
        ...


@dataclass(frozen=True)
class WalletIdentity:
    address: str
    wallet_type: str
    public_key: Optional[str] = None


def validate_wallet(
    address: str,
    wallet_type: str,
    supported_types: Iterable[str],
    public_key: Optional[str] = None,
) -> WalletIdentity:
    """Checks address shape and wallet type. Does no I/O."""
    if not address or not ADDRESS_PATTERN.match(address):
        raise ValidationError(f"Malformed wallet address: {address!r}")
    supported = list(supported_types)
    if wallet_type not in supported:
        raise ValidationError(f"Unsupported wallet type {wallet_type!r}; expected one of {supported}")
    return WalletIdentity(address=address, wallet_type=wallet_type, public_key=public_key)


def encryption_challenge(wallet_type: str, address: str, purpose: str = ENCRYPTION_PURPOSE) -> str:
    """
    The exact message a wallet signs to unlock its records.
    Includes the wallet type, so a Keplr and a Leap signature for the same
    address derive different keys.
    """
    return f"PersonaPass {purpose} key derivation\nWallet: {wallet_type}\nAddress: {address}"


def sign_doc(chain_id: str, address: str, message: str) -> bytes:
    """ADR-36 style arbitrary-data sign document."""
    return canonical_json({
        "account_number": "0",
        "chain_id": chain_id,
        "fee": {"amount": [], "gas": "0"},
        "memo": "",
        "msgs": [{
            "type": "sign/MsgSignData",
            "value": {
                "data": base64.b64encode(message.encode("utf-8")).decode("ascii"),
                "signer": address,
            },
        }],
        "sequence": "0",
    }).encode("utf-8")


class Ed25519WalletSigner:
    """Holds a local Ed25519 key. Ed25519 signatures are deterministic."""

    def __init__(self, private_key: Ed25519PrivateKey = None):
        self._key = private_key or Ed25519PrivateKey.generate()

    @classmethod
    def from_seed(cls, seed: bytes) -> "Ed25519WalletSigner":
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @property
    def public_key(self) -> str:
        raw = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return base64.b64encode(raw).decode("ascii")

    async def sign_arbitrary(self, chain_id: str, address: str, message: str) -> bytes:
        return self._key.sign(sign_doc(chain_id, address, message))


class PresentedSignature:
    """
    Signer for API calls: the client signed the challenge with its own wallet
    and sent the base64 signature along with the request.
    """

    def __init__(self, address: str, signature_b64: str):
        self.address = address
        self._signature_b64 = signature_b64

    async def sign_arbitrary(self, chain_id: str, address: str, message: str) -> bytes:
        if address != self.address:
            raise ValidationError("Signature was presented for a different wallet")
        try:
            signature = base64.b64decode(self._signature_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("Wallet signature is not valid base64") from exc
        if not signature:
            raise ValidationError("Wallet signature is empty")
        return signature
