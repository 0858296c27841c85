"""
core/identity.py — Decentralized Identity (DID) Helpers
=========================================================
Pure functions: DID generation, syntax validation, DID document construction.
No I/O happens here, so every check in this file runs before anything is
written anywhere.
Called by modules/did_resolver.py, modules/credentials.py and modules/proofs.py
"""

import re
from datetime import datetime
from typing import Iterable, Optional, Tuple

from core.errors import InvalidDIDError, ValidationError
from core.schemas import (
    DIDDocument, DIDDocumentUpdate, ServiceEndpoint, VerificationMethod, isoformat, later_than,
)
from core.wallet import WalletIdentity

DID_SYNTAX = re.compile(r"^did:([a-z0-9]+):([A-Za-z0-9._:%-]+)$")

# opaque-id pattern per DID method; methods not listed only get the generic syntax check
METHOD_PATTERNS = {
    "persona": re.compile(r"^[a-z0-9]+$"),
    "key": re.compile(r"^z[1-9A-HJ-NP-Za-km-z]+$"),
    "web": re.compile(r"^[a-zA-Z0-9.-]+(:[a-zA-Z0-9._%-]+)*$"),
}


def generate_did(wallet_address: str, method: str = "persona", length: int = 12) -> str:
    """
    did:<method>:<last `length` chars of the wallet address, lower-cased>
    Same wallet → same DID, before storage is ever consulted.
    """
    if not wallet_address or len(wallet_address) < length:
        raise ValidationError("Wallet address is too short to derive a DID")
    opaque_id = wallet_address[-length:].lower()
    did = f"did:{method}:{opaque_id}"
    validate_did(did, methods=[method])
    return did


def parse_did(did: str) -> Tuple[str, str]:
    match = DID_SYNTAX.match(did or "")
    if not match:
        raise InvalidDIDError(f"Not a DID: {did!r}")
    return match.group(1), match.group(2)


def validate_did(did: str, methods: Optional[Iterable[str]] = None) -> str:
    """Raises InvalidDIDError unless `did` is well formed (and, if given, of an allowed method)."""
    method, opaque_id = parse_did(did)
    if methods is not None and method not in methods:
        raise InvalidDIDError(f"Unsupported DID method: {method}")
    pattern = METHOD_PATTERNS.get(method)
    if pattern is not None and not pattern.match(opaque_id):
        raise InvalidDIDError(f"Malformed {method} identifier: {opaque_id!r}")
    return did


def is_valid_did(did: str, methods: Optional[Iterable[str]] = None) -> bool:
    try:
        validate_did(did, methods)
    except InvalidDIDError:
        return False
    return True


def build_did_document(
    did: str,
    wallet: WalletIdentity,
    wallet_chain_id: str,
    service_endpoint: str,
    now: datetime,
) -> DIDDocument:
    """W3C DID document controlled by the wallet that created it."""
    key_id = f"{did}#keys-1"
    return DIDDocument(
        id=did,
        controller=did,
        verification_method=[VerificationMethod(
            id=key_id,
            type="EcdsaSecp256k1VerificationKey2019",
            controller=did,
            public_key_base64=wallet.public_key,
            blockchain_account_id=f"cosmos:{wallet_chain_id}:{wallet.address}",
        )],
        authentication=[key_id],
        assertion_method=[key_id],
        service=[ServiceEndpoint(
            id=f"{did}#persona-service",
            type="PersonaIdentityService",
            service_endpoint=f"{service_endpoint.rstrip('/')}/{did}",
        )],
        created=isoformat(now),
        updated=isoformat(now),
    )


def public_did_document(did: str, created: Optional[str] = None) -> DIDDocument:
    """Redacted stub: only the id, every method list empty."""
    return DIDDocument(id=did, created=created or "")


def merge_did_document(document: DIDDocument, updates: DIDDocumentUpdate, now: datetime) -> DIDDocument:
    merged = document.model_dump(by_alias=True)
    merged.update(updates.model_dump(by_alias=True, exclude_unset=True))
    merged["id"] = document.id
    merged["created"] = document.created
    merged["updated"] = later_than(document.updated or document.created, now)
    return DIDDocument.model_validate(merged)


def deactivated_did_document(document: DIDDocument, now: datetime) -> DIDDocument:
    """Logical tombstone: the document stays resolvable but authenticates nothing."""
    return document.model_copy(update={
        "verification_method": [],
        "authentication": [],
        "assertion_method": [],
        "updated": later_than(document.updated or document.created, now),
    })
