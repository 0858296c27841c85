"""
modules/did_resolver.py — DID Resolution Service
==================================================
Business logic for the DID lifecycle:

    NonExistent → Created → [Updated]* → Deactivated (terminal)

Flow for every write:
    validate (no I/O) → per-DID lock → store encrypted → anchor → record anchor

The store write is the commit point. Anchoring afterwards may fail; the
result then carries an Unanchored anchor and a warning, and the stored
document is left as written.
"""

import logging
import time
from typing import Iterable, Optional

from core.anchor import AnchorClient
from core.errors import ConflictError, IdentityCoreError, InvalidDIDError, ValidationError
from core.identity import (
    METHOD_PATTERNS, build_did_document, deactivated_did_document, generate_did,
    merge_did_document, public_did_document, validate_did,
)
from core.schemas import (
    DIDCreationParams, DIDCreationResult, DIDDocumentUpdate, DIDResolutionResult,
    isoformat, utcnow,
)
from core.wallet import WalletSigner, validate_wallet
from modules.storage import IdentityStorage

logger = logging.getLogger("personachain.modules.did")

CONTENT_TYPE = "application/did+ld+json"


class DIDResolver:
    def __init__(
        self,
        storage: IdentityStorage,
        anchors: AnchorClient,
        method: str = "persona",
        id_length: int = 12,
        wallet_chain_id: str = "cosmoshub-4",
        supported_wallet_types: Iterable[str] = ("keplr", "leap"),
        service_endpoint: str = "https://personapass.org/did",
    ):
        self.storage = storage
        self.anchors = anchors
        self.method = method
        self.id_length = id_length
        self.wallet_chain_id = wallet_chain_id
        self.supported_wallet_types = list(supported_wallet_types)
        self.service_endpoint = service_endpoint

    # ── Create ────────────────────────────────────────────────────────────
    async def create_did(self, params: DIDCreationParams, signer: WalletSigner) -> DIDCreationResult:
        """
        Creates the DID for a wallet. A wallet that already has a DID gets a
        ConflictError back; nothing is overwritten.
        """
        try:
            wallet = validate_wallet(
                params.wallet_address, params.wallet_type, self.supported_wallet_types, params.public_key
            )
            did = generate_did(wallet.address, self.method, self.id_length)
        except IdentityCoreError as exc:
            return DIDCreationResult.fail(exc)

        async with self.storage.did_lock(did):
            existing = await self.storage.get_did_by_wallet(wallet.address)
            if existing is not None:
                return DIDCreationResult.fail(
                    ConflictError(f"Wallet {wallet.address} already has {existing}"), did=existing
                )

            document = build_did_document(
                did, wallet, self.wallet_chain_id, self.service_endpoint, utcnow()
            )
            stored = await self.storage.store_did_document(
                did, wallet.address, wallet.wallet_type, document, signer
            )
            if not stored.success:
                return DIDCreationResult.fail(stored.error, did=did)

            anchor = await self.anchors.anchor_did_creation(
                did, wallet.address, stored.content_hash, stored.data
            )
            await self.storage.record_anchor(did, "did", "create", stored.content_hash, anchor)

        logger.info(f"DID created: {did} (anchored={anchor.anchored})")
        return self._write_result(did, document, stored, anchor)

    # ── Resolve ───────────────────────────────────────────────────────────
    async def resolve_did(
        self,
        did: str,
        wallet_address: Optional[str] = None,
        wallet_type: Optional[str] = None,
        signer: Optional[WalletSigner] = None,
    ) -> DIDResolutionResult:
        """
        Without wallet credentials → public stub (id + empty method lists).
        With them → the decrypted document, hash-checked against the ledger.
        """
        started = time.perf_counter()
        try:
            validate_did(did, methods=[self.method])
        except InvalidDIDError as exc:
            return self._resolution_error("invalidDid", exc.message, started)

        ledger_record = await self.anchors.resolve_did(did)
        metadata = await self.storage.get_identity_metadata(did)
        if metadata is None and ledger_record is None:
            return self._resolution_error("notFound", f"{did} does not exist", started)

        warnings = []
        if wallet_address and wallet_type and signer:
            stored = await self.storage.get_did_document(did, wallet_address, wallet_type, signer)
            if not stored.success:
                return self._resolution_error(stored.error.code, stored.error.message, started)
            document = stored.data
            ledger_hash = (ledger_record or {}).get("content_hash")
            if ledger_hash and ledger_hash != stored.content_hash:
                warnings.append("Stored document differs from the latest ledger anchor")
                logger.warning(f"{did}: stored hash {stored.content_hash[:16]}... != ledger {ledger_hash[:16]}...")
        else:
            document = public_did_document(did, created=(metadata or {}).get("created"))

        document_metadata = {}
        if metadata is not None:
            document_metadata = {
                "created": metadata["created"],
                "updated": metadata["updated"],
                "versionId": str(metadata["version"]),
                "deactivated": metadata["deactivated"],
                "contentHash": metadata["content_hash"],
            }
        anchor = await self.storage.latest_anchor(did)
        if anchor:
            document_metadata["anchor"] = anchor
        elif ledger_record:
            document_metadata["anchor"] = {"anchored": True, "txHash": ledger_record.get("tx_hash"),
                                           "blockHeight": ledger_record.get("block_height")}

        resolution_metadata = self._resolution_metadata(started)
        if warnings:
            resolution_metadata["warnings"] = warnings
        return DIDResolutionResult(
            did_document=document.to_wire(),
            did_document_metadata=document_metadata,
            did_resolution_metadata=resolution_metadata,
        )

    # ── Update ────────────────────────────────────────────────────────────
    async def update_did(
        self,
        did: str,
        wallet_address: str,
        wallet_type: str,
        updates: DIDDocumentUpdate,
        signer: WalletSigner,
    ) -> DIDCreationResult:
        """Fetch → merge → re-store (new version) → re-anchor (new anchor row)."""
        try:
            validate_did(did, methods=[self.method])
            validate_wallet(wallet_address, wallet_type, self.supported_wallet_types)
        except IdentityCoreError as exc:
            return DIDCreationResult.fail(exc, did=did)

        async with self.storage.did_lock(did):
            current = await self.storage.get_did_document(did, wallet_address, wallet_type, signer)
            if not current.success:
                return DIDCreationResult.fail(current.error, did=did)
            if current.metadata.get("deactivated"):
                return DIDCreationResult.fail(ValidationError(f"{did} is deactivated"), did=did)

            document = merge_did_document(current.data, updates, utcnow())
            stored = await self.storage.store_did_document(
                did, wallet_address, wallet_type, document, signer, expected_version=current.version
            )
            if not stored.success:
                return DIDCreationResult.fail(stored.error, did=did)

            anchor = await self.anchors.anchor_did_operation(did, wallet_address, stored.content_hash, "update")
            await self.storage.record_anchor(did, "did", "update", stored.content_hash, anchor)

        logger.info(f"DID updated: {did} v{stored.version}")
        return self._write_result(did, document, stored, anchor)

    # ── Deactivate ────────────────────────────────────────────────────────
    async def deactivate_did(
        self, did: str, wallet_address: str, wallet_type: str, signer: WalletSigner
    ) -> DIDCreationResult:
        """Clears every authentication path. The DID stays resolvable; it cannot be reactivated."""
        try:
            validate_did(did, methods=[self.method])
            validate_wallet(wallet_address, wallet_type, self.supported_wallet_types)
        except IdentityCoreError as exc:
            return DIDCreationResult.fail(exc, did=did)

        async with self.storage.did_lock(did):
            current = await self.storage.get_did_document(did, wallet_address, wallet_type, signer)
            if not current.success:
                return DIDCreationResult.fail(current.error, did=did)
            if current.metadata.get("deactivated"):
                return DIDCreationResult.fail(ValidationError(f"{did} is already deactivated"), did=did)

            document = deactivated_did_document(current.data, utcnow())
            stored = await self.storage.store_did_document(
                did, wallet_address, wallet_type, document, signer,
                expected_version=current.version, deactivate=True,
            )
            if not stored.success:
                return DIDCreationResult.fail(stored.error, did=did)

            anchor = await self.anchors.anchor_did_operation(did, wallet_address, stored.content_hash, "deactivate")
            await self.storage.record_anchor(did, "did", "deactivate", stored.content_hash, anchor)

        logger.info(f"DID deactivated: {did}")
        return self._write_result(did, document, stored, anchor)

    # ── Info ──────────────────────────────────────────────────────────────
    def get_method_info(self) -> dict:
        pattern = METHOD_PATTERNS.get(self.method)
        return {
            "method": self.method,
            "network": self.anchors.network,
            "identifierLength": self.id_length,
            "identifierPattern": pattern.pattern if pattern else None,
            "supportedWalletTypes": self.supported_wallet_types,
            "operations": ["create", "resolve", "update", "deactivate"],
        }

    # ── Helpers ───────────────────────────────────────────────────────────
    @staticmethod
    def _write_result(did, document, stored, anchor) -> DIDCreationResult:
        warnings = list(stored.warnings)
        if not anchor.anchored:
            warnings.append(f"Stored but not anchored: {anchor.reason}")
        return DIDCreationResult(
            success=True,
            did=did,
            document=document,
            content_hash=stored.content_hash,
            version=stored.version,
            anchor=anchor,
            warnings=warnings,
        )

    @staticmethod
    def _resolution_metadata(started: float) -> dict:
        return {
            "contentType": CONTENT_TYPE,
            "retrieved": isoformat(utcnow()),
            "duration": round((time.perf_counter() - started) * 1000, 3),
        }

    def _resolution_error(self, code: str, message: str, started: float) -> DIDResolutionResult:
        logger.info(f"Resolution failed: {code}: {message}")
        metadata = self._resolution_metadata(started)
        metadata["error"] = code
        return DIDResolutionResult(did_resolution_metadata=metadata)
