"""
core/anchor.py — Ledger Anchor Client
=======================================
Records content hashes on the ledger as tamper-evidence checkpoints.

Every anchoring call returns ONE of:
    Anchored(tx_hash, block_height, network)     → the hash is on the ledger
    Unanchored(reason, fallback_ref, network)    → it is not; the local write stands

Unanchored.fallback_ref is deterministic (same content + operation → same ref)
and always starts with "unanchored:", so it can never be confused with a real
transaction hash. Callers branch on `result.anchored`.

Flow for every anchor:
    check_chain_status → account query → build tx → broadcast → tagged result
Each ledger call is bounded by `timeout` and retried at most `retries` times.
"""

import asyncio
import hashlib
import logging
from dataclasses import asdict, dataclass
from typing import ClassVar, Optional, Union

from core.errors import ChainUnavailableError
from core.schemas import isoformat, utcnow

logger = logging.getLogger("personachain.anchor")

MSG_CREATE_DID = "/persona.did.v1.MsgCreateDID"
MSG_ISSUE_CREDENTIAL = "/persona.credential.v1.MsgIssueCredential"
MSG_ANCHOR_DATA = "/persona.anchor.v1.MsgAnchorData"


@dataclass(frozen=True)
class Anchored:
    tx_hash: str
    block_height: int
    network: str

    anchored: ClassVar[bool] = True

    def to_dict(self) -> dict:
        return {"anchored": True, **asdict(self)}


@dataclass(frozen=True)
class Unanchored:
    reason: str
    fallback_ref: str
    network: str

    anchored: ClassVar[bool] = False

    def to_dict(self) -> dict:
        return {"anchored": False, **asdict(self)}


AnchorResult = Union[Anchored, Unanchored]


@dataclass
class ChainStatus:
    accessible: bool
    chain_id: Optional[str] = None
    latest_block_height: Optional[int] = None
    error: Optional[str] = None


@dataclass
class TransactionStatus:
    tx_hash: str
    status: str                     # confirmed | pending | failed | unknown
    confirmed: bool = False
    block_height: Optional[int] = None
    error: Optional[str] = None


def fallback_reference(content_hash: str, operation: str) -> str:
    digest = hashlib.sha256(f"{operation}:{content_hash}".encode("utf-8")).hexdigest()
    return f"unanchored:{digest}"


class AnchorClient:
    def __init__(
        self,
        ledger,
        network: str,
        signer_address: str = "",
        timeout: float = 5.0,
        retries: int = 1,
        fee_amount: int = 1000,
        fee_denom: str = "uid",
        gas_limit: int = 200_000,
    ):
        self.ledger = ledger
        self.network = network
        self.signer_address = signer_address
        self.timeout = timeout
        self.retries = max(0, retries)
        self.fee_amount = fee_amount
        self.fee_denom = fee_denom
        self.gas_limit = gas_limit

    async def _call(self, label: str, func, *args):
        attempts = self.retries + 1
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(func(*args), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning(f"Ledger {label} timed out after {self.timeout}s (attempt {attempt}/{attempts})")
            except ChainUnavailableError as exc:
                last_error = exc
                logger.warning(f"Ledger {label} failed (attempt {attempt}/{attempts}): {exc.message}")
        raise ChainUnavailableError(f"Ledger {label} failed after {attempts} attempts") from last_error

    # ── Chain status ──────────────────────────────────────────────────────
    async def check_chain_status(self) -> ChainStatus:
        try:
            status = await self._call("status", self.ledger.status)
        except ChainUnavailableError as exc:
            return ChainStatus(accessible=False, error=exc.message)
        return ChainStatus(
            accessible=True,
            chain_id=status.get("chain_id"),
            latest_block_height=status.get("latest_block_height"),
        )

    # ── Transactions ──────────────────────────────────────────────────────
    def build_tx(self, msg_type: str, value: dict, account: dict, memo: str = "") -> dict:
        return {
            "body": {
                "messages": [{"@type": msg_type, **value}],
                "memo": memo,
            },
            "auth_info": {
                "fee": {
                    "amount": [{"denom": self.fee_denom, "amount": str(self.fee_amount)}],
                    "gas_limit": str(self.gas_limit),
                },
            },
            "chain_id": self.network,
            "signer": self.signer_address,
            "account_number": account.get("account_number", 0),
            "sequence": account.get("sequence", 0),
        }

    async def _anchor(self, msg_type: str, operation: str, content_hash: str, value: dict) -> AnchorResult:
        status = await self.check_chain_status()
        if not status.accessible:
            return self._unanchored(content_hash, operation, f"ledger unreachable: {status.error}")

        value = {**value, "content_hash": content_hash, "operation": operation,
                 "timestamp": isoformat(utcnow())}
        try:
            account = {"account_number": 0, "sequence": 0}
            if self.signer_address:
                account = await self._call("account query", self.ledger.get_account, self.signer_address)
            tx = self.build_tx(msg_type, value, account, memo=f"persona:{operation}")
            receipt = await self._call("broadcast", self.ledger.broadcast, tx)
        except ChainUnavailableError as exc:
            return self._unanchored(content_hash, operation, exc.message)

        if receipt.get("code", 0) != 0:
            return self._unanchored(
                content_hash, operation,
                f"transaction rejected (code {receipt['code']}): {receipt.get('log', '')}",
            )

        result = Anchored(
            tx_hash=receipt["tx_hash"],
            block_height=int(receipt.get("height") or 0),
            network=self.network,
        )
        logger.info(f"Anchored {operation} {content_hash[:16]}... tx={result.tx_hash[:16]}... height={result.block_height}")
        return result

    def _unanchored(self, content_hash: str, operation: str, reason: str) -> Unanchored:
        logger.warning(f"Anchoring {operation} {content_hash[:16]}... skipped: {reason}")
        return Unanchored(
            reason=reason,
            fallback_ref=fallback_reference(content_hash, operation),
            network=self.network,
        )

    # ── Anchoring operations ──────────────────────────────────────────────
    async def anchor_did_creation(
        self, did: str, wallet_address: str, content_hash: str, document: dict
    ) -> AnchorResult:
        value = {
            "did": did,
            "controller": wallet_address,
            "verification_methods": len(document.get("verificationMethod", [])),
        }
        return await self._anchor(MSG_CREATE_DID, "create", content_hash, value)

    async def anchor_did_operation(
        self, did: str, wallet_address: str, content_hash: str, operation: str
    ) -> AnchorResult:
        """Anchors a later state of a DID document (update / deactivate)."""
        value = {"did": did, "controller": wallet_address, "subject_type": "did"}
        return await self._anchor(MSG_ANCHOR_DATA, operation, content_hash, value)

    async def anchor_credential_issuance(
        self, credential_id: str, issuer_did: str, subject_did: str, content_hash: str
    ) -> AnchorResult:
        value = {"credential_id": credential_id, "issuer": issuer_did, "subject": subject_did}
        return await self._anchor(MSG_ISSUE_CREDENTIAL, "issue", content_hash, value)

    async def anchor_credential_status(
        self, credential_id: str, issuer_did: str, content_hash: str, status: str
    ) -> AnchorResult:
        value = {"credential_id": credential_id, "issuer": issuer_did, "status": status,
                 "subject_type": "credential"}
        return await self._anchor(MSG_ANCHOR_DATA, status, content_hash, value)

    async def anchor_proof_commitment(
        self, proof_id: str, issuer_did: str, subject_did: str, commitment_hash: str
    ) -> AnchorResult:
        value = {"proof_id": proof_id, "issuer": issuer_did, "subject": subject_did,
                 "subject_type": "proof"}
        return await self._anchor(MSG_ANCHOR_DATA, "commit", commitment_hash, value)

    # ── Queries ───────────────────────────────────────────────────────────
    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        """
        Eventually consistent: a hash the ledger has not indexed yet is
        reported as pending, not failed.
        """
        if tx_hash.startswith("unanchored:"):
            return TransactionStatus(tx_hash=tx_hash, status="failed",
                                     error="fallback reference, never broadcast")
        try:
            tx = await self._call("tx query", self.ledger.get_transaction, tx_hash)
        except ChainUnavailableError as exc:
            return TransactionStatus(tx_hash=tx_hash, status="unknown", error=exc.message)
        if tx is None:
            return TransactionStatus(tx_hash=tx_hash, status="pending")
        if tx.get("code", 0) != 0:
            return TransactionStatus(tx_hash=tx_hash, status="failed", block_height=tx.get("height"),
                                     error=f"transaction failed with code {tx['code']}")
        return TransactionStatus(tx_hash=tx_hash, status="confirmed", confirmed=True,
                                 block_height=tx.get("height"))

    async def resolve_did(self, did: str) -> Optional[dict]:
        """Ledger view of a DID. Soft-fails: chain errors are logged, not raised."""
        try:
            return await self._call("DID query", self.ledger.query_did, did)
        except ChainUnavailableError as exc:
            logger.warning(f"Ledger lookup for {did} failed: {exc.message}")
            return None
