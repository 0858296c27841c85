"""
modules/proofs.py — Proof Engine
==================================
Generates and verifies selective-disclosure, membership and range proofs over
stored credentials.

Generation:
    load credential (holder's wallet) → refuse revoked / expired → check the
    statement is TRUE → partition revealed / hidden → nullifier + commitment →
    proofData from the proof system → persist → anchor commitment

Verification, in this order (first failure wins):
    1. proof matches the row persisted at generation, then the challenge
       (and presentation-request token), then the audience
    2. expiration, taken from the persisted row
    3. nullifier not yet consumed for this verifier
    4. proofData structurally valid
    then the nullifier is consumed with a single INSERT. Of two concurrent
    verifications of the same proof, only one can win that INSERT.

Hidden attributes are reported as blinded digests, one per hidden claim, so a
proof does not disclose which other claims the credential carries.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from core.anchor import AnchorClient
from core.crypto import CryptoEngine, content_hash
from core.errors import (
    AttributeNotFoundError, ExpiredError, IdentityCoreError, RangeProofError, ReplayError,
    ValidationError,
)
from core.identity import validate_did
from core.schemas import (
    PresentationRequest, ProofMetadata, ProofResult, StoredCredential, VerificationMetadata,
    VerificationRequest, VerificationResult, ZKProof, isoformat, parse_timestamp,
    schema_id_for, utcnow,
)
from core.wallet import WalletSigner
from core.zkp import CIRCUITS, HashCommitmentProofSystem, ProofStatement, ProofSystem
from modules.storage import IdentityStorage

logger = logging.getLogger("personachain.modules.proofs")

# fields a presented proof must carry exactly as they were issued
BOUND_FIELDS = ("nullifier_hash", "commitment_hash", "challenge", "verifier_did")


def nullifier_hash(credential_id: str, scope: str, challenge: str, purpose: str) -> str:
    """H(credentialId, verifierDid-or-scope, challenge), domain-separated by purpose."""
    return content_hash({
        "challenge": challenge,
        "credentialId": credential_id,
        "domain": f"nullifier:{purpose}",
        "verifier": scope,
    })


def commitment_hash(credential_id: str, subject_did: str, claims: dict, nullifier: str) -> str:
    return content_hash({
        "claims": claims,
        "credentialId": credential_id,
        "nullifierHash": nullifier,
        "subjectDid": subject_did,
    })


def blind_attributes(names: List[str]) -> List[str]:
    blinding = secrets.token_hex(16)
    return [hashlib.sha256(f"{blinding}:{name}".encode("utf-8")).hexdigest() for name in names]


def age_on(birth_date: date, today: date) -> int:
    return today.year - birth_date.year - ((today.month, today.day) < (birth_date.month, birth_date.day))


def _same(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class ProofEngine:
    def __init__(
        self,
        storage: IdentityStorage,
        anchors: AnchorClient,
        crypto: CryptoEngine,
        proof_system: ProofSystem = None,
        expiration_hours: int = 24,
        request_minutes: int = 30,
    ):
        self.storage = storage
        self.anchors = anchors
        self.crypto = crypto
        self.proof_system = proof_system or HashCommitmentProofSystem()
        self.expiration_hours = expiration_hours
        self.request_minutes = request_minutes

    # ── Presentation requests ─────────────────────────────────────────────
    def create_presentation_request(
        self,
        verifier_did: str,
        requested_attributes: List[str],
        purpose: str,
        expiration_minutes: Optional[int] = None,
    ) -> PresentationRequest:
        """A fresh challenge plus a signed token that lets verify_proof check its origin and age."""
        validate_did(verifier_did)
        challenge = secrets.token_hex(32)
        expires_at = utcnow() + timedelta(minutes=expiration_minutes or self.request_minutes)
        token = self.crypto.create_challenge_token(
            verifier_did, challenge, expires_at,
            {"attributes": list(requested_attributes), "purpose": purpose},
        )
        return PresentationRequest(
            id=f"request_{uuid.uuid4().hex}",
            verifier_did=verifier_did,
            requested_attributes=list(requested_attributes),
            purpose=purpose,
            challenge=challenge,
            challenge_token=token,
            expires_at=isoformat(expires_at),
        )

    # ── Generation ────────────────────────────────────────────────────────
    async def generate_selective_disclosure_proof(
        self,
        credential_id: str,
        requested_attributes: List[str],
        purpose: str,
        *,
        wallet_address: str,
        wallet_type: str,
        signer: WalletSigner,
        verifier_did: Optional[str] = None,
        challenge: Optional[str] = None,
    ) -> ProofResult:
        try:
            requested = self._requested(requested_attributes)
            if verifier_did:
                validate_did(verifier_did)
            stored = await self._load_credential(credential_id, wallet_address, wallet_type, signer)
            claims = stored.credential.claims

            missing = [name for name in requested if claims.get(name) is None]
            if missing:
                raise AttributeNotFoundError(f"Credential has no {', '.join(missing)}")

            revealed = {name: claims[name] for name in requested}
            hidden = [name for name in sorted(claims) if name not in revealed]
            proof = self._build_proof(
                "selective_disclosure", stored, requested, revealed, hidden,
                purpose, verifier_did, challenge, scope=verifier_did or "",
            )
        except IdentityCoreError as exc:
            return ProofResult.fail(exc)
        return await self._finalize(proof, stored)

    async def generate_membership_proof(
        self,
        group_credential_id: str,
        group_id: str,
        purpose: str = "membership",
        *,
        wallet_address: str,
        wallet_type: str,
        signer: WalletSigner,
        verifier_did: Optional[str] = None,
        challenge: Optional[str] = None,
    ) -> ProofResult:
        """Reveals only {isMember, groupId}; every identity attribute stays hidden."""
        try:
            if verifier_did:
                validate_did(verifier_did)
            stored = await self._load_credential(group_credential_id, wallet_address, wallet_type, signer)
            credential = stored.credential
            if credential.credential_type != "GroupMembershipCredential":
                raise ValidationError(f"{credential.credential_type} is not a group membership credential")
            if credential.claims.get("groupId") != group_id:
                raise ValidationError("Credential does not attest membership of this group")

            revealed = {"isMember": True, "groupId": group_id}
            hidden = [name for name in sorted(credential.claims) if name != "groupId"]
            proof = self._build_proof(
                "membership", stored, ["isMember", "groupId"], revealed, hidden,
                purpose, verifier_did, challenge, scope=verifier_did or f"group:{group_id}",
            )
        except IdentityCoreError as exc:
            return ProofResult.fail(exc)
        return await self._finalize(proof, stored)

    async def generate_range_proof(
        self,
        credential_id: str,
        attribute: str,
        min_value: float,
        max_value: float,
        purpose: str = "range",
        *,
        wallet_address: str,
        wallet_type: str,
        signer: WalletSigner,
        verifier_did: Optional[str] = None,
        challenge: Optional[str] = None,
    ) -> ProofResult:
        """
        Proves min_value <= attribute <= max_value without revealing the value.
        A value outside the range is a RangeProofError; no proof is produced.
        """
        try:
            if min_value > max_value:
                raise ValidationError("min_value must not exceed max_value")
            if verifier_did:
                validate_did(verifier_did)
            stored = await self._load_credential(credential_id, wallet_address, wallet_type, signer)
            claims = stored.credential.claims

            value = self._numeric_claim(claims, attribute)
            if not (min_value <= value <= max_value):
                raise RangeProofError(f"{attribute} is outside [{min_value}, {max_value}]")

            revealed = {
                "attributeName": attribute,
                "isInRange": True,
                "minValue": min_value,
                "maxValue": max_value,
            }
            hidden = sorted(claims)
            proof = self._build_proof(
                "range", stored, [attribute], revealed, hidden,
                purpose, verifier_did, challenge, scope=verifier_did or "",
            )
        except IdentityCoreError as exc:
            return ProofResult.fail(exc)
        return await self._finalize(proof, stored)

    # ── Verification ──────────────────────────────────────────────────────
    async def verify_proof(
        self,
        proof: ZKProof,
        verifier_did: str,
        expected_challenge: Optional[str] = None,
        challenge_token: Optional[str] = None,
    ) -> VerificationResult:
        now = utcnow()
        metadata = VerificationMetadata(
            verification_time=isoformat(now),
            verifier_did=verifier_did,
            nullifier_used=False,
            expiration_status="unknown",
        )
        try:
            validate_did(verifier_did)

            # 1. issued here, challenge, audience
            issued = await self.storage.get_proof_record(proof.id)
            if issued is None:
                raise ValidationError(f"Proof {proof.id} was not issued by this service")
            for name in BOUND_FIELDS:
                if getattr(proof, name) != issued[name]:
                    raise ValidationError(f"Proof {proof.id}: {name} differs from the issued proof")
            if not _same(proof.proof_data.proof, issued["proof_digest"]):
                raise ValidationError(f"Proof {proof.id}: proofData differs from the issued proof")

            if challenge_token:
                token = self.crypto.decode_challenge_token(challenge_token)
                if token.get("sub") != verifier_did:
                    raise ValidationError("Presentation request was issued to a different verifier")
                if expected_challenge and expected_challenge != token.get("challenge"):
                    raise ValidationError("Challenge does not match the presentation request")
                expected_challenge = token.get("challenge")
            if expected_challenge is not None and not _same(proof.challenge, expected_challenge):
                raise ValidationError("Challenge mismatch")
            if issued["verifier_did"] and issued["verifier_did"] != verifier_did:
                raise ValidationError("Proof was generated for a different verifier")

            # 2. expiration
            expires_at = issued["expires_at"]
            if expires_at <= now:
                metadata.expiration_status = "expired"
                raise ExpiredError(f"Proof {proof.id} expired at {isoformat(expires_at)}")
            metadata.expiration_status = "valid"

            # 3. nullifier
            if not proof.nullifier_hash:
                raise ValidationError("Proof carries no nullifier")
            if await self.storage.is_nullifier_consumed(proof.nullifier_hash, verifier_did):
                metadata.nullifier_used = True
                raise ReplayError(f"Proof {proof.id} was already verified by {verifier_did}")

            # 4. structure
            if not self._structurally_valid(proof):
                raise ValidationError("Proof data failed verification")

            if not await self.storage.consume_nullifier(proof.nullifier_hash, verifier_did, proof.id, expires_at):
                metadata.nullifier_used = True
                raise ReplayError(f"Proof {proof.id} was verified concurrently")
        except IdentityCoreError as exc:
            logger.info(f"Proof {proof.id} rejected for {verifier_did}: {exc.code}")
            return VerificationResult.rejected(exc, metadata)

        metadata.nullifier_used = True
        logger.info(f"Proof {proof.id} verified for {verifier_did}")
        return VerificationResult(
            success=True,
            is_valid=True,
            verified_attributes=dict(proof.revealed_attributes),
            proof_metadata=metadata,
        )

    async def batch_verify_proofs(self, requests: List[VerificationRequest]) -> List[VerificationResult]:
        """
        Verifies concurrently. Individual rejections come back per request;
        if the batch itself blows up, EVERY request is reported as failed.
        """
        try:
            results = await asyncio.gather(*(
                self.verify_proof(r.proof, r.verifier_did, r.expected_challenge, r.challenge_token)
                for r in requests
            ))
        except Exception as exc:
            logger.error(f"Batch verification of {len(requests)} proofs aborted: {exc!r}")
            return [
                VerificationResult(
                    success=False,
                    is_valid=False,
                    error="batchFailed",
                    error_message="Batch verification failed",
                )
                for _ in requests
            ]
        return list(results)

    async def prune_expired(self) -> dict:
        return await self.storage.prune_expired(utcnow())

    # ── Helpers ───────────────────────────────────────────────────────────
    @staticmethod
    def _requested(attributes: List[str]) -> List[str]:
        requested = list(dict.fromkeys(a for a in attributes if a))
        if not requested:
            raise ValidationError("At least one attribute must be requested")
        return requested

    async def _load_credential(self, credential_id, wallet_address, wallet_type, signer) -> StoredCredential:
        result = await self.storage.get_verifiable_credential(credential_id, wallet_address, wallet_type, signer)
        stored = result.unwrap()
        if stored.status != "valid":
            raise ValidationError(f"Credential {credential_id} is {stored.status}")
        expiration = stored.credential.expiration_date
        if expiration and parse_timestamp(expiration) <= utcnow():
            raise ExpiredError(f"Credential {credential_id} expired at {expiration}")
        return stored

    @staticmethod
    def _numeric_claim(claims: Dict[str, Any], attribute: str) -> float:
        value = claims.get(attribute)
        if value is None and attribute == "age" and claims.get("dateOfBirth"):
            try:
                value = age_on(date.fromisoformat(claims["dateOfBirth"]), utcnow().date())
            except ValueError as exc:
                raise ValidationError("dateOfBirth is not a valid date") from exc
        if value is None:
            raise AttributeNotFoundError(f"Credential has no {attribute}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{attribute} is not numeric")
        return value

    def _build_proof(
        self,
        proof_type: str,
        stored: StoredCredential,
        requested: List[str],
        revealed: Dict[str, Any],
        hidden: List[str],
        purpose: str,
        verifier_did: Optional[str],
        challenge: Optional[str],
        scope: str,
    ) -> ZKProof:
        credential = stored.credential
        challenge = challenge or secrets.token_hex(32)
        nullifier = nullifier_hash(credential.id, scope, challenge, proof_type)
        commitment = commitment_hash(credential.id, credential.subject_did, credential.claims, nullifier)
        circuit = CIRCUITS[proof_type]
        now = utcnow()
        expiration_time = isoformat(now + timedelta(hours=self.expiration_hours))
        statement = ProofStatement(
            challenge=challenge,
            commitment_hash=commitment,
            nullifier_hash=nullifier,
            revealed=revealed,
            requested=requested,
            expiration_time=expiration_time,
            verifier_did=verifier_did,
            purpose=purpose,
        )
        return ZKProof(
            id=f"proof_{uuid.uuid4().hex}",
            proof_type=proof_type,
            circuit_name=circuit,
            proof_data=self.proof_system.prove(circuit, statement),
            nullifier_hash=nullifier,
            commitment_hash=commitment,
            requested_attributes=requested,
            revealed_attributes=revealed,
            hidden_attributes=blind_attributes(hidden),
            proof_purpose=purpose,
            verifier_did=verifier_did,
            challenge=challenge,
            expiration_time=expiration_time,
            metadata=ProofMetadata(
                credential_type=credential.credential_type,
                issuer_did=credential.issuer_did,
                subject_did=credential.subject_did,
                schema_id=schema_id_for(credential.credential_type),
                proof_generated=isoformat(now),
            ),
        )

    async def _finalize(self, proof: ZKProof, stored: StoredCredential) -> ProofResult:
        credential = stored.credential
        await self.storage.save_proof(proof, credential.id)
        anchor = await self.anchors.anchor_proof_commitment(
            proof.id, credential.issuer_did, credential.subject_did, proof.commitment_hash
        )
        await self.storage.record_anchor(proof.id, "proof", "commit", proof.commitment_hash, anchor)
        warnings = [] if anchor.anchored else [f"Proof commitment not anchored: {anchor.reason}"]
        logger.info(f"Generated {proof.proof_type} proof {proof.id} for {credential.id}")
        return ProofResult(success=True, proof=proof, anchor=anchor, warnings=warnings)

    def _structurally_valid(self, proof: ZKProof) -> bool:
        circuit = CIRCUITS.get(proof.proof_type)
        if circuit is None or proof.circuit_name != circuit:
            return False
        revealed = proof.revealed_attributes
        if proof.proof_type == "range" and revealed.get("isInRange") is not True:
            return False
        if proof.proof_type == "membership" and revealed.get("isMember") is not True:
            return False
        statement = ProofStatement(
            challenge=proof.challenge,
            commitment_hash=proof.commitment_hash,
            nullifier_hash=proof.nullifier_hash,
            revealed=revealed,
            requested=proof.requested_attributes,
            expiration_time=proof.expiration_time,
            verifier_did=proof.verifier_did,
            purpose=proof.proof_purpose,
        )
        return self.proof_system.verify(circuit, statement, proof.proof_data)
