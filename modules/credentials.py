"""
modules/credentials.py — Credential Issuance
==============================================
Issues verifiable credentials into a holder's encrypted store and anchors
their content hashes. Claims are validated against the declared schema for
the credential type before anything is written.

Flow:
    validate DIDs + claims → confirm holder owns subject DID → encrypt + store → anchor
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from core.anchor import AnchorClient
from core.crypto import content_hash
from core.errors import DecryptionError, IdentityCoreError, NotFoundError, ValidationError
from core.identity import validate_did
from core.schemas import (
    CredentialResult, StorageResult, VerifiableCredential, isoformat, parse_timestamp, utcnow,
    validate_claims,
)
from core.wallet import WalletSigner
from modules.storage import IdentityStorage

logger = logging.getLogger("personachain.modules.credentials")


class CredentialIssuer:
    def __init__(self, storage: IdentityStorage, anchors: AnchorClient):
        self.storage = storage
        self.anchors = anchors

    async def issue_credential(
        self,
        issuer_did: str,
        subject_did: str,
        credential_type: str,
        claims: Dict[str, Any],
        *,
        wallet_address: str,
        wallet_type: str,
        signer: WalletSigner,
        expiration_date: Optional[datetime] = None,
    ) -> CredentialResult:
        """
        The credential is encrypted under the HOLDER's wallet, so the wallet
        making this call must own `subject_did`.
        """
        try:
            validate_did(issuer_did)
            validate_did(subject_did)
            normalized = validate_claims(credential_type, claims)
            holder_did = await self.storage.get_did_by_wallet(wallet_address)
            if holder_did is None:
                raise NotFoundError(f"Wallet {wallet_address} has no DID")
            if holder_did != subject_did:
                raise ValidationError("Credential subject must be the holder's own DID")

            now = utcnow()
            if expiration_date is not None:
                expiration_date = parse_timestamp(expiration_date.isoformat())
                if expiration_date <= now:
                    raise ValidationError("Expiration date must be in the future")
            credential = self._build_credential(
                issuer_did, subject_did, credential_type, normalized, now, expiration_date
            )
        except IdentityCoreError as exc:
            return CredentialResult(success=False, error=exc)

        stored = await self.storage.store_verifiable_credential(credential, wallet_address, wallet_type, signer)
        if not stored.success:
            return CredentialResult(success=False, error=stored.error)

        anchor = await self.anchors.anchor_credential_issuance(
            credential.id, issuer_did, subject_did, stored.content_hash
        )
        await self.storage.record_anchor(credential.id, "credential", "issue", stored.content_hash, anchor)

        warnings = [] if anchor.anchored else [f"Credential stored but not anchored: {anchor.reason}"]
        logger.info(f"Issued {credential_type} {credential.id} to {subject_did}")
        return CredentialResult(
            success=True,
            credential=credential,
            content_hash=stored.content_hash,
            status="valid",
            anchor=anchor,
            warnings=warnings,
        )

    async def revoke_credential(
        self,
        credential_id: str,
        issuer_did: str,
        reason: Optional[str] = None,
        *,
        wallet_address: str,
        wallet_type: str,
        signer: WalletSigner,
    ) -> CredentialResult:
        """
        Status change only; the stored credential is not rewritten. Re-anchored as "revoked".

        The calling wallet must control `issuer_did` and be able to decrypt
        its DID document; naming the issuer is not enough.
        """
        try:
            validate_did(issuer_did)
            controlled = await self.storage.get_did_by_wallet(wallet_address)
            if controlled != issuer_did:
                raise DecryptionError(f"Wallet {wallet_address} does not control {issuer_did}")
            (await self.storage.get_did_document(issuer_did, wallet_address, wallet_type, signer)).unwrap()
        except IdentityCoreError as exc:
            logger.warning(f"Revocation of {credential_id} refused: {exc.code}")
            return CredentialResult(success=False, error=exc)

        updated = await self.storage.update_credential_status(credential_id, "revoked", issuer_did, reason)
        if not updated.success:
            return CredentialResult(success=False, error=updated.error)

        status_hash = content_hash({
            "credentialId": credential_id,
            "contentHash": updated.content_hash,
            "status": "revoked",
        })
        anchor = await self.anchors.anchor_credential_status(credential_id, issuer_did, status_hash, "revoked")
        await self.storage.record_anchor(credential_id, "credential", "revoke", status_hash, anchor)

        warnings = [] if anchor.anchored else [f"Revocation recorded but not anchored: {anchor.reason}"]
        logger.info(f"Revoked credential {credential_id}")
        return CredentialResult(
            success=True,
            content_hash=status_hash,
            status="revoked",
            anchor=anchor,
            warnings=warnings,
        )

    async def list_credentials(
        self,
        did: str,
        wallet_address: str,
        wallet_type: str,
        signer: WalletSigner,
        include_revoked: bool = False,
    ) -> StorageResult:
        return await self.storage.get_verifiable_credentials(
            did, wallet_address, wallet_type, signer, include_revoked=include_revoked
        )

    @staticmethod
    def _build_credential(issuer_did, subject_did, credential_type, claims, now, expiration_date):
        credential = VerifiableCredential(
            id=f"urn:uuid:{uuid.uuid4()}",
            type=["VerifiableCredential", credential_type],
            issuer_did=issuer_did,
            subject_did=subject_did,
            issuance_date=isoformat(now),
            expiration_date=isoformat(expiration_date) if expiration_date else None,
            claims=claims,
        )
        body = credential.model_dump(mode="json", by_alias=True, exclude_none=True)
        credential.proof = {
            "type": "ContentHashProof2024",
            "created": isoformat(now),
            "proofPurpose": "assertionMethod",
            "verificationMethod": f"{issuer_did}#keys-1",
            "contentHash": content_hash(body),
        }
        return credential
