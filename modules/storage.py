"""
modules/storage.py — Content-Addressed Record Store
=====================================================
Persists encrypted DID documents and verifiable credentials, the append-only
anchor log, issued proofs, and the nullifier registry.

Every read or write of an encrypted record goes:
    wallet signs challenge → key derived → encrypt/decrypt → content hash checked

Public methods return a StorageResult. Failures the core understands
(IdentityCoreError) are returned, never raised; anything else propagates.
Every DID / credential write or read leaves one row in audit_logs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.anchor import AnchorResult
from core.crypto import CryptoEngine, EncryptedRecord
from core.errors import (
    ConflictError, DecryptionError, IdentityCoreError, NotFoundError, ValidationError,
)
from core.schemas import (
    DIDDocument, StorageResult, StoredCredential, VerifiableCredential, ZKProof,
    isoformat, parse_timestamp, utcnow,
)
from core.wallet import WalletSigner, encryption_challenge
from db.models import (
    AnchorRecord, AuditLog, CredentialRecord, IdentityRecord, NullifierRecord, ProofRecord,
)

logger = logging.getLogger("personachain.storage")


class IdentityStorage:
    def __init__(self, session_factory: async_sessionmaker, crypto: CryptoEngine, wallet_chain_id: str):
        self._sessions = session_factory
        self.crypto = crypto
        self.wallet_chain_id = wallet_chain_id
        self._locks = {}

    # ── Per-DID write ordering ────────────────────────────────────────────
    @asynccontextmanager
    async def did_lock(self, did: str):
        """
        Serializes read-modify-write sequences on one DID inside this process.
        Across processes the version check in store_did_document catches it.
        """
        lock = self._locks.setdefault(did, asyncio.Lock())
        async with lock:
            yield

    # ── Key material ──────────────────────────────────────────────────────
    async def _signature(self, signer: WalletSigner, wallet_address: str, wallet_type: str) -> bytes:
        message = encryption_challenge(wallet_type, wallet_address)
        signature = await signer.sign_arbitrary(self.wallet_chain_id, wallet_address, message)
        if not signature:
            raise ValidationError("Wallet returned an empty signature")
        return signature

    async def _encrypt(self, payload: dict, signer, wallet_address, wallet_type) -> EncryptedRecord:
        signature = await self._signature(signer, wallet_address, wallet_type)
        # PBKDF2 runs in a worker thread
        return await asyncio.to_thread(self.crypto.encrypt, payload, signature)

    async def _decrypt(self, record: EncryptedRecord, signer, wallet_address, wallet_type):
        signature = await self._signature(signer, wallet_address, wallet_type)
        return await asyncio.to_thread(self.crypto.decrypt, record, signature)

    # ── DID documents ─────────────────────────────────────────────────────
    async def store_did_document(
        self,
        did: str,
        wallet_address: str,
        wallet_type: str,
        document: DIDDocument,
        signer: WalletSigner,
        expected_version: Optional[int] = None,
        deactivate: bool = False,
    ) -> StorageResult:
        """
        Encrypts and upserts the document keyed by DID.

        ConflictError when:
            - the DID belongs to another wallet
            - the wallet already owns a different DID
            - `expected_version` no longer matches (someone wrote in between)
        """
        payload = document.model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            encrypted = await self._encrypt(payload, signer, wallet_address, wallet_type)
            async with self._sessions.begin() as session:
                row = await session.scalar(
                    select(IdentityRecord).where(IdentityRecord.did == did).with_for_update()
                )
                if row is None:
                    if expected_version is not None:
                        raise ConflictError(f"{did} no longer exists")
                    owner = await session.scalar(
                        select(IdentityRecord.did).where(IdentityRecord.wallet_address == wallet_address)
                    )
                    if owner is not None:
                        raise ConflictError(f"Wallet {wallet_address} is already bound to {owner}")
                    row = IdentityRecord(did=did, wallet_address=wallet_address, version=1)
                    session.add(row)
                else:
                    if row.wallet_address != wallet_address:
                        raise ConflictError(f"{did} is bound to a different wallet")
                    if row.is_deactivated:
                        raise ValidationError(f"{did} is deactivated")
                    if expected_version is not None and row.version != expected_version:
                        raise ConflictError(
                            f"{did} is at version {row.version}, expected {expected_version}"
                        )
                    row.version += 1
                    row.updated_at = utcnow()

                row.wallet_type = wallet_type
                row.content_hash = encrypted.content_hash
                row.encrypted_content = encrypted.ciphertext
                row.encryption_params = encrypted.params()
                row.is_deactivated = deactivate
                version = row.version
        except sa_exc.IntegrityError:
            # lost a race on the unique DID / wallet columns
            error = ConflictError(f"{did} or wallet {wallet_address} was registered concurrently")
            await self._log_audit_event("did.store", "did", did, wallet_address, error)
            return StorageResult.fail(error)
        except IdentityCoreError as exc:
            await self._log_audit_event("did.store", "did", did, wallet_address, exc)
            return StorageResult.fail(exc)

        await self._log_audit_event("did.store", "did", did, wallet_address)
        logger.info(f"Stored {did} v{version} hash={encrypted.content_hash[:16]}...")
        return StorageResult.ok(
            payload,
            content_hash=encrypted.content_hash,
            version=version,
            metadata={"deactivated": deactivate},
        )

    async def get_did_document(
        self, did: str, wallet_address: str, wallet_type: str, signer: WalletSigner
    ) -> StorageResult:
        """Decrypts the document and re-verifies its content hash before returning it."""
        try:
            async with self._sessions() as session:
                row = await session.scalar(select(IdentityRecord).where(IdentityRecord.did == did))
            if row is None:
                raise NotFoundError(f"No identity record for {did}")
            if row.wallet_address != wallet_address:
                raise DecryptionError(f"{did} is not controlled by {wallet_address}")

            encrypted = EncryptedRecord.from_stored(
                row.content_hash, row.encrypted_content, row.encryption_params
            )
            payload = await self._decrypt(encrypted, signer, wallet_address, wallet_type)
        except IdentityCoreError as exc:
            await self._log_audit_event("did.read", "did", did, wallet_address, exc)
            return StorageResult.fail(exc)

        await self._log_audit_event("did.read", "did", did, wallet_address)
        return StorageResult.ok(
            DIDDocument.model_validate(payload),
            content_hash=row.content_hash,
            version=row.version,
            metadata=self._identity_metadata(row),
        )

    async def get_did_by_wallet(self, wallet_address: str) -> Optional[str]:
        async with self._sessions() as session:
            return await session.scalar(
                select(IdentityRecord.did).where(IdentityRecord.wallet_address == wallet_address)
            )

    async def did_exists(self, did: str) -> bool:
        return await self.get_identity_metadata(did) is not None

    async def get_identity_metadata(self, did: str) -> Optional[dict]:
        """Plaintext facts about a DID record; nothing here needs the wallet."""
        async with self._sessions() as session:
            row = await session.scalar(select(IdentityRecord).where(IdentityRecord.did == did))
        return self._identity_metadata(row) if row else None

    @staticmethod
    def _identity_metadata(row: IdentityRecord) -> dict:
        return {
            "wallet_address": row.wallet_address,
            "wallet_type": row.wallet_type,
            "content_hash": row.content_hash,
            "version": row.version,
            "deactivated": row.is_deactivated,
            "created": isoformat(row.created_at),
            "updated": isoformat(row.updated_at),
        }

    # ── Verifiable credentials ────────────────────────────────────────────
    async def store_verifiable_credential(
        self,
        credential: VerifiableCredential,
        wallet_address: str,
        wallet_type: str,
        signer: WalletSigner,
    ) -> StorageResult:
        payload = credential.model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            encrypted = await self._encrypt(payload, signer, wallet_address, wallet_type)
            async with self._sessions.begin() as session:
                session.add(CredentialRecord(
                    credential_id=credential.id,
                    subject_did=credential.subject_did,
                    issuer_did=credential.issuer_did,
                    wallet_address=wallet_address,
                    credential_type=credential.credential_type,
                    content_hash=encrypted.content_hash,
                    encrypted_credential=encrypted.ciphertext,
                    encryption_params=encrypted.params(),
                    issuance_date=parse_timestamp(credential.issuance_date),
                    expiration_date=(
                        parse_timestamp(credential.expiration_date) if credential.expiration_date else None
                    ),
                ))
        except sa_exc.IntegrityError:
            error = ConflictError(f"Credential {credential.id} already exists")
            await self._log_audit_event("credential.store", "credential", credential.id, wallet_address, error)
            return StorageResult.fail(error)
        except IdentityCoreError as exc:
            await self._log_audit_event("credential.store", "credential", credential.id, wallet_address, exc)
            return StorageResult.fail(exc)

        await self._log_audit_event("credential.store", "credential", credential.id, wallet_address)
        return StorageResult.ok(payload, content_hash=encrypted.content_hash, metadata={"status": "valid"})

    async def get_verifiable_credentials(
        self,
        did: str,
        wallet_address: str,
        wallet_type: str,
        signer: WalletSigner,
        include_revoked: bool = False,
    ) -> StorageResult:
        """
        All credentials whose subject is `did`.
        A record that fails to decrypt or verify is skipped and reported in
        `warnings`; the rest of the batch is still returned. A wallet that
        does not hold them is refused outright, as in get_verifiable_credential.
        """
        query = select(CredentialRecord).where(CredentialRecord.subject_did == did)
        if not include_revoked:
            query = query.where(CredentialRecord.status != "revoked")
        async with self._sessions() as session:
            rows = (await session.execute(query.order_by(CredentialRecord.created_at))).scalars().all()

        try:
            if any(row.wallet_address != wallet_address for row in rows):
                raise DecryptionError(f"Credentials of {did} are not held by {wallet_address}")
            signature = await self._signature(signer, wallet_address, wallet_type)
        except IdentityCoreError as exc:
            await self._log_audit_event("credential.list", "did", did, wallet_address, exc)
            return StorageResult.fail(exc)

        credentials, warnings = [], []
        for row in rows:
            try:
                encrypted = EncryptedRecord.from_stored(
                    row.content_hash, row.encrypted_credential, row.encryption_params
                )
                payload = await asyncio.to_thread(self.crypto.decrypt, encrypted, signature)
            except IdentityCoreError as exc:
                logger.warning(f"Skipping credential {row.credential_id}: {exc.message}")
                warnings.append(f"{row.credential_id}: {exc.code}")
                continue
            credentials.append(self._stored_credential(row, payload))

        await self._log_audit_event("credential.list", "did", did, wallet_address)
        return StorageResult.ok(credentials, warnings=warnings)

    async def get_verifiable_credential(
        self, credential_id: str, wallet_address: str, wallet_type: str, signer: WalletSigner
    ) -> StorageResult:
        try:
            async with self._sessions() as session:
                row = await session.scalar(
                    select(CredentialRecord).where(CredentialRecord.credential_id == credential_id)
                )
            if row is None:
                raise NotFoundError(f"No credential {credential_id}")
            if row.wallet_address != wallet_address:
                raise DecryptionError(f"Credential {credential_id} is not held by {wallet_address}")
            encrypted = EncryptedRecord.from_stored(
                row.content_hash, row.encrypted_credential, row.encryption_params
            )
            payload = await self._decrypt(encrypted, signer, wallet_address, wallet_type)
        except IdentityCoreError as exc:
            await self._log_audit_event("credential.read", "credential", credential_id, wallet_address, exc)
            return StorageResult.fail(exc)

        await self._log_audit_event("credential.read", "credential", credential_id, wallet_address)
        return StorageResult.ok(self._stored_credential(row, payload), content_hash=row.content_hash)

    @staticmethod
    def _stored_credential(row: CredentialRecord, payload: dict) -> StoredCredential:
        return StoredCredential(
            credential=VerifiableCredential.model_validate(payload),
            status=row.status,
            content_hash=row.content_hash,
            status_reason=row.status_reason,
        )

    async def update_credential_status(
        self, credential_id: str, status: str, issuer_did: str, reason: Optional[str] = None
    ) -> StorageResult:
        """Changes plaintext status metadata only; the ciphertext is never touched."""
        try:
            async with self._sessions.begin() as session:
                row = await session.scalar(
                    select(CredentialRecord).where(CredentialRecord.credential_id == credential_id)
                    .with_for_update()
                )
                if row is None:
                    raise NotFoundError(f"No credential {credential_id}")
                if row.issuer_did != issuer_did:
                    raise ValidationError(f"{issuer_did} did not issue {credential_id}")
                if row.status == status:
                    raise ConflictError(f"Credential {credential_id} is already {status}")
                if row.status == "revoked":
                    raise ValidationError(f"Credential {credential_id} is revoked")
                row.status = status
                row.status_reason = reason
                row.updated_at = utcnow()
                content_hash = row.content_hash
        except IdentityCoreError as exc:
            await self._log_audit_event("credential.status", "credential", credential_id, None, exc)
            return StorageResult.fail(exc)

        await self._log_audit_event("credential.status", "credential", credential_id, None)
        return StorageResult.ok(
            {"credentialId": credential_id, "status": status, "reason": reason},
            content_hash=content_hash,
            metadata={"status": status},
        )

    # ── Anchors (append-only) ─────────────────────────────────────────────
    async def record_anchor(
        self, subject_id: str, subject_type: str, operation: str, content_hash: str, result: AnchorResult
    ) -> None:
        async with self._sessions.begin() as session:
            session.add(AnchorRecord(
                subject_id=subject_id,
                subject_type=subject_type,
                operation=operation,
                content_hash=content_hash,
                anchored=result.anchored,
                tx_hash=getattr(result, "tx_hash", None),
                block_height=getattr(result, "block_height", None),
                fallback_ref=getattr(result, "fallback_ref", None),
                reason=getattr(result, "reason", None),
                network=result.network,
            ))

    async def list_anchors(self, subject_id: str) -> list:
        async with self._sessions() as session:
            rows = (await session.execute(
                select(AnchorRecord).where(AnchorRecord.subject_id == subject_id)
                .order_by(AnchorRecord.created_at)
            )).scalars().all()
        return [self._anchor_dict(row) for row in rows]

    async def latest_anchor(self, subject_id: str) -> Optional[dict]:
        anchors = await self.list_anchors(subject_id)
        return anchors[-1] if anchors else None

    @staticmethod
    def _anchor_dict(row: AnchorRecord) -> dict:
        return {
            "operation": row.operation,
            "contentHash": row.content_hash,
            "anchored": row.anchored,
            "txHash": row.tx_hash,
            "fallbackRef": row.fallback_ref,
            "blockHeight": row.block_height,
            "network": row.network,
            "reason": row.reason,
            "createdAt": isoformat(row.created_at),
        }

    # ── Proofs & nullifiers ───────────────────────────────────────────────
    async def save_proof(self, proof: ZKProof, credential_id: str) -> None:
        async with self._sessions.begin() as session:
            session.add(ProofRecord(
                id=proof.id,
                proof_type=proof.proof_type,
                circuit_name=proof.circuit_name,
                credential_id=credential_id,
                verifier_did=proof.verifier_did,
                nullifier_hash=proof.nullifier_hash,
                commitment_hash=proof.commitment_hash,
                challenge=proof.challenge,
                proof_digest=proof.proof_data.proof,
                expires_at=parse_timestamp(proof.expiration_time),
            ))

    async def get_proof_record(self, proof_id: str) -> Optional[dict]:
        """The row written when `proof_id` was generated, or None."""
        async with self._sessions() as session:
            row = await session.get(ProofRecord, proof_id)
        if row is None:
            return None
        return {
            "proof_type": row.proof_type,
            "credential_id": row.credential_id,
            "verifier_did": row.verifier_did,
            "nullifier_hash": row.nullifier_hash,
            "commitment_hash": row.commitment_hash,
            "challenge": row.challenge,
            "proof_digest": row.proof_digest,
            "expires_at": row.expires_at,
        }

    async def is_nullifier_consumed(self, nullifier_hash: str, verifier_did: str) -> bool:
        async with self._sessions() as session:
            record = await session.get(NullifierRecord, (nullifier_hash, verifier_did))
        return record is not None

    async def consume_nullifier(
        self, nullifier_hash: str, verifier_did: str, proof_id: str, expires_at: datetime
    ) -> bool:
        """
        Atomic check-and-set: a single INSERT on the composite primary key.
        Returns False when another verification already consumed it.
        """
        try:
            async with self._sessions.begin() as session:
                session.add(NullifierRecord(
                    nullifier_hash=nullifier_hash,
                    verifier_did=verifier_did,
                    proof_id=proof_id,
                    expires_at=expires_at,
                ))
        except sa_exc.IntegrityError:
            return False
        return True

    async def prune_expired(self, now: datetime = None) -> dict:
        """
        Drops proofs and nullifiers past their expiry. An expired proof fails
        verification on its timestamp alone, so its nullifier is no longer needed.
        """
        now = now or utcnow()
        async with self._sessions.begin() as session:
            proofs = await session.execute(delete(ProofRecord).where(ProofRecord.expires_at < now))
            nullifiers = await session.execute(delete(NullifierRecord).where(NullifierRecord.expires_at < now))
        pruned = {"proofs": proofs.rowcount, "nullifiers": nullifiers.rowcount}
        logger.info(f"Pruned {pruned['proofs']} proofs and {pruned['nullifiers']} nullifiers")
        return pruned

    # ── Stats ─────────────────────────────────────────────────────────────
    async def ping(self) -> str:
        async with self._sessions() as session:
            await session.execute(select(1))
        return "ok"

    async def get_storage_stats(self, wallet_address: Optional[str] = None) -> dict:
        async with self._sessions() as session:
            identities = select(func.count()).select_from(IdentityRecord)
            credentials = select(CredentialRecord.status, func.count()).group_by(CredentialRecord.status)
            if wallet_address:
                identities = identities.where(IdentityRecord.wallet_address == wallet_address)
                credentials = credentials.where(CredentialRecord.wallet_address == wallet_address)
            did_count = await session.scalar(identities)
            by_status = dict((await session.execute(credentials)).all())
            anchors = dict((await session.execute(
                select(AnchorRecord.anchored, func.count()).group_by(AnchorRecord.anchored)
            )).all())
            proof_count = await session.scalar(select(func.count()).select_from(ProofRecord))
            nullifier_count = await session.scalar(select(func.count()).select_from(NullifierRecord))
        return {
            "dids": did_count or 0,
            "credentials": sum(by_status.values()),
            "credentialsByStatus": by_status,
            "anchors": {"anchored": anchors.get(True, 0), "unanchored": anchors.get(False, 0)},
            "proofs": proof_count or 0,
            "consumedNullifiers": nullifier_count or 0,
        }

    # ── Audit ─────────────────────────────────────────────────────────────
    async def _log_audit_event(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        actor_wallet_address: Optional[str],
        error: IdentityCoreError = None,
    ) -> None:
        async with self._sessions.begin() as session:
            session.add(AuditLog(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_wallet_address=actor_wallet_address,
                result="failure" if error else "success",
                error_code=error.code if error else None,
                error_message=error.message if error else None,
            ))
        if error:
            logger.warning(f"{event_type} {entity_id} failed: {error.code}")

    async def get_audit_trail(self, entity_id: str) -> list:
        async with self._sessions() as session:
            rows = (await session.execute(
                select(AuditLog).where(AuditLog.entity_id == entity_id).order_by(AuditLog.timestamp)
            )).scalars().all()
        return [
            {
                "eventType": row.event_type,
                "result": row.result,
                "errorCode": row.error_code,
                "actor": row.actor_wallet_address,
                "timestamp": isoformat(row.timestamp),
            }
            for row in rows
        ]
