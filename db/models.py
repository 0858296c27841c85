"""
db/models.py — Database Table Definitions
==========================================
Each class = one table.
DID documents and credentials are stored ENCRYPTED (core/crypto.py runs before
saving); the ledger stores content hashes; this database stores ciphertext,
content hashes and the plaintext metadata needed to find records again.

Uniqueness the system depends on lives HERE, not in process memory:
    identity_records.did              → one record per DID
    identity_records.wallet_address   → one DID per wallet
    nullifiers (nullifier, verifier)  → one successful verification per proof context
"""

import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, Boolean, Text, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID
from db.session import Base
from core.schemas import utcnow


def new_uuid():
    return str(uuid.uuid4())


# ── 1. DID documents ──────────────────────────────────────────────────────────
class IdentityRecord(Base):
    __tablename__ = "identity_records"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=new_uuid)
    did: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    wallet_type: Mapped[str] = mapped_column(String(32), nullable=False)   # keplr | leap
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted_content: Mapped[str] = mapped_column(Text, nullable=False)
    encryption_params: Mapped[dict] = mapped_column(JSON, nullable=False)  # iv, salt, algorithm, iterations
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_deactivated: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


# ── 2. Verifiable credentials ─────────────────────────────────────────────────
class CredentialRecord(Base):
    __tablename__ = "credential_records"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=new_uuid)
    credential_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    subject_did: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    issuer_did: Mapped[str] = mapped_column(String(255), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    credential_type: Mapped[str] = mapped_column(String(100), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted_credential: Mapped[str] = mapped_column(Text, nullable=False)
    encryption_params: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="valid")        # valid | revoked | suspended
    status_reason: Mapped[str] = mapped_column(Text, nullable=True)
    issuance_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expiration_date: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


# ── 3. Ledger anchors (append-only) ───────────────────────────────────────────
class AnchorRecord(Base):
    __tablename__ = "anchor_records"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=new_uuid)
    subject_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)  # DID, credential or proof id
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)             # did | credential | proof
    operation: Mapped[str] = mapped_column(String(50), nullable=False)                # create | update | deactivate | issue | revoked | commit
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    anchored: Mapped[bool] = mapped_column(Boolean, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=True)
    fallback_ref: Mapped[str] = mapped_column(String(128), nullable=True)
    block_height: Mapped[int] = mapped_column(Integer, nullable=True)
    network: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── 4. Issued proofs ──────────────────────────────────────────────────────────
class ProofRecord(Base):
    __tablename__ = "proof_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)           # proof id
    proof_type: Mapped[str] = mapped_column(String(50), nullable=False)
    circuit_name: Mapped[str] = mapped_column(String(100), nullable=False)
    credential_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    verifier_did: Mapped[str] = mapped_column(String(255), nullable=True)
    nullifier_hash: Mapped[str] = mapped_column(String(64), nullable=True)
    commitment_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    challenge: Mapped[str] = mapped_column(String(255), nullable=False)
    proof_digest: Mapped[str] = mapped_column(String(64), nullable=False)    # proofData.proof
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── 5. Consumed nullifiers ────────────────────────────────────────────────────
class NullifierRecord(Base):
    __tablename__ = "nullifiers"

    # the INSERT itself is the check-and-set
    nullifier_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    verifier_did: Mapped[str] = mapped_column(String(255), primary_key=True)
    proof_id: Mapped[str] = mapped_column(String(64), nullable=False)
    consumed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)


# ── 6. Audit Log ──────────────────────────────────────────────────────────────
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=new_uuid)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)   # did.store | credential.read | ...
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)   # did | credential | proof
    entity_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    actor_wallet_address: Mapped[str] = mapped_column(String(128), nullable=True)
    result: Mapped[str] = mapped_column(String(20), nullable=False)        # success | failure
    error_code: Mapped[str] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
