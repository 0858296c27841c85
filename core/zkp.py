"""
core/zkp.py — Proof System
============================
The proof engine (modules/proofs.py) builds the statement; a ProofSystem turns
it into `proofData` and checks it again at verification time.

HashCommitmentProofSystem is what ships by default. It is a hash commitment
over the public signals, NOT a zero-knowledge proof: anyone holding the
public signals can recompute it. It gives tamper evidence over the revealed
attributes and binds them to the commitment, nullifier, challenge, expiry,
audience and purpose, nothing more. A Groth16/PLONK backend slots in by
implementing the same two methods.
"""

import hashlib
import hmac
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from core.crypto import canonical_json, content_hash
from core.schemas import ProofData

CIRCUITS = {
    "selective_disclosure": "selective_disclosure_v1",
    "membership": "group_membership_v1",
    "range": "range_proof_v1",
}

HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class ProofStatement:
    challenge: str
    commitment_hash: str
    nullifier_hash: Optional[str]
    revealed: Dict[str, Any] = field(default_factory=dict)
    requested: List[str] = field(default_factory=list)
    expiration_time: str = ""
    verifier_did: Optional[str] = None
    purpose: str = ""

    def public_signals(self) -> List[str]:
        return [
            self.challenge,
            self.commitment_hash,
            self.nullifier_hash or "",
            canonical_json(self.revealed),
            self.expiration_time,
            self.verifier_did or "",
            self.purpose,
        ]


class ProofSystem(Protocol):
    name: str

    def prove(self, circuit: str, statement: ProofStatement) -> ProofData:
        ...

    def verify(self, circuit: str, statement: ProofStatement, proof_data: ProofData) -> bool:
        ...


class HashCommitmentProofSystem:
    name = "hash-commitment"

    def verification_key(self, circuit: str) -> str:
        digest = hashlib.sha256(f"{self.name}:{circuit}".encode("utf-8")).hexdigest()
        return f"vk_{circuit}_{digest[:32]}"

    def prove(self, circuit: str, statement: ProofStatement) -> ProofData:
        signals = statement.public_signals()
        proof = content_hash({
            "circuit": circuit,
            "requested": sorted(statement.requested),
            "signals": signals,
        })
        return ProofData(
            proof=proof,
            public_signals=signals,
            verification_key=self.verification_key(circuit),
        )

    def verify(self, circuit: str, statement: ProofStatement, proof_data: ProofData) -> bool:
        if proof_data.verification_key != self.verification_key(circuit):
            return False
        if proof_data.public_signals != statement.public_signals():
            return False
        if not HEX_DIGEST.match(proof_data.proof):
            return False
        expected = self.prove(circuit, statement)
        return hmac.compare_digest(expected.proof, proof_data.proof)
