"""
api/routes_proofs.py — Proof API Endpoints
============================================
Presentation requests, proof generation (holder side) and verification
(verifier side).

Endpoints:
    POST /proofs/requests               → Verifier: new challenge + signed token
    POST /proofs/selective-disclosure   → Holder: reveal chosen attributes only
    POST /proofs/membership             → Holder: prove group membership
    POST /proofs/range                  → Holder: prove min <= attribute <= max
    POST /proofs/verify                 → Verifier: verify one proof (consumes its nullifier)
    POST /proofs/verify/batch           → Verifier: verify many proofs concurrently
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.deps import WalletCredentials, get_services
from api.errors import raise_for_error
from core.errors import IdentityCoreError
from core.schemas import PresentationRequest, ProofResult, VerificationRequest, VerificationResult
from modules.services import Services

router = APIRouter()


# ── Request schemas ───────────────────────────────────────────────────────────
class PresentationRequestBody(BaseModel):
    verifier_did: str
    requested_attributes: List[str]
    purpose: str
    expiration_minutes: Optional[int] = None


class ProofContext(WalletCredentials):
    credential_id: str
    purpose: str
    verifier_did: Optional[str] = None
    challenge: Optional[str] = None


class SelectiveDisclosureRequest(ProofContext):
    requested_attributes: List[str]


class MembershipRequest(ProofContext):
    group_id: str
    purpose: str = "membership"


class RangeRequest(ProofContext):
    attribute: str
    min_value: float
    max_value: float
    purpose: str = "range"


class BatchVerificationBody(BaseModel):
    requests: List[VerificationRequest]


def _proof_response(result: ProofResult) -> dict:
    if not result.success:
        raise_for_error(result.error)
    return {
        "proof": result.proof.to_wire(),
        "anchor": result.anchor.to_dict(),
        "warnings": result.warnings,
    }


# ── Endpoints ─────────────────────────────────────────────────────────────────
@router.post("/requests", response_model=PresentationRequest, response_model_by_alias=True)
async def create_presentation_request(
    body: PresentationRequestBody, services: Services = Depends(get_services)
):
    try:
        return services.proofs.create_presentation_request(
            body.verifier_did, body.requested_attributes, body.purpose, body.expiration_minutes
        )
    except IdentityCoreError as exc:
        raise_for_error(exc)


@router.post("/selective-disclosure", status_code=201)
async def selective_disclosure(body: SelectiveDisclosureRequest, services: Services = Depends(get_services)):
    result = await services.proofs.generate_selective_disclosure_proof(
        body.credential_id,
        body.requested_attributes,
        body.purpose,
        wallet_address=body.wallet_address,
        wallet_type=body.wallet_type,
        signer=body.signer(),
        verifier_did=body.verifier_did,
        challenge=body.challenge,
    )
    return _proof_response(result)


@router.post("/membership", status_code=201)
async def membership(body: MembershipRequest, services: Services = Depends(get_services)):
    result = await services.proofs.generate_membership_proof(
        body.credential_id,
        body.group_id,
        body.purpose,
        wallet_address=body.wallet_address,
        wallet_type=body.wallet_type,
        signer=body.signer(),
        verifier_did=body.verifier_did,
        challenge=body.challenge,
    )
    return _proof_response(result)


@router.post("/range", status_code=201)
async def range_proof(body: RangeRequest, services: Services = Depends(get_services)):
    result = await services.proofs.generate_range_proof(
        body.credential_id,
        body.attribute,
        body.min_value,
        body.max_value,
        body.purpose,
        wallet_address=body.wallet_address,
        wallet_type=body.wallet_type,
        signer=body.signer(),
        verifier_did=body.verifier_did,
        challenge=body.challenge,
    )
    return _proof_response(result)


@router.post("/verify", response_model=VerificationResult, response_model_exclude_none=True)
async def verify(body: VerificationRequest, services: Services = Depends(get_services)):
    """
    Always 200: an invalid proof is a normal verification outcome.
    `isValid` and `error` carry the verdict.
    """
    return await services.proofs.verify_proof(
        body.proof, body.verifier_did, body.expected_challenge, body.challenge_token
    )


@router.post("/verify/batch", response_model=List[VerificationResult], response_model_exclude_none=True)
async def verify_batch(body: BatchVerificationBody, services: Services = Depends(get_services)):
    return await services.proofs.batch_verify_proofs(body.requests)
