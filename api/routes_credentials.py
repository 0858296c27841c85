"""
api/routes_credentials.py — Credential API Endpoints
======================================================
Issue, list and revoke verifiable credentials.

Endpoints:
    POST /credentials                        → Issue a credential to the calling holder
    POST /credentials/list                   → Decrypt and list the holder's credentials
    POST /credentials/{credential_id}/revoke → Revoke (issuer wallet)
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from api.deps import WalletCredentials, get_services
from api.errors import raise_for_error
from modules.services import Services

router = APIRouter()


# ── Request schemas ───────────────────────────────────────────────────────────
class IssueCredentialRequest(WalletCredentials):
    issuer_did: str
    subject_did: str
    credential_type: str            # IdentityCredential | AgeVerificationCredential | ...
    claims: Dict[str, Any]
    expiration_date: Optional[datetime] = None


class ListCredentialsRequest(WalletCredentials):
    did: str
    include_revoked: bool = False


class RevokeCredentialRequest(WalletCredentials):
    issuer_did: str                 # must be the DID the calling wallet controls
    reason: Optional[str] = None


# ── Endpoints ─────────────────────────────────────────────────────────────────
@router.post("", status_code=201)
async def issue_credential(body: IssueCredentialRequest, services: Services = Depends(get_services)):
    result = await services.issuer.issue_credential(
        body.issuer_did,
        body.subject_did,
        body.credential_type,
        body.claims,
        wallet_address=body.wallet_address,
        wallet_type=body.wallet_type,
        signer=body.signer(),
        expiration_date=body.expiration_date,
    )
    if not result.success:
        raise_for_error(result.error)
    return {
        "credential": result.credential.to_wire(),
        "contentHash": result.content_hash,
        "status": result.status,
        "anchor": result.anchor.to_dict(),
        "warnings": result.warnings,
    }


@router.post("/list")
async def list_credentials(body: ListCredentialsRequest, services: Services = Depends(get_services)):
    """Records that cannot be decrypted are left out and named in `warnings`."""
    result = await services.issuer.list_credentials(
        body.did, body.wallet_address, body.wallet_type, body.signer(), include_revoked=body.include_revoked
    )
    if not result.success:
        raise_for_error(result.error)
    return {
        "credentials": [
            {"credential": item.credential.to_wire(), "status": item.status, "contentHash": item.content_hash}
            for item in result.data
        ],
        "warnings": result.warnings,
    }


@router.post("/{credential_id}/revoke")
async def revoke_credential(
    credential_id: str, body: RevokeCredentialRequest, services: Services = Depends(get_services)
):
    result = await services.issuer.revoke_credential(
        credential_id,
        body.issuer_did,
        body.reason,
        wallet_address=body.wallet_address,
        wallet_type=body.wallet_type,
        signer=body.signer(),
    )
    if not result.success:
        raise_for_error(result.error)
    return {
        "credentialId": credential_id,
        "status": result.status,
        "contentHash": result.content_hash,
        "anchor": result.anchor.to_dict(),
        "warnings": result.warnings,
    }
