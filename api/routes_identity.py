"""
api/routes_identity.py — Identity API Endpoints
=================================================
Handles DID creation, resolution, update and deactivation.

Endpoints:
    GET   /identity/challenge                → Message the wallet must sign
    GET   /identity/method                   → DID method info
    POST  /identity/dids                     → Create the DID for a wallet
    GET   /identity/dids/{did}               → Public resolution (redacted stub)
    POST  /identity/dids/{did}/resolve       → Private resolution (wallet credentials)
    PATCH /identity/dids/{did}               → Update a DID document
    POST  /identity/dids/{did}/deactivate    → Deactivate a DID
    GET   /identity/wallets/{address}/did    → Reverse lookup
    GET   /identity/stats                    → Storage statistics
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.deps import WalletCredentials, get_services
from api.errors import raise_for_error, status_for_code
from core.schemas import DIDCreationParams, DIDCreationResult, DIDDocumentUpdate, DIDResolutionResult
from core.wallet import encryption_challenge
from modules.services import Services

router = APIRouter()


# ── Request / Response schemas ────────────────────────────────────────────────
class CreateDIDRequest(WalletCredentials):
    public_key: Optional[str] = None


class UpdateDIDRequest(WalletCredentials):
    updates: DIDDocumentUpdate


class DIDWriteResponse(BaseModel):
    did: str
    version: int
    content_hash: str
    anchor: dict
    document: dict
    warnings: list


def _write_response(result: DIDCreationResult) -> DIDWriteResponse:
    if not result.success:
        raise_for_error(result.error)
    return DIDWriteResponse(
        did=result.did,
        version=result.version,
        content_hash=result.content_hash,
        anchor=result.anchor.to_dict(),
        document=result.document.to_wire(),
        warnings=result.warnings,
    )


def _resolution_response(result: DIDResolutionResult) -> JSONResponse:
    status_code = status_for_code(result.error) if result.error else 200
    return JSONResponse(status_code=status_code, content=result.to_wire())


# ── Endpoints ─────────────────────────────────────────────────────────────────
@router.get("/challenge")
async def get_challenge(wallet_address: str, wallet_type: str, services: Services = Depends(get_services)):
    """The exact message to sign. Its signature is the key material for the wallet's records."""
    if wallet_type not in services.settings.SUPPORTED_WALLET_TYPES:
        raise HTTPException(status_code=400, detail={"error": "invalid_request",
                                                     "message": "Unsupported wallet type."})
    return {
        "chainId": services.settings.WALLET_CHAIN_ID,
        "walletAddress": wallet_address,
        "message": encryption_challenge(wallet_type, wallet_address),
    }


@router.get("/method")
async def get_method(services: Services = Depends(get_services)):
    return services.resolver.get_method_info()


@router.get("/stats")
async def get_stats(wallet_address: Optional[str] = None, services: Services = Depends(get_services)):
    return await services.storage.get_storage_stats(wallet_address)


@router.post("/dids", response_model=DIDWriteResponse, status_code=201)
async def create_did(body: CreateDIDRequest, services: Services = Depends(get_services)):
    """
    Create the DID for a wallet. One wallet → one DID; a second attempt is a 409.
    Anchoring failure does NOT fail the request; see `anchor` and `warnings`.
    """
    params = DIDCreationParams(
        wallet_address=body.wallet_address,
        wallet_type=body.wallet_type,
        public_key=body.public_key,
    )
    result = await services.resolver.create_did(params, body.signer())
    return _write_response(result)


@router.get("/dids/{did}")
async def resolve_public(did: str, services: Services = Depends(get_services)):
    return _resolution_response(await services.resolver.resolve_did(did))


@router.post("/dids/{did}/resolve")
async def resolve_private(did: str, body: WalletCredentials, services: Services = Depends(get_services)):
    result = await services.resolver.resolve_did(did, body.wallet_address, body.wallet_type, body.signer())
    return _resolution_response(result)


@router.patch("/dids/{did}", response_model=DIDWriteResponse)
async def update_did(did: str, body: UpdateDIDRequest, services: Services = Depends(get_services)):
    result = await services.resolver.update_did(
        did, body.wallet_address, body.wallet_type, body.updates, body.signer()
    )
    return _write_response(result)


@router.post("/dids/{did}/deactivate", response_model=DIDWriteResponse)
async def deactivate_did(did: str, body: WalletCredentials, services: Services = Depends(get_services)):
    result = await services.resolver.deactivate_did(did, body.wallet_address, body.wallet_type, body.signer())
    return _write_response(result)


@router.get("/wallets/{wallet_address}/did")
async def get_did_for_wallet(wallet_address: str, services: Services = Depends(get_services)):
    did = await services.storage.get_did_by_wallet(wallet_address)
    if did is None:
        raise HTTPException(status_code=404, detail={"error": "not_found",
                                                     "message": "No DID for this wallet."})
    return {"walletAddress": wallet_address, "did": did}
