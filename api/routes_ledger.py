"""
api/routes_ledger.py — Ledger API Endpoints
=============================================
Read-only views of the ledger and of the local anchor log.

Endpoints:
    GET /ledger/status                      → Chain reachability + height
    GET /ledger/transactions/{tx_hash}      → Confirmation status of an anchor tx
    GET /ledger/anchors/{subject_id}        → Anchor history of a DID / credential / proof
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends

from api.deps import get_services
from modules.services import Services

router = APIRouter()


@router.get("/status")
async def chain_status(services: Services = Depends(get_services)):
    return asdict(await services.anchors.check_chain_status())


@router.get("/transactions/{tx_hash}")
async def transaction_status(tx_hash: str, services: Services = Depends(get_services)):
    return asdict(await services.anchors.get_transaction_status(tx_hash))


@router.get("/anchors/{subject_id}")
async def anchor_history(subject_id: str, services: Services = Depends(get_services)):
    return {"subjectId": subject_id, "anchors": await services.storage.list_anchors(subject_id)}
