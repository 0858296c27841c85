"""
api/deps.py — Shared Request Dependencies
===========================================
Services live on app.state (built once in main.py lifespan).
Wallet credentials arrive in the request body as address + type + the
base64 signature the wallet produced over GET /identity/challenge.
"""

from fastapi import Request
from pydantic import BaseModel

from core.wallet import PresentedSignature
from modules.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


class WalletCredentials(BaseModel):
    wallet_address: str
    wallet_type: str
    signature: str      # base64 signature over the encryption challenge

    def signer(self) -> PresentedSignature:
        return PresentedSignature(self.wallet_address, self.signature)
