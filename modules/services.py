"""
modules/services.py — Service Wiring
======================================
Builds every service object exactly once and wires them together.
main.py calls build_services() in its lifespan and parks the result on
app.state; tests call it with their own database and ledger.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings
from core.anchor import AnchorClient
from core.blockchain import create_ledger
from core.crypto import CryptoEngine
from core.zkp import HashCommitmentProofSystem, ProofSystem
from modules.credentials import CredentialIssuer
from modules.did_resolver import DIDResolver
from modules.proofs import ProofEngine
from modules.storage import IdentityStorage


@dataclass
class Services:
    settings: Settings
    crypto: CryptoEngine
    ledger: object
    anchors: AnchorClient
    storage: IdentityStorage
    resolver: DIDResolver
    issuer: CredentialIssuer
    proofs: ProofEngine


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    ledger=None,
    proof_system: ProofSystem = None,
) -> Services:
    crypto = CryptoEngine(
        iterations=settings.PBKDF2_ITERATIONS,
        challenge_secret=settings.CHALLENGE_SECRET_KEY,
        jwt_algorithm=settings.JWT_ALGORITHM,
    )
    if ledger is None:
        ledger = create_ledger(settings)
    anchors = AnchorClient(
        ledger,
        network=settings.LEDGER_CHAIN_ID,
        signer_address=settings.LEDGER_SIGNER_ADDRESS,
        timeout=settings.LEDGER_TIMEOUT_SECONDS,
        retries=settings.LEDGER_RETRIES,
        fee_amount=settings.LEDGER_FEE_AMOUNT,
        fee_denom=settings.LEDGER_FEE_DENOM,
        gas_limit=settings.LEDGER_GAS_LIMIT,
    )
    storage = IdentityStorage(session_factory, crypto, wallet_chain_id=settings.WALLET_CHAIN_ID)
    resolver = DIDResolver(
        storage,
        anchors,
        method=settings.DID_METHOD,
        id_length=settings.DID_ID_LENGTH,
        wallet_chain_id=settings.WALLET_CHAIN_ID,
        supported_wallet_types=settings.SUPPORTED_WALLET_TYPES,
        service_endpoint=settings.DID_SERVICE_ENDPOINT,
    )
    return Services(
        settings=settings,
        crypto=crypto,
        ledger=ledger,
        anchors=anchors,
        storage=storage,
        resolver=resolver,
        issuer=CredentialIssuer(storage, anchors),
        proofs=ProofEngine(
            storage,
            anchors,
            crypto,
            proof_system=proof_system or HashCommitmentProofSystem(),
            expiration_hours=settings.PROOF_EXPIRATION_HOURS,
            request_minutes=settings.PRESENTATION_REQUEST_MINUTES,
        ),
    )
