"""Shared fixtures: a throwaway SQLite database, the simulated ledger, and two wallets."""

import pytest

from config import Settings
from core.blockchain import SimulatedChain
from core.crypto import CryptoEngine
from core.schemas import DIDCreationParams
from core.wallet import Ed25519WalletSigner
from db.session import create_engine_for, create_session_factory, init_db
from modules.services import build_services

ALICE_ADDRESS = "cosmos1exampleaddr7x9k2m4p6q8r0s3t5v7w9y2z4"
ALICE_DID = "did:persona:s3t5v7w9y2z4"
BOB_ADDRESS = "cosmos1qy3529yj3v8xhgmxd7zcv2j9jc6wvjefgq4kxe"
BOB_DID = "did:persona:6wvjefgq4kxe"
ISSUER_DID = "did:persona:issuer000001"
VERIFIER_DID = "did:persona:verifier0001"
OTHER_VERIFIER_DID = "did:persona:verifier0002"


def pytest_configure(config):
    config.addinivalue_line("markers", "api: tests that go through the HTTP layer")


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        PBKDF2_ITERATIONS=1_000,
        LEDGER_BACKEND="simulation",
        LEDGER_TIMEOUT_SECONDS=1.0,
        CHALLENGE_SECRET_KEY="test-secret",
        LOG_FILE="",
    )


@pytest.fixture
def crypto():
    return CryptoEngine(iterations=1_000, challenge_secret="test-secret")


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed so concurrent sessions really use separate connections."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'identity.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def ledger():
    chain = SimulatedChain(chain_id="personachain-1")
    await chain.connect()
    return chain


@pytest.fixture
def services(settings, session_factory, ledger):
    return build_services(settings, session_factory, ledger=ledger)


@pytest.fixture
def alice_signer():
    return Ed25519WalletSigner.from_seed(b"\x01" * 32)


@pytest.fixture
def bob_signer():
    return Ed25519WalletSigner.from_seed(b"\x02" * 32)


@pytest.fixture
async def alice_did(services, alice_signer):
    result = await services.resolver.create_did(
        DIDCreationParams(wallet_address=ALICE_ADDRESS, wallet_type="keplr"), alice_signer
    )
    assert result.success, result.error
    return result.did


@pytest.fixture
async def bob_did(services, bob_signer):
    result = await services.resolver.create_did(
        DIDCreationParams(wallet_address=BOB_ADDRESS, wallet_type="leap"), bob_signer
    )
    assert result.success, result.error
    return result.did


@pytest.fixture
async def identity_credential(services, alice_did, bob_did, alice_signer):
    """Held by alice, issued by bob so that bob's wallet can revoke it."""
    result = await services.issuer.issue_credential(
        bob_did,
        alice_did,
        "IdentityCredential",
        {"firstName": "Jane", "lastName": "Doe", "verified": True},
        wallet_address=ALICE_ADDRESS,
        wallet_type="keplr",
        signer=alice_signer,
    )
    assert result.success, result.error
    return result.credential
