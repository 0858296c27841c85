"""Tests for the anchor client and the ledger backends it drives."""

import asyncio
import base64
import json

import httpx
import pytest

from core.anchor import Anchored, AnchorClient, Unanchored, fallback_reference
from core.blockchain import SimulatedChain, TendermintChain, encode_tx, tx_hash_of
from core.crypto import content_hash
from core.errors import ChainUnavailableError

DID = "did:persona:s3t5v7w9y2z4"
WALLET = "cosmos1exampleaddr7x9k2m4p6q8r0s3t5v7w9y2z4"
HASH = content_hash({"id": DID})


class ScriptedLedger:
    """Ledger double whose status call fails a set number of times before succeeding."""

    def __init__(self, failures: int = 0, delay: float = 0.0, code: int = 0):
        self.failures = failures
        self.delay = delay
        self.code = code
        self.status_calls = 0
        self.broadcasts = []

    async def status(self):
        self.status_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status_calls <= self.failures:
            raise ChainUnavailableError("node restarting")
        return {"chain_id": "personachain-1", "latest_block_height": 7}

    async def get_account(self, address):
        return {"account_number": 3, "sequence": 11}

    async def broadcast(self, tx):
        self.broadcasts.append(tx)
        return {"tx_hash": "AB" * 32, "height": 8, "code": self.code, "log": "insufficient fee" if self.code else ""}

    async def get_transaction(self, tx_hash):
        return None

    async def query_did(self, did):
        raise ChainUnavailableError("node restarting")


@pytest.fixture
async def chain():
    ledger = SimulatedChain()
    await ledger.connect()
    return ledger


def _client(ledger, **kwargs) -> AnchorClient:
    kwargs.setdefault("timeout", 0.5)
    return AnchorClient(ledger, network="personachain-1", **kwargs)


# =============================================================================
# ANCHORING
# =============================================================================


class TestAnchoring:
    async def test_anchored_when_chain_is_up(self, chain):
        result = await _client(chain).anchor_did_creation(DID, WALLET, HASH, {"verificationMethod": [{}]})

        assert isinstance(result, Anchored)
        assert result.anchored is True
        assert result.block_height == 1
        assert (await chain.query_did(DID))["content_hash"] == HASH

    async def test_unanchored_when_chain_is_down(self, chain):
        chain.available = False
        result = await _client(chain).anchor_did_creation(DID, WALLET, HASH, {})

        assert isinstance(result, Unanchored)
        assert result.anchored is False
        assert result.fallback_ref == fallback_reference(HASH, "create")
        assert result.fallback_ref.startswith("unanchored:")
        assert "unreachable" in result.reason

    async def test_fallback_ref_is_deterministic(self, chain):
        chain.available = False
        client = _client(chain)
        first = await client.anchor_did_operation(DID, WALLET, HASH, "update")
        second = await client.anchor_did_operation(DID, WALLET, HASH, "update")
        other = await client.anchor_did_operation(DID, WALLET, HASH, "deactivate")

        assert first.fallback_ref == second.fallback_ref
        assert first.fallback_ref != other.fallback_ref

    async def test_retries_transient_failure(self):
        ledger = ScriptedLedger(failures=1)
        result = await _client(ledger, retries=1).anchor_credential_issuance(
            "urn:uuid:1", "did:persona:issuer000001", DID, HASH
        )
        assert result.anchored is True
        assert ledger.status_calls == 2

    async def test_gives_up_after_retries(self):
        ledger = ScriptedLedger(failures=5)
        result = await _client(ledger, retries=2).anchor_credential_issuance(
            "urn:uuid:1", "did:persona:issuer000001", DID, HASH
        )
        assert result.anchored is False
        assert ledger.status_calls == 3
        assert ledger.broadcasts == []

    async def test_timeout_is_unanchored(self):
        ledger = ScriptedLedger(delay=1.0)
        result = await _client(ledger, timeout=0.05, retries=0).anchor_did_creation(DID, WALLET, HASH, {})
        assert result.anchored is False

    async def test_rejected_transaction_is_unanchored(self):
        result = await _client(ScriptedLedger(code=13)).anchor_did_creation(DID, WALLET, HASH, {})
        assert result.anchored is False
        assert "code 13" in result.reason

    async def test_transaction_shape(self):
        ledger = ScriptedLedger()
        client = _client(ledger, signer_address=WALLET, fee_amount=2500, fee_denom="upersona")
        await client.anchor_proof_commitment("proof_1", "did:persona:issuer000001", DID, HASH)

        tx = ledger.broadcasts[0]
        message = tx["body"]["messages"][0]
        assert message["@type"] == "/persona.anchor.v1.MsgAnchorData"
        assert message["content_hash"] == HASH
        assert message["operation"] == "commit"
        assert tx["sequence"] == 11
        assert tx["auth_info"]["fee"]["amount"] == [{"denom": "upersona", "amount": "2500"}]

    def test_result_serialization(self):
        assert Anchored("AB", 4, "personachain-1").to_dict() == {
            "anchored": True, "tx_hash": "AB", "block_height": 4, "network": "personachain-1",
        }
        assert Unanchored("down", "unanchored:x", "personachain-1").to_dict()["anchored"] is False


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:
    async def test_confirmed_transaction(self, chain):
        client = _client(chain)
        anchored = await client.anchor_did_creation(DID, WALLET, HASH, {})
        status = await client.get_transaction_status(anchored.tx_hash)
        assert status.status == "confirmed"
        assert status.block_height == anchored.block_height

    async def test_unknown_hash_is_pending(self, chain):
        status = await _client(chain).get_transaction_status("CD" * 32)
        assert status.status == "pending"
        assert status.confirmed is False

    async def test_fallback_ref_is_failed(self, chain):
        status = await _client(chain).get_transaction_status(fallback_reference(HASH, "create"))
        assert status.status == "failed"

    async def test_chain_down_is_unknown(self, chain):
        chain.available = False
        status = await _client(chain, retries=0).get_transaction_status("CD" * 32)
        assert status.status == "unknown"

    async def test_chain_status(self, chain):
        status = await _client(chain).check_chain_status()
        assert status.accessible is True
        assert status.chain_id == "personachain-1"

        chain.available = False
        assert (await _client(chain, retries=0).check_chain_status()).accessible is False

    async def test_resolve_did_soft_fails(self):
        assert await _client(ScriptedLedger(), retries=0).resolve_did(DID) is None


# =============================================================================
# SIMULATED CHAIN
# =============================================================================


class TestSimulatedChain:
    async def test_blocks_are_hash_linked(self, chain):
        await chain.broadcast({"body": {"messages": [], "memo": "one"}})
        await chain.broadcast({"body": {"messages": [], "memo": "two"}})
        for previous, block in zip(chain.blocks, chain.blocks[1:]):
            assert block["prev_hash"] == previous["hash"]

    async def test_duplicate_transaction_rejected(self, chain):
        tx = {"body": {"messages": [], "memo": "same"}}
        first = await chain.broadcast(tx)
        second = await chain.broadcast(tx)
        assert first["code"] == 0
        assert second["code"] == 19
        assert first["tx_hash"] == tx_hash_of(encode_tx(tx))

    async def test_signer_sequence_advances(self, chain):
        await chain.broadcast({"body": {"messages": [], "memo": "a"}, "signer": WALLET})
        assert (await chain.get_account(WALLET))["sequence"] == 1


# =============================================================================
# TENDERMINT RPC
# =============================================================================


def _tendermint(handler) -> TendermintChain:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TendermintChain("http://rpc.test", "http://rest.test", "personachain-1", client=client)


class TestTendermintChain:
    async def test_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/status"
            return httpx.Response(200, json={"result": {
                "node_info": {"network": "personachain-1"},
                "sync_info": {"latest_block_height": "1234"},
            }})

        status = await _tendermint(handler).status()
        assert status == {"chain_id": "personachain-1", "latest_block_height": 1234}

    async def test_unknown_account_starts_at_zero(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == "rest.test"
            return httpx.Response(404, json={"code": 5, "message": "account not found"})

        assert await _tendermint(handler).get_account(WALLET) == {"account_number": 0, "sequence": 0}

    async def test_vesting_account(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"account": {
                "base_account": {"account_number": "42", "sequence": "7"},
            }})

        assert await _tendermint(handler).get_account(WALLET) == {"account_number": 42, "sequence": 7}

    async def test_broadcast(self):
        tx = {"body": {"messages": [{"did": DID, "content_hash": HASH}], "memo": "persona:create"}}

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/broadcast_tx_commit"
            assert request.url.params["tx"] == "0x" + encode_tx(tx).hex()
            return httpx.Response(200, json={"result": {
                "hash": "EF" * 32,
                "height": "99",
                "check_tx": {"code": 0},
                "deliver_tx": {"code": 0, "log": ""},
            }})

        receipt = await _tendermint(handler).broadcast(tx)
        assert receipt == {"tx_hash": "EF" * 32, "height": 99, "code": 0, "log": ""}

    async def test_missing_transaction(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"error": {
                "code": -32603, "message": "Internal error", "data": "tx (ABC) not found",
            }})

        assert await _tendermint(handler).get_transaction("ABC") is None

    async def test_query_did(self):
        record = {"did": DID, "content_hash": HASH, "tx_hash": "EF" * 32}

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/abci_query"
            assert request.url.params["path"] == '"/custom/persona/did"'
            value = base64.b64encode(json.dumps(record).encode()).decode()
            return httpx.Response(200, json={"result": {"response": {"code": 0, "value": value, "height": "5"}}})

        result = await _tendermint(handler).query_did(DID)
        assert result["content_hash"] == HASH
        assert result["block_height"] == 5

    async def test_transport_error_is_chain_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ChainUnavailableError):
            await _tendermint(handler).status()

    async def test_not_connected(self):
        ledger = TendermintChain("http://rpc.test", "http://rest.test", "personachain-1")
        with pytest.raises(ChainUnavailableError):
            await ledger.status()
        assert await ledger.ping() == "unreachable"
