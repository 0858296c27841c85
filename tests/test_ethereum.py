"""Tests for the Ethereum ledger backend against an in-process stand-in for the web3 client."""

from types import SimpleNamespace

import pytest

pytest.importorskip("web3")

from eth_account import Account  # noqa: E402
from hexbytes import HexBytes  # noqa: E402
from web3 import Web3  # noqa: E402
from web3.exceptions import TimeExhausted, Web3Exception  # noqa: E402

from core.anchor import MSG_CREATE_DID, Anchored, AnchorClient, Unanchored  # noqa: E402
from core.blockchain import EthereumChain  # noqa: E402
from core.crypto import content_hash  # noqa: E402
from core.errors import ChainUnavailableError  # noqa: E402

PRIVATE_KEY = "0x" + "11" * 32
SENDER = Account.from_key(PRIVATE_KEY).address
OTHER = "0x" + "ab" * 20
TX_HASH = HexBytes(b"\x12" * 32)
DID = "did:persona:s3t5v7w9y2z4"
HASH = content_hash({"id": DID})


class RecordingAccount:
    def __init__(self):
        self.signed = []

    def from_key(self, key):
        return Account.from_key(key)

    def sign_transaction(self, tx, key):
        self.signed.append(tx)
        return SimpleNamespace(raw_transaction=b"signed")


class FakeEth:
    gas_price = 1_000_000_000
    block_number = 42

    def __init__(self, send_error=None, receipt=None):
        self.account = RecordingAccount()
        self.send_error = send_error
        self.receipt = receipt
        self.sent = []
        self.nonce_queries = []
        self.receipt_timeouts = []

    def get_transaction_count(self, address, block_identifier="latest"):
        self.nonce_queries.append((address, block_identifier))
        return 9

    def send_raw_transaction(self, raw):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)
        return TX_HASH

    def wait_for_transaction_receipt(self, tx_hash, timeout):
        self.receipt_timeouts.append(timeout)
        if self.receipt is None:
            raise TimeExhausted(f"Transaction {tx_hash!r} is not in the chain after {timeout} seconds")
        return self.receipt


class FakeWeb3:
    to_hex = staticmethod(Web3.to_hex)
    is_address = staticmethod(Web3.is_address)
    to_checksum_address = staticmethod(Web3.to_checksum_address)

    def __init__(self, eth: FakeEth):
        self.eth = eth

    def is_connected(self):
        return True


def _chain(eth: FakeEth) -> EthereumChain:
    chain = EthereumChain("http://127.0.0.1:8545", 1337, PRIVATE_KEY, receipt_timeout=0.25)
    chain.w3 = FakeWeb3(eth)
    return chain


def _tx(sequence: int = 0) -> dict:
    client = AnchorClient(SimpleNamespace(), network="1337")
    return client.build_tx(
        MSG_CREATE_DID, {"content_hash": HASH}, {"account_number": 0, "sequence": sequence}
    )


MINED = SimpleNamespace(transactionHash=TX_HASH, blockNumber=43, status=1)


# =============================================================================
# BROADCAST
# =============================================================================


class TestBroadcast:
    async def test_mined(self):
        eth = FakeEth(receipt=MINED)
        receipt = await _chain(eth).broadcast(_tx())
        assert receipt["code"] == 0
        assert receipt["height"] == 43
        assert receipt["tx_hash"].endswith("12" * 32)

    async def test_nonce_comes_from_node(self):
        eth = FakeEth(receipt=MINED)
        chain = _chain(eth)
        await chain.broadcast(_tx(sequence=0))
        await chain.broadcast(_tx(sequence=0))

        assert [tx["nonce"] for tx in eth.account.signed] == [9, 9]
        assert eth.nonce_queries == [(SENDER, "pending"), (SENDER, "pending")]

    async def test_receipt_wait_is_bounded(self):
        eth = FakeEth(receipt=None)
        receipt = await _chain(eth).broadcast(_tx())

        assert eth.receipt_timeouts == [0.25]
        assert receipt["code"] == 0
        assert receipt["height"] is None
        assert receipt["tx_hash"].endswith("12" * 32)

    @pytest.mark.parametrize("error", [
        ValueError({"code": -32000, "message": "nonce too low"}),
        Web3Exception("replacement transaction underpriced"),
        ConnectionError("connection refused"),
    ])
    async def test_rpc_errors_are_unavailable(self, error):
        with pytest.raises(ChainUnavailableError):
            await _chain(FakeEth(send_error=error)).broadcast(_tx())

    async def test_not_connected(self):
        chain = EthereumChain("http://127.0.0.1:8545", 1337, PRIVATE_KEY)
        with pytest.raises(ChainUnavailableError):
            await chain.status()


# =============================================================================
# THROUGH THE ANCHOR CLIENT
# =============================================================================


class TestAnchoring:
    async def test_rejected_broadcast_is_unanchored(self):
        eth = FakeEth(send_error=ValueError({"code": -32000, "message": "nonce too low"}))
        client = AnchorClient(_chain(eth), network="1337", timeout=1.0, retries=1)

        result = await client.anchor_did_creation(DID, SENDER, HASH, {})
        assert isinstance(result, Unanchored)
        assert result.fallback_ref.startswith("unanchored:")

    async def test_slow_receipt_is_sent_once(self):
        eth = FakeEth(receipt=None, send_error=None)
        client = AnchorClient(_chain(eth), network="1337", timeout=1.0, retries=2)

        result = await client.anchor_did_creation(DID, SENDER, HASH, {})
        assert isinstance(result, Anchored)
        assert result.block_height == 0
        assert len(eth.sent) == 1


# =============================================================================
# ACCOUNTS
# =============================================================================


class TestAccounts:
    async def test_requested_address(self):
        eth = FakeEth()
        account = await _chain(eth).get_account(OTHER)
        assert account == {"account_number": 0, "sequence": 9}
        assert eth.nonce_queries == [(Web3.to_checksum_address(OTHER), "latest")]

    async def test_non_ethereum_address_falls_back_to_signer(self):
        eth = FakeEth()
        await _chain(eth).get_account("cosmos1exampleaddr7x9k2m4p6q8r0s3t5v7w9y2z4")
        assert eth.nonce_queries == [(SENDER, "latest")]

    async def test_status(self):
        status = await _chain(FakeEth()).status()
        assert status == {"chain_id": "1337", "latest_block_height": 42}
