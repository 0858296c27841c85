"""
core/blockchain.py — Ledger Backends
======================================
Abstraction layer over 3 possible ledgers:
  1. "simulation"   in-memory hash-linked chain, no external dependencies (start here)
  2. "tendermint"   PersonaChain / any Cosmos SDK chain over Tendermint RPC + LCD
  3. "ethereum"     local Ganache/Hardhat or a public network via web3.py

Set LEDGER_BACKEND in .env to switch. Every backend exposes the same calls:

    connect() / disconnect() / ping()
    status()                 → {"chain_id", "latest_block_height"}
    get_account(address)     → {"account_number", "sequence"}
    broadcast(tx)            → {"tx_hash", "height", "code", "log"}
    get_transaction(hash)    → {"tx_hash", "height", "code"} or None
    query_did(did)           → {"did", "content_hash", "tx_hash", "block_height"} or None

Transport failures raise ChainUnavailableError. A transaction the chain
accepted but rejected (non-zero code) is NOT an error here; callers read `code`.
"""

import asyncio
import base64
import hashlib
import json
import logging
from typing import Optional

import httpx

from core.crypto import canonical_json
from core.errors import ChainUnavailableError
from core.schemas import isoformat, utcnow

logger = logging.getLogger("personachain.ledger")


def encode_tx(tx: dict) -> bytes:
    return canonical_json(tx).encode("utf-8")


def tx_hash_of(tx_bytes: bytes) -> str:
    """Tendermint convention: upper-case hex SHA-256 of the raw tx bytes."""
    return hashlib.sha256(tx_bytes).hexdigest().upper()


def _anchored_did(tx: dict) -> Optional[dict]:
    for message in tx.get("body", {}).get("messages", []):
        if message.get("did") and message.get("content_hash"):
            return message
    return None


# ── Simulated Ledger (default, works with zero setup) ────────────────────────
class SimulatedChain:
    """
    In-memory ledger. One block per broadcast transaction.
    Data resets when the process restarts; the database keeps the anchor rows.

    Flip `available` to False to simulate an unreachable chain.
    """

    def __init__(self, chain_id: str = "personachain-1"):
        self.chain_id = chain_id
        self.available = True
        self.blocks = []
        self.block_number = 0
        self._transactions = {}
        self._accounts = {}
        self._dids = {}

    async def connect(self):
        logger.info("SimulatedChain: ready (in-memory mode)")
        if not self.blocks:
            self._mine_block([], {"message": "PersonaChain genesis block"})

    async def disconnect(self):
        logger.info("SimulatedChain: disconnected")

    async def ping(self) -> str:
        if not self.available:
            return "unreachable"
        return f"ok: simulated chain, {len(self.blocks)} blocks"

    def _ensure_available(self):
        if not self.available:
            raise ChainUnavailableError("Simulated chain is offline")

    def _mine_block(self, tx_hashes: list, data: dict) -> dict:
        prev_hash = self.blocks[-1]["hash"] if self.blocks else "0" * 64
        timestamp = isoformat(utcnow())
        payload = json.dumps({
            "block_number": self.block_number,
            "data": data,
            "prev_hash": prev_hash,
            "timestamp": timestamp,
            "txs": tx_hashes,
        }, sort_keys=True)
        block = {
            "block_number": self.block_number,
            "txs": tx_hashes,
            "data": data,
            "prev_hash": prev_hash,
            "hash": hashlib.sha3_256(payload.encode()).hexdigest(),
            "timestamp": timestamp,
        }
        self.blocks.append(block)
        self.block_number += 1
        return block

    async def status(self) -> dict:
        self._ensure_available()
        return {"chain_id": self.chain_id, "latest_block_height": self.block_number - 1}

    async def get_account(self, address: str) -> dict:
        self._ensure_available()
        return {"account_number": 0, "sequence": self._accounts.get(address, 0)}

    async def broadcast(self, tx: dict) -> dict:
        self._ensure_available()
        tx_bytes = encode_tx(tx)
        tx_hash = tx_hash_of(tx_bytes)
        if tx_hash in self._transactions:
            return {"tx_hash": tx_hash, "height": 0, "code": 19, "log": "tx already exists in cache"}

        block = self._mine_block([tx_hash], {"memo": tx.get("body", {}).get("memo", "")})
        receipt = {"tx_hash": tx_hash, "height": block["block_number"], "code": 0, "log": ""}
        self._transactions[tx_hash] = receipt

        signer = tx.get("signer")
        if signer:
            self._accounts[signer] = self._accounts.get(signer, 0) + 1
        message = _anchored_did(tx)
        if message:
            self._dids[message["did"]] = {
                "did": message["did"],
                "content_hash": message["content_hash"],
                "tx_hash": tx_hash,
                "block_height": block["block_number"],
            }
        logger.info(f"Block #{block['block_number']} written tx={tx_hash[:16]}...")
        return receipt

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        self._ensure_available()
        return self._transactions.get(tx_hash.upper())

    async def query_did(self, did: str) -> Optional[dict]:
        self._ensure_available()
        return self._dids.get(did)


# ── Tendermint / Cosmos Backend ───────────────────────────────────────────────
class TendermintChain:
    """
    Talks to a Cosmos SDK chain: Tendermint RPC for status / broadcast / tx /
    abci_query, LCD REST for account sequence numbers.
    Requires: LEDGER_RPC_URL and LEDGER_REST_URL in .env
    """

    DID_QUERY_PATH = '"/custom/persona/did"'

    def __init__(
        self,
        rpc_url: str,
        rest_url: str,
        chain_id: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rest_url = rest_url.rstrip("/")
        self.chain_id = chain_id
        self.timeout = timeout
        self._client = client

    async def connect(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        logger.info(f"Tendermint RPC configured: {self.rpc_url}")

    async def disconnect(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def ping(self) -> str:
        try:
            status = await self.status()
        except ChainUnavailableError:
            return "unreachable"
        return f"ok: {status['chain_id']} block #{status['latest_block_height']}"

    async def _get(self, url: str, params: dict = None) -> httpx.Response:
        if self._client is None:
            raise ChainUnavailableError("Tendermint client is not connected")
        try:
            return await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise ChainUnavailableError(f"GET {url} failed: {exc}") from exc

    async def _rpc(self, path: str, params: dict = None, allow_missing: bool = False) -> Optional[dict]:
        response = await self._get(f"{self.rpc_url}{path}", params)
        try:
            body = response.json()
        except ValueError as exc:
            raise ChainUnavailableError(f"RPC {path} returned HTTP {response.status_code}") from exc

        error = body.get("error")
        if error:
            detail = error.get("data") or error.get("message") if isinstance(error, dict) else error
            if allow_missing and "not found" in str(detail).lower():
                return None
            raise ChainUnavailableError(f"RPC {path} error: {detail}")
        return body.get("result") or {}

    async def status(self) -> dict:
        result = await self._rpc("/status")
        try:
            return {
                "chain_id": result["node_info"]["network"],
                "latest_block_height": int(result["sync_info"]["latest_block_height"]),
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainUnavailableError("Malformed /status response") from exc

    async def get_account(self, address: str) -> dict:
        response = await self._get(f"{self.rest_url}/cosmos/auth/v1beta1/accounts/{address}")
        if response.status_code == 404:
            return {"account_number": 0, "sequence": 0}
        if response.status_code != 200:
            raise ChainUnavailableError(f"Account query returned HTTP {response.status_code}")
        account = response.json().get("account", {})
        # vesting and module accounts nest the base account
        account = account.get("base_account", account)
        return {
            "account_number": int(account.get("account_number", 0)),
            "sequence": int(account.get("sequence", 0)),
        }

    async def broadcast(self, tx: dict) -> dict:
        tx_bytes = encode_tx(tx)
        result = await self._rpc("/broadcast_tx_commit", {"tx": "0x" + tx_bytes.hex()})
        check_tx = result.get("check_tx", {})
        deliver_tx = result.get("deliver_tx") or result.get("tx_result") or {}
        code = check_tx.get("code", 0) or deliver_tx.get("code", 0)
        return {
            "tx_hash": result.get("hash") or tx_hash_of(tx_bytes),
            "height": int(result.get("height") or 0),
            "code": code,
            "log": check_tx.get("log") or deliver_tx.get("log") or "",
        }

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        result = await self._rpc("/tx", {"hash": "0x" + tx_hash.upper()}, allow_missing=True)
        if result is None:
            return None
        return {
            "tx_hash": result.get("hash", tx_hash.upper()),
            "height": int(result.get("height") or 0),
            "code": result.get("tx_result", {}).get("code", 0),
        }

    async def query_did(self, did: str) -> Optional[dict]:
        params = {"path": self.DID_QUERY_PATH, "data": "0x" + did.encode("utf-8").hex()}
        result = await self._rpc("/abci_query", params, allow_missing=True)
        response = (result or {}).get("response", {})
        if response.get("code", 0) != 0 or not response.get("value"):
            return None
        try:
            record = json.loads(base64.b64decode(response["value"]))
        except (ValueError, TypeError) as exc:
            raise ChainUnavailableError("Malformed DID query response") from exc
        return {
            "did": record.get("did", did),
            "content_hash": record.get("content_hash"),
            "tx_hash": record.get("tx_hash"),
            "block_height": int(response.get("height") or 0),
        }


# ── Ethereum Backend ──────────────────────────────────────────────────────────
class EthereumChain:
    """
    Anchors content hashes as self-addressed data transactions.
    Requires: WEB3_PROVIDER_URL and DEPLOYER_PRIVATE_KEY in .env,
    and the `ethereum` extra (web3).

    The nonce always comes from the node's pending count; the Cosmos-style
    `sequence` in the tx is ignored. A receipt that has not arrived within
    `receipt_timeout` is returned without a height (pending), never re-sent.
    """

    def __init__(self, provider_url: str, chain_id: int, private_key: str, receipt_timeout: float = 2.0):
        self.provider_url = provider_url
        self.chain_id = chain_id
        self._private_key = private_key
        self.receipt_timeout = receipt_timeout
        self.w3 = None

    async def connect(self):
        try:
            from web3 import Web3
        except ImportError as exc:
            raise ImportError("web3 not installed. Run: pip install '.[ethereum]'") from exc
        self.w3 = Web3(Web3.HTTPProvider(self.provider_url))
        if not await asyncio.to_thread(self.w3.is_connected):
            raise ChainUnavailableError(f"Cannot connect to {self.provider_url}")
        logger.info(f"Ethereum connected: block #{self.w3.eth.block_number}")

    async def disconnect(self):
        self.w3 = None

    async def ping(self) -> str:
        if self.w3 and self.w3.is_connected():
            return f"ok: Ethereum block #{self.w3.eth.block_number}"
        return "disconnected"

    async def _call(self, func, *args):
        if not self.w3:
            raise ChainUnavailableError("Not connected to Ethereum")
        from web3.exceptions import Web3Exception

        try:
            return await asyncio.to_thread(func, *args)
        except (ConnectionError, OSError, ValueError, Web3Exception) as exc:
            # RPC rejections (nonce too low, underpriced, ...) arrive as ValueError or Web3RPCError
            raise ChainUnavailableError(f"Ethereum RPC failed: {exc}") from exc

    def _signer_address(self) -> str:
        return self.w3.eth.account.from_key(self._private_key).address

    async def status(self) -> dict:
        height = await self._call(lambda: self.w3.eth.block_number)
        return {"chain_id": str(self.chain_id), "latest_block_height": int(height)}

    async def get_account(self, address: str) -> dict:
        def fetch():
            if self.w3.is_address(address):
                return self.w3.eth.get_transaction_count(self.w3.to_checksum_address(address))
            return self.w3.eth.get_transaction_count(self._signer_address())

        nonce = await self._call(fetch)
        return {"account_number": 0, "sequence": int(nonce)}

    async def broadcast(self, tx: dict) -> dict:
        from web3.exceptions import TimeExhausted

        messages = tx.get("body", {}).get("messages", [])
        label = ",".join(f"{m.get('@type', '').rsplit('.', 1)[-1]}:{m.get('content_hash', '')}" for m in messages)

        def send():
            sender = self._signer_address()
            eth_tx = {
                "from": sender,
                "to": sender,
                "value": 0,
                "data": self.w3.to_hex(text=label),
                "gas": 100_000,
                "gasPrice": self.w3.eth.gas_price,
                "nonce": self.w3.eth.get_transaction_count(sender, "pending"),
                "chainId": self.chain_id,
            }
            signed = self.w3.eth.account.sign_transaction(eth_tx, self._private_key)
            sent = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            try:
                receipt = self.w3.eth.wait_for_transaction_receipt(sent, timeout=self.receipt_timeout)
            except TimeExhausted:
                logger.info(f"No receipt for {sent.hex()} after {self.receipt_timeout}s; reporting it pending")
                return {"tx_hash": sent.hex(), "height": None, "code": 0, "log": "receipt pending"}
            return {
                "tx_hash": receipt.transactionHash.hex(),
                "height": receipt.blockNumber,
                "code": 0 if receipt.status == 1 else 1,
                "log": "",
            }

        return await self._call(send)

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        from web3.exceptions import TransactionNotFound

        def fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = await self._call(fetch)
        if receipt is None:
            return None
        return {"tx_hash": tx_hash, "height": receipt.blockNumber, "code": 0 if receipt.status == 1 else 1}

    async def query_did(self, did: str) -> Optional[dict]:
        # plain data transactions are not indexed by DID
        return None


# ── Factory ───────────────────────────────────────────────────────────────────
def create_ledger(settings):
    backend = settings.LEDGER_BACKEND
    if backend == "simulation":
        return SimulatedChain(chain_id=settings.LEDGER_CHAIN_ID)
    if backend == "tendermint":
        return TendermintChain(
            rpc_url=settings.LEDGER_RPC_URL,
            rest_url=settings.LEDGER_REST_URL,
            chain_id=settings.LEDGER_CHAIN_ID,
            timeout=settings.LEDGER_TIMEOUT_SECONDS,
        )
    if backend == "ethereum":
        return EthereumChain(
            provider_url=settings.WEB3_PROVIDER_URL,
            chain_id=settings.ETH_CHAIN_ID,
            private_key=settings.DEPLOYER_PRIVATE_KEY,
            receipt_timeout=settings.LEDGER_TIMEOUT_SECONDS / 2,
        )
    raise ValueError(f"Unknown LEDGER_BACKEND: {backend}")
