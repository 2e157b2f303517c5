"""Shared fakes and constants for trust-chain tests."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from trust_chain.chain_writer import ChainCall, ChainWriter, ChainWriteResult, WriteStatus
from trust_chain.exceptions import UnsupportedCapabilityError

FACTORY_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ADMIN_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
SUBJECT_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def tx_hash_for(n: int) -> str:
    return "0x" + f"{n:064x}"


def make_raw_tx(n: int, value: int = 10**18, to: Optional[str] = SUBJECT_ADDRESS, **extra) -> Dict[str, Any]:
    raw = {
        "hash": tx_hash_for(n),
        "from": ADMIN_ADDRESS,
        "to": to,
        "value": hex(value),
        "nonce": hex(n),
    }
    raw.update(extra)
    return raw


class FakeChainClient:
    """In-memory stand-in for ChainClient.

    Set ``pending`` / ``txpool`` to a value or an exception instance.
    """

    def __init__(self):
        self.chain = "test"
        self.pending: Any = UnsupportedCapabilityError("eth_pendingTransactions")
        self.txpool: Any = UnsupportedCapabilityError("txpool_content")
        self.latest: Any = 0
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.transactions: Dict[str, Any] = {}
        self.counts: Dict[str, int] = {}
        self.calls: List[str] = []
        self._capabilities: Dict[str, bool] = {}

    def is_supported(self, method: str) -> Optional[bool]:
        return self._capabilities.get(method)

    def _answer(self, method: str, value: Any) -> Any:
        self.calls.append(method)
        if isinstance(value, UnsupportedCapabilityError):
            self._capabilities[method] = False
            raise value
        if isinstance(value, Exception):
            raise value
        self._capabilities[method] = True
        return value

    def add_block(self, number: int, transactions: List[Dict[str, Any]], timestamp: int = 1_700_000_000):
        self.blocks[number] = {
            "number": hex(number),
            "timestamp": hex(timestamp),
            "transactions": transactions,
        }
        if isinstance(self.latest, int):
            self.latest = max(self.latest, number)

    async def get_pending_transactions(self):
        return self._answer("eth_pendingTransactions", self.pending)

    async def get_txpool_content(self):
        return self._answer("txpool_content", self.txpool)

    async def get_block_number(self):
        return self._answer("eth_blockNumber", self.latest)

    async def get_block_with_transactions(self, number):
        block = self.blocks.get(number)
        if isinstance(block, Exception):
            self.calls.append("eth_getBlockByNumber")
            raise block
        return self._answer("eth_getBlockByNumber", block)

    async def get_transaction(self, tx_hash):
        tx = self.transactions.get(tx_hash)
        if isinstance(tx, Exception):
            self.calls.append("eth_getTransactionByHash")
            raise tx
        return self._answer("eth_getTransactionByHash", tx)

    async def get_transaction_count(self, address, block="latest"):
        return self._answer("eth_getTransactionCount", self.counts.get(block, 0))


class FakeChainWriter(ChainWriter):
    """Scripted chain writer.

    ``results`` is consumed one per send. ``broadcast_before_failure`` is a
    hash reported through ``on_broadcast`` before a scripted exception is
    raised. ``confirm_gate`` (an asyncio.Event) holds wait_for_confirmation
    until set.
    """

    def __init__(self, address: str = ADMIN_ADDRESS):
        self._address = address
        self.results: List[Any] = []
        self.confirmation: Any = None
        self.confirm_gate: Optional[asyncio.Event] = None
        self.broadcast_before_failure: Optional[str] = None
        self.sent: List[ChainCall] = []
        self.confirm_calls: List[str] = []

    @property
    def sender_address(self) -> str:
        return self._address

    async def send(self, call: ChainCall, on_broadcast=None) -> ChainWriteResult:
        self.sent.append(call)
        result = self.results.pop(0) if self.results else ChainWriteResult(
            status=WriteStatus.SUCCESS, tx_hash="0x" + "ab" * 32, block_number=1
        )
        if isinstance(result, Exception):
            if self.broadcast_before_failure and on_broadcast is not None:
                on_broadcast(self.broadcast_before_failure)
            raise result
        if result.tx_hash and on_broadcast is not None:
            on_broadcast(result.tx_hash)
        return result

    async def wait_for_confirmation(self, tx_hash, confirmations, timeout_seconds):
        self.confirm_calls.append(tx_hash)
        if self.confirm_gate is not None:
            await self.confirm_gate.wait()
        if isinstance(self.confirmation, Exception):
            raise self.confirmation
        return self.confirmation or ChainWriteResult(
            status=WriteStatus.SUCCESS, tx_hash=tx_hash, block_number=1
        )


class FakeRoleReader:
    """hasRole answered from a set of (role_name, address) pairs."""

    def __init__(self, grants=()):
        self.grants = {(r.lower(), a.lower()) for r, a in grants}
        self.errors: Dict[tuple, Exception] = {}
        self.calls: List[tuple] = []

    async def has_role(self, role_name: str, account: str) -> bool:
        key = (role_name.lower(), account.lower())
        self.calls.append(key)
        if key in self.errors:
            raise self.errors[key]
        return key in self.grants
