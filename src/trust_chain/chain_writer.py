"""
Chain-write capability.

The reconciliation coordinator receives a ChainWriter; it never builds one.
``send`` resolves with a terminal status the way wallet libraries report a
contract call (Success, Fail or Exception); ``wait_for_confirmation`` then
waits for the configured depth. A writer reports the transaction hash through
``on_broadcast`` as soon as the node accepts it, before any receipt exists.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from eth_account import Account
from web3 import Web3

from .exceptions import ProviderError, RPCError
from .rpc_client import ChainClient, hex_to_int

logger = logging.getLogger(__name__)

BroadcastCallback = Callable[[str], None]


class WriteStatus(str, Enum):
    """Terminal status of a chain write."""
    SUCCESS = "Success"
    FAIL = "Fail"            # reverted
    EXCEPTION = "Exception"  # rejected by the signer or the node


@dataclass
class ChainCall:
    """A contract call to sign and send."""
    to: str
    data: str
    value: int = 0
    description: str = ""


@dataclass
class ChainWriteResult:
    """Outcome reported by a chain writer."""
    status: WriteStatus
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    block_number: Optional[int] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.status == WriteStatus.SUCCESS


class ChainWriter(ABC):
    """Abstract interface for submitting contract calls."""

    @property
    @abstractmethod
    def sender_address(self) -> str:
        """Account whose on-chain roles authorize the writes."""

    @abstractmethod
    async def send(
        self,
        call: ChainCall,
        on_broadcast: Optional[BroadcastCallback] = None,
    ) -> ChainWriteResult:
        """Sign, broadcast and wait for the receipt of one call.

        ``on_broadcast`` is called with the hash once the node has accepted
        the transaction, so the hash survives a failed receipt wait.
        """

    @abstractmethod
    async def wait_for_confirmation(
        self,
        tx_hash: str,
        confirmations: int,
        timeout_seconds: float,
    ) -> ChainWriteResult:
        """Wait until ``tx_hash`` is ``confirmations`` blocks deep.

        Raises ProviderError when the depth is not reached in time.
        """


class SignerChainWriter(ChainWriter):
    """Signs legacy transactions with a local private key and polls receipts."""

    def __init__(
        self,
        client: ChainClient,
        private_key: str,
        receipt_timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 2.0,
        gas_multiplier: float = 1.2,
    ):
        if not private_key:
            raise ValueError("A private key is required to sign transactions")
        self._client = client
        self._account = Account.from_key(private_key)
        self._receipt_timeout = receipt_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._gas_multiplier = gas_multiplier

    @property
    def sender_address(self) -> str:
        return self._account.address

    async def _build_transaction(self, call: ChainCall) -> Dict[str, Any]:
        to_address = Web3.to_checksum_address(call.to)
        gas = await self._client.estimate_gas({
            "from": self.sender_address,
            "to": to_address,
            "data": call.data,
            "value": hex(call.value),
        })
        return {
            "to": to_address,
            "data": call.data,
            "value": call.value,
            "gas": int(gas * self._gas_multiplier),
            "gasPrice": await self._client.get_gas_price(),
            "nonce": await self._client.get_transaction_count(self.sender_address, "pending"),
            "chainId": await self._client.get_chain_id(),
        }

    async def send(
        self,
        call: ChainCall,
        on_broadcast: Optional[BroadcastCallback] = None,
    ) -> ChainWriteResult:
        try:
            tx = await self._build_transaction(call)
        except RPCError as e:
            # eth_estimateGas reports reverts as RPC errors
            logger.warning(f"Call {call.description or call.data[:10]} would revert: {e.message}")
            return ChainWriteResult(status=WriteStatus.FAIL, error_message=e.message)

        signed = self._account.sign_transaction(tx)
        try:
            tx_hash = await self._client.send_raw_transaction(Web3.to_hex(signed.raw_transaction))
        except RPCError as e:
            logger.warning(f"Node rejected transaction: {e.message}")
            return ChainWriteResult(status=WriteStatus.EXCEPTION, error_message=e.message)

        logger.info(f"Transaction submitted: {tx_hash} ({call.description})")
        if on_broadcast is not None:
            on_broadcast(tx_hash)
        receipt = await self._wait_for_receipt(tx_hash)
        return self._result_from_receipt(tx_hash, receipt)

    async def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._receipt_timeout
        while True:
            receipt = await self._client.get_transaction_receipt(tx_hash)
            if receipt:
                return receipt
            if loop.time() >= deadline:
                raise ProviderError(
                    f"Transaction {tx_hash} not mined after {self._receipt_timeout}s",
                    error_code="RECEIPT_TIMEOUT",
                    details={"tx_hash": tx_hash},
                )
            await asyncio.sleep(self._poll_interval)

    @staticmethod
    def _result_from_receipt(tx_hash: str, receipt: Dict[str, Any]) -> ChainWriteResult:
        block_number = hex_to_int(receipt.get("blockNumber"))
        if hex_to_int(receipt.get("status"), default=1) == 0:
            return ChainWriteResult(
                status=WriteStatus.FAIL,
                tx_hash=tx_hash,
                error_message=f"Transaction {tx_hash} reverted",
                block_number=block_number,
            )
        return ChainWriteResult(
            status=WriteStatus.SUCCESS,
            tx_hash=receipt.get("transactionHash") or tx_hash,
            block_number=block_number,
            logs=list(receipt.get("logs") or []),
        )

    async def wait_for_confirmation(
        self,
        tx_hash: str,
        confirmations: int,
        timeout_seconds: float,
    ) -> ChainWriteResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            receipt = await self._client.get_transaction_receipt(tx_hash)
            if receipt:
                result = self._result_from_receipt(tx_hash, receipt)
                if not result.is_success:
                    return result
                current_block = await self._client.get_block_number()
                depth = current_block - (result.block_number or 0) + 1
                if depth >= confirmations:
                    logger.info(f"Transaction {tx_hash} confirmed with {depth} confirmations")
                    return result
                logger.debug(f"Transaction {tx_hash} has {depth} confirmations, waiting for {confirmations}")

            if loop.time() >= deadline:
                raise ProviderError(
                    f"Transaction {tx_hash} not confirmed after {timeout_seconds}s",
                    error_code="CONFIRMATION_TIMEOUT",
                )
            await asyncio.sleep(self._poll_interval)
