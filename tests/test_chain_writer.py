"""Tests for the signing chain writer."""
import pytest

from trust_chain.chain_writer import ChainCall, SignerChainWriter, WriteStatus
from trust_chain.contracts import encode_grant_role
from trust_chain.exceptions import ProviderError, RPCError

from tests.helpers import ADMIN_ADDRESS, FACTORY_ADDRESS, SUBJECT_ADDRESS

# Well-known development key for ADMIN_ADDRESS
DEV_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TX_HASH = "0x" + "cd" * 32


class StubWriteClient:
    def __init__(self):
        self.estimate_error = None
        self.send_error = None
        self.receipts = []
        self.block_numbers = []
        self.latest_block = 5
        self.raw_sent = []
        self.estimates = []

    async def estimate_gas(self, tx):
        self.estimates.append(tx)
        if self.estimate_error:
            raise self.estimate_error
        return 50_000

    async def get_gas_price(self):
        return 10**9

    async def get_transaction_count(self, address, block="latest"):
        return 3

    async def get_chain_id(self):
        return 31337

    async def send_raw_transaction(self, signed_tx):
        self.raw_sent.append(signed_tx)
        if self.send_error:
            raise self.send_error
        return TX_HASH

    async def get_transaction_receipt(self, tx_hash):
        return self.receipts.pop(0) if self.receipts else None

    async def get_block_number(self):
        if self.block_numbers:
            return self.block_numbers.pop(0)
        return self.latest_block


def receipt(status="0x1", block="0x5", logs=()):
    return {"transactionHash": TX_HASH, "status": status, "blockNumber": block, "logs": list(logs)}


@pytest.fixture
def client():
    return StubWriteClient()


@pytest.fixture
def writer(client):
    return SignerChainWriter(client, DEV_PRIVATE_KEY, receipt_timeout_seconds=0.2, poll_interval_seconds=0.01)


@pytest.fixture
def call():
    return ChainCall(to=FACTORY_ADDRESS, data=encode_grant_role("expert", SUBJECT_ADDRESS), description="grantRole")


class TestSignerChainWriter:
    def test_requires_private_key(self, client):
        """Should refuse to build a writer without a key."""
        with pytest.raises(ValueError):
            SignerChainWriter(client, "")

    def test_sender_address(self, writer):
        """Should derive the sender from the private key."""
        assert writer.sender_address == ADMIN_ADDRESS

    @pytest.mark.asyncio
    async def test_send_success(self, writer, client, call):
        """Should sign, broadcast and return the mined receipt."""
        client.receipts = [None, receipt(logs=[{"topics": []}])]

        result = await writer.send(call)

        assert result.status == WriteStatus.SUCCESS
        assert result.tx_hash == TX_HASH
        assert result.block_number == 5
        assert result.logs == [{"topics": []}]
        assert client.raw_sent[0].startswith("0x")
        assert client.estimates[0]["from"] == ADMIN_ADDRESS

    @pytest.mark.asyncio
    async def test_estimate_revert_is_fail(self, writer, client, call):
        """Should report Fail without broadcasting when gas estimation reverts."""
        client.estimate_error = RPCError("execution reverted: AccessControl", code=3)

        result = await writer.send(call)

        assert result.status == WriteStatus.FAIL
        assert "AccessControl" in result.error_message
        assert result.tx_hash is None
        assert client.raw_sent == []

    @pytest.mark.asyncio
    async def test_node_rejection_is_exception(self, writer, client, call):
        """Should report Exception when the node refuses the transaction."""
        client.send_error = RPCError("nonce too low", code=-32000)

        result = await writer.send(call)

        assert result.status == WriteStatus.EXCEPTION
        assert result.error_message == "nonce too low"

    @pytest.mark.asyncio
    async def test_reverted_receipt_is_fail(self, writer, client, call):
        """Should report Fail for a mined transaction with status 0."""
        client.receipts = [receipt(status="0x0")]

        result = await writer.send(call)

        assert result.status == WriteStatus.FAIL
        assert result.tx_hash == TX_HASH

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, writer, client, call):
        """Should raise ProviderError carrying the broadcast hash when no receipt appears in time."""
        broadcasts = []

        with pytest.raises(ProviderError) as exc_info:
            await writer.send(call, on_broadcast=broadcasts.append)

        assert broadcasts == [TX_HASH]
        assert exc_info.value.error_code == "RECEIPT_TIMEOUT"
        assert exc_info.value.details["tx_hash"] == TX_HASH

    @pytest.mark.asyncio
    async def test_no_broadcast_report_on_estimate_revert(self, writer, client, call):
        """Should not report a hash when nothing was broadcast."""
        client.estimate_error = RPCError("execution reverted", code=3)
        broadcasts = []

        await writer.send(call, on_broadcast=broadcasts.append)

        assert broadcasts == []

    @pytest.mark.asyncio
    async def test_wait_for_confirmation_depth(self, writer, client):
        """Should wait until the receipt is deep enough."""
        client.receipts = [receipt(block="0x5"), receipt(block="0x5")]
        client.block_numbers = [5, 7]

        result = await writer.wait_for_confirmation(TX_HASH, 3, timeout_seconds=1)

        assert result.is_success
        assert client.receipts == []

    @pytest.mark.asyncio
    async def test_wait_for_confirmation_timeout(self, writer, client):
        """Should raise ProviderError when the depth is not reached in time."""
        with pytest.raises(ProviderError) as exc_info:
            await writer.wait_for_confirmation(TX_HASH, 1, timeout_seconds=0.05)

        assert exc_info.value.error_code == "CONFIRMATION_TIMEOUT"
