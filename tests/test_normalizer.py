"""Tests for transaction normalization and display formatting."""
from datetime import datetime

from trust_chain.models import SENTINEL_HASH, TxStatus
from trust_chain.normalizer import (
    CONTRACT_CREATION,
    flatten_txpool,
    format_record,
    format_value,
    normalize,
    short_address,
    short_hash,
)


class TestNormalize:
    def test_reads_hex_quantities(self, make_tx):
        """Should parse hex value and keep the canonical wei amount."""
        record = normalize(make_tx(1, value=2 * 10**18), is_pending=True)

        assert record.value_wei == 2 * 10**18
        assert record.status == TxStatus.PENDING
        assert record.block_number is None
        assert not record.malformed

    def test_lowercases_hash(self, make_tx):
        """Should compare hashes case-insensitively."""
        raw = make_tx(0xABC)
        raw["hash"] = raw["hash"].upper().replace("0X", "0x")

        assert normalize(raw, is_pending=False).hash == raw["hash"].lower()

    def test_confirmed_keeps_block_fields(self, make_tx):
        """Should carry block number and timestamp for confirmed records."""
        record = normalize(make_tx(2, blockNumber="0x10"), is_pending=False, block_timestamp=1_700_000_000)

        assert record.status == TxStatus.CONFIRMED
        assert record.block_number == 16
        assert record.block_timestamp == 1_700_000_000

    def test_decimal_and_bignumber_values(self, make_tx):
        """Should accept decimal strings and the {"hex": ...} object shape."""
        assert normalize(make_tx(3, value=0) | {"value": "1500"}, True).value_wei == 1500
        assert normalize(make_tx(4) | {"value": {"hex": "0x0a"}}, True).value_wei == 10

    def test_missing_to_is_contract_creation(self, make_tx):
        """Should keep a missing recipient as None."""
        record = normalize(make_tx(5, to=None), is_pending=True)

        assert record.to_address is None
        assert format_record(record).to_address == CONTRACT_CREATION

    def test_alternate_hash_key(self, make_tx):
        """Should accept transactionHash when hash is absent."""
        raw = make_tx(6)
        raw["transactionHash"] = raw.pop("hash")

        assert normalize(raw, is_pending=False).hash == raw["transactionHash"]

    def test_malformed_returns_sentinel(self):
        """Should return the sentinel record instead of raising."""
        for raw in (None, "0xdead", {"from": "0xabc"}, {"hash": 12}, []):
            record = normalize(raw, is_pending=False)
            assert record.malformed
            assert record.hash == SENTINEL_HASH

    def test_sentinel_preserves_pending_flag(self):
        """Should keep is_pending on the sentinel record."""
        assert normalize({"hash": None}, is_pending=True).is_pending
        assert not normalize({"hash": None}, is_pending=False).is_pending

    def test_unparseable_value_is_malformed(self, make_tx):
        """Should treat a garbage value as malformed data."""
        record = normalize(make_tx(7) | {"value": "lots"}, is_pending=True)

        assert record.malformed

    def test_sentinels_never_collide(self):
        """Should give each sentinel its own dedup key."""
        first = normalize(None, is_pending=True)
        second = normalize(None, is_pending=True)

        assert first.dedup_key != second.dedup_key


class TestFormatting:
    def test_short_hash(self, sample_tx_hash):
        """Should keep the first 8 and last 6 characters."""
        assert short_hash(sample_tx_hash) == "0xaaaaaa-aaaaaa"

    def test_short_address(self, sample_eth_address):
        """Should keep the first 6 and last 4 characters."""
        assert short_address(sample_eth_address) == "0x1234-7890"

    def test_format_value_decimals(self):
        """Should render between four and six fractional digits."""
        assert format_value(10**18) == "1.0000 ETH"
        assert format_value(123456789012345678) == "0.123457 ETH"
        assert format_value(15 * 10**13) == "0.00015 ETH"
        assert format_value(0) == "0.0000 ETH"

    def test_format_record(self, make_tx):
        """Should derive display strings from canonical fields."""
        record = normalize(make_tx(8), is_pending=False, block_timestamp=1_700_000_000)
        view = format_record(record)

        assert view.hash == record.hash
        assert view.value == "1.0000 ETH"
        assert view.status == "confirmed"
        assert view.time == datetime.fromtimestamp(1_700_000_000).strftime("%H:%M:%S")

    def test_format_sentinel(self):
        """Should render the sentinel placeholders."""
        view = format_record(normalize(None, is_pending=True))

        assert view.hash == SENTINEL_HASH
        assert view.from_address == "error"
        assert view.to_address == "error"
        assert view.value == "0 ETH"
        assert view.status == "pending"


class TestFlattenTxpool:
    def test_flattens_pending_and_queued(self, make_tx):
        """Should merge both buckets across senders and nonces."""
        content = {
            "pending": {"0xa": {"0": make_tx(1), "1": make_tx(2)}},
            "queued": {"0xb": {"5": make_tx(3)}},
        }

        hashes = [tx["hash"] for tx in flatten_txpool(content)]

        assert hashes == [make_tx(1)["hash"], make_tx(2)["hash"], make_tx(3)["hash"]]

    def test_ignores_missing_buckets(self):
        """Should return an empty list for an empty pool."""
        assert flatten_txpool({}) == []
        assert flatten_txpool({"pending": None, "queued": []}) == []
