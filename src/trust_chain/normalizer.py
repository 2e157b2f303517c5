"""
Transaction normalization and display formatting.

``normalize`` turns any raw provider transaction shape into a
TransactionRecord and never raises. ``format_record`` derives the display
strings from a record's canonical fields.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from .exceptions import MalformedDataError
from .models import SENTINEL_HASH, TransactionRecord, TxStatus

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10) ** 18
CONTRACT_CREATION = "Contract Creation"


def _field(raw: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw:
            return raw[name]
    return None


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedDataError(f"Unexpected boolean quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, Mapping) and "hex" in value:
        # ethers BigNumber JSON shape
        value = value["hex"]
    text = str(value).strip()
    try:
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError as e:
        raise MalformedDataError(f"Cannot parse quantity {value!r}") from e


def _read_transaction(raw: Any, is_pending: bool, block_timestamp: Optional[int]) -> TransactionRecord:
    if not isinstance(raw, Mapping):
        raise MalformedDataError(f"Transaction is not an object: {type(raw).__name__}")

    tx_hash = _field(raw, "hash", "transactionHash")
    if not isinstance(tx_hash, str) or not tx_hash.startswith("0x") or len(tx_hash) < 16:
        raise MalformedDataError(f"Missing or invalid hash: {tx_hash!r}")

    from_address = _field(raw, "from", "from_address")
    if not isinstance(from_address, str) or not from_address:
        raise MalformedDataError(f"Missing sender for {tx_hash}")

    to_address = _field(raw, "to", "to_address") or None
    value_wei = _to_int(_field(raw, "value")) or 0
    block_number = None if is_pending else _to_int(_field(raw, "blockNumber", "block_number"))

    return TransactionRecord(
        hash=tx_hash.lower(),
        from_address=from_address,
        to_address=to_address,
        value_wei=value_wei,
        status=TxStatus.PENDING if is_pending else TxStatus.CONFIRMED,
        block_number=block_number,
        block_timestamp=block_timestamp,
    )


def sentinel_record(is_pending: bool, block_timestamp: Optional[int] = None) -> TransactionRecord:
    """Placeholder record for a transaction that could not be read."""
    return TransactionRecord(
        hash=SENTINEL_HASH,
        from_address="error",
        to_address=None,
        value_wei=0,
        status=TxStatus.PENDING if is_pending else TxStatus.CONFIRMED,
        block_timestamp=block_timestamp,
        malformed=True,
    )


def normalize(
    raw: Any,
    is_pending: bool,
    block_timestamp: Optional[int] = None,
) -> TransactionRecord:
    """
    Convert a raw transaction into a canonical record.

    On any failure a sentinel record is returned with ``is_pending``
    preserved; the transaction is never dropped.
    """
    try:
        return _read_transaction(raw, is_pending, block_timestamp)
    except MalformedDataError as e:
        logger.warning(f"Malformed transaction, using placeholder: {e}")
    except Exception as e:  # any shape a provider can send
        logger.warning(f"Unexpected error normalizing transaction: {e}")
    return sentinel_record(is_pending, block_timestamp)


# =============================================================================
# Display
# =============================================================================

@dataclass(frozen=True)
class TransactionView:
    """Display strings for one feed row."""
    hash: str
    short_hash: str
    from_address: str
    to_address: str
    value: str
    time: str
    status: str


def short_hash(tx_hash: str) -> str:
    if len(tx_hash) <= 14:
        return tx_hash
    return f"{tx_hash[:8]}-{tx_hash[-6:]}"


def short_address(address: Optional[str]) -> str:
    if address is None:
        return CONTRACT_CREATION
    if len(address) <= 10:
        return address
    return f"{address[:6]}-{address[-4:]}"


def format_value(value_wei: int, min_decimals: int = 4, max_decimals: int = 6) -> str:
    """Format a wei amount as ETH with 4 to 6 fractional digits."""
    amount = (Decimal(value_wei) / WEI_PER_ETH).quantize(Decimal(1).scaleb(-max_decimals))
    text = f"{amount:.{max_decimals}f}"
    whole, _, frac = text.partition(".")
    frac = frac.rstrip("0")
    if len(frac) < min_decimals:
        frac = frac.ljust(min_decimals, "0")
    return f"{whole}.{frac} ETH"


def format_time(record: TransactionRecord) -> str:
    """HH:MM:SS from the block timestamp, or observation time while pending."""
    ts = record.block_timestamp if record.block_timestamp is not None else record.observed_wall_time
    return datetime.fromtimestamp(ts).strftime("%H:%M:%S")


def format_record(record: TransactionRecord) -> TransactionView:
    if record.malformed:
        return TransactionView(
            hash=SENTINEL_HASH,
            short_hash=SENTINEL_HASH,
            from_address="error",
            to_address="error",
            value="0 ETH",
            time=format_time(record),
            status=record.status.value,
        )
    return TransactionView(
        hash=record.hash,
        short_hash=short_hash(record.hash),
        from_address=short_address(record.from_address),
        to_address=short_address(record.to_address),
        value=format_value(record.value_wei),
        time=format_time(record),
        status=record.status.value,
    )


def flatten_txpool(content: Dict[str, Any]) -> list:
    """Flatten ``txpool_content`` pending and queued buckets into one list."""
    flattened = []
    for bucket in ("pending", "queued"):
        by_address = content.get(bucket) or {}
        if not isinstance(by_address, Mapping):
            continue
        for by_nonce in by_address.values():
            if isinstance(by_nonce, Mapping):
                flattened.extend(by_nonce.values())
    return flattened
