"""
Bounded, deduplicated, time-ordered store of transaction records.

All mutations run under one asyncio.Lock per store. Readers get a copied
snapshot, never a partially merged list. Records are ordered newest
``observed_at`` first and the oldest are evicted beyond capacity.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .models import TransactionRecord

logger = logging.getLogger(__name__)

FeedSnapshot = Tuple[TransactionRecord, ...]
FeedObserver = Callable[[FeedSnapshot], Union[None, Awaitable[None]]]


def dedupe(records: Iterable[TransactionRecord]) -> List[TransactionRecord]:
    """Keep the first record for each hash; malformed records never collide."""
    seen = set()
    result = []
    for record in records:
        key = record.dedup_key
        if key in seen:
            continue
        seen.add(key)
        result.append(record)
    return result


class FeedStore:
    """Transaction feed shared by the watcher (writer) and observers (readers)."""

    def __init__(self, capacity: int = 15):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._records: List[TransactionRecord] = []
        self._lock = asyncio.Lock()
        self._observers: List[FeedObserver] = []
        self._version = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def version(self) -> int:
        """Incremented on every mutation that changed the feed."""
        return self._version

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> FeedSnapshot:
        return tuple(replace(r) for r in self._records)

    def get(self, tx_hash: str) -> Optional[TransactionRecord]:
        tx_hash = tx_hash.lower()
        for record in self._records:
            if not record.malformed and record.hash == tx_hash:
                return replace(record)
        return None

    def subscribe(self, observer: FeedObserver) -> Callable[[], None]:
        """Register an observer called with each new snapshot. Returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _index(self) -> Dict[str, TransactionRecord]:
        return {r.dedup_key: r for r in self._records}

    def _settle(self, records: List[TransactionRecord]) -> None:
        # sorted() is stable, so records sharing a stamp keep their given order
        ordered = sorted(dedupe(records), key=lambda r: r.observed_at, reverse=True)
        evicted = len(ordered) - self._capacity
        if evicted > 0:
            logger.debug(f"Evicting {evicted} oldest feed records")
        self._records = ordered[: self._capacity]
        self._version += 1

    async def replace_all(self, records: Iterable[TransactionRecord]) -> FeedSnapshot:
        """
        Apply a full refresh.

        ``records`` is deduplicated with the first occurrence winning. A hash
        already in the store keeps its existing record; if either side is
        confirmed the kept record is confirmed.
        """
        async with self._lock:
            stamp = time.monotonic()
            existing = self._index()
            merged = []
            for record in dedupe(records):
                current = existing.get(record.dedup_key)
                if current is not None:
                    if not record.is_pending and current.is_pending:
                        current.confirm(record.block_number, record.block_timestamp)
                    merged.append(current)
                else:
                    record.observed_at = stamp
                    merged.append(record)
            self._settle(merged)
            snap = self.snapshot()
        await self._notify(snap)
        return snap

    async def merge_confirmed(self, records: Iterable[TransactionRecord]) -> FeedSnapshot:
        """
        Merge a new block's transactions.

        A pending record with a matching hash is flipped to confirmed in place
        and moved to the front with the block's transactions.
        """
        async with self._lock:
            stamp = time.monotonic()
            existing = self._index()
            front = []
            for record in dedupe(records):
                current = existing.pop(record.dedup_key, None)
                if current is not None:
                    current.confirm(record.block_number, record.block_timestamp)
                    current.observed_at = stamp
                    front.append(current)
                else:
                    record.observed_at = stamp
                    front.append(record)
            self._settle(front + list(existing.values()))
            snap = self.snapshot()
        await self._notify(snap)
        return snap

    async def add_pending(self, record: TransactionRecord) -> bool:
        """Prepend a pending record unless its hash is already present."""
        async with self._lock:
            if record.dedup_key in self._index():
                return False
            record.observed_at = time.monotonic()
            self._settle([record] + self._records)
            snap = self.snapshot()
        await self._notify(snap)
        return True

    async def _notify(self, snap: FeedSnapshot) -> None:
        for observer in list(self._observers):
            try:
                result = observer(snap)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Feed observer error: {e}")
