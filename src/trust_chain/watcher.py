"""
Chain event watcher.

Keeps a FeedStore current from three sources:
- a full refresh at startup and on every poll interval (the correctness backstop)
- new-block notifications
- pending-transaction notifications, when the provider offers them

Subscription and poll events go through one asyncio.Queue consumed by a
single merge loop. Provider failures never stop the watcher; they move it to
Degraded and the feed keeps its last contents.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .config import FeedConfig, WatcherConfig, get_config
from .exceptions import ProviderError, SubscriptionError, TrustChainError, UnsupportedCapabilityError
from .feed_store import FeedSnapshot, FeedStore
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .models import Liveness, TransactionRecord, WatcherState
from .normalizer import flatten_txpool, normalize
from .rpc_client import ChainClient, hex_to_int
from .subscriptions import ChainEvent, EventKind, SubscriptionSource

logger = logging.getLogger(__name__)

LivenessListener = Callable[[Liveness], Union[None, Awaitable[None]]]


class ChainEventWatcher:
    """
    Watches a chain and maintains the transaction feed.

    Usage:
        watcher = ChainEventWatcher(client, subscriptions=WebSocketSubscriptionSource(ws_url))
        await watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        client: ChainClient,
        store: Optional[FeedStore] = None,
        subscriptions: Optional[SubscriptionSource] = None,
        config: Optional[WatcherConfig] = None,
        feed_config: Optional[FeedConfig] = None,
        chain_logger: Optional[ChainLogger] = None,
    ):
        global_config = None
        if config is None or feed_config is None:
            global_config = get_config()
        self._config = config or global_config.watcher
        self._feed_config = feed_config or global_config.feed
        self._client = client
        self._store = store or FeedStore(capacity=self._feed_config.capacity)
        self._subscriptions = subscriptions
        self._chain_logger = chain_logger or get_chain_logger()

        self._liveness = Liveness()
        self._listeners: List[LivenessListener] = []
        self._subscription_down: Optional[str] = None
        self._pending_hint: Optional[int] = None
        self._pending_source: Optional[str] = None

        self._queue: "asyncio.Queue[ChainEvent]" = asyncio.Queue()
        self._running = False
        self._merge_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def store(self) -> FeedStore:
        return self._store

    @property
    def liveness(self) -> Liveness:
        return self._liveness

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_hint(self) -> Optional[int]:
        """Pending-minus-latest transaction count of the probe address, when no list was available."""
        return self._pending_hint

    @property
    def pending_source(self) -> Optional[str]:
        """Method that supplied pending transactions on the last refresh."""
        return self._pending_source

    def snapshot(self) -> FeedSnapshot:
        return self._store.snapshot()

    def add_liveness_listener(self, listener: LivenessListener) -> None:
        self._listeners.append(listener)

    async def _set_liveness(self, state: WatcherState, reason: Optional[str] = None) -> None:
        old = self._liveness
        if old.state == state and old.reason == reason:
            return
        self._liveness = Liveness(state=state, reason=reason)
        self._chain_logger.log_liveness_change(
            self._client.chain, old.state.value, state.value, reason
        )
        for listener in list(self._listeners):
            try:
                result = listener(self._liveness)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Liveness listener error: {e}")

    async def _mark_healthy(self) -> None:
        if self._subscription_down:
            await self._set_liveness(WatcherState.DEGRADED, self._subscription_down)
        else:
            await self._set_liveness(WatcherState.LIVE)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Refresh once, open subscriptions, then start the merge and poll loops."""
        if self._running:
            return
        self._running = True
        await self._set_liveness(WatcherState.SUBSCRIBING)

        refreshed = await self._safe_refresh()

        if self._subscriptions is not None:
            if await self._open_subscriptions():
                self._pump_task = asyncio.create_task(self._pump_loop())
            else:
                self._pump_task = asyncio.create_task(self._resubscribe_loop())

        self._merge_task = asyncio.create_task(self._merge_loop())
        self._poll_task = asyncio.create_task(self._poll_loop())

        if refreshed:
            await self._mark_healthy()
        logger.info(f"Chain event watcher started on {self._client.chain}")

    async def stop(self) -> None:
        """Cancel loops and unsubscribe. Safe to call at any time."""
        self._running = False
        for task in (self._pump_task, self._poll_task, self._merge_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._pump_task = self._poll_task = self._merge_task = None

        if self._subscriptions is not None:
            await self._subscriptions.close()
        await self._set_liveness(WatcherState.DISCONNECTED)
        logger.info("Chain event watcher stopped")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def _open_subscriptions(self) -> bool:
        """Subscribe to new blocks and, best effort, pending hashes."""
        try:
            await self._subscriptions.subscribe_new_blocks()
        except UnsupportedCapabilityError as e:
            # Polling alone keeps the feed correct
            logger.info(f"New-block subscription unavailable, polling only: {e}")
            await self._subscriptions.close()
            self._subscriptions = None
            self._subscription_down = None
            return False
        except ProviderError as e:
            self._subscription_down = f"subscription failed: {e}"
            await self._set_liveness(WatcherState.DEGRADED, self._subscription_down)
            await self._subscriptions.close()
            return False

        try:
            await self._subscriptions.subscribe_pending()
        except (UnsupportedCapabilityError, SubscriptionError) as e:
            logger.info(f"Pending-transaction subscription unavailable: {e}")

        self._subscription_down = None
        return True

    async def _pump_loop(self) -> None:
        while self._running and self._subscriptions is not None:
            try:
                async for event in self._subscriptions.events():
                    await self._queue.put(event)
                raise SubscriptionError("subscription stream ended")
            except ProviderError as e:
                self._subscription_down = f"subscription lost: {e}"
                logger.warning(f"Chain subscription lost on {self._client.chain}: {e}")
                await self._set_liveness(WatcherState.DEGRADED, self._subscription_down)
                await self._subscriptions.close()
                await self._resubscribe()

    async def _resubscribe_loop(self) -> None:
        await self._resubscribe()
        if self._running and self._subscriptions is not None:
            await self._pump_loop()

    async def _resubscribe(self) -> None:
        while self._running and self._subscriptions is not None:
            await asyncio.sleep(self._config.resubscribe_delay_seconds)
            if await self._open_subscriptions():
                logger.info(f"Resubscribed on {self._client.chain}")
                await self._set_liveness(WatcherState.LIVE)
                return

    # ------------------------------------------------------------------
    # Merge and poll loops
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._config.poll_interval_seconds)
            await self._queue.put(ChainEvent(EventKind.REFRESH))

    async def _merge_loop(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                await self.handle_event(event)
            except TrustChainError as e:
                logger.warning(f"Failed to apply {event.kind.value} event: {e}")
            except Exception as e:
                logger.error(f"Unexpected error applying {event.kind.value} event: {e}")
            finally:
                self._queue.task_done()

    async def handle_event(self, event: ChainEvent) -> None:
        if event.kind == EventKind.NEW_BLOCK:
            await self.on_new_block(event.block_number)
        elif event.kind == EventKind.PENDING_TX:
            await self.on_pending_hash(event.tx_hash)
        elif event.kind == EventKind.REFRESH:
            await self._safe_refresh()

    # ------------------------------------------------------------------
    # Feed updates
    # ------------------------------------------------------------------

    async def _fetch_pending(self) -> List[Any]:
        """Try each pending-transaction method once, in preference order."""
        fetchers: Dict[str, Callable[[], Awaitable[List[Any]]]] = {
            "eth_pendingTransactions": self._client.get_pending_transactions,
            "txpool_content": self._txpool_transactions,
        }
        for method in self._config.pending_methods:
            fetch = fetchers.get(method)
            if fetch is None or self._client.is_supported(method) is False:
                continue
            try:
                transactions = await fetch()
            except UnsupportedCapabilityError:
                continue
            except ProviderError as e:
                logger.debug(f"{method} failed on {self._client.chain}: {e}")
                continue
            self._pending_source = method
            self._pending_hint = None
            return transactions[: self._feed_config.pending_fetch_limit]

        self._pending_source = None
        await self._update_pending_hint()
        return []

    async def _txpool_transactions(self) -> List[Any]:
        return flatten_txpool(await self._client.get_txpool_content())

    async def _update_pending_hint(self) -> None:
        address = self._config.mempool_probe_address
        if not address:
            self._pending_hint = None
            return
        try:
            pending = await self._client.get_transaction_count(address, "pending")
            latest = await self._client.get_transaction_count(address, "latest")
        except TrustChainError as e:
            logger.debug(f"Transaction count probe failed: {e}")
            self._pending_hint = None
            return
        self._pending_hint = max(pending - latest, 0)
        if self._pending_hint:
            logger.info(f"{self._pending_hint} pending transaction(s) exist but cannot be listed")

    async def _block_records(self, block_number: int) -> List[TransactionRecord]:
        block = await self._client.get_block_with_transactions(block_number)
        if not block:
            return []
        timestamp = hex_to_int(block.get("timestamp"), default=0) or None
        records = []
        for raw in block.get("transactions") or []:
            record = normalize(raw, is_pending=False, block_timestamp=timestamp)
            if record.block_number is None:
                record.block_number = block_number
            records.append(record)
        return records

    async def full_refresh(self) -> FeedSnapshot:
        """
        Rebuild the feed from pending transactions and the most recent blocks.

        Raises ProviderError when the latest block number is unavailable; the
        feed is left untouched in that case.
        """
        async with self._chain_logger.operation_context(
            OperationType.FULL_REFRESH, self._client.chain
        ) as ctx:
            pending = [normalize(raw, is_pending=True) for raw in await self._fetch_pending()]

            latest = await self._client.get_block_number()
            confirmed: List[TransactionRecord] = []
            for offset in range(self._config.recent_block_depth):
                number = latest - offset
                if number < 0:
                    break
                try:
                    confirmed.extend(await self._block_records(number))
                except TrustChainError as e:
                    logger.warning(f"Skipping block {number} on {self._client.chain}: {e}")

            ctx.metadata.update(pending=len(pending), confirmed=len(confirmed), latest=latest)
            return await self._store.replace_all(pending + confirmed)

    async def _safe_refresh(self) -> bool:
        try:
            await self.full_refresh()
        except ProviderError as e:
            logger.warning(f"Full refresh failed on {self._client.chain}: {e}")
            await self._set_liveness(WatcherState.DEGRADED, f"refresh failed: {e}")
            return False
        if self._running and self._liveness.state != WatcherState.SUBSCRIBING:
            await self._mark_healthy()
        return True

    async def on_new_block(self, block_number: Optional[int]) -> FeedSnapshot:
        """Merge a new block's transactions, confirming matching pending records."""
        if block_number is None:
            block_number = await self._client.get_block_number()
        records = await self._block_records(block_number)
        if not records:
            return self._store.snapshot()
        logger.debug(f"Block {block_number}: merging {len(records)} transactions")
        return await self._store.merge_confirmed(records)

    async def on_pending_hash(self, tx_hash: Optional[str]) -> bool:
        """Look up and prepend a pending transaction. Lookup failures are dropped."""
        if not tx_hash:
            return False
        try:
            raw = await self._client.get_transaction(tx_hash)
        except TrustChainError as e:
            logger.debug(f"Dropping pending {tx_hash}: {e}")
            return False
        if not raw:
            return False
        return await self._store.add_pending(normalize(raw, is_pending=True))
