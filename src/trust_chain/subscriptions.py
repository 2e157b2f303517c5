"""
Chain event subscriptions.

A SubscriptionSource turns provider push notifications into ChainEvent
values. The watcher pumps them onto an asyncio.Queue consumed by its single
merge loop; no provider callback touches the feed directly.
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, Optional

import websockets

from .exceptions import SubscriptionError, UnsupportedCapabilityError
from .rpc_client import is_unsupported_error, hex_to_int

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    NEW_BLOCK = "new_block"
    PENDING_TX = "pending_tx"
    REFRESH = "refresh"


@dataclass(frozen=True)
class ChainEvent:
    """One item on the watcher's event queue."""
    kind: EventKind
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None


class SubscriptionSource(ABC):
    """Push channel for new blocks and pending transaction hashes."""

    @abstractmethod
    async def subscribe_new_blocks(self) -> None:
        """Raises SubscriptionError when the channel cannot be opened."""

    @abstractmethod
    async def subscribe_pending(self) -> None:
        """Raises UnsupportedCapabilityError when the provider lacks it."""

    @abstractmethod
    def events(self) -> AsyncIterator[ChainEvent]:
        """Yield events until the connection ends; raise SubscriptionError if it is lost."""

    @abstractmethod
    async def close(self) -> None:
        """Unsubscribe whatever is active. Safe to call when nothing is."""


class WebSocketSubscriptionSource(SubscriptionSource):
    """``eth_subscribe`` over a WebSocket JSON-RPC endpoint."""

    def __init__(self, ws_url: str, response_timeout: float = 10.0):
        self._ws_url = ws_url
        self._response_timeout = response_timeout
        self._ws: Any = None
        self._request_id = 0
        self._subscriptions: Dict[str, EventKind] = {}
        self._buffered: Deque[Dict[str, Any]] = deque()

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    async def _ensure_connected(self) -> None:
        if self._ws is not None:
            return
        try:
            self._ws = await websockets.connect(self._ws_url)
        except (OSError, websockets.WebSocketException, asyncio.TimeoutError) as e:
            raise SubscriptionError(f"Cannot connect to {self._ws_url}: {e}") from e
        logger.info(f"Connected subscription channel to {self._ws_url}")

    async def _request(self, method: str, params: list) -> Any:
        await self._ensure_connected()
        self._request_id += 1
        request_id = self._request_id
        try:
            await self._ws.send(json.dumps({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params,
            }))
            while True:
                raw = await asyncio.wait_for(self._ws.recv(), timeout=self._response_timeout)
                message = json.loads(raw)
                if message.get("id") == request_id:
                    break
                # Notifications for channels opened earlier
                self._buffered.append(message)
        except (websockets.WebSocketException, asyncio.TimeoutError, ValueError) as e:
            raise SubscriptionError(f"{method} failed: {e}") from e

        error = message.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            if is_unsupported_error(error):
                raise UnsupportedCapabilityError(f"{method}({params[0] if params else ''})",
                                                 error.get("message", ""))
            raise SubscriptionError(f"{method} rejected: {error.get('message', error)}")
        return message.get("result")

    async def _subscribe(self, channel: str, kind: EventKind) -> None:
        subscription_id = await self._request("eth_subscribe", [channel])
        if not subscription_id:
            raise SubscriptionError(f"eth_subscribe({channel}) returned no subscription id")
        self._subscriptions[str(subscription_id)] = kind
        logger.info(f"Subscribed to {channel} ({subscription_id})")

    async def subscribe_new_blocks(self) -> None:
        await self._subscribe("newHeads", EventKind.NEW_BLOCK)

    async def subscribe_pending(self) -> None:
        await self._subscribe("newPendingTransactions", EventKind.PENDING_TX)

    def _to_event(self, message: Dict[str, Any]) -> Optional[ChainEvent]:
        if message.get("method") != "eth_subscription":
            return None
        params = message.get("params") or {}
        kind = self._subscriptions.get(str(params.get("subscription")))
        result = params.get("result")
        if kind == EventKind.NEW_BLOCK and isinstance(result, dict):
            try:
                return ChainEvent(kind, block_number=hex_to_int(result.get("number")))
            except ValueError:
                logger.warning(f"Ignoring block header without a number: {result!r}")
                return None
        if kind == EventKind.PENDING_TX:
            tx_hash = result.get("hash") if isinstance(result, dict) else result
            if isinstance(tx_hash, str):
                return ChainEvent(kind, tx_hash=tx_hash)
        return None

    async def events(self) -> AsyncIterator[ChainEvent]:
        if self._ws is None:
            raise SubscriptionError("Subscription channel is not connected")

        while self._buffered:
            event = self._to_event(self._buffered.popleft())
            if event is not None:
                yield event

        try:
            async for raw in self._ws:
                try:
                    event = self._to_event(json.loads(raw))
                except (ValueError, AttributeError) as e:
                    logger.warning(f"Ignoring unreadable subscription message: {e}")
                    continue
                if event is not None:
                    yield event
        except websockets.ConnectionClosed as e:
            raise SubscriptionError(f"Subscription channel closed: {e}") from e
        raise SubscriptionError("Subscription channel ended")

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        subscriptions, self._subscriptions = list(self._subscriptions), {}
        self._buffered.clear()
        if ws is None:
            return
        for subscription_id in subscriptions:
            self._request_id += 1
            try:
                await ws.send(json.dumps({
                    "jsonrpc": "2.0",
                    "id": self._request_id,
                    "method": "eth_unsubscribe",
                    "params": [subscription_id],
                }))
            except websockets.WebSocketException:
                break
        try:
            await ws.close()
        except websockets.WebSocketException as e:
            logger.debug(f"Error closing subscription channel: {e}")
        logger.info(f"Closed subscription channel to {self._ws_url}")
