"""Tests for the WebSocket subscription source."""
import json

import pytest

from trust_chain.exceptions import SubscriptionError, UnsupportedCapabilityError
from trust_chain.subscriptions import ChainEvent, EventKind, WebSocketSubscriptionSource


class FakeWebSocket:
    """Replays queued server messages and records client messages."""

    def __init__(self, *incoming):
        self.incoming = list(incoming)
        self.sent = []
        self.closed = False

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        return json.dumps(self.incoming.pop(0))

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.incoming:
            raise StopAsyncIteration
        return json.dumps(self.incoming.pop(0))

    async def close(self):
        self.closed = True


def notification(subscription, result):
    return {"jsonrpc": "2.0", "method": "eth_subscription", "params": {"subscription": subscription, "result": result}}


def connected_source(ws):
    source = WebSocketSubscriptionSource("ws://node.test")
    source._ws = ws
    return source


class TestWebSocketSubscriptionSource:
    @pytest.mark.asyncio
    async def test_subscribe_and_receive_events(self, sample_tx_hash):
        """Should turn newHeads and pending notifications into chain events."""
        ws = FakeWebSocket(
            {"jsonrpc": "2.0", "id": 1, "result": "0xheads"},
            {"jsonrpc": "2.0", "id": 2, "result": "0xpending"},
            notification("0xheads", {"number": "0x11"}),
            notification("0xpending", sample_tx_hash),
            notification("0xunknown", "ignored"),
        )
        source = connected_source(ws)

        await source.subscribe_new_blocks()
        await source.subscribe_pending()
        events = []
        with pytest.raises(SubscriptionError):
            async for event in source.events():
                events.append(event)

        assert [m["params"] for m in ws.sent] == [["newHeads"], ["newPendingTransactions"]]
        assert source.active_subscriptions == 2
        assert events == [
            ChainEvent(EventKind.NEW_BLOCK, block_number=17),
            ChainEvent(EventKind.PENDING_TX, tx_hash=sample_tx_hash),
        ]

    @pytest.mark.asyncio
    async def test_notifications_during_request_are_buffered(self, sample_tx_hash):
        """Should keep notifications that arrive before a subscribe response."""
        ws = FakeWebSocket(
            {"jsonrpc": "2.0", "id": 1, "result": "0xheads"},
            notification("0xheads", {"number": "0x1"}),
            {"jsonrpc": "2.0", "id": 2, "result": "0xpending"},
        )
        source = connected_source(ws)

        await source.subscribe_new_blocks()
        await source.subscribe_pending()
        events = []
        with pytest.raises(SubscriptionError):
            async for event in source.events():
                events.append(event)

        assert events == [ChainEvent(EventKind.NEW_BLOCK, block_number=1)]

    @pytest.mark.asyncio
    async def test_unsupported_subscription(self):
        """Should raise UnsupportedCapabilityError for a missing channel."""
        ws = FakeWebSocket({"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "Method not found"}})
        source = connected_source(ws)

        with pytest.raises(UnsupportedCapabilityError):
            await source.subscribe_pending()

    @pytest.mark.asyncio
    async def test_rejected_subscription(self):
        """Should raise SubscriptionError for other subscribe errors."""
        ws = FakeWebSocket({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "too many subscriptions"}})
        source = connected_source(ws)

        with pytest.raises(SubscriptionError):
            await source.subscribe_new_blocks()

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        """Should send eth_unsubscribe for every active subscription."""
        ws = FakeWebSocket({"jsonrpc": "2.0", "id": 1, "result": "0xheads"})
        source = connected_source(ws)
        await source.subscribe_new_blocks()

        await source.close()

        assert ws.sent[-1]["method"] == "eth_unsubscribe"
        assert ws.sent[-1]["params"] == ["0xheads"]
        assert ws.closed
        assert source.active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_close_without_connection(self):
        """Should be safe to close a source that never connected."""
        source = WebSocketSubscriptionSource("ws://node.test")

        await source.close()

    @pytest.mark.asyncio
    async def test_events_require_connection(self):
        """Should raise SubscriptionError when reading events before subscribing."""
        source = WebSocketSubscriptionSource("ws://node.test")

        with pytest.raises(SubscriptionError):
            async for _ in source.events():
                pass
