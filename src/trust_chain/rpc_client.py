"""
JSON-RPC chain client with failover, health checking and capability caching.

Features:
- Multi-RPC endpoint support with automatic failover
- Optional chain ID validation on connection
- Health-based endpoint selection
- Per-instance cache of methods the provider does not implement
- Typed helpers for the calls the feed and the coordinator need
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import RPCEndpointConfig, TrustChainConfig, get_config
from .exceptions import (
    AllEndpointsFailedError,
    ProviderError,
    RPCError,
    UnsupportedCapabilityError,
)
from .logging_utils import ChainLogger, get_chain_logger

logger = logging.getLogger(__name__)

# JSON-RPC error codes
METHOD_NOT_FOUND = -32601
METHOD_NOT_SUPPORTED = -32004
RETRYABLE_CODES = (-32000, -32005)  # Server errors, rate limits
EXECUTION_REVERTED = 3

# Probed alongside the pending methods
SUBSCRIBE_METHOD = "eth_subscribe"

_UNSUPPORTED_MARKERS = (
    "method not found",
    "not supported",
    "does not exist",
    "is not available",
    "unsupported method",
)


def is_unsupported_error(error: Dict[str, Any]) -> bool:
    """Whether a JSON-RPC error says the method itself is unimplemented.

    Only meaningful for capability probes; a revert message such as
    "execution reverted: offer does not exist" never counts.
    """
    code = error.get("code")
    message = str(error.get("message", "")).lower()
    if code == EXECUTION_REVERTED or "execution reverted" in message:
        return False
    if code in (METHOD_NOT_FOUND, METHOD_NOT_SUPPORTED):
        return True
    return any(marker in message for marker in _UNSUPPORTED_MARKERS)


def hex_to_int(value: Any, default: int = 0) -> int:
    """Parse a quantity that may be hex string, decimal string or int."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.startswith(("0x", "0X")) else int(text)


class EndpointStatus(str, Enum):
    """Health status of an RPC endpoint."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # High latency but working
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class EndpointHealth:
    """Health tracking for an RPC endpoint."""
    url: str
    status: EndpointStatus = EndpointStatus.UNKNOWN
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    avg_latency_ms: float = 0.0
    last_error: Optional[str] = None

    max_consecutive_failures: int = 3
    degraded_latency_ms: float = 5000.0

    def record_success(self, latency_ms: float) -> None:
        self.consecutive_failures = 0
        self.total_requests += 1
        self.last_success = datetime.now(timezone.utc)

        if self.avg_latency_ms == 0:
            self.avg_latency_ms = latency_ms
        else:
            # Exponential moving average
            self.avg_latency_ms = 0.9 * self.avg_latency_ms + 0.1 * latency_ms

        if latency_ms > self.degraded_latency_ms:
            self.status = EndpointStatus.DEGRADED
        else:
            self.status = EndpointStatus.HEALTHY

    def record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.total_requests += 1
        self.total_failures += 1
        self.last_failure = datetime.now(timezone.utc)
        self.last_error = error

        if self.consecutive_failures >= self.max_consecutive_failures:
            self.status = EndpointStatus.UNHEALTHY

    def get_priority_score(self, base_priority: int) -> float:
        """Lower score = higher priority."""
        score = float(base_priority * 100)
        if self.status == EndpointStatus.UNHEALTHY:
            score += 10000
        elif self.status == EndpointStatus.DEGRADED:
            score += 1000
        elif self.status == EndpointStatus.UNKNOWN:
            score += 500
        score += self.avg_latency_ms / 10.0
        score += self.consecutive_failures * 100
        return score


class ChainClient:
    """
    JSON-RPC client over HTTP with failover.

    The client remembers, for its own lifetime, which methods the provider
    reported as unimplemented; later calls to those raise
    UnsupportedCapabilityError without a network round-trip.
    """

    def __init__(
        self,
        config: Optional[TrustChainConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        chain_logger: Optional[ChainLogger] = None,
    ):
        self._config = config or get_config()
        self._chain = self._config.chain_name
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._chain_logger = chain_logger or get_chain_logger()
        self._request_id = 0
        self._connected = False
        self._verified_chain_id: Optional[int] = None
        self._capabilities: Dict[str, bool] = {}
        self._probe_methods = set(self._config.watcher.pending_methods) | {SUBSCRIBE_METHOD}

        self._endpoints: List[Tuple[RPCEndpointConfig, EndpointHealth]] = [
            (
                endpoint,
                EndpointHealth(
                    url=endpoint.url,
                    max_consecutive_failures=endpoint.max_consecutive_failures,
                ),
            )
            for endpoint in self._config.rpc_endpoints
        ]
        if not self._endpoints:
            raise ValueError(f"No RPC endpoints configured for chain {self._chain}")

        logger.info(
            f"Initialized RPC client for {self._chain} with {len(self._endpoints)} endpoints"
        )

    @property
    def chain(self) -> str:
        return self._chain

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._endpoints[0][0].timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._http_client

    # ------------------------------------------------------------------
    # Capability cache
    # ------------------------------------------------------------------

    def is_probe_method(self, method: str) -> bool:
        return method in self._probe_methods

    def is_supported(self, method: str) -> Optional[bool]:
        """True/False once a method has been probed, None before."""
        return self._capabilities.get(method)

    def mark_unsupported(self, method: str) -> None:
        if self._capabilities.get(method) is not False:
            logger.info(f"Provider for {self._chain} does not support {method}; skipping from now on")
        self._capabilities[method] = False

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Validate the chain ID when one is configured."""
        if self._connected:
            return
        expected = self._config.chain_id
        if expected is not None:
            chain_id = hex_to_int(await self._call_internal("eth_chainId", []))
            if chain_id != expected:
                raise ProviderError(
                    f"Chain ID mismatch for {self._chain}: expected {expected}, got {chain_id}",
                    error_code="CHAIN_ID_MISMATCH",
                )
            self._verified_chain_id = chain_id
            logger.info(f"Chain ID validated for {self._chain}: {chain_id}")
        self._connected = True

    def _select_endpoint(self, tried: set) -> Optional[Tuple[RPCEndpointConfig, EndpointHealth]]:
        candidates = [
            (config, health, health.get_priority_score(config.priority))
            for config, health in self._endpoints
            if config.url not in tried
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda x: x[2])
        config, health, _ = candidates[0]
        return config, health

    async def _call_internal(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        errors: List[Tuple[str, str]] = []
        tried: set = set()

        while True:
            selected = self._select_endpoint(tried)
            if selected is None:
                break
            config, health = selected
            tried.add(config.url)
            start_time = time.time()

            try:
                client = self._get_client()
                response = await client.post(
                    config.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=config.timeout_seconds,
                )
                latency_ms = (time.time() - start_time) * 1000
                response.raise_for_status()
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                latency_ms = (time.time() - start_time) * 1000
                health.record_failure(str(e))
                errors.append((config.url, str(e)))
                self._chain_logger.log_rpc_call(
                    method, config.url, self._chain, self._request_id, latency_ms, False,
                    error_message=str(e),
                )
                logger.warning(f"RPC call {method} to {config.url} failed after {latency_ms:.0f}ms: {e}")
                continue

            error = result.get("error") if isinstance(result, dict) else None
            if error:
                if not isinstance(error, dict):
                    error = {"message": str(error)}
                code = error.get("code")
                message = error.get("message", str(error))
                self._chain_logger.log_rpc_call(
                    method, config.url, self._chain, self._request_id, latency_ms, False,
                    error_code=code, error_message=message,
                )

                if self.is_probe_method(method) and is_unsupported_error(error):
                    # The endpoint answered; it is healthy but lacks the method
                    health.record_success(latency_ms)
                    self.mark_unsupported(method)
                    raise UnsupportedCapabilityError(method, message)

                health.record_failure(message)
                errors.append((config.url, message))
                if code in RETRYABLE_CODES:
                    logger.warning(f"RPC error from {config.url}: {message}, trying next endpoint")
                    continue
                raise RPCError(message, code=code, data=error.get("data"))

            health.record_success(latency_ms)
            if self.is_probe_method(method):
                self._capabilities[method] = True
            self._chain_logger.log_rpc_call(
                method, config.url, self._chain, self._request_id, latency_ms, True,
            )
            return result.get("result") if isinstance(result, dict) else None

        raise AllEndpointsFailedError(chain=self._chain, errors=errors)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Make a JSON-RPC call with automatic failover.

        Raises:
            UnsupportedCapabilityError: If the provider lacks the method
            RPCError: If RPC returns a non-retryable error
            AllEndpointsFailedError: If all endpoints fail
        """
        if self._capabilities.get(method) is False:
            raise UnsupportedCapabilityError(method, "cached")
        if not self._connected:
            await self.connect()
        return await self._call_internal(method, params or [])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_chain_id(self) -> int:
        if self._verified_chain_id is None:
            self._verified_chain_id = hex_to_int(await self.call("eth_chainId"))
        return self._verified_chain_id

    async def get_block_number(self) -> int:
        return hex_to_int(await self.call("eth_blockNumber"))

    async def get_block(
        self,
        block_number: int | str,
        include_transactions: bool = False,
    ) -> Optional[Dict[str, Any]]:
        if isinstance(block_number, int):
            block_number = hex(block_number)
        return await self.call("eth_getBlockByNumber", [block_number, include_transactions])

    async def get_block_with_transactions(self, block_number: int | str) -> Optional[Dict[str, Any]]:
        return await self.get_block(block_number, include_transactions=True)

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_pending_transactions(self) -> List[Dict[str, Any]]:
        """``eth_pendingTransactions`` (capability dependent)."""
        result = await self.call("eth_pendingTransactions")
        return result if isinstance(result, list) else []

    async def get_txpool_content(self) -> Dict[str, Any]:
        """``txpool_content``: ``{"pending": {addr: {nonce: tx}}, "queued": ...}``."""
        result = await self.call("txpool_content")
        return result if isinstance(result, dict) else {}

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        return hex_to_int(await self.call("eth_getTransactionCount", [address, block]))

    async def get_gas_price(self) -> int:
        return hex_to_int(await self.call("eth_gasPrice"))

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return hex_to_int(await self.call("eth_estimateGas", [tx]))

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        return await self.call("eth_call", [tx, block])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_raw_transaction(self, signed_tx: str) -> str:
        if not signed_tx.startswith("0x"):
            signed_tx = "0x" + signed_tx
        return await self.call("eth_sendRawTransaction", [signed_tx])

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "url": config.url,
                "priority": config.priority,
                "status": health.status.value,
                "consecutive_failures": health.consecutive_failures,
                "total_requests": health.total_requests,
                "total_failures": health.total_failures,
                "avg_latency_ms": round(health.avg_latency_ms, 2),
                "last_error": health.last_error,
            }
            for config, health in self._endpoints
        ]

    def get_capabilities(self) -> Dict[str, bool]:
        return dict(self._capabilities)

    async def close(self) -> None:
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
        self._connected = False

    async def __aenter__(self) -> "ChainClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
