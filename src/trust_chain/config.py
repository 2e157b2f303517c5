"""
Configuration management for trust-chain.

Provides centralized configuration for:
- RPC endpoints with fallback support
- Transaction feed sizing and watcher polling
- Reconciliation timeouts and required on-chain roles
- Logging configuration

Environment variables use the prefix TRUST_CHAIN_ and are loaded through
pydantic-settings; component settings are plain dataclasses.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class TrustChainSettings(BaseSettings):
    """Deployment settings read from the environment."""

    model_config = SettingsConfigDict(
        env_prefix="TRUST_CHAIN_",
        env_file=".env",
        extra="ignore",
    )

    chain_name: str = "hardhat"
    chain_id: Optional[int] = None
    rpc_url: str = "http://127.0.0.1:8545"
    fallback_rpc_urls: List[str] = Field(default_factory=list)
    ws_url: str = ""

    api_url: str = "http://localhost:8080"
    api_token: str = ""

    offer_factory_address: str = ""
    private_key: str = ""

    log_level: str = "INFO"
    log_json: bool = False


@dataclass
class RPCEndpointConfig:
    """Configuration for a single RPC endpoint."""
    url: str
    priority: int = 0  # Lower is higher priority
    timeout_seconds: float = 30.0

    # Health check settings
    health_check_interval_seconds: float = 60.0
    max_consecutive_failures: int = 3


@dataclass
class FeedConfig:
    """Sizing of the transaction feed."""
    capacity: int = 15
    pending_fetch_limit: int = 10


@dataclass
class WatcherConfig:
    """Configuration for the chain event watcher."""
    poll_interval_seconds: float = 30.0
    recent_block_depth: int = 2
    resubscribe_delay_seconds: float = 5.0

    # Capability probe order for pending transactions
    pending_methods: List[str] = field(
        default_factory=lambda: ["eth_pendingTransactions", "txpool_content"]
    )

    # Address used for the pending-vs-latest transaction count signal
    mempool_probe_address: Optional[str] = None


@dataclass
class ReconciliationConfig:
    """Configuration for the on-chain/off-chain reconciliation coordinator."""
    confirmation_timeout_seconds: float = 300.0
    receipt_poll_interval_seconds: float = 2.0
    confirmations_required: int = 1

    # Off-chain HTTP calls must not hold a coordinator slot for long
    offchain_timeout_seconds: float = 15.0

    # On-chain role the caller must hold, keyed by action kind value
    required_roles: Dict[str, str] = field(
        default_factory=lambda: {
            "grant_role": "admin",
            "revoke_role": "admin",
            "create_offer": "tender",
        }
    )


@dataclass
class LoggingConfig:
    """Configuration for chain and reconciliation logging."""
    rpc_call_level: str = "DEBUG"
    transaction_level: str = "INFO"
    error_level: str = "ERROR"

    mask_addresses: bool = False
    log_rpc_latency: bool = True

    # Audit logging
    audit_log_enabled: bool = True
    audit_log_path: Optional[str] = None  # None = use default logger


@dataclass
class TrustChainConfig:
    """
    Master configuration for trust-chain.

    Built from TrustChainSettings by build_default_config().
    """
    chain_name: str = "hardhat"
    chain_id: Optional[int] = None
    rpc_endpoints: List[RPCEndpointConfig] = field(default_factory=list)
    ws_url: str = ""

    api_url: str = "http://localhost:8080"
    api_token: str = ""
    offer_factory_address: str = ""
    private_key: str = ""

    feed: FeedConfig = field(default_factory=FeedConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def get_primary_rpc_url(self) -> str:
        """Get the primary (highest priority) RPC URL."""
        if not self.rpc_endpoints:
            raise ValueError(f"No RPC endpoints configured for {self.chain_name}")
        return sorted(self.rpc_endpoints, key=lambda e: e.priority)[0].url


def build_default_config(settings: Optional[TrustChainSettings] = None) -> TrustChainConfig:
    """Build configuration from environment settings."""
    settings = settings or TrustChainSettings()

    endpoints = [RPCEndpointConfig(url=settings.rpc_url, priority=0)]
    for i, url in enumerate(settings.fallback_rpc_urls):
        if url != settings.rpc_url:  # Don't duplicate primary
            endpoints.append(RPCEndpointConfig(url=url, priority=i + 1))

    return TrustChainConfig(
        chain_name=settings.chain_name,
        chain_id=settings.chain_id,
        rpc_endpoints=endpoints,
        ws_url=settings.ws_url,
        api_url=settings.api_url.rstrip("/"),
        api_token=settings.api_token,
        offer_factory_address=settings.offer_factory_address,
        private_key=settings.private_key,
    )


# Global configuration instance
_global_config: Optional[TrustChainConfig] = None


def get_config() -> TrustChainConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = build_default_config()
    return _global_config


def set_config(config: Optional[TrustChainConfig]) -> None:
    """Set (or reset with None) the global configuration instance."""
    global _global_config
    _global_config = config
