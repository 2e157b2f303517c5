"""
Structured logging for feed and reconciliation operations.

Features:
- Operation context tracking with durations
- RPC call metrics
- Watcher liveness changes
- Reconciliation lifecycle and audit trail
- Optional address masking
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import LoggingConfig, get_config

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Types of tracked operations."""
    RPC_CALL = "rpc_call"
    FULL_REFRESH = "full_refresh"
    SUBSCRIPTION = "subscription"
    CHAIN_WRITE = "chain_write"
    CONFIRMATION_WAIT = "confirmation_wait"
    OFFCHAIN_SYNC = "offchain_sync"
    ROLE_AUDIT = "role_audit"


@dataclass
class OperationContext:
    """Context for a tracked operation."""
    operation_id: str
    operation_type: OperationType
    chain: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "chain": self.chain,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class RPCCallLog:
    """Log entry for an RPC call."""
    method: str
    endpoint_url: str
    chain: str
    request_id: int
    duration_ms: float
    success: bool
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    logged_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "endpoint_url": mask_url(self.endpoint_url),
            "chain": self.chain,
            "request_id": self.request_id,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


def mask_url(url: str) -> str:
    """Drop query parameters, which may carry provider API keys."""
    if "?" in url:
        return f"{url.split('?')[0]}?<params_masked>"
    return url


def mask_address(address: Optional[str]) -> Optional[str]:
    if not address or len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class ChainLogger:
    """
    Logger for chain and reconciliation operations.

    Keeps a bounded history of RPC calls for metrics and writes audit
    entries for every reconciliation transition.
    """

    def __init__(
        self,
        name: str = "trust_chain",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or get_config().logging
        self._operation_counter = 0

        self._rpc_calls: List[RPCCallLog] = []
        self._action_states: Dict[str, str] = {}
        self._inconsistencies: List[Dict[str, Any]] = []
        self._max_history = 1000

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        return f"op_{int(time.time() * 1000)}_{self._operation_counter}"

    @staticmethod
    def _get_level(level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    def _address(self, address: Optional[str]) -> Optional[str]:
        return mask_address(address) if self._config.mask_addresses else address

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        chain: str,
        **metadata,
    ):
        """
        Context manager for tracking an operation.

        Usage:
            async with chain_logger.operation_context(OperationType.FULL_REFRESH, "hardhat") as ctx:
                ctx.metadata["records"] = len(records)
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            chain=chain,
            metadata=metadata,
        )
        self._logger.debug(
            f"Starting {operation_type.value} on {chain}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)
        except Exception as e:
            ctx.complete(success=False, error=str(e))
            raise
        finally:
            if ctx.completed_at is None:
                ctx.complete(success=False, error="cancelled")
            level = (
                self._get_level(self._config.transaction_level)
                if ctx.success
                else self._get_level(self._config.error_level)
            )
            self._logger.log(
                level,
                f"Completed {operation_type.value} on {chain} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_rpc_call(
        self,
        method: str,
        endpoint_url: str,
        chain: str,
        request_id: int,
        duration_ms: float,
        success: bool,
        error_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        if not self._config.log_rpc_latency:
            return

        entry = RPCCallLog(
            method=method,
            endpoint_url=endpoint_url,
            chain=chain,
            request_id=request_id,
            duration_ms=duration_ms,
            success=success,
            error_code=error_code,
            error_message=error_message,
        )
        self._rpc_calls.append(entry)
        if len(self._rpc_calls) > self._max_history:
            self._rpc_calls = self._rpc_calls[-self._max_history:]

        # Failed calls are absorbed upstream; keep them at debug level here
        self._logger.log(
            self._get_level(self._config.rpc_call_level),
            f"RPC {method} to {chain} in {duration_ms:.0f}ms (success={success})",
            extra={"rpc_call": entry.to_dict()},
        )

    def log_liveness_change(
        self,
        chain: str,
        old_state: str,
        new_state: str,
        reason: Optional[str] = None,
    ) -> None:
        level = logging.WARNING if new_state == "degraded" else logging.INFO
        self._logger.log(
            level,
            f"Watcher on {chain}: {old_state} -> {new_state}"
            + (f" ({reason})" if reason else ""),
            extra={
                "liveness": {
                    "chain": chain,
                    "from": old_state,
                    "to": new_state,
                    "reason": reason,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            },
        )

    def log_action_transition(
        self,
        idempotency_key: str,
        kind: str,
        from_state: str,
        to_state: str,
        tx_hash: Optional[str] = None,
        subject_address: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._action_states[idempotency_key] = to_state
        data = {
            "idempotency_key": idempotency_key,
            "kind": kind,
            "from": from_state,
            "to": to_state,
            "tx_hash": tx_hash,
            "subject_address": self._address(subject_address),
            "error": error,
        }
        level = (
            self._get_level(self._config.error_level)
            if to_state == "failed"
            else self._get_level(self._config.transaction_level)
        )
        self._logger.log(
            level,
            f"Action {idempotency_key} ({kind}): {from_state} -> {to_state}"
            + (f" tx={tx_hash}" if tx_hash else ""),
            extra={"action": data},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("action_transition", data)

    def log_offchain_inconsistency(
        self,
        idempotency_key: str,
        kind: str,
        tx_hash: Optional[str],
        reason: str,
    ) -> None:
        """Record an on-chain effect the off-chain record does not reflect yet."""
        data = {
            "idempotency_key": idempotency_key,
            "kind": kind,
            "tx_hash": tx_hash,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._inconsistencies.append(data)
        if len(self._inconsistencies) > self._max_history:
            self._inconsistencies = self._inconsistencies[-self._max_history:]

        self._logger.error(
            f"Off-chain record lags chain for {idempotency_key} ({kind}, tx={tx_hash}): {reason}",
            extra={"inconsistency": data},
        )
        # Always audit these; they need an operator
        self._write_audit_log("offchain_inconsistency", data)

    def log_role_drift(self, user_id: int, role_name: str, reason: str) -> None:
        self._logger.warning(
            f"Role drift for user {user_id}: {role_name} ({reason})",
            extra={"role_drift": {"user_id": user_id, "role": role_name, "reason": reason}},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log(
                "role_drift", {"user_id": user_id, "role": role_name, "reason": reason}
            )

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }

        if self._config.audit_log_path:
            try:
                with open(self._config.audit_log_path, "a") as f:
                    f.write(json.dumps(audit_entry, default=str) + "\n")
            except OSError as e:
                self._logger.error(f"Failed to write audit log: {e}")
        else:
            self._logger.info(f"AUDIT: {event_type}", extra={"audit": audit_entry})

    def get_rpc_metrics(self) -> Dict[str, Any]:
        if not self._rpc_calls:
            return {"total_calls": 0}

        successful = [c for c in self._rpc_calls if c.success]
        failed = [c for c in self._rpc_calls if not c.success]
        latencies = [c.duration_ms for c in successful if c.duration_ms]
        avg_latency = sum(latencies) / len(latencies) if latencies else 0

        by_method: Dict[str, int] = {}
        for call in self._rpc_calls:
            by_method[call.method] = by_method.get(call.method, 0) + 1

        return {
            "total_calls": len(self._rpc_calls),
            "successful_calls": len(successful),
            "failed_calls": len(failed),
            "success_rate": len(successful) / len(self._rpc_calls),
            "avg_latency_ms": avg_latency,
            "max_latency_ms": max(latencies) if latencies else 0,
            "calls_by_method": by_method,
        }

    def get_action_metrics(self) -> Dict[str, Any]:
        states: Dict[str, int] = {}
        for state in self._action_states.values():
            states[state] = states.get(state, 0) + 1
        return {
            "total_actions": len(self._action_states),
            "state_breakdown": states,
            "offchain_inconsistencies": len(self._inconsistencies),
        }

    def get_inconsistencies(self) -> List[Dict[str, Any]]:
        return list(self._inconsistencies)


# Global logger instance
_chain_logger: Optional[ChainLogger] = None


def get_chain_logger(
    name: str = "trust_chain",
    config: Optional[LoggingConfig] = None,
) -> ChainLogger:
    """Get the global chain logger instance."""
    global _chain_logger
    if _chain_logger is None:
        _chain_logger = ChainLogger(name, config)
    return _chain_logger


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = (
                '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
                '"name": "%(name)s", "message": "%(message)s"}'
            )
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=format_string)

    logging.getLogger("trust_chain").setLevel(numeric_level)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
