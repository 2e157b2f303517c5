"""Exception hierarchy for trust-chain.

All trust-chain exceptions inherit from TrustChainError, enabling:
- Consistent error handling across the feed and reconciliation pipelines
- Mapping onto the ErrorKind taxonomy recorded on failed actions
- Structured error dictionaries with error codes

Provider errors (TransientProvider, UnsupportedCapability) are absorbed by the
watcher. Reconciliation errors end an attempt and are never retried
automatically.
"""
from __future__ import annotations

from typing import Any, List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import FieldError


class TrustChainError(Exception):
    """Base exception for all trust-chain errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "TRUST_CHAIN_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a serialisable dictionary."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Provider errors (absorbed by the watcher)
# =============================================================================

class ProviderError(TrustChainError):
    """An RPC call failed or timed out. Retried by the next poll cycle."""

    error_code = "TRANSIENT_PROVIDER"


class RPCError(ProviderError):
    """The provider returned a JSON-RPC error object."""

    error_code = "RPC_ERROR"

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message, details={"code": code} if code is not None else None)
        self.code = code
        self.data = data


class AllEndpointsFailedError(ProviderError):
    """Raised when all RPC endpoints have failed."""

    error_code = "ALL_ENDPOINTS_FAILED"

    def __init__(self, chain: str, errors: List[Tuple[str, str]]):
        self.chain = chain
        self.errors = errors
        error_summary = "; ".join([f"{url}: {err}" for url, err in errors[:3]])
        super().__init__(f"All RPC endpoints failed for {chain}. Errors: {error_summary}")


class SubscriptionError(ProviderError):
    """A subscription channel could not be established or was lost."""

    error_code = "SUBSCRIPTION_ERROR"


class UnsupportedCapabilityError(TrustChainError):
    """The provider does not implement a method. Not retried for that provider."""

    error_code = "UNSUPPORTED_CAPABILITY"

    def __init__(self, method: str, reason: str = ""):
        self.method = method
        super().__init__(
            f"Method {method} is not supported by this provider"
            + (f": {reason}" if reason else ""),
            details={"method": method},
        )


class MalformedDataError(TrustChainError):
    """A raw transaction could not be read."""

    error_code = "MALFORMED_DATA"


# =============================================================================
# Reconciliation errors (terminal for one attempt)
# =============================================================================

class PreconditionFailedError(TrustChainError):
    """Caller lacks the required role or the subject lacks a linked address."""

    error_code = "PRECONDITION_FAILED"


class ChainWriteRejectedError(TrustChainError):
    """The user declined the transaction or it reverted."""

    error_code = "CHAIN_WRITE_REJECTED"


class MissingProofError(TrustChainError):
    """Success was reported without a retrievable transaction hash."""

    error_code = "MISSING_PROOF"


class OffchainSyncError(TrustChainError):
    """The off-chain endpoint rejected an authorized mutation."""

    error_code = "OFFCHAIN_SYNC_FAILED"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        field_errors: Optional[List["FieldError"]] = None,
        transient: bool = False,
    ):
        super().__init__(
            message,
            details={"status_code": status_code} if status_code is not None else None,
        )
        self.status_code = status_code
        self.field_errors = list(field_errors or [])
        self.transient = transient


class InvalidTransitionError(TrustChainError):
    """A reconciliation action was moved along an edge its state machine lacks."""

    error_code = "INVALID_TRANSITION"
