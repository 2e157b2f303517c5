"""
Data model shared by the transaction feed and the reconciliation coordinator.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import InvalidTransitionError

# Placeholder identity for transactions that could not be normalized
SENTINEL_HASH = "error-hash"


# =============================================================================
# Transaction feed
# =============================================================================

class TxStatus(str, Enum):
    """Status of a transaction in the feed."""
    PENDING = "pending"
    CONFIRMED = "confirmed"


@dataclass
class TransactionRecord:
    """Canonical transaction record.

    ``value_wei`` is the canonical amount; display strings are derived from it.
    ``observed_at`` is a monotonic insertion timestamp, not chain time.
    """
    hash: str
    from_address: str
    to_address: Optional[str]  # None means contract creation
    value_wei: int
    status: TxStatus
    observed_at: float = field(default_factory=time.monotonic)
    observed_wall_time: float = field(default_factory=time.time)
    block_number: Optional[int] = None
    block_timestamp: Optional[int] = None
    malformed: bool = False
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_pending(self) -> bool:
        return self.status == TxStatus.PENDING

    @property
    def dedup_key(self) -> str:
        """Identity used for deduplication.

        Malformed records never collide with each other or with real records.
        """
        if self.malformed:
            return f"{SENTINEL_HASH}:{self.record_id}"
        return self.hash

    def confirm(
        self,
        block_number: Optional[int] = None,
        block_timestamp: Optional[int] = None,
    ) -> None:
        """Flip Pending to Confirmed in place. Confirmed records stay confirmed."""
        self.status = TxStatus.CONFIRMED
        if block_number is not None:
            self.block_number = block_number
        if block_timestamp is not None:
            self.block_timestamp = block_timestamp


class WatcherState(str, Enum):
    """Liveness of the chain event watcher."""
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class Liveness:
    """Current liveness value; ``reason`` is set when degraded."""
    state: WatcherState = WatcherState.DISCONNECTED
    reason: Optional[str] = None
    since: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# Off-chain records (caller's in-memory view)
# =============================================================================

@dataclass
class Role:
    """An off-chain role."""
    id: int
    name: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Role":
        return cls(id=int(data.get("ID", data.get("id", 0))), name=str(data.get("name", "")))


@dataclass
class UserView:
    """A user as the caller currently sees it."""
    id: int
    wallet_address: Optional[str] = None
    roles: List[Role] = field(default_factory=list)
    first_name: str = ""
    last_name: str = ""

    def has_role(self, role_name: str) -> bool:
        return any(r.name.lower() == role_name.lower() for r in self.roles)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserView":
        return cls(
            id=int(data.get("ID", data.get("id", 0))),
            wallet_address=data.get("publicWalletAddress") or None,
            roles=[Role.from_dict(r) for r in data.get("Roles") or []],
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
        )


@dataclass
class OfferDraft:
    """Fields of a tender offer submitted alongside ``createOffer``."""
    title: str
    description: str
    budget: float
    currency: str
    sector_id: int
    tender_number: str
    proposal_submission_start: str  # RFC 3339
    proposal_submission_end: str
    proposal_review_start: str
    proposal_review_end: str
    location: str = ""
    min_qualification_level: str = ""

    def to_form(self, contract_address: Optional[str]) -> Dict[str, str]:
        form = {
            "title": self.title,
            "description": self.description,
            "budget": str(self.budget),
            "currency": self.currency,
            "sectorID": str(self.sector_id),
            "tenderNumber": self.tender_number,
            "proposalSubmissionStart": self.proposal_submission_start,
            "proposalSubmissionEnd": self.proposal_submission_end,
            "proposalReviewStart": self.proposal_review_start,
            "proposalReviewEnd": self.proposal_review_end,
        }
        if self.location:
            form["location"] = self.location
        if self.min_qualification_level:
            form["minQualificationLevel"] = self.min_qualification_level
        if contract_address:
            form["contractAddress"] = contract_address
        return form


# =============================================================================
# Reconciliation
# =============================================================================

class ActionKind(str, Enum):
    """Privileged actions that must be authorized on-chain first."""
    GRANT_ROLE = "grant_role"
    REVOKE_ROLE = "revoke_role"
    CREATE_OFFER = "create_offer"


class ActionState(str, Enum):
    """Reconciliation state machine."""
    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SYNCING_OFFCHAIN = "syncing_offchain"
    COMMITTED = "committed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ActionState.COMMITTED, ActionState.FAILED})

_ALLOWED_TRANSITIONS = {
    ActionState.IDLE: {ActionState.SUBMITTING, ActionState.FAILED},
    ActionState.SUBMITTING: {ActionState.AWAITING_CONFIRMATION, ActionState.FAILED},
    ActionState.AWAITING_CONFIRMATION: {ActionState.SYNCING_OFFCHAIN, ActionState.FAILED},
    ActionState.SYNCING_OFFCHAIN: {ActionState.COMMITTED, ActionState.FAILED},
    ActionState.COMMITTED: set(),
    ActionState.FAILED: {ActionState.IDLE},  # explicit resubmission only
}


class ErrorKind(str, Enum):
    """Error taxonomy recorded on failed actions."""
    TRANSIENT_PROVIDER = "transient_provider"
    UNSUPPORTED_CAPABILITY = "unsupported_capability"
    MALFORMED_DATA = "malformed_data"
    PRECONDITION_FAILED = "precondition_failed"
    CHAIN_WRITE_REJECTED = "chain_write_rejected"
    MISSING_PROOF = "missing_proof"
    OFFCHAIN_SYNC_FAILED = "offchain_sync_failed"


@dataclass(frozen=True)
class FieldError:
    """One entry of a structured validation error array."""
    path: str
    msg: str


@dataclass(frozen=True)
class ActionError:
    """Terminal failure reason."""
    kind: ErrorKind
    reason: str
    field_errors: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "reason": self.reason,
            "field_errors": [{"path": f.path, "msg": f.msg} for f in self.field_errors],
        }


@dataclass
class StateTransition:
    """One entry of an action's history."""
    from_state: ActionState
    to_state: ActionState
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ReconciliationAction:
    """A privileged action driven from intent to off-chain commit.

    ``idempotency_key`` is chosen by the caller and stays stable across
    retries of the same logical intent.
    """
    idempotency_key: str
    kind: ActionKind
    subject: Optional[UserView] = None
    role: Optional[Role] = None
    offer: Optional[OfferDraft] = None
    actor_id: Optional[int] = None

    state: ActionState = ActionState.IDLE
    tx_hash: Optional[str] = None
    # tx_hash was broadcast but its receipt was never observed
    broadcast_unresolved: bool = False
    last_error: Optional[ActionError] = None
    attempts: int = 0
    offchain_result: Optional[Dict[str, Any]] = None
    history: List[StateTransition] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def subject_address(self) -> Optional[str]:
        return self.subject.wallet_address if self.subject else None

    def transition(self, new_state: ActionState) -> None:
        """Move to ``new_state``; states may not be skipped."""
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Action {self.idempotency_key}: {self.state.value} -> {new_state.value} "
                f"is not allowed"
            )
        self.history.append(StateTransition(self.state, new_state))
        self.state = new_state
        self.updated_at = datetime.now(timezone.utc)

    def fail(self, error: ActionError) -> None:
        self.last_error = error
        self.transition(ActionState.FAILED)

    def snapshot(self) -> "ActionSnapshot":
        return ActionSnapshot(
            idempotency_key=self.idempotency_key,
            kind=self.kind,
            state=self.state,
            tx_hash=self.tx_hash,
            last_error=self.last_error,
            attempts=self.attempts,
            offchain_result=dict(self.offchain_result) if self.offchain_result else None,
        )


@dataclass(frozen=True)
class ActionSnapshot:
    """Read-only view of an action at a point in time."""
    idempotency_key: str
    kind: ActionKind
    state: ActionState
    tx_hash: Optional[str]
    last_error: Optional[ActionError]
    attempts: int
    offchain_result: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "kind": self.kind.value,
            "state": self.state.value,
            "tx_hash": self.tx_hash,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "attempts": self.attempts,
        }
