"""
On-chain/off-chain reconciliation coordinator.

Drives one privileged action through

    Idle -> Submitting -> AwaitingConfirmation -> SyncingOffchain -> Committed

with a Failed exit from every non-terminal state. The off-chain endpoint is
called only after the chain write reached a successful receipt with a
transaction hash, and that hash travels with the call as proof.

A failed off-chain call after a confirmed chain write is terminal and is not
compensated on chain. It is logged as an operator-visible inconsistency and
the transaction hash stays on the action for manual reconciliation.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .chain_writer import ChainCall, ChainWriter, ChainWriteResult
from .config import ReconciliationConfig, get_config
from .contracts import (
    RoleReader,
    encode_create_offer,
    encode_grant_role,
    encode_revoke_role,
    find_offer_created,
    is_valid_address,
)
from .exceptions import (
    MalformedDataError,
    MissingProofError,
    OffchainSyncError,
    PreconditionFailedError,
    ProviderError,
    TrustChainError,
    UnsupportedCapabilityError,
)
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .models import (
    ActionError,
    ActionKind,
    ActionSnapshot,
    ActionState,
    ErrorKind,
    ReconciliationAction,
)
from .offchain import OffchainSyncClient
from .registry import ActionRegistry

logger = logging.getLogger(__name__)


def error_kind_for(exc: BaseException) -> ErrorKind:
    """Map an exception onto the recorded error taxonomy."""
    if isinstance(exc, PreconditionFailedError):
        return ErrorKind.PRECONDITION_FAILED
    if isinstance(exc, MissingProofError):
        return ErrorKind.MISSING_PROOF
    if isinstance(exc, OffchainSyncError):
        return ErrorKind.OFFCHAIN_SYNC_FAILED
    if isinstance(exc, UnsupportedCapabilityError):
        return ErrorKind.UNSUPPORTED_CAPABILITY
    if isinstance(exc, MalformedDataError):
        return ErrorKind.MALFORMED_DATA
    return ErrorKind.TRANSIENT_PROVIDER


class ReconciliationCoordinator:
    """
    Runs reconciliation actions as background tasks.

    Usage:
        coordinator = ReconciliationCoordinator(writer, role_reader, offchain, factory_address)
        snapshot = await coordinator.submit(action)      # returns immediately
        final = await coordinator.wait(action.idempotency_key)
    """

    def __init__(
        self,
        writer: ChainWriter,
        role_reader: RoleReader,
        offchain: OffchainSyncClient,
        factory_address: str,
        registry: Optional[ActionRegistry] = None,
        config: Optional[ReconciliationConfig] = None,
        chain_logger: Optional[ChainLogger] = None,
        chain_name: str = "",
    ):
        if not is_valid_address(factory_address):
            raise ValueError(f"Invalid factory address: {factory_address!r}")
        self._writer = writer
        self._role_reader = role_reader
        self._offchain = offchain
        self._factory_address = factory_address
        self._registry = registry or ActionRegistry()
        self._config = config or get_config().reconciliation
        self._chain_logger = chain_logger or get_chain_logger()
        self._chain_name = chain_name or get_config().chain_name
        self._tasks: Dict[str, asyncio.Task] = {}
        self._offer_addresses: Dict[str, str] = {}

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, action: ReconciliationAction) -> ActionSnapshot:
        """
        Register ``action`` and start it in the background.

        A key that is already in flight or committed returns its current
        state without a new chain write. A failed key starts a new attempt.
        """
        registration = await self._registry.register(action)
        current = registration.action
        if not registration.outcome.starts_attempt:
            return current.snapshot()

        key = current.idempotency_key
        task = asyncio.create_task(self._run(current))
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget_task(k, t))
        return current.snapshot()

    def _forget_task(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def wait(self, idempotency_key: str, timeout: Optional[float] = None) -> ActionSnapshot:
        """Wait for the action's current attempt to finish."""
        if idempotency_key not in self._registry:
            raise KeyError(f"Unknown action {idempotency_key}")
        task = self._tasks.get(idempotency_key)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self._registry.snapshot(idempotency_key)

    async def submit_and_wait(
        self,
        action: ReconciliationAction,
        timeout: Optional[float] = None,
    ) -> ActionSnapshot:
        await self.submit(action)
        return await self.wait(action.idempotency_key, timeout)

    def get(self, idempotency_key: str) -> Optional[ActionSnapshot]:
        return self._registry.snapshot(idempotency_key)

    async def acknowledge(self, idempotency_key: str) -> bool:
        return await self._registry.acknowledge(idempotency_key)

    async def close(self) -> None:
        """Cancel every in-flight attempt."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, action: ReconciliationAction, new_state: ActionState) -> None:
        old_state = action.state
        action.transition(new_state)
        self._chain_logger.log_action_transition(
            action.idempotency_key,
            action.kind.value,
            old_state.value,
            new_state.value,
            tx_hash=action.tx_hash,
            subject_address=action.subject_address,
            error=action.last_error.to_dict() if action.last_error else None,
        )

    def _fail(self, action: ReconciliationAction, kind: ErrorKind, reason: str, field_errors=()) -> None:
        action.last_error = ActionError(kind=kind, reason=reason, field_errors=tuple(field_errors))
        self._transition(action, ActionState.FAILED)
        logger.warning(f"Action {action.idempotency_key} failed ({kind.value}): {reason}")

    async def _run(self, action: ReconciliationAction) -> None:
        try:
            await self._drive(action)
        except asyncio.CancelledError:
            if not action.is_terminal:
                self._fail(action, ErrorKind.TRANSIENT_PROVIDER, "cancelled before completion")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in action {action.idempotency_key}: {e}")
            if not action.is_terminal:
                self._fail(action, error_kind_for(e), f"unexpected error: {e}")

    async def _drive(self, action: ReconciliationAction) -> None:
        # Idle: preconditions, no chain write on failure
        try:
            await self._check_preconditions(action)
        except TrustChainError as e:
            self._fail(action, error_kind_for(e), e.message)
            return

        # Submitting
        self._transition(action, ActionState.SUBMITTING)
        if action.broadcast_unresolved and action.tx_hash:
            # A previous attempt broadcast this transaction; wait on it instead of writing again
            logger.info(
                f"Action {action.idempotency_key} resumes unresolved transaction {action.tx_hash}"
            )
            submitted_logs: List[Dict[str, Any]] = []
            self._transition(action, ActionState.AWAITING_CONFIRMATION)
        else:
            try:
                async with self._chain_logger.operation_context(
                    OperationType.CHAIN_WRITE, self._chain_name, key=action.idempotency_key
                ):
                    result = await self._writer.send(
                        self._build_call(action),
                        on_broadcast=lambda tx_hash: self._record_broadcast(action, tx_hash),
                    )
            except TrustChainError as e:
                broadcast_hash = e.details.get("tx_hash")
                if broadcast_hash and not action.broadcast_unresolved:
                    self._record_broadcast(action, broadcast_hash)
                self._fail(action, error_kind_for(e), e.message)
                return
            action.broadcast_unresolved = False
            if not result.is_success:
                reason = result.error_message or f"chain write reported {result.status.value}"
                if result.tx_hash:
                    action.tx_hash = result.tx_hash
                self._fail(action, ErrorKind.CHAIN_WRITE_REJECTED, reason)
                return

            # AwaitingConfirmation
            self._transition(action, ActionState.AWAITING_CONFIRMATION)
            if not result.tx_hash:
                self._fail(
                    action,
                    ErrorKind.MISSING_PROOF,
                    "chain write reported success without a transaction hash",
                )
                return
            action.tx_hash = result.tx_hash
            submitted_logs = result.logs

        try:
            async with self._chain_logger.operation_context(
                OperationType.CONFIRMATION_WAIT, self._chain_name, tx_hash=action.tx_hash
            ):
                confirmed = await self._writer.wait_for_confirmation(
                    action.tx_hash,
                    self._config.confirmations_required,
                    self._config.confirmation_timeout_seconds,
                )
        except TrustChainError as e:
            self._fail(action, error_kind_for(e), e.message)
            return
        action.broadcast_unresolved = False
        if not confirmed.is_success:
            self._fail(
                action,
                ErrorKind.CHAIN_WRITE_REJECTED,
                confirmed.error_message or f"transaction {action.tx_hash} did not confirm",
            )
            return

        if action.kind == ActionKind.CREATE_OFFER:
            offer = find_offer_created(confirmed.logs or submitted_logs)
            if offer is None:
                self._fail(
                    action,
                    ErrorKind.MISSING_PROOF,
                    f"no OfferCreated event in receipt of {action.tx_hash}",
                )
                return
            self._offer_addresses[action.idempotency_key] = offer.offer_address

        # SyncingOffchain: only reachable with a confirmed receipt and a hash
        self._transition(action, ActionState.SYNCING_OFFCHAIN)
        try:
            response = await asyncio.wait_for(
                self._sync_offchain(action),
                timeout=self._config.offchain_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._offchain_failed(
                action,
                f"off-chain sync timed out after {self._config.offchain_timeout_seconds}s",
            )
            return
        except OffchainSyncError as e:
            self._offchain_failed(action, e.message, e.field_errors)
            return
        except TrustChainError as e:
            self._offchain_failed(action, e.message)
            return

        # Committed
        action.offchain_result = response
        self._apply_to_view(action)
        self._transition(action, ActionState.COMMITTED)
        logger.info(f"Action {action.idempotency_key} committed (tx={action.tx_hash})")

    def _record_broadcast(self, action: ReconciliationAction, tx_hash: str) -> None:
        action.tx_hash = tx_hash
        action.broadcast_unresolved = True
        logger.info(f"Action {action.idempotency_key} broadcast {tx_hash}")

    def _offchain_failed(self, action: ReconciliationAction, reason: str, field_errors=()) -> None:
        self._chain_logger.log_offchain_inconsistency(
            action.idempotency_key, action.kind.value, action.tx_hash, reason
        )
        self._fail(action, ErrorKind.OFFCHAIN_SYNC_FAILED, reason, field_errors)

    # ------------------------------------------------------------------
    # Kind-specific steps
    # ------------------------------------------------------------------

    async def _check_preconditions(self, action: ReconciliationAction) -> None:
        if action.kind in (ActionKind.GRANT_ROLE, ActionKind.REVOKE_ROLE):
            if action.subject is None or action.role is None:
                raise PreconditionFailedError(f"{action.kind.value} needs a subject and a role")
            if not is_valid_address(action.subject.wallet_address):
                raise PreconditionFailedError(
                    f"User {action.subject.id} has no linked wallet address"
                )
        if action.kind == ActionKind.REVOKE_ROLE:
            self._check_revoke_guards(action)
        if action.kind == ActionKind.CREATE_OFFER and action.offer is None:
            raise PreconditionFailedError("create_offer needs an offer draft")

        required = self._config.required_roles.get(action.kind.value)
        if required:
            caller = self._writer.sender_address
            if not await self._role_reader.has_role(required, caller):
                raise PreconditionFailedError(
                    f"Caller {caller} does not hold the on-chain {required} role"
                )

    @staticmethod
    def _check_revoke_guards(action: ReconciliationAction) -> None:
        subject, role = action.subject, action.role
        if len(subject.roles) <= 1:
            raise PreconditionFailedError(f"Cannot remove the last role of user {subject.id}")
        if (
            action.actor_id is not None
            and action.actor_id == subject.id
            and role.name.lower() == "admin"
            and sum(1 for r in subject.roles if r.name.lower() == "admin") <= 1
        ):
            raise PreconditionFailedError("Cannot remove your own admin role")

    def _build_call(self, action: ReconciliationAction) -> ChainCall:
        if action.kind == ActionKind.GRANT_ROLE:
            return ChainCall(
                to=self._factory_address,
                data=encode_grant_role(action.role.name, action.subject.wallet_address),
                description=f"grantRole({action.role.name}, user {action.subject.id})",
            )
        if action.kind == ActionKind.REVOKE_ROLE:
            return ChainCall(
                to=self._factory_address,
                data=encode_revoke_role(action.role.name, action.subject.wallet_address),
                description=f"revokeRole({action.role.name}, user {action.subject.id})",
            )
        if action.kind == ActionKind.CREATE_OFFER:
            return ChainCall(
                to=self._factory_address,
                data=encode_create_offer(),
                description=f"createOffer({action.offer.tender_number})",
            )
        raise ValueError(f"Unsupported action kind: {action.kind}")

    async def _sync_offchain(self, action: ReconciliationAction) -> Dict[str, Any]:
        async with self._chain_logger.operation_context(
            OperationType.OFFCHAIN_SYNC, self._chain_name, key=action.idempotency_key
        ):
            if action.kind == ActionKind.GRANT_ROLE:
                return await self._offchain.grant_role(
                    action.subject.id, action.role.id, action.tx_hash
                )
            if action.kind == ActionKind.REVOKE_ROLE:
                return await self._offchain.revoke_role(
                    action.subject.id, action.role.id, action.tx_hash
                )
            return await self._offchain.create_offer(
                action.offer,
                self._offer_addresses.pop(action.idempotency_key, None),
                action.tx_hash,
            )

    @staticmethod
    def _apply_to_view(action: ReconciliationAction) -> None:
        if action.subject is None or action.role is None:
            return
        roles = action.subject.roles
        if action.kind == ActionKind.GRANT_ROLE:
            if not any(r.id == action.role.id for r in roles):
                roles.append(action.role)
        elif action.kind == ActionKind.REVOKE_ROLE:
            roles[:] = [r for r in roles if r.id != action.role.id]
