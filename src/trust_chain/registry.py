"""
In-memory registry of reconciliation actions keyed by idempotency key.

Duplicate submissions are detected here:
1. An unknown key is registered as a new attempt
2. A key whose action is still in flight returns that action unchanged
3. A failed key is reset for a fresh attempt with ``attempts`` incremented
4. A committed key returns the committed action; nothing is re-run

Entries live for the process lifetime until acknowledged.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .models import ActionSnapshot, ActionState, ReconciliationAction

logger = logging.getLogger(__name__)


class RegistrationOutcome(str, Enum):
    NEW = "new"
    RETRY = "retry"
    IN_FLIGHT = "in_flight"
    ALREADY_COMMITTED = "already_committed"

    @property
    def starts_attempt(self) -> bool:
        return self in (RegistrationOutcome.NEW, RegistrationOutcome.RETRY)


@dataclass
class Registration:
    action: ReconciliationAction
    outcome: RegistrationOutcome


class ActionRegistry:
    """Tracks in-flight and terminal reconciliation attempts."""

    def __init__(self):
        self._actions: Dict[str, ReconciliationAction] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, idempotency_key: str) -> bool:
        return idempotency_key in self._actions

    async def register(self, action: ReconciliationAction) -> Registration:
        """Atomically look up ``action``'s key and register a new attempt if allowed."""
        key = action.idempotency_key
        if not key or not key.strip():
            raise ValueError("idempotency_key must be non-empty")

        async with self._lock:
            existing = self._actions.get(key)

            if existing is None:
                action.attempts = 1
                self._actions[key] = action
                logger.debug(f"Registered action {key} ({action.kind.value})")
                return Registration(action, RegistrationOutcome.NEW)

            if existing.state == ActionState.FAILED:
                existing.transition(ActionState.IDLE)
                existing.attempts += 1
                existing.last_error = None
                existing.offchain_result = None
                # Retries act on the caller's current view of the subject
                existing.subject = action.subject or existing.subject
                existing.role = action.role or existing.role
                existing.offer = action.offer or existing.offer
                existing.actor_id = action.actor_id if action.actor_id is not None else existing.actor_id
                logger.info(f"Retrying action {key}, attempt {existing.attempts}")
                return Registration(existing, RegistrationOutcome.RETRY)

            if existing.state == ActionState.COMMITTED:
                return Registration(existing, RegistrationOutcome.ALREADY_COMMITTED)

            logger.info(f"Action {key} already in flight ({existing.state.value}); not resubmitting")
            return Registration(existing, RegistrationOutcome.IN_FLIGHT)

    def get(self, idempotency_key: str) -> Optional[ReconciliationAction]:
        return self._actions.get(idempotency_key)

    def snapshot(self, idempotency_key: str) -> Optional[ActionSnapshot]:
        action = self._actions.get(idempotency_key)
        return action.snapshot() if action else None

    def list(self, state: Optional[ActionState] = None) -> List[ActionSnapshot]:
        return [
            action.snapshot()
            for action in self._actions.values()
            if state is None or action.state == state
        ]

    async def acknowledge(self, idempotency_key: str) -> bool:
        """Drop a terminal entry. In-flight entries are kept."""
        async with self._lock:
            action = self._actions.get(idempotency_key)
            if action is None or not action.is_terminal:
                return False
            del self._actions[idempotency_key]
            logger.debug(f"Acknowledged action {idempotency_key} ({action.state.value})")
            return True
