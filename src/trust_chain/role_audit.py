"""
Role drift audit.

Compares each off-chain role of each user against ``hasRole`` on the
OfferFactory and reports the roles the chain does not confirm. The audit is
report-only; no off-chain record is changed without a transaction hash.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .contracts import RoleReader, is_valid_address
from .exceptions import TrustChainError
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .models import UserView

logger = logging.getLogger(__name__)


class DriftReason(str, Enum):
    NOT_ON_CHAIN = "not_on_chain"
    CHECK_FAILED = "check_failed"


@dataclass
class RoleDiscrepancy:
    """An off-chain role the chain does not (or could not) confirm."""
    user_id: int
    wallet_address: str
    role_id: int
    role_name: str
    reason: DriftReason
    detail: str = ""
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "wallet_address": self.wallet_address,
            "role_id": self.role_id,
            "role_name": self.role_name,
            "reason": self.reason.value,
            "detail": self.detail,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class AuditReport:
    users_checked: int = 0
    users_skipped: int = 0
    roles_checked: int = 0
    discrepancies: List[RoleDiscrepancy] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies


class RoleDriftAuditor:
    """Sweeps users and reports off-chain roles missing on chain."""

    def __init__(
        self,
        role_reader: RoleReader,
        chain_logger: Optional[ChainLogger] = None,
        concurrency: int = 5,
        chain_name: str = "",
    ):
        self._role_reader = role_reader
        self._chain_logger = chain_logger or get_chain_logger()
        self._semaphore = asyncio.Semaphore(concurrency)
        self._chain_name = chain_name

    async def _check(self, user: UserView, report: AuditReport) -> None:
        for role in user.roles:
            report.roles_checked += 1
            try:
                async with self._semaphore:
                    granted = await self._role_reader.has_role(role.name, user.wallet_address)
            except TrustChainError as e:
                report.discrepancies.append(RoleDiscrepancy(
                    user_id=user.id,
                    wallet_address=user.wallet_address,
                    role_id=role.id,
                    role_name=role.name,
                    reason=DriftReason.CHECK_FAILED,
                    detail=e.message,
                ))
                logger.warning(f"hasRole check failed for user {user.id} / {role.name}: {e}")
                continue
            if not granted:
                report.discrepancies.append(RoleDiscrepancy(
                    user_id=user.id,
                    wallet_address=user.wallet_address,
                    role_id=role.id,
                    role_name=role.name,
                    reason=DriftReason.NOT_ON_CHAIN,
                ))
                self._chain_logger.log_role_drift(user.id, role.name, DriftReason.NOT_ON_CHAIN.value)

    async def audit(self, users: Iterable[UserView]) -> AuditReport:
        report = AuditReport()
        checkable = []
        for user in users:
            if is_valid_address(user.wallet_address):
                checkable.append(user)
            else:
                report.users_skipped += 1
        report.users_checked = len(checkable)

        async with self._chain_logger.operation_context(
            OperationType.ROLE_AUDIT, self._chain_name or "chain", users=len(checkable)
        ) as ctx:
            await asyncio.gather(*(self._check(user, report) for user in checkable))
            ctx.metadata["discrepancies"] = len(report.discrepancies)

        report.discrepancies.sort(key=lambda d: (d.user_id, d.role_name))
        logger.info(
            f"Role audit: {report.users_checked} users, {report.roles_checked} roles, "
            f"{len(report.discrepancies)} discrepancies"
        )
        return report
