"""Balance projection over the loyalty ledger.

``total_points`` and ``lifetime_points`` on an account are a cached fold of
its ledger entries. The projector keeps that cache current with a single
conditional UPDATE per append and can re-derive it from history to detect
drift.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Protocol, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from knockbites_loyalty.models.loyalty import (
    LoyaltyAccount,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from knockbites_loyalty.observability.loyalty import get_loyalty_store
from knockbites_loyalty.services.loyalty.errors import (
    ConsistencyError,
    InsufficientBalanceError,
    UnknownAccountError,
)


class LedgerEntryLike(Protocol):
    id: int
    points: int
    transaction_type: LoyaltyTransactionType
    balance_after: int


@dataclass(frozen=True, slots=True)
class ProjectedBalance:
    total_points: int = 0
    lifetime_points: int = 0


def apply_delta(
    balance: ProjectedBalance, delta: int, transaction_type: LoyaltyTransactionType
) -> ProjectedBalance:
    """Pure projection step shared by the live update and the history fold."""

    lifetime = balance.lifetime_points
    if delta > 0:
        lifetime += delta
    elif transaction_type == LoyaltyTransactionType.EXPIRE:
        lifetime = max(lifetime + delta, 0)
    return ProjectedBalance(total_points=balance.total_points + delta, lifetime_points=lifetime)


def fold_transactions(transactions: Iterable[LedgerEntryLike]) -> ProjectedBalance:
    balance = ProjectedBalance()
    for entry in sorted(transactions, key=lambda item: item.id):
        balance = apply_delta(balance, entry.points, LoyaltyTransactionType(entry.transaction_type))
    return balance


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    account_id: UUID
    stored: ProjectedBalance
    derived: ProjectedBalance
    entry_count: int
    snapshot_mismatches: tuple[int, ...] = field(default_factory=tuple)

    @property
    def drifted(self) -> bool:
        return self.stored != self.derived or bool(self.snapshot_mismatches)

    def raise_for_drift(self) -> None:
        if not self.drifted:
            return
        raise ConsistencyError(
            f"Loyalty account {self.account_id} drifted from its ledger: "
            f"stored={self.stored.total_points}/{self.stored.lifetime_points} "
            f"derived={self.derived.total_points}/{self.derived.lifetime_points} "
            f"snapshot_mismatches={list(self.snapshot_mismatches)}"
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "account_id": str(self.account_id),
            "stored_total_points": self.stored.total_points,
            "stored_lifetime_points": self.stored.lifetime_points,
            "derived_total_points": self.derived.total_points,
            "derived_lifetime_points": self.derived.lifetime_points,
            "entry_count": self.entry_count,
            "snapshot_mismatches": list(self.snapshot_mismatches),
            "drifted": self.drifted,
        }


def find_snapshot_mismatches(transactions: Sequence[LedgerEntryLike]) -> tuple[int, ...]:
    """Return ids of entries whose ``balance_after`` disagrees with the running sum."""

    running = 0
    mismatches: list[int] = []
    for entry in sorted(transactions, key=lambda item: item.id):
        running += entry.points
        if entry.balance_after != running or running < 0:
            mismatches.append(entry.id)
    return tuple(mismatches)


class BalanceProjector:
    """Applies ledger deltas to the account projection atomically."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def apply(
        self,
        account: LoyaltyAccount,
        delta: int,
        transaction_type: LoyaltyTransactionType,
    ) -> ProjectedBalance:
        """Apply ``delta`` in one guarded UPDATE; raise if it would go negative.

        The guard and the increment run in the same statement so concurrent
        appends to the same account serialize in the database instead of in
        application memory.
        """

        lifetime_column = LoyaltyAccount.lifetime_points
        if delta > 0:
            lifetime_expr = lifetime_column + delta
        elif transaction_type == LoyaltyTransactionType.EXPIRE:
            lifetime_expr = case((lifetime_column + delta < 0, 0), else_=lifetime_column + delta)
        else:
            lifetime_expr = lifetime_column

        now = datetime.now(timezone.utc)
        stmt = (
            update(LoyaltyAccount)
            .where(LoyaltyAccount.id == account.id)
            .values(
                total_points=LoyaltyAccount.total_points + delta,
                lifetime_points=lifetime_expr,
                updated_at=now,
            )
            .returning(LoyaltyAccount.total_points, LoyaltyAccount.lifetime_points)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(LoyaltyAccount.total_points >= -delta)

        row = (await self._db.execute(stmt)).first()
        if row is None:
            raise InsufficientBalanceError(account.id, -delta, account.total_points)

        set_committed_value(account, "total_points", row.total_points)
        set_committed_value(account, "lifetime_points", row.lifetime_points)
        set_committed_value(account, "updated_at", now)
        return ProjectedBalance(total_points=row.total_points, lifetime_points=row.lifetime_points)

    async def reconcile(self, account_id: UUID) -> ReconciliationReport:
        """Re-derive the projection from history and compare. Never writes.

        The account row is locked while history is read so a concurrent
        append cannot land between the two reads.
        """

        account = (
            await self._db.execute(
                select(LoyaltyAccount)
                .where(LoyaltyAccount.id == account_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if account is None:
            raise UnknownAccountError(account_id)

        result = await self._db.execute(
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.account_id == account_id)
            .order_by(LoyaltyTransaction.id.asc())
        )
        transactions = list(result.scalars())

        report = ReconciliationReport(
            account_id=account_id,
            stored=ProjectedBalance(
                total_points=account.total_points, lifetime_points=account.lifetime_points
            ),
            derived=fold_transactions(transactions),
            entry_count=len(transactions),
            snapshot_mismatches=find_snapshot_mismatches(transactions),
        )
        get_loyalty_store().record_reconciliation(drifted=report.drifted)
        if report.drifted:
            logger.error("Loyalty ledger drift detected", **report.as_dict())
        return report


__all__ = [
    "BalanceProjector",
    "ProjectedBalance",
    "ReconciliationReport",
    "apply_delta",
    "find_snapshot_mismatches",
    "fold_transactions",
]
