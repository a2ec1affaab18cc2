"""Append-only loyalty transaction ledger."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.models.loyalty import (
    LoyaltyAccount,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from knockbites_loyalty.observability.loyalty import get_loyalty_store
from knockbites_loyalty.services.loyalty.errors import (
    InactiveAccountError,
    LoyaltyError,
    LoyaltyValidationError,
    UnknownAccountError,
)
from knockbites_loyalty.services.loyalty.projector import BalanceProjector

# +1 positive only, -1 negative only, 0 either sign.
_SIGN_RULES: dict[LoyaltyTransactionType, int] = {
    LoyaltyTransactionType.EARN: 1,
    LoyaltyTransactionType.BONUS: 1,
    LoyaltyTransactionType.REDEEM: -1,
    LoyaltyTransactionType.EXPIRE: -1,
    LoyaltyTransactionType.ADJUSTMENT: 0,
}

_REASON_REQUIRED = frozenset({LoyaltyTransactionType.ADJUSTMENT, LoyaltyTransactionType.BONUS})

# Operator corrections and expirations still apply to deactivated accounts.
_ALLOWED_WHEN_INACTIVE = frozenset({LoyaltyTransactionType.ADJUSTMENT, LoyaltyTransactionType.EXPIRE})


@dataclass(frozen=True, slots=True)
class LedgerAppendResult:
    transaction_id: int
    balance_after: int
    lifetime_points: int
    transaction: LoyaltyTransaction
    account: LoyaltyAccount
    replayed: bool = False


def validate_entry(delta: int, transaction_type: LoyaltyTransactionType, reason: str | None) -> None:
    """Check the type-level rules that need no database access."""

    if isinstance(delta, bool) or not isinstance(delta, int):
        raise LoyaltyValidationError("Points delta must be an integer")
    if delta == 0:
        raise LoyaltyValidationError("Points delta must be non-zero")

    sign = _SIGN_RULES[transaction_type]
    if sign > 0 and delta < 0:
        raise LoyaltyValidationError(f"{transaction_type.value} entries must be positive")
    if sign < 0 and delta > 0:
        raise LoyaltyValidationError(f"{transaction_type.value} entries must be negative")

    if transaction_type in _REASON_REQUIRED and not (reason and reason.strip()):
        raise LoyaltyValidationError(f"{transaction_type.value} entries require a reason")


class TransactionLedger:
    """Records signed point deltas and keeps the balance projection in step.

    ``append`` flushes but never commits: the ledger row and the projection
    update belong to the caller's transaction and land or roll back together.
    """

    def __init__(self, session: AsyncSession, *, projector: BalanceProjector | None = None) -> None:
        self._db = session
        self._projector = projector or BalanceProjector(session)

    async def append(
        self,
        account_id: UUID,
        delta: int,
        transaction_type: LoyaltyTransactionType,
        *,
        reason: str | None = None,
        order_id: str | None = None,
        allow_negative_balance: bool = False,
        idempotency_key: str | None = None,
    ) -> LedgerAppendResult:
        try:
            return await self._append(
                account_id,
                delta,
                transaction_type,
                reason=reason,
                order_id=order_id,
                allow_negative_balance=allow_negative_balance,
                idempotency_key=idempotency_key,
            )
        except LoyaltyError as exc:
            get_loyalty_store().record_rejection(exc.kind)
            logger.warning(
                "Rejected loyalty ledger append",
                account_id=str(account_id),
                transaction_type=transaction_type.value,
                delta=delta,
                error=exc.kind,
            )
            raise

    async def _append(
        self,
        account_id: UUID,
        delta: int,
        transaction_type: LoyaltyTransactionType,
        *,
        reason: str | None,
        order_id: str | None,
        allow_negative_balance: bool,
        idempotency_key: str | None,
    ) -> LedgerAppendResult:
        validate_entry(delta, transaction_type, reason)

        account = await self._lock_account(account_id)

        existing = await self._find_existing(account_id, transaction_type, order_id, idempotency_key)
        if existing is not None:
            get_loyalty_store().record_replay(transaction_type.value)
            logger.info(
                "Replayed loyalty ledger append",
                account_id=str(account_id),
                transaction_id=existing.id,
                order_id=order_id,
                idempotency_key=idempotency_key,
            )
            return LedgerAppendResult(
                transaction_id=existing.id,
                balance_after=existing.balance_after,
                lifetime_points=account.lifetime_points,
                transaction=existing,
                account=account,
                replayed=True,
            )

        if not account.is_active and transaction_type not in _ALLOWED_WHEN_INACTIVE:
            raise InactiveAccountError(account_id)

        if delta < 0 and allow_negative_balance and transaction_type == LoyaltyTransactionType.ADJUSTMENT:
            delta = -min(-delta, account.total_points)
            if delta == 0:
                raise LoyaltyValidationError("Account has no points left to remove")

        projected = await self._projector.apply(account, delta, transaction_type)

        entry = LoyaltyTransaction(
            account_id=account_id,
            order_id=order_id,
            transaction_type=transaction_type,
            points=delta,
            reason=reason,
            balance_after=projected.total_points,
            idempotency_key=idempotency_key,
        )
        self._db.add(entry)
        await self._db.flush()

        get_loyalty_store().record_append(transaction_type.value, delta)
        logger.info(
            "Recorded loyalty ledger entry",
            account_id=str(account_id),
            transaction_id=entry.id,
            transaction_type=transaction_type.value,
            points=delta,
            balance_after=projected.total_points,
        )
        return LedgerAppendResult(
            transaction_id=entry.id,
            balance_after=projected.total_points,
            lifetime_points=projected.lifetime_points,
            transaction=entry,
            account=account,
        )

    async def _lock_account(self, account_id: UUID) -> LoyaltyAccount:
        stmt = (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = (await self._db.execute(stmt)).scalar_one_or_none()
        if account is None:
            raise UnknownAccountError(account_id)
        return account

    async def _find_existing(
        self,
        account_id: UUID,
        transaction_type: LoyaltyTransactionType,
        order_id: str | None,
        idempotency_key: str | None,
    ) -> LoyaltyTransaction | None:
        if idempotency_key:
            stmt = select(LoyaltyTransaction).where(
                LoyaltyTransaction.account_id == account_id,
                LoyaltyTransaction.idempotency_key == idempotency_key,
            )
            existing = (await self._db.execute(stmt)).scalar_one_or_none()
            if existing is not None:
                return existing
        if order_id:
            stmt = select(LoyaltyTransaction).where(
                LoyaltyTransaction.account_id == account_id,
                LoyaltyTransaction.order_id == order_id,
                LoyaltyTransaction.transaction_type == transaction_type,
            )
            return (await self._db.execute(stmt)).scalar_one_or_none()
        return None

    async def list_entries(
        self,
        account_id: UUID,
        *,
        limit: int = 50,
        before_id: int | None = None,
    ) -> list[LoyaltyTransaction]:
        """Newest-first page of entries, optionally strictly older than ``before_id``."""

        stmt = (
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.account_id == account_id)
            .order_by(LoyaltyTransaction.id.desc())
            .limit(limit)
        )
        if before_id is not None:
            stmt = stmt.where(LoyaltyTransaction.id < before_id)
        result = await self._db.execute(stmt)
        return list(result.scalars())


__all__ = ["LedgerAppendResult", "TransactionLedger", "validate_entry"]
