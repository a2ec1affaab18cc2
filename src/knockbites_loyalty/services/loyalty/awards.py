"""Point awards, enrollment, order earnings and redemptions.

Every public method is one unit of work: it commits on success, rolls back
on failure and publishes tier-change events only after the commit.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, Sequence, TypeVar
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.core.settings import settings
from knockbites_loyalty.models.loyalty import (
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyTier,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from knockbites_loyalty.observability.loyalty import get_loyalty_store
from knockbites_loyalty.observability.tracing import tracer
from knockbites_loyalty.services.loyalty.errors import (
    LoyaltyError,
    LoyaltyValidationError,
    UnknownAccountError,
    UnknownProgramError,
)
from knockbites_loyalty.services.loyalty.events import (
    TierChangeEvent,
    TierEventDispatcher,
    get_tier_event_dispatcher,
)
from knockbites_loyalty.services.loyalty.ledger import LedgerAppendResult, TransactionLedger
from knockbites_loyalty.services.loyalty.programs import LoyaltyProgramService, calculate_points_earned
from knockbites_loyalty.services.loyalty.tiers import TierResolver

SessionFactory = Callable[[], AsyncSession]
T = TypeVar("T")

WELCOME_BONUS_KEY = "welcome-bonus"


@dataclass(frozen=True, slots=True)
class OrderCompletionEvent:
    """A completed order as handed over by fulfillment.

    The account is resolved by ``account_id`` when present, otherwise by
    ``customer_id`` within the store's program. Guest orders carry neither.
    """

    order_id: str
    store_id: int
    order_total: Decimal
    customer_id: UUID | None = None
    account_id: UUID | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    account_id: UUID
    total_points: int
    lifetime_points: int
    tier_id: UUID | None
    tier_name: str | None
    is_active: bool


@dataclass(frozen=True, slots=True)
class BulkAwardOutcome:
    account_id: UUID
    succeeded: bool
    transaction_id: int | None = None
    balance_after: int | None = None
    replayed: bool = False
    error_kind: str | None = None
    error_message: str | None = None


@dataclass(frozen=True, slots=True)
class HistoryPage:
    entries: list[LoyaltyTransaction]
    next_cursor: str | None


@dataclass(frozen=True, slots=True)
class OrderEarnResult:
    account_id: UUID
    points: int
    transaction: LoyaltyTransaction | None
    replayed: bool


def encode_history_cursor(transaction_id: int) -> str:
    return base64.urlsafe_b64encode(str(transaction_id).encode("utf-8")).decode("ascii")


def decode_history_cursor(cursor: str) -> int:
    try:
        decoded = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        value = int(decoded)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise LoyaltyValidationError("Invalid history cursor") from exc
    if value <= 0:
        raise LoyaltyValidationError("Invalid history cursor")
    return value


def _require_reason(reason: str | None) -> str:
    if reason is None or not reason.strip():
        raise LoyaltyValidationError("A reason is required")
    return reason.strip()


def _require_points(points: int, *, positive: bool) -> int:
    if isinstance(points, bool) or not isinstance(points, int):
        raise LoyaltyValidationError("Points must be an integer")
    if points == 0 or (positive and points < 0):
        raise LoyaltyValidationError("Points must be positive" if positive else "Points must be non-zero")
    return points


class AwardService:
    """Operator awards plus the customer-facing earn/redeem paths."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        session_factory: SessionFactory | None = None,
        concurrency: int | None = None,
        dispatcher: TierEventDispatcher | None = None,
    ) -> None:
        self._db = session
        self._session_factory = session_factory
        self._concurrency = max(concurrency or settings.bulk_award_concurrency, 1)
        self._dispatcher = dispatcher or get_tier_event_dispatcher()
        self._ledger = TransactionLedger(session)
        self._tiers = TierResolver(session)
        self._programs = LoyaltyProgramService(session)

    # ------------------------------------------------------------------
    # Operator awards
    # ------------------------------------------------------------------
    async def award_single(
        self,
        account_id: UUID,
        points: int,
        reason: str | None,
        *,
        idempotency_key: str | None = None,
    ) -> LoyaltyTransaction:
        """Credit (bonus) or debit (adjustment) one account."""

        _require_points(points, positive=False)
        reason = _require_reason(reason)
        transaction_type = (
            LoyaltyTransactionType.BONUS if points > 0 else LoyaltyTransactionType.ADJUSTMENT
        )
        result, events = await self._run_unit(
            self._post(
                account_id,
                points,
                transaction_type,
                reason=reason,
                idempotency_key=idempotency_key,
            )
        )
        await self._publish(events)
        return result.transaction

    async def award_bulk(
        self,
        account_ids: Sequence[UUID],
        points: int,
        reason: str | None,
        *,
        idempotency_key: str | None = None,
    ) -> list[BulkAwardOutcome]:
        """Award every account independently and report one outcome per account.

        One account failing never rolls back another. Repeated ids inside a
        batch are processed once.
        """

        _require_points(points, positive=True)
        reason = _require_reason(reason)
        unique_ids = list(dict.fromkeys(account_ids))
        if not unique_ids:
            raise LoyaltyValidationError("At least one account is required")
        if len(unique_ids) > settings.bulk_award_max_accounts:
            raise LoyaltyValidationError(
                f"Bulk awards are limited to {settings.bulk_award_max_accounts} accounts"
            )

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(account_id: UUID) -> BulkAwardOutcome:
            async with semaphore:
                return await self._award_bulk_unit(account_id, points, reason, idempotency_key)

        with tracer.start_as_current_span("loyalty.award_bulk") as span:
            span.set_attribute("loyalty.bulk.requested", len(unique_ids))
            outcomes = list(await asyncio.gather(*(_bounded(account_id) for account_id in unique_ids)))
            succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
            failed = len(outcomes) - succeeded
            span.set_attribute("loyalty.bulk.failed", failed)

        get_loyalty_store().record_bulk_outcome(succeeded, failed)
        logger.bind(
            failures={str(o.account_id): o.error_kind for o in outcomes if not o.succeeded}
        ).info(
            "Bulk loyalty award completed",
            requested=len(unique_ids),
            succeeded=succeeded,
            failed=failed,
            points=points,
        )
        return outcomes

    async def _award_bulk_unit(
        self,
        account_id: UUID,
        points: int,
        reason: str,
        idempotency_key: str | None,
    ) -> BulkAwardOutcome:
        factory = self._resolve_session_factory()
        async with factory() as unit_session:
            unit = AwardService(unit_session, dispatcher=self._dispatcher)
            try:
                result, events = await unit._run_unit(
                    unit._post(
                        account_id,
                        points,
                        LoyaltyTransactionType.BONUS,
                        reason=reason,
                        idempotency_key=idempotency_key,
                    )
                )
            except LoyaltyError as exc:
                return BulkAwardOutcome(
                    account_id=account_id,
                    succeeded=False,
                    error_kind=exc.kind,
                    error_message=str(exc),
                )
            except SQLAlchemyError as exc:
                logger.exception("Bulk award unit failed", account_id=str(account_id))
                return BulkAwardOutcome(
                    account_id=account_id,
                    succeeded=False,
                    error_kind="storage",
                    error_message=exc.__class__.__name__,
                )
            await unit._publish(events)
            return BulkAwardOutcome(
                account_id=account_id,
                succeeded=True,
                transaction_id=result.transaction_id,
                balance_after=result.balance_after,
                replayed=result.replayed,
            )

    def _resolve_session_factory(self) -> SessionFactory:
        if self._session_factory is not None:
            return self._session_factory
        from knockbites_loyalty.db.session import async_session

        return async_session

    # ------------------------------------------------------------------
    # Enrollment and customer activity
    # ------------------------------------------------------------------
    async def enroll(self, customer_id: UUID, program_id: UUID) -> LoyaltyAccount:
        """Return the customer's account, creating it with the welcome bonus if absent."""

        account, events = await self._run_unit(self._enroll(customer_id, program_id))
        await self._publish(events)
        return account

    async def earn_for_order(self, event: OrderCompletionEvent) -> OrderEarnResult | None:
        result, events = await self._run_unit(self.record_order_completion(event))
        await self._publish(events)
        return result

    async def record_order_completion(
        self, event: OrderCompletionEvent
    ) -> tuple[OrderEarnResult | None, list[TierChangeEvent]]:
        """Post the earn entry for a completed order inside the caller's transaction.

        Returns ``None`` for guest orders and stores without an active
        program. Replays of the same order add nothing.
        """

        program = await self._programs.get_for_store(event.store_id)
        if program is None or not program.is_active:
            return None, []

        events: list[TierChangeEvent] = []
        account: LoyaltyAccount | None
        if event.account_id is not None:
            account = await self._db.get(LoyaltyAccount, event.account_id)
            if account is None:
                raise UnknownAccountError(event.account_id)
            if account.program_id != program.id:
                raise LoyaltyValidationError(
                    f"Account {event.account_id} does not belong to store {event.store_id}"
                )
        elif event.customer_id is not None:
            account, events = await self._enroll(event.customer_id, program.id)
        else:
            return None, []

        points = calculate_points_earned(event.order_total, program.points_per_dollar)
        if points <= 0:
            logger.info("Order earned no loyalty points", order_id=event.order_id, account_id=str(account.id))
            return OrderEarnResult(account_id=account.id, points=0, transaction=None, replayed=False), events

        result, tier_events = await self._post(
            account.id,
            points,
            LoyaltyTransactionType.EARN,
            reason=f"Order {event.order_id}",
            order_id=event.order_id,
        )
        events.extend(tier_events)

        if not result.replayed:
            account = result.account
            account.total_orders = (account.total_orders or 0) + 1
            account.total_spent = Decimal(str(account.total_spent or 0)) + Decimal(str(event.order_total))
            account.last_order_at = event.completed_at or datetime.now(timezone.utc)
            await self._db.flush()

        return (
            OrderEarnResult(
                account_id=account.id,
                points=points,
                transaction=result.transaction,
                replayed=result.replayed,
            ),
            events,
        )

    async def redeem(
        self,
        account_id: UUID,
        points: int,
        *,
        order_id: str | None = None,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> LoyaltyTransaction:
        _require_points(points, positive=True)
        result, events = await self._run_unit(
            self._post(
                account_id,
                -points,
                LoyaltyTransactionType.REDEEM,
                reason=reason or (f"Redeemed on order {order_id}" if order_id else None),
                order_id=order_id,
                idempotency_key=idempotency_key,
            )
        )
        await self._publish(events)
        return result.transaction

    async def expire_points(
        self,
        account_id: UUID,
        points: int,
        reason: str | None,
        *,
        idempotency_key: str | None = None,
    ) -> LoyaltyTransaction:
        """Expire up to ``points``; the amount is clamped to the current balance.

        Expiration lowers lifetime points, so the tier may move down.
        """

        _require_points(points, positive=True)
        reason = _require_reason(reason)

        async def _expire() -> tuple[LedgerAppendResult, list[TierChangeEvent]]:
            account = await self._db.get(LoyaltyAccount, account_id, populate_existing=True)
            if account is None:
                raise UnknownAccountError(account_id)
            amount = min(points, account.total_points)
            if amount <= 0:
                raise LoyaltyValidationError("Account has no points to expire")
            return await self._post(
                account_id,
                -amount,
                LoyaltyTransactionType.EXPIRE,
                reason=reason,
                idempotency_key=idempotency_key,
            )

        result, events = await self._run_unit(_expire())
        await self._publish(events)
        return result.transaction

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_balance(self, account_id: UUID) -> BalanceSnapshot:
        account = await self._db.get(LoyaltyAccount, account_id, populate_existing=True)
        if account is None:
            raise UnknownAccountError(account_id)
        tier = await self._db.get(LoyaltyTier, account.current_tier_id) if account.current_tier_id else None
        return BalanceSnapshot(
            account_id=account.id,
            total_points=account.total_points,
            lifetime_points=account.lifetime_points,
            tier_id=tier.id if tier is not None else None,
            tier_name=tier.name if tier is not None else None,
            is_active=account.is_active,
        )

    async def get_history(
        self,
        account_id: UUID,
        *,
        limit: int = 50,
        cursor: str | None = None,
    ) -> HistoryPage:
        """Newest-first ledger page; ``next_cursor`` is set when more entries exist."""

        if await self._db.get(LoyaltyAccount, account_id) is None:
            raise UnknownAccountError(account_id)
        bounded_limit = max(1, min(limit, settings.ledger_history_max_limit))
        before_id = decode_history_cursor(cursor) if cursor else None

        entries = await self._ledger.list_entries(
            account_id, limit=bounded_limit + 1, before_id=before_id
        )
        next_cursor = None
        if len(entries) > bounded_limit:
            entries = entries[:bounded_limit]
            next_cursor = encode_history_cursor(entries[-1].id)
        return HistoryPage(entries=entries, next_cursor=next_cursor)

    async def find_account(self, customer_id: UUID, program_id: UUID) -> LoyaltyAccount | None:
        result = await self._db.execute(
            select(LoyaltyAccount).where(
                LoyaltyAccount.customer_id == customer_id,
                LoyaltyAccount.program_id == program_id,
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _post(
        self,
        account_id: UUID,
        delta: int,
        transaction_type: LoyaltyTransactionType,
        *,
        reason: str | None = None,
        order_id: str | None = None,
        idempotency_key: str | None = None,
        allow_negative_balance: bool = False,
    ) -> tuple[LedgerAppendResult, list[TierChangeEvent]]:
        result = await self._ledger.append(
            account_id,
            delta,
            transaction_type,
            reason=reason,
            order_id=order_id,
            idempotency_key=idempotency_key,
            allow_negative_balance=allow_negative_balance,
        )
        if result.replayed:
            return result, []
        event = await self._tiers.refresh_account_tier(
            result.account,
            allow_downgrade=transaction_type == LoyaltyTransactionType.EXPIRE,
        )
        await self._db.flush()
        return result, [event] if event is not None else []

    async def _enroll(
        self, customer_id: UUID, program_id: UUID
    ) -> tuple[LoyaltyAccount, list[TierChangeEvent]]:
        existing = await self.find_account(customer_id, program_id)
        if existing is not None:
            return existing, []

        program = await self._db.get(LoyaltyProgram, program_id)
        if program is None:
            raise UnknownProgramError(f"Loyalty program {program_id} not found")
        if not program.is_active:
            raise LoyaltyValidationError(f"Loyalty program {program_id} is not accepting members")

        account = LoyaltyAccount(
            customer_id=customer_id,
            program_id=program_id,
            referral_code=await self._generate_unique_referral_code(),
            joined_at=datetime.now(timezone.utc),
        )
        try:
            async with self._db.begin_nested():
                self._db.add(account)
                await self._db.flush()
        except IntegrityError:
            logger.warning("Detected race when enrolling loyalty account", customer_id=str(customer_id))
            existing = await self.find_account(customer_id, program_id)
            if existing is None:
                raise
            return existing, []

        events: list[TierChangeEvent] = []
        base_event = await self._tiers.refresh_account_tier(account)
        if base_event is not None:
            events.append(base_event)
        logger.info(
            "Enrolled loyalty account",
            account_id=str(account.id),
            customer_id=str(customer_id),
            program_id=str(program_id),
        )

        if program.welcome_bonus_points > 0:
            _, bonus_events = await self._post(
                account.id,
                program.welcome_bonus_points,
                LoyaltyTransactionType.BONUS,
                reason="Welcome bonus",
                idempotency_key=WELCOME_BONUS_KEY,
            )
            events.extend(bonus_events)
        return account, events

    async def _generate_unique_referral_code(self) -> str:
        while True:
            candidate = uuid4().hex[:8].upper()
            result = await self._db.execute(
                select(LoyaltyAccount.id).where(LoyaltyAccount.referral_code == candidate)
            )
            if result.scalar_one_or_none() is None:
                return candidate

    async def _run_unit(self, operation: Awaitable[T]) -> T:
        try:
            outcome = await operation
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        return outcome

    async def _publish(self, events: Iterable[TierChangeEvent]) -> None:
        for event in events:
            await self._dispatcher.dispatch(event)


__all__ = [
    "AwardService",
    "BalanceSnapshot",
    "BulkAwardOutcome",
    "HistoryPage",
    "OrderCompletionEvent",
    "OrderEarnResult",
    "decode_history_cursor",
    "encode_history_cursor",
]
