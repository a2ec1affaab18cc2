"""Referral lifecycle: pending -> completed -> rewarded, with expiry from pending."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.models.loyalty import (
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyTransactionType,
    Referral,
    ReferralProgram,
    ReferralRewardType,
    ReferralStatus,
)
from knockbites_loyalty.observability.loyalty import get_loyalty_store
from knockbites_loyalty.services.loyalty.errors import (
    AlreadyReferredError,
    InactiveAccountError,
    InvalidReferralTransitionError,
    LoyaltyValidationError,
    ReferralLimitReachedError,
    ReferralNotFoundError,
    ReferralProgramInactiveError,
    SelfReferralError,
    UnknownAccountError,
    UnknownReferralCodeError,
)
from knockbites_loyalty.services.loyalty.events import (
    TierChangeEvent,
    TierEventDispatcher,
    get_tier_event_dispatcher,
)
from knockbites_loyalty.services.loyalty.ledger import TransactionLedger
from knockbites_loyalty.services.loyalty.tiers import TierResolver

_COUNTED_STATUSES = (ReferralStatus.COMPLETED, ReferralStatus.REWARDED)


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _reward_points(value: Decimal | int | None) -> int:
    if value is None:
        return 0
    return int(Decimal(str(value)).to_integral_value(rounding=ROUND_FLOOR))


class ReferralRewardCoordinator:
    """Drives referral state and credits both parties exactly once.

    Methods flush but do not commit. Tier changes caused by referral bonuses
    are queued on ``pending_events``; callers publish them with
    ``publish_pending`` once their transaction has committed.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        dispatcher: TierEventDispatcher | None = None,
    ) -> None:
        self._db = session
        self._ledger = TransactionLedger(session)
        self._tiers = TierResolver(session)
        self._dispatcher = dispatcher or get_tier_event_dispatcher()
        self.pending_events: list[TierChangeEvent] = []

    async def get_referral_program(self, store_id: int) -> ReferralProgram | None:
        result = await self._db.execute(
            select(ReferralProgram).where(ReferralProgram.store_id == store_id)
        )
        return result.scalar_one_or_none()

    async def apply_referral(
        self,
        code: str,
        referee_account_id: UUID,
        *,
        now: datetime | None = None,
    ) -> Referral:
        """Create a pending referral from ``code`` for the referee account."""

        now = now or datetime.now(timezone.utc)
        normalized = (code or "").strip().upper()
        if not normalized:
            raise UnknownReferralCodeError("Referral code is required")

        referrer = (
            await self._db.execute(
                select(LoyaltyAccount).where(LoyaltyAccount.referral_code == normalized)
            )
        ).scalar_one_or_none()
        if referrer is None:
            self._record_rejection(UnknownReferralCodeError.kind)
            raise UnknownReferralCodeError(f"Referral code {normalized} not found")

        referee = await self._db.get(LoyaltyAccount, referee_account_id)
        if referee is None:
            raise UnknownAccountError(referee_account_id)
        if referee.id == referrer.id or referee.customer_id == referrer.customer_id:
            self._record_rejection(SelfReferralError.kind)
            raise SelfReferralError("Customers cannot refer themselves")
        if referee.program_id != referrer.program_id:
            raise LoyaltyValidationError("Referrer and referee belong to different programs")

        loyalty_program = await self._db.get(LoyaltyProgram, referrer.program_id)
        program = await self.get_referral_program(loyalty_program.store_id)
        if program is None or not program.is_active:
            self._record_rejection(ReferralProgramInactiveError.kind)
            raise ReferralProgramInactiveError(
                f"Store {loyalty_program.store_id} has no active referral program"
            )

        already = (
            await self._db.execute(
                select(Referral.id).where(
                    Referral.program_id == program.id,
                    Referral.referee_account_id == referee.id,
                )
            )
        ).scalar_one_or_none()
        if already is not None:
            self._record_rejection(AlreadyReferredError.kind)
            raise AlreadyReferredError(f"Account {referee.id} has already been referred")

        if await self._cap_reached(program, referrer.id):
            self._record_rejection(ReferralLimitReachedError.kind)
            raise ReferralLimitReachedError(
                f"Referrer {referrer.id} reached the limit of {program.max_referrals_per_customer}"
            )

        referral = Referral(
            program_id=program.id,
            referral_code=normalized,
            referrer_account_id=referrer.id,
            referee_account_id=referee.id,
            status=ReferralStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(days=program.referral_ttl_days),
        )
        self._db.add(referral)
        await self._db.flush()
        get_loyalty_store().record_referral_event("applied")
        logger.info(
            "Referral applied",
            referral_id=str(referral.id),
            referrer_account_id=str(referrer.id),
            referee_account_id=str(referee.id),
        )
        return referral

    async def handle_order_completed(
        self,
        referee_account_id: UUID,
        order_total: Decimal,
        order_id: str,
        *,
        now: datetime | None = None,
    ) -> Referral | None:
        """Complete and reward the referee's pending referral if this order qualifies."""

        now = now or datetime.now(timezone.utc)
        referral = (
            await self._db.execute(
                select(Referral)
                .where(
                    Referral.referee_account_id == referee_account_id,
                    Referral.status == ReferralStatus.PENDING,
                )
                .with_for_update()
            )
        ).scalars().first()
        if referral is None:
            return None

        expires_at = _ensure_aware(referral.expires_at)
        if expires_at is not None and expires_at <= now:
            self._expire(referral)
            await self._db.flush()
            return referral

        program = await self._db.get(ReferralProgram, referral.program_id)
        if program is None or not program.is_active:
            return None
        if Decimal(str(order_total)) < Decimal(str(program.min_order_value)):
            logger.info(
                "Order below referral minimum",
                referral_id=str(referral.id),
                order_id=order_id,
                order_total=str(order_total),
            )
            return None

        if await self._cap_reached(program, referral.referrer_account_id):
            self._expire(referral, reason="referrer_limit_reached")
            await self._db.flush()
            return referral

        referral.status = ReferralStatus.COMPLETED
        referral.completed_at = now
        referral.qualifying_order_id = order_id
        await self._db.flush()
        get_loyalty_store().record_referral_event("completed")
        logger.info("Referral completed", referral_id=str(referral.id), order_id=order_id)

        return await self._reward(referral, program, now=now)

    async def reward(self, referral_id: UUID, *, now: datetime | None = None) -> Referral:
        """Credit both parties of a completed referral. Re-running is a no-op."""

        referral = (
            await self._db.execute(
                select(Referral)
                .where(Referral.id == referral_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if referral is None:
            raise ReferralNotFoundError(f"Referral {referral_id} not found")
        program = await self._db.get(ReferralProgram, referral.program_id)
        return await self._reward(referral, program, now=now or datetime.now(timezone.utc))

    async def expire_stale(self, *, now: datetime | None = None, limit: int | None = None) -> int:
        """Move pending referrals past their deadline to ``expired``."""

        now = now or datetime.now(timezone.utc)
        stmt = (
            select(Referral)
            .where(
                Referral.status == ReferralStatus.PENDING,
                Referral.expires_at.is_not(None),
                Referral.expires_at <= now,
            )
            .order_by(Referral.expires_at.asc())
            .with_for_update(skip_locked=True)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        referrals = list((await self._db.execute(stmt)).scalars())
        for referral in referrals:
            self._expire(referral)
        await self._db.flush()
        if referrals:
            logger.info("Expired stale referrals", count=len(referrals))
        return len(referrals)

    async def list_for_referrer(self, account_id: UUID) -> list[Referral]:
        result = await self._db.execute(
            select(Referral)
            .where(Referral.referrer_account_id == account_id)
            .order_by(Referral.created_at.desc())
        )
        return list(result.scalars().all())

    async def publish_pending(self) -> None:
        events, self.pending_events = self.pending_events, []
        for event in events:
            await self._dispatcher.dispatch(event)

    async def _reward(
        self,
        referral: Referral,
        program: ReferralProgram | None,
        *,
        now: datetime,
    ) -> Referral:
        if referral.status == ReferralStatus.REWARDED:
            logger.info("Referral already rewarded", referral_id=str(referral.id))
            return referral
        if referral.status != ReferralStatus.COMPLETED:
            raise InvalidReferralTransitionError(
                f"Cannot reward referral {referral.id} in status {referral.status.value}"
            )
        if program is None:
            raise ReferralNotFoundError(f"Referral program {referral.program_id} not found")

        if not referral.referrer_rewarded:
            referral.referrer_rewarded = await self._credit(
                referral,
                referral.referrer_account_id,
                program.referrer_reward_type,
                program.referrer_reward_value,
                side="referrer",
            )
        if not referral.referee_rewarded:
            referral.referee_rewarded = await self._credit(
                referral,
                referral.referee_account_id,
                program.referee_reward_type,
                program.referee_reward_value,
                side="referee",
            )
        if not (referral.referrer_rewarded and referral.referee_rewarded):
            await self._db.flush()
            logger.warning(
                "Referral reward incomplete",
                referral_id=str(referral.id),
                referrer_rewarded=referral.referrer_rewarded,
                referee_rewarded=referral.referee_rewarded,
            )
            return referral

        referral.status = ReferralStatus.REWARDED
        referral.rewarded_at = now
        await self._db.flush()
        get_loyalty_store().record_referral_event("rewarded")
        logger.info("Referral rewarded", referral_id=str(referral.id))
        return referral

    async def _credit(
        self,
        referral: Referral,
        account_id: UUID,
        reward_type: ReferralRewardType,
        reward_value: Decimal,
        *,
        side: str,
    ) -> bool:
        """Credit one side; ``False`` leaves that side owed for a later retry."""

        if reward_type != ReferralRewardType.POINTS:
            # Coupon-style rewards are issued by the promotions collaborator.
            logger.info(
                "Referral reward handed off",
                referral_id=str(referral.id),
                account_id=str(account_id),
                side=side,
                reward_type=reward_type.value,
                reward_value=str(reward_value),
            )
            return True

        points = _reward_points(reward_value)
        if points <= 0:
            return True
        try:
            result = await self._ledger.append(
                account_id,
                points,
                LoyaltyTransactionType.BONUS,
                reason=f"Referral reward ({side})",
                idempotency_key=f"referral:{referral.id}:{side}",
            )
        except InactiveAccountError:
            logger.warning(
                "Referral reward deferred for inactive account",
                referral_id=str(referral.id),
                account_id=str(account_id),
                side=side,
            )
            return False
        if result.replayed:
            return True
        event = await self._tiers.refresh_account_tier(result.account)
        if event is not None:
            self.pending_events.append(event)
        return True

    async def _cap_reached(self, program: ReferralProgram, referrer_account_id: UUID) -> bool:
        if program.max_referrals_per_customer is None:
            return False
        count = (
            await self._db.execute(
                select(func.count(Referral.id)).where(
                    Referral.referrer_account_id == referrer_account_id,
                    Referral.status.in_(_COUNTED_STATUSES),
                )
            )
        ).scalar_one()
        return int(count) >= program.max_referrals_per_customer

    def _expire(self, referral: Referral, *, reason: str = "ttl_elapsed") -> None:
        if referral.status != ReferralStatus.PENDING:
            raise InvalidReferralTransitionError(
                f"Cannot expire referral {referral.id} in status {referral.status.value}"
            )
        referral.status = ReferralStatus.EXPIRED
        get_loyalty_store().record_referral_event("expired")
        logger.info("Referral expired", referral_id=str(referral.id), reason=reason)

    @staticmethod
    def _record_rejection(kind: str) -> None:
        get_loyalty_store().record_referral_event(f"rejected:{kind}")


__all__ = ["ReferralRewardCoordinator"]
