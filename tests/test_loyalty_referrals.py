from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from knockbites_loyalty.models.loyalty import (
    LoyaltyAccount,
    LoyaltyTransaction,
    Referral,
    ReferralProgram,
    ReferralRewardType,
    ReferralStatus,
)
from knockbites_loyalty.observability.loyalty import get_loyalty_store
from knockbites_loyalty.services.loyalty import ReferralRewardCoordinator
from knockbites_loyalty.services.loyalty.errors import (
    AlreadyReferredError,
    InvalidReferralTransitionError,
    ReferralLimitReachedError,
    ReferralProgramInactiveError,
    SelfReferralError,
    UnknownReferralCodeError,
)


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def referral_program(session_factory, loyalty_program):
    async def _create(**overrides) -> ReferralProgram:
        fields = dict(
            store_id=loyalty_program.store_id,
            referrer_reward_type=ReferralRewardType.POINTS,
            referrer_reward_value=Decimal("200"),
            referee_reward_type=ReferralRewardType.POINTS,
            referee_reward_value=Decimal("100"),
            min_order_value=Decimal("10"),
            referral_ttl_days=30,
        )
        fields.update(overrides)
        async with session_factory() as session:
            program = ReferralProgram(**fields)
            session.add(program)
            await session.commit()
            return program

    return _create


async def _referral_code(session_factory, account_id) -> str:
    async with session_factory() as session:
        return (await session.get(LoyaltyAccount, account_id)).referral_code


async def _balance(session_factory, account_id) -> int:
    async with session_factory() as session:
        return (await session.get(LoyaltyAccount, account_id)).total_points


@pytest.mark.asyncio
async def test_referral_rewards_both_parties_exactly_once(session_factory, make_account, referral_program) -> None:
    await referral_program()
    referrer_id = await make_account()
    referee_id = await make_account()
    code = await _referral_code(session_factory, referrer_id)

    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        referral = await coordinator.apply_referral(code.lower(), referee_id, now=NOW)
        await session.commit()

    assert referral.status == ReferralStatus.PENDING
    assert referral.expires_at == NOW + timedelta(days=30)

    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        rewarded = await coordinator.handle_order_completed(referee_id, Decimal("25.00"), "order-1", now=NOW)
        again = await coordinator.handle_order_completed(referee_id, Decimal("25.00"), "order-2", now=NOW)
        retried = await coordinator.reward(referral.id, now=NOW)
        await session.commit()

    assert rewarded.status == ReferralStatus.REWARDED
    assert rewarded.qualifying_order_id == "order-1"
    assert again is None
    assert retried.status == ReferralStatus.REWARDED
    assert await _balance(session_factory, referrer_id) == 200
    assert await _balance(session_factory, referee_id) == 100

    async with session_factory() as session:
        entries = (
            await session.execute(
                select(func.count(LoyaltyTransaction.id)).where(
                    LoyaltyTransaction.idempotency_key.like(f"referral:{referral.id}:%")
                )
            )
        ).scalar_one()
    assert entries == 2

    counters = get_loyalty_store().snapshot().referrals
    assert counters["applied"] == 1
    assert counters["completed"] == 1
    assert counters["rewarded"] == 1


@pytest.mark.asyncio
async def test_apply_referral_rejections(session_factory, make_account, referral_program) -> None:
    await referral_program()
    referrer_id = await make_account()
    referee_id = await make_account()
    code = await _referral_code(session_factory, referrer_id)

    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        with pytest.raises(UnknownReferralCodeError):
            await coordinator.apply_referral("NOPE1234", referee_id, now=NOW)
        with pytest.raises(SelfReferralError):
            await coordinator.apply_referral(code, referrer_id, now=NOW)
        await coordinator.apply_referral(code, referee_id, now=NOW)
        with pytest.raises(AlreadyReferredError):
            await coordinator.apply_referral(code, referee_id, now=NOW)
        await session.commit()

    counters = get_loyalty_store().snapshot().referrals
    assert counters["rejected:unknown_referral_code"] == 1
    assert counters["rejected:self_referral"] == 1
    assert counters["rejected:already_referred"] == 1


@pytest.mark.asyncio
async def test_inactive_referral_program_rejects_codes(session_factory, make_account, referral_program) -> None:
    await referral_program(is_active=False)
    referrer_id = await make_account()
    referee_id = await make_account()
    code = await _referral_code(session_factory, referrer_id)

    async with session_factory() as session:
        with pytest.raises(ReferralProgramInactiveError):
            await ReferralRewardCoordinator(session).apply_referral(code, referee_id, now=NOW)


@pytest.mark.asyncio
async def test_small_orders_keep_referral_pending(session_factory, make_account, referral_program) -> None:
    await referral_program()
    referrer_id = await make_account()
    referee_id = await make_account()
    code = await _referral_code(session_factory, referrer_id)

    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        referral = await coordinator.apply_referral(code, referee_id, now=NOW)
        outcome = await coordinator.handle_order_completed(referee_id, Decimal("9.99"), "order-1", now=NOW)
        await session.commit()

    assert outcome is None
    assert referral.status == ReferralStatus.PENDING
    assert await _balance(session_factory, referrer_id) == 0


@pytest.mark.asyncio
async def test_referral_cap_counts_successful_referrals(session_factory, make_account, referral_program) -> None:
    await referral_program(max_referrals_per_customer=1)
    referrer_id = await make_account()
    first_referee = await make_account()
    second_referee = await make_account()
    late_referee = await make_account()
    code = await _referral_code(session_factory, referrer_id)

    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        await coordinator.apply_referral(code, first_referee, now=NOW)
        second = await coordinator.apply_referral(code, second_referee, now=NOW)
        await coordinator.handle_order_completed(first_referee, Decimal("30"), "order-1", now=NOW)
        capped = await coordinator.handle_order_completed(second_referee, Decimal("30"), "order-2", now=NOW)
        with pytest.raises(ReferralLimitReachedError):
            await coordinator.apply_referral(code, late_referee, now=NOW)
        await session.commit()

    assert capped.id == second.id
    assert capped.status == ReferralStatus.EXPIRED
    assert await _balance(session_factory, referrer_id) == 200
    assert await _balance(session_factory, second_referee) == 0


@pytest.mark.asyncio
async def test_overdue_referrals_expire(session_factory, make_account, referral_program) -> None:
    await referral_program(referral_ttl_days=7)
    referrer_id = await make_account()
    late_buyer = await make_account()
    never_buyer = await make_account()
    code = await _referral_code(session_factory, referrer_id)

    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        late = await coordinator.apply_referral(code, late_buyer, now=NOW)
        idle = await coordinator.apply_referral(code, never_buyer, now=NOW)
        await session.commit()

    later = NOW + timedelta(days=8)
    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        outcome = await coordinator.handle_order_completed(late_buyer, Decimal("50"), "order-1", now=later)
        assert outcome.status == ReferralStatus.EXPIRED
        assert await coordinator.expire_stale(now=later) == 1
        await session.commit()

    async with session_factory() as session:
        refreshed = await session.get(Referral, idle.id)
        assert refreshed.status == ReferralStatus.EXPIRED
        with pytest.raises(InvalidReferralTransitionError):
            await ReferralRewardCoordinator(session).reward(late.id, now=later)

    assert await _balance(session_factory, referrer_id) == 0


@pytest.mark.asyncio
async def test_non_point_rewards_are_handed_off(session_factory, make_account, referral_program) -> None:
    await referral_program(referee_reward_type=ReferralRewardType.DISCOUNT, referee_reward_value=Decimal("5"))
    referrer_id = await make_account()
    referee_id = await make_account()
    code = await _referral_code(session_factory, referrer_id)

    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        await coordinator.apply_referral(code, referee_id, now=NOW)
        referral = await coordinator.handle_order_completed(referee_id, Decimal("15"), "order-1", now=NOW)
        await session.commit()

    assert referral.referee_rewarded is True
    assert referral.referrer_rewarded is True
    assert await _balance(session_factory, referrer_id) == 200
    assert await _balance(session_factory, referee_id) == 0


@pytest.mark.asyncio
async def test_list_for_referrer(session_factory, make_account, referral_program) -> None:
    await referral_program()
    referrer_id = await make_account()
    referee_ids = [await make_account() for _ in range(2)]
    code = await _referral_code(session_factory, referrer_id)

    async with session_factory() as session:
        coordinator = ReferralRewardCoordinator(session)
        for referee_id in referee_ids:
            await coordinator.apply_referral(code, referee_id, now=NOW)
        await session.commit()
        referrals = await coordinator.list_for_referrer(referrer_id)

    assert {referral.referee_account_id for referral in referrals} == set(referee_ids)
