from uuid import uuid4

import pytest
from sqlalchemy import func, select

from knockbites_loyalty.models.loyalty import LoyaltyAccount, LoyaltyTransaction, LoyaltyTransactionType
from knockbites_loyalty.observability.loyalty import get_loyalty_store
from knockbites_loyalty.services.loyalty import TransactionLedger
from knockbites_loyalty.services.loyalty.errors import (
    InactiveAccountError,
    InsufficientBalanceError,
    LoyaltyValidationError,
    UnknownAccountError,
)
from knockbites_loyalty.services.loyalty.ledger import validate_entry


async def _entry_count(session, account_id) -> int:
    result = await session.execute(
        select(func.count(LoyaltyTransaction.id)).where(LoyaltyTransaction.account_id == account_id)
    )
    return int(result.scalar_one())


@pytest.mark.parametrize(
    ("delta", "transaction_type", "reason"),
    [
        (0, LoyaltyTransactionType.EARN, None),
        (-10, LoyaltyTransactionType.EARN, None),
        (10, LoyaltyTransactionType.REDEEM, None),
        (10, LoyaltyTransactionType.EXPIRE, "stale"),
        (25, LoyaltyTransactionType.BONUS, None),
        (-5, LoyaltyTransactionType.ADJUSTMENT, "  "),
    ],
)
def test_validate_entry_rejects_bad_shapes(delta, transaction_type, reason) -> None:
    with pytest.raises(LoyaltyValidationError):
        validate_entry(delta, transaction_type, reason)


def test_validate_entry_accepts_signed_adjustments() -> None:
    validate_entry(15, LoyaltyTransactionType.ADJUSTMENT, "Goodwill")
    validate_entry(-15, LoyaltyTransactionType.ADJUSTMENT, "Correction")


@pytest.mark.asyncio
async def test_append_updates_projection_and_snapshot(session_factory, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        ledger = TransactionLedger(session)
        first = await ledger.append(account_id, 120, LoyaltyTransactionType.EARN, order_id="order-1")
        second = await ledger.append(account_id, -20, LoyaltyTransactionType.REDEEM, order_id="order-2")
        await session.commit()

    assert first.balance_after == 120
    assert second.balance_after == 100
    assert second.transaction_id > first.transaction_id
    assert second.lifetime_points == 120

    async with session_factory() as session:
        account = await session.get(LoyaltyAccount, account_id)
        assert account.total_points == 100
        assert account.lifetime_points == 120

    snapshot = get_loyalty_store().snapshot()
    assert snapshot.ledger["entries:earn"] == 1
    assert snapshot.ledger["points:redeem"] == -20


@pytest.mark.asyncio
async def test_redeem_beyond_balance_leaves_no_trace(session_factory, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        ledger = TransactionLedger(session)
        await ledger.append(account_id, 50, LoyaltyTransactionType.EARN, order_id="order-1")
        with pytest.raises(InsufficientBalanceError) as excinfo:
            await ledger.append(account_id, -80, LoyaltyTransactionType.REDEEM, order_id="order-2")
        await session.commit()

    assert excinfo.value.requested == 80
    assert excinfo.value.available == 50

    async with session_factory() as session:
        account = await session.get(LoyaltyAccount, account_id)
        assert account.total_points == 50
        assert await _entry_count(session, account_id) == 1

    assert get_loyalty_store().snapshot().rejections["insufficient_balance"] == 1


@pytest.mark.asyncio
async def test_idempotency_key_replays_original_entry(session_factory, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        ledger = TransactionLedger(session)
        first = await ledger.append(
            account_id, 40, LoyaltyTransactionType.BONUS, reason="Promo", idempotency_key="promo-7"
        )
        replay = await ledger.append(
            account_id, 40, LoyaltyTransactionType.BONUS, reason="Promo", idempotency_key="promo-7"
        )
        await session.commit()

        assert replay.replayed is True
        assert replay.transaction_id == first.transaction_id
        assert replay.balance_after == 40
        assert await _entry_count(session, account_id) == 1

    assert get_loyalty_store().snapshot().ledger["replays:bonus"] == 1


@pytest.mark.asyncio
async def test_earn_is_posted_once_per_order(session_factory, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        ledger = TransactionLedger(session)
        await ledger.append(account_id, 30, LoyaltyTransactionType.EARN, order_id="order-9")
        replay = await ledger.append(account_id, 30, LoyaltyTransactionType.EARN, order_id="order-9")
        await session.commit()

        account = await session.get(LoyaltyAccount, account_id)
        assert replay.replayed is True
        assert account.total_points == 30


@pytest.mark.asyncio
async def test_inactive_account_only_accepts_corrections(session_factory, make_account) -> None:
    account_id = await make_account(is_active=False)

    async with session_factory() as session:
        ledger = TransactionLedger(session)
        with pytest.raises(InactiveAccountError):
            await ledger.append(account_id, 10, LoyaltyTransactionType.EARN, order_id="order-1")
        result = await ledger.append(
            account_id, 10, LoyaltyTransactionType.ADJUSTMENT, reason="Migrated balance"
        )
        await session.commit()

    assert result.balance_after == 10


@pytest.mark.asyncio
async def test_flagged_negative_adjustment_is_clamped(session_factory, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        ledger = TransactionLedger(session)
        await ledger.append(account_id, 25, LoyaltyTransactionType.EARN, order_id="order-1")
        with pytest.raises(InsufficientBalanceError):
            await ledger.append(account_id, -40, LoyaltyTransactionType.ADJUSTMENT, reason="Fraud")
        clamped = await ledger.append(
            account_id,
            -40,
            LoyaltyTransactionType.ADJUSTMENT,
            reason="Fraud",
            allow_negative_balance=True,
        )
        await session.commit()

    assert clamped.transaction.points == -25
    assert clamped.balance_after == 0


@pytest.mark.asyncio
async def test_unknown_account_is_rejected(session_factory, loyalty_program) -> None:
    async with session_factory() as session:
        with pytest.raises(UnknownAccountError):
            await TransactionLedger(session).append(uuid4(), 10, LoyaltyTransactionType.EARN)


@pytest.mark.asyncio
async def test_list_entries_pages_newest_first(session_factory, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        ledger = TransactionLedger(session)
        ids = []
        for index in range(5):
            result = await ledger.append(
                account_id, 10 + index, LoyaltyTransactionType.EARN, order_id=f"order-{index}"
            )
            ids.append(result.transaction_id)
        await session.commit()

        first_page = await ledger.list_entries(account_id, limit=2)
        assert [entry.id for entry in first_page] == [ids[4], ids[3]]

        second_page = await ledger.list_entries(account_id, limit=2, before_id=first_page[-1].id)
        assert [entry.id for entry in second_page] == [ids[2], ids[1]]
