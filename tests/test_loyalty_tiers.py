from types import SimpleNamespace
from uuid import uuid4

import pytest

from knockbites_loyalty.models.loyalty import LoyaltyAccount, LoyaltyTransactionType
from knockbites_loyalty.services.loyalty import TierResolver, TransactionLedger, resolve_tier, validate_tier_ladder
from knockbites_loyalty.services.loyalty.errors import TierConfigurationError, TierNotFoundError
from knockbites_loyalty.services.loyalty.tiers import select_tier


LADDER = [
    SimpleNamespace(id="gold", name="Gold", min_points=1000),
    SimpleNamespace(id="bronze", name="Bronze", min_points=0),
    SimpleNamespace(id="silver", name="Silver", min_points=500),
]


@pytest.mark.parametrize(
    ("lifetime_points", "expected"),
    [(0, "bronze"), (499, "bronze"), (500, "silver"), (999, "silver"), (1000, "gold"), (25_000, "gold")],
)
def test_resolve_tier_uses_inclusive_thresholds(lifetime_points, expected) -> None:
    assert resolve_tier(lifetime_points, LADDER) == expected


def test_resolve_tier_without_tiers_is_none() -> None:
    assert resolve_tier(300, []) is None


def test_select_tier_falls_back_to_lowest_tier() -> None:
    ladder = [SimpleNamespace(id="starter", name="Starter", min_points=100)]
    assert select_tier(10, ladder).id == "starter"


@pytest.mark.parametrize(
    "ladder",
    [
        [("Bronze", 100), ("Silver", 500)],
        [("Bronze", 0), ("Silver", 500), ("Gold", 500)],
        [("Bronze", 0), ("bronze", 200)],
        [("", 0)],
        [("Bronze", 0), ("Debt", -10)],
    ],
)
def test_validate_tier_ladder_rejects_malformed(ladder) -> None:
    with pytest.raises(TierConfigurationError):
        validate_tier_ladder(ladder)


def test_validate_tier_ladder_accepts_empty_and_ordered() -> None:
    validate_tier_ladder([])
    validate_tier_ladder([("Gold", 1000), ("Bronze", 0), ("Silver", 500)])


@pytest.mark.asyncio
async def test_refresh_upgrades_but_does_not_downgrade(session_factory, loyalty_program, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        await TransactionLedger(session).append(account_id, 650, LoyaltyTransactionType.EARN, order_id="order-1")
        account = await session.get(LoyaltyAccount, account_id)
        resolver = TierResolver(session)

        event = await resolver.refresh_account_tier(account)
        assert event is not None
        assert event.direction == "upgrade"
        assert event.previous_tier_name == "Bronze"
        assert event.new_tier_name == "Silver"
        assert account.current_tier_id == loyalty_program.tier_ids["Silver"]

        assert await resolver.refresh_account_tier(account) is None

        account.lifetime_points = 100
        assert await resolver.refresh_account_tier(account) is None
        assert account.current_tier_id == loyalty_program.tier_ids["Silver"]

        downgrade = await resolver.refresh_account_tier(account, allow_downgrade=True)
        assert downgrade.direction == "downgrade"
        assert account.current_tier_id == loyalty_program.tier_ids["Bronze"]


@pytest.mark.asyncio
async def test_ladder_change_resyncs_members(session_factory, loyalty_program, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        await TransactionLedger(session).append(account_id, 700, LoyaltyTransactionType.EARN, order_id="order-1")
        resolver = TierResolver(session)
        await resolver.refresh_account_tier(await session.get(LoyaltyAccount, account_id))
        await session.commit()

    async with session_factory() as session:
        resolver = TierResolver(session)
        await resolver.update_tier(loyalty_program.tier_ids["Silver"], min_points=800)
        events = await resolver.resync_program_tiers(loyalty_program.program_id)
        await session.commit()

    assert [event.direction for event in events] == ["downgrade"]
    async with session_factory() as session:
        account = await session.get(LoyaltyAccount, account_id)
        assert account.current_tier_id == loyalty_program.tier_ids["Bronze"]


@pytest.mark.asyncio
async def test_tier_edits_keep_ladder_valid(session_factory, loyalty_program) -> None:
    async with session_factory() as session:
        resolver = TierResolver(session)
        with pytest.raises(TierConfigurationError):
            await resolver.create_tier(loyalty_program.program_id, name="Platinum", min_points=1000)
        with pytest.raises(TierConfigurationError):
            await resolver.update_tier(loyalty_program.tier_ids["Bronze"], min_points=50)
        with pytest.raises(TierNotFoundError):
            await resolver.update_tier(uuid4(), name="Ghost")

        platinum = await resolver.create_tier(
            loyalty_program.program_id, name="Platinum", min_points=2500, discount_percentage=15
        )
        await session.commit()

        tiers = await resolver.list_tiers(loyalty_program.program_id)
        assert [tier.name for tier in tiers] == ["Bronze", "Silver", "Gold", "Platinum"]
        assert platinum.min_points == 2500


@pytest.mark.asyncio
async def test_delete_tier_releases_members(session_factory, loyalty_program, make_account) -> None:
    account_id = await make_account()

    async with session_factory() as session:
        await TransactionLedger(session).append(account_id, 600, LoyaltyTransactionType.EARN, order_id="order-1")
        await TierResolver(session).refresh_account_tier(await session.get(LoyaltyAccount, account_id))
        await session.commit()

    async with session_factory() as session:
        resolver = TierResolver(session)
        program_id = await resolver.delete_tier(loyalty_program.tier_ids["Silver"])
        events = await resolver.resync_program_tiers(program_id)
        await session.commit()

    assert program_id == loyalty_program.program_id
    assert events[0].new_tier_name == "Bronze"


@pytest.mark.asyncio
async def test_tier_distribution_counts_active_members(session_factory, loyalty_program, make_account) -> None:
    bronze_id = await make_account()
    silver_id = await make_account()
    await make_account(is_active=False)

    async with session_factory() as session:
        await TransactionLedger(session).append(silver_id, 550, LoyaltyTransactionType.EARN, order_id="order-1")
        await TierResolver(session).refresh_account_tier(await session.get(LoyaltyAccount, silver_id))
        unassigned = await session.get(LoyaltyAccount, bronze_id)
        unassigned.current_tier_id = None
        await session.commit()

    async with session_factory() as session:
        entries = await TierResolver(session).tier_distribution(loyalty_program.program_id)

    counts = {entry.tier_name: entry.member_count for entry in entries}
    assert counts == {"Bronze": 0, "Silver": 1, "Gold": 0, "unassigned": 1}
    shares = {entry.tier_name: entry.share for entry in entries}
    assert shares["Silver"] == 0.5
