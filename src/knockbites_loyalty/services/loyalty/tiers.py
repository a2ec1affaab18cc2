"""Tier resolution, ladder configuration and distribution reporting."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Protocol, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.models.loyalty import LoyaltyAccount, LoyaltyProgram, LoyaltyTier
from knockbites_loyalty.services.loyalty.errors import (
    LoyaltyValidationError,
    TierConfigurationError,
    TierNotFoundError,
    UnknownProgramError,
)
from knockbites_loyalty.services.loyalty.events import TierChangeEvent


class TierLike(Protocol):
    id: Any
    name: str
    min_points: int


_TIER_FIELDS = (
    "name",
    "min_points",
    "discount_percentage",
    "free_delivery",
    "priority_support",
    "early_access_promos",
    "birthday_reward_points",
    "tier_color",
    "sort_order",
)


def select_tier(lifetime_points: int, tiers: Sequence[TierLike]) -> TierLike | None:
    """Tier with the greatest ``min_points <= lifetime_points``; the lowest tier otherwise."""

    if not tiers:
        return None
    ordered = sorted(tiers, key=lambda tier: tier.min_points)
    chosen = ordered[0]
    for tier in ordered:
        if tier.min_points <= lifetime_points:
            chosen = tier
        else:
            break
    return chosen


def resolve_tier(lifetime_points: int, tiers: Sequence[TierLike]) -> Any | None:
    tier = select_tier(lifetime_points, tiers)
    return tier.id if tier is not None else None


def validate_tier_ladder(ladder: Iterable[tuple[str, int]]) -> None:
    """Raise ``TierConfigurationError`` unless the ladder is well formed.

    A non-empty ladder needs a base tier at 0 points, strictly increasing
    thresholds and unique names.
    """

    entries = sorted(ladder, key=lambda item: item[1])
    if not entries:
        return

    names: set[str] = set()
    previous: int | None = None
    for name, min_points in entries:
        normalized = (name or "").strip().lower()
        if not normalized:
            raise TierConfigurationError("Tier name is required")
        if normalized in names:
            raise TierConfigurationError(f"Duplicate tier name '{name}'")
        names.add(normalized)
        if min_points < 0:
            raise TierConfigurationError("Tier thresholds must be non-negative")
        if previous is not None and min_points <= previous:
            raise TierConfigurationError(
                f"Tier thresholds must be strictly increasing (duplicate {min_points})"
            )
        previous = min_points

    if entries[0][1] != 0:
        raise TierConfigurationError("The lowest tier must start at 0 points")


@dataclass(frozen=True, slots=True)
class TierDistributionEntry:
    tier_id: UUID | None
    tier_name: str
    min_points: int | None
    member_count: int
    share: float


class TierResolver:
    """Keeps ``current_tier_id`` a function of lifetime points."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def list_tiers(self, program_id: UUID) -> list[LoyaltyTier]:
        stmt = (
            select(LoyaltyTier)
            .where(LoyaltyTier.program_id == program_id)
            .order_by(LoyaltyTier.min_points.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def refresh_account_tier(
        self,
        account: LoyaltyAccount,
        *,
        allow_downgrade: bool = False,
        tiers: Sequence[LoyaltyTier] | None = None,
    ) -> TierChangeEvent | None:
        """Re-resolve the account tier and return the change event, if any.

        Ordinary activity only moves accounts up; callers pass
        ``allow_downgrade`` after point expiration or a ladder change. The
        event is returned rather than dispatched so callers can publish it
        after their commit.
        """

        if tiers is None:
            tiers = await self.list_tiers(account.program_id)
        target = select_tier(account.lifetime_points, tiers)
        by_id = {tier.id: tier for tier in tiers}
        current = by_id.get(account.current_tier_id)

        if target is None:
            if account.current_tier_id is None:
                return None
        elif current is not None:
            if target.id == current.id:
                return None
            if target.min_points < current.min_points and not allow_downgrade:
                return None

        now = datetime.now(timezone.utc)
        account.current_tier_id = target.id if target is not None else None
        account.last_tier_change_at = now

        if current is None:
            direction = "assigned"
        elif target is None or target.min_points < current.min_points:
            direction = "downgrade"
        else:
            direction = "upgrade"

        return TierChangeEvent(
            account_id=account.id,
            program_id=account.program_id,
            previous_tier_id=current.id if current is not None else None,
            previous_tier_name=current.name if current is not None else None,
            new_tier_id=target.id if target is not None else None,
            new_tier_name=target.name if target is not None else None,
            lifetime_points=account.lifetime_points,
            direction=direction,
            occurred_at=now,
        )

    async def resync_program_tiers(self, program_id: UUID) -> list[TierChangeEvent]:
        """Re-resolve every account in the program after a ladder change."""

        tiers = await self.list_tiers(program_id)
        result = await self._db.execute(
            select(LoyaltyAccount).where(LoyaltyAccount.program_id == program_id)
        )
        events: list[TierChangeEvent] = []
        for account in result.scalars():
            event = await self.refresh_account_tier(account, allow_downgrade=True, tiers=tiers)
            if event is not None:
                events.append(event)
        await self._db.flush()
        logger.info(
            "Resynced loyalty tiers",
            program_id=str(program_id),
            changed_accounts=len(events),
        )
        return events

    async def create_tier(self, program_id: UUID, **fields: Any) -> LoyaltyTier:
        await self._require_program(program_id)
        tiers = await self.list_tiers(program_id)
        name = fields.get("name")
        min_points = fields.get("min_points")
        if name is None or min_points is None:
            raise LoyaltyValidationError("Tier name and min_points are required")
        validate_tier_ladder([(tier.name, tier.min_points) for tier in tiers] + [(name, min_points)])

        tier = LoyaltyTier(program_id=program_id, **self._clean_fields(fields))
        self._db.add(tier)
        await self._db.flush()
        logger.info("Created loyalty tier", program_id=str(program_id), tier=name, min_points=min_points)
        return tier

    async def update_tier(self, tier_id: UUID, **fields: Any) -> LoyaltyTier:
        tier = await self._require_tier(tier_id)
        changes = self._clean_fields(fields)
        tiers = await self.list_tiers(tier.program_id)
        ladder = [
            (
                changes.get("name", other.name) if other.id == tier.id else other.name,
                changes.get("min_points", other.min_points) if other.id == tier.id else other.min_points,
            )
            for other in tiers
        ]
        validate_tier_ladder(ladder)

        for key, value in changes.items():
            setattr(tier, key, value)
        await self._db.flush()
        logger.info("Updated loyalty tier", tier_id=str(tier_id), fields=sorted(changes))
        return tier

    async def delete_tier(self, tier_id: UUID) -> UUID:
        tier = await self._require_tier(tier_id)
        tiers = await self.list_tiers(tier.program_id)
        validate_tier_ladder([(other.name, other.min_points) for other in tiers if other.id != tier.id])

        await self._db.execute(
            update(LoyaltyAccount)
            .where(LoyaltyAccount.current_tier_id == tier.id)
            .values(current_tier_id=None)
            .execution_options(synchronize_session="fetch")
        )
        program_id = tier.program_id
        await self._db.delete(tier)
        await self._db.flush()
        logger.info("Deleted loyalty tier", tier_id=str(tier_id), program_id=str(program_id))
        return program_id

    async def tier_distribution(self, program_id: UUID) -> list[TierDistributionEntry]:
        """Active members per tier, computed with one grouped query."""

        await self._require_program(program_id)
        member_count = func.count(LoyaltyAccount.id)
        stmt = (
            select(LoyaltyTier.id, LoyaltyTier.name, LoyaltyTier.min_points, member_count)
            .select_from(LoyaltyTier)
            .outerjoin(
                LoyaltyAccount,
                and_(
                    LoyaltyAccount.current_tier_id == LoyaltyTier.id,
                    LoyaltyAccount.is_active.is_(True),
                ),
            )
            .where(LoyaltyTier.program_id == program_id)
            .group_by(LoyaltyTier.id, LoyaltyTier.name, LoyaltyTier.min_points)
            .order_by(LoyaltyTier.min_points.asc())
        )
        rows = (await self._db.execute(stmt)).all()

        unassigned_stmt = select(func.count(LoyaltyAccount.id)).where(
            LoyaltyAccount.program_id == program_id,
            LoyaltyAccount.is_active.is_(True),
            LoyaltyAccount.current_tier_id.is_(None),
        )
        unassigned = int((await self._db.execute(unassigned_stmt)).scalar_one())

        counts = [(row[0], row[1], row[2], int(row[3])) for row in rows]
        total = sum(count for *_, count in counts) + unassigned

        def _share(count: int) -> float:
            return round(count / total, 4) if total else 0.0

        entries = [
            TierDistributionEntry(
                tier_id=tier_id,
                tier_name=name,
                min_points=min_points,
                member_count=count,
                share=_share(count),
            )
            for tier_id, name, min_points, count in counts
        ]
        if unassigned:
            entries.append(
                TierDistributionEntry(
                    tier_id=None,
                    tier_name="unassigned",
                    min_points=None,
                    member_count=unassigned,
                    share=_share(unassigned),
                )
            )
        return entries

    async def _require_program(self, program_id: UUID) -> LoyaltyProgram:
        program = await self._db.get(LoyaltyProgram, program_id)
        if program is None:
            raise UnknownProgramError(f"Loyalty program {program_id} not found")
        return program

    async def _require_tier(self, tier_id: UUID) -> LoyaltyTier:
        tier = await self._db.get(LoyaltyTier, tier_id)
        if tier is None:
            raise TierNotFoundError(f"Loyalty tier {tier_id} not found")
        return tier

    @staticmethod
    def _clean_fields(fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - set(_TIER_FIELDS)
        if unknown:
            raise LoyaltyValidationError(f"Unknown tier fields: {sorted(unknown)}")
        cleaned = {key: value for key, value in fields.items() if value is not None}
        if "discount_percentage" in cleaned:
            discount = Decimal(str(cleaned["discount_percentage"]))
            if discount < 0 or discount > 100:
                raise LoyaltyValidationError("discount_percentage must be between 0 and 100")
            cleaned["discount_percentage"] = discount
        return cleaned


__all__ = [
    "TierDistributionEntry",
    "TierResolver",
    "resolve_tier",
    "select_tier",
    "validate_tier_ladder",
]
