from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.models.loyalty import LoyaltyAccount, LoyaltyProgram, LoyaltyTier
from knockbites_loyalty.services.loyalty.errors import LoyaltyValidationError, UnknownProgramError

_EDITABLE_FIELDS = frozenset(
    {"name", "points_per_dollar", "welcome_bonus_points", "referral_bonus_points", "is_active"}
)


def calculate_points_earned(order_total: Decimal | float | str, points_per_dollar: Decimal | float | str) -> int:
    """Whole points earned for an order: ``floor(total * rate)``."""

    try:
        total = Decimal(str(order_total))
        rate = Decimal(str(points_per_dollar))
    except InvalidOperation as exc:
        raise LoyaltyValidationError("Order total and earn rate must be numeric") from exc
    if total < 0 or rate < 0:
        raise LoyaltyValidationError("Order total and earn rate must be non-negative")
    return int((total * rate).to_integral_value(rounding=ROUND_FLOOR))


@dataclass(frozen=True, slots=True)
class MemberListing:
    account: LoyaltyAccount
    tier_name: str | None


@dataclass(frozen=True, slots=True)
class MemberPage:
    entries: list[MemberListing]
    next_cursor: str | None


def encode_member_cursor(lifetime_points: int, account_id: UUID) -> str:
    raw = f"{lifetime_points}:{account_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_member_cursor(cursor: str) -> tuple[int, UUID]:
    try:
        decoded = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        points, _, account_id = decoded.partition(":")
        return int(points), UUID(account_id)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise LoyaltyValidationError("Invalid member cursor") from exc


class LoyaltyProgramService:
    """Lookup and operator edits of per-store loyalty programs."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def get_for_store(self, store_id: int) -> LoyaltyProgram | None:
        result = await self._db.execute(
            select(LoyaltyProgram).where(LoyaltyProgram.store_id == store_id)
        )
        return result.scalar_one_or_none()

    async def require(self, program_id: UUID) -> LoyaltyProgram:
        program = await self._db.get(LoyaltyProgram, program_id)
        if program is None:
            raise UnknownProgramError(f"Loyalty program {program_id} not found")
        return program

    async def update(self, program_id: UUID, **fields: Any) -> LoyaltyProgram:
        program = await self.require(program_id)
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise LoyaltyValidationError(f"Unknown program fields: {sorted(unknown)}")

        changes = {key: value for key, value in fields.items() if value is not None}
        if "points_per_dollar" in changes:
            rate = Decimal(str(changes["points_per_dollar"]))
            if rate < 0:
                raise LoyaltyValidationError("points_per_dollar must be non-negative")
            changes["points_per_dollar"] = rate
        for key in ("welcome_bonus_points", "referral_bonus_points"):
            if key in changes and int(changes[key]) < 0:
                raise LoyaltyValidationError(f"{key} must be non-negative")

        for key, value in changes.items():
            setattr(program, key, value)
        await self._db.flush()
        logger.info("Updated loyalty program", program_id=str(program_id), fields=sorted(changes))
        return program

    async def list_members(
        self,
        program_id: UUID,
        *,
        search: str | None = None,
        tier_id: UUID | None = None,
        limit: int = 25,
        cursor: str | None = None,
    ) -> MemberPage:
        """Members ordered by lifetime points, highest first.

        ``search`` matches a referral code prefix (case-insensitive) or, when
        it parses as a UUID, the exact customer id.
        """

        await self.require(program_id)
        if limit <= 0:
            raise LoyaltyValidationError("limit must be positive")

        stmt = (
            select(LoyaltyAccount, LoyaltyTier.name)
            .outerjoin(LoyaltyTier, LoyaltyTier.id == LoyaltyAccount.current_tier_id)
            .where(LoyaltyAccount.program_id == program_id)
        )
        term = (search or "").strip()
        if term:
            try:
                customer_id = UUID(term)
            except ValueError:
                stmt = stmt.where(
                    func.upper(LoyaltyAccount.referral_code).startswith(term.upper(), autoescape=True)
                )
            else:
                stmt = stmt.where(LoyaltyAccount.customer_id == customer_id)
        if tier_id is not None:
            stmt = stmt.where(LoyaltyAccount.current_tier_id == tier_id)
        if cursor:
            lifetime_points, account_id = decode_member_cursor(cursor)
            stmt = stmt.where(
                or_(
                    LoyaltyAccount.lifetime_points < lifetime_points,
                    and_(
                        LoyaltyAccount.lifetime_points == lifetime_points,
                        LoyaltyAccount.id > account_id,
                    ),
                )
            )
        stmt = stmt.order_by(LoyaltyAccount.lifetime_points.desc(), LoyaltyAccount.id).limit(limit + 1)

        rows = (await self._db.execute(stmt)).all()
        entries = [MemberListing(account=row[0], tier_name=row[1]) for row in rows[:limit]]
        next_cursor = None
        if len(rows) > limit:
            last = entries[-1].account
            next_cursor = encode_member_cursor(last.lifetime_points, last.id)
        return MemberPage(entries=entries, next_cursor=next_cursor)


__all__ = [
    "LoyaltyProgramService",
    "MemberListing",
    "MemberPage",
    "calculate_points_earned",
    "decode_member_cursor",
    "encode_member_cursor",
]
