"""Rewards catalog: items members exchange points for."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.models.loyalty import (
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyReward,
    LoyaltyRewardType,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from knockbites_loyalty.services.loyalty.errors import (
    LoyaltyValidationError,
    RewardNotFoundError,
    RewardUnavailableError,
    UnknownAccountError,
    UnknownProgramError,
)
from knockbites_loyalty.services.loyalty.ledger import TransactionLedger

_EDITABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "points_cost",
        "reward_type",
        "reward_value",
        "image_url",
        "is_active",
        "stock_quantity",
        "sort_order",
    }
)


@dataclass(frozen=True, slots=True)
class RewardRedemption:
    reward: LoyaltyReward
    transaction: LoyaltyTransaction
    replayed: bool = False


def _validate_fields(fields: dict[str, Any]) -> dict[str, Any]:
    if "name" in fields:
        name = (fields["name"] or "").strip()
        if not name:
            raise LoyaltyValidationError("Reward name is required")
        fields["name"] = name
    if "points_cost" in fields:
        cost = fields["points_cost"]
        if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
            raise LoyaltyValidationError("points_cost must be a positive integer")
    if fields.get("stock_quantity") is not None and int(fields["stock_quantity"]) < 0:
        raise LoyaltyValidationError("stock_quantity must be non-negative")
    if "reward_type" in fields:
        try:
            fields["reward_type"] = LoyaltyRewardType(fields["reward_type"])
        except ValueError as exc:
            raise LoyaltyValidationError(f"Unknown reward type {fields['reward_type']!r}") from exc
    return fields


class RewardCatalog:
    """Operator edits of a program's rewards and member redemptions.

    Catalog edits flush and leave the commit to the caller. ``redeem_reward``
    is its own unit of work: the REDEEM ledger entry and the stock update
    commit together or not at all.
    """

    def __init__(self, session: AsyncSession, *, ledger: TransactionLedger | None = None) -> None:
        self._db = session
        self._ledger = ledger or TransactionLedger(session)

    async def list_rewards(self, program_id: UUID, *, include_inactive: bool = False) -> list[LoyaltyReward]:
        stmt = select(LoyaltyReward).where(LoyaltyReward.program_id == program_id)
        if not include_inactive:
            stmt = stmt.where(LoyaltyReward.is_active.is_(True))
        stmt = stmt.order_by(LoyaltyReward.sort_order, LoyaltyReward.points_cost, LoyaltyReward.name)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def require(self, reward_id: UUID) -> LoyaltyReward:
        reward = await self._db.get(LoyaltyReward, reward_id)
        if reward is None:
            raise RewardNotFoundError(reward_id)
        return reward

    async def create_reward(
        self,
        program_id: UUID,
        *,
        name: str,
        points_cost: int,
        reward_type: LoyaltyRewardType | str,
        **fields: Any,
    ) -> LoyaltyReward:
        if await self._db.get(LoyaltyProgram, program_id) is None:
            raise UnknownProgramError(f"Loyalty program {program_id} not found")
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise LoyaltyValidationError(f"Unknown reward fields: {sorted(unknown)}")

        values = _validate_fields(
            {"name": name, "points_cost": points_cost, "reward_type": reward_type, **fields}
        )
        reward = LoyaltyReward(program_id=program_id, **values)
        await self._flush_unique(reward, values["name"])
        logger.info(
            "Created loyalty reward",
            program_id=str(program_id),
            reward_id=str(reward.id),
            points_cost=reward.points_cost,
        )
        return reward

    async def update_reward(self, reward_id: UUID, **fields: Any) -> LoyaltyReward:
        reward = await self.require(reward_id)
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise LoyaltyValidationError(f"Unknown reward fields: {sorted(unknown)}")

        # None stock means unlimited.
        changes = {
            key: value
            for key, value in fields.items()
            if value is not None or key == "stock_quantity"
        }
        changes = _validate_fields(changes)
        if "name" in changes and changes["name"] != reward.name:
            await self._ensure_name_free(reward.program_id, changes["name"])
        for key, value in changes.items():
            setattr(reward, key, value)
        await self._db.flush()
        logger.info("Updated loyalty reward", reward_id=str(reward_id), fields=sorted(changes))
        return reward

    async def delete_reward(self, reward_id: UUID) -> None:
        reward = await self.require(reward_id)
        await self._db.delete(reward)
        await self._db.flush()
        logger.info("Deleted loyalty reward", reward_id=str(reward_id))

    async def redeem_reward(
        self,
        account_id: UUID,
        reward_id: UUID,
        *,
        idempotency_key: str | None = None,
    ) -> RewardRedemption:
        """Debit ``points_cost`` from the account and claim one unit of stock.

        A replayed idempotency key returns the original entry without checking
        availability again or touching stock.
        """

        try:
            redemption = await self._redeem(account_id, reward_id, idempotency_key)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        if not redemption.replayed:
            logger.info(
                "Redeemed loyalty reward",
                account_id=str(account_id),
                reward_id=str(reward_id),
                points=redemption.reward.points_cost,
                remaining_stock=redemption.reward.stock_quantity,
            )
        return redemption

    async def _redeem(self, account_id: UUID, reward_id: UUID, idempotency_key: str | None) -> RewardRedemption:
        account = await self._db.get(LoyaltyAccount, account_id)
        if account is None:
            raise UnknownAccountError(account_id)
        reward = await self._lock_reward(reward_id)
        if reward.program_id != account.program_id:
            raise RewardNotFoundError(reward_id)

        if not await self._has_prior_entry(account_id, idempotency_key):
            if not reward.is_active:
                raise RewardUnavailableError(f"Reward {reward_id} is not active")
            if reward.stock_quantity is not None and reward.stock_quantity <= 0:
                raise RewardUnavailableError(f"Reward {reward_id} is out of stock")

        result = await self._ledger.append(
            account_id,
            -reward.points_cost,
            LoyaltyTransactionType.REDEEM,
            reason=f"Redeemed reward: {reward.name}",
            idempotency_key=idempotency_key,
        )
        if result.replayed:
            return RewardRedemption(reward=reward, transaction=result.transaction, replayed=True)

        if reward.stock_quantity is not None:
            reward.stock_quantity -= 1
        reward.redemption_count += 1
        await self._db.flush()
        return RewardRedemption(reward=reward, transaction=result.transaction)

    async def _has_prior_entry(self, account_id: UUID, idempotency_key: str | None) -> bool:
        if not idempotency_key:
            return False
        result = await self._db.execute(
            select(LoyaltyTransaction.id).where(
                LoyaltyTransaction.account_id == account_id,
                LoyaltyTransaction.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none() is not None

    async def _lock_reward(self, reward_id: UUID) -> LoyaltyReward:
        result = await self._db.execute(
            select(LoyaltyReward)
            .where(LoyaltyReward.id == reward_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        reward = result.scalar_one_or_none()
        if reward is None:
            raise RewardNotFoundError(reward_id)
        return reward

    async def _ensure_name_free(self, program_id: UUID, name: str) -> None:
        result = await self._db.execute(
            select(LoyaltyReward.id).where(
                LoyaltyReward.program_id == program_id,
                LoyaltyReward.name == name,
            )
        )
        if result.scalar_one_or_none() is not None:
            raise LoyaltyValidationError(f"A reward named {name!r} already exists in this program")

    async def _flush_unique(self, reward: LoyaltyReward, name: str) -> None:
        try:
            async with self._db.begin_nested():
                self._db.add(reward)
                await self._db.flush()
        except IntegrityError as exc:
            raise LoyaltyValidationError(f"A reward named {name!r} already exists in this program") from exc


__all__ = ["RewardCatalog", "RewardRedemption"]
