from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable
from uuid import UUID

from loguru import logger

from knockbites_loyalty.observability.loyalty import get_loyalty_store


@dataclass(frozen=True, slots=True)
class TierChangeEvent:
    account_id: UUID
    program_id: UUID
    previous_tier_id: UUID | None
    previous_tier_name: str | None
    new_tier_id: UUID | None
    new_tier_name: str | None
    lifetime_points: int
    direction: str
    occurred_at: datetime


TierChangeListener = Callable[[TierChangeEvent], Awaitable[None]]


class TierEventDispatcher:
    """Fan tier-change events out to notification collaborators.

    Listener failures are logged and do not undo the ledger write that caused
    the change.
    """

    def __init__(self) -> None:
        self._listeners: list[TierChangeListener] = []

    def subscribe(self, listener: TierChangeListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: TierChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def dispatch(self, event: TierChangeEvent) -> None:
        get_loyalty_store().record_tier_change(event.direction, event.new_tier_name)
        logger.info(
            "Loyalty tier changed",
            account_id=str(event.account_id),
            previous_tier=event.previous_tier_name,
            new_tier=event.new_tier_name,
            direction=event.direction,
            lifetime_points=event.lifetime_points,
        )
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:  # pragma: no cover
                logger.exception(
                    "Tier change listener failed",
                    account_id=str(event.account_id),
                    listener=getattr(listener, "__qualname__", repr(listener)),
                )


_DISPATCHER = TierEventDispatcher()


def get_tier_event_dispatcher() -> TierEventDispatcher:
    return _DISPATCHER


__all__ = ["TierChangeEvent", "TierEventDispatcher", "get_tier_event_dispatcher"]
