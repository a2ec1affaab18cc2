"""Sweep that re-derives account balances from the ledger and reports drift."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.core.settings import settings
from knockbites_loyalty.models.loyalty import LoyaltyAccount
from knockbites_loyalty.services.loyalty.projector import BalanceProjector, ReconciliationReport

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class LedgerReconciliationWorker:
    """Walks accounts in id order, a batch per run, and reports drifted ones.

    Drift is logged and counted; balances are never rewritten here.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.ledger_reconciliation_interval_seconds
        self._batch_size = batch_size or settings.ledger_reconciliation_batch_size
        self._cursor: UUID | None = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_run_at: datetime | None = None
        self.last_drifted: list[ReconciliationReport] = []

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Ledger reconciliation worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Ledger reconciliation worker stopped")

    async def run_once(self) -> Dict[str, int]:
        session = await self._ensure_session()
        async with session as managed_session:
            stmt = select(LoyaltyAccount.id).order_by(LoyaltyAccount.id).limit(self._batch_size)
            if self._cursor is not None:
                stmt = stmt.where(LoyaltyAccount.id > self._cursor)
            account_ids = list((await managed_session.execute(stmt)).scalars())

            projector = BalanceProjector(managed_session)
            drifted: list[ReconciliationReport] = []
            for account_id in account_ids:
                report = await projector.reconcile(account_id)
                # Read-only; release the row lock before the next account.
                await managed_session.rollback()
                if report.drifted:
                    drifted.append(report)

        # Wrap around once the last batch comes back short.
        self._cursor = account_ids[-1] if len(account_ids) == self._batch_size else None
        self.last_run_at = datetime.now(timezone.utc)
        self.last_drifted = drifted
        summary = {"checked": len(account_ids), "drifted": len(drifted)}
        logger.info("Ledger reconciliation sweep completed", **summary)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Ledger reconciliation iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session
