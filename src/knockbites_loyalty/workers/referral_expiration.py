"""Periodic sweep moving overdue pending referrals to expired."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.core.settings import settings
from knockbites_loyalty.services.loyalty.referrals import ReferralRewardCoordinator

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class ReferralExpirationWorker:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.referral_expiration_interval_seconds
        self._batch_size = batch_size or settings.referral_expiration_batch_size
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_run_at: datetime | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Referral expiration worker started",
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
        logger.info("Referral expiration worker stopped")

    async def run_once(self, *, now: datetime | None = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        session = await self._ensure_session()
        async with session as managed_session:
            try:
                expired = await ReferralRewardCoordinator(managed_session).expire_stale(
                    now=now, limit=self._batch_size
                )
                await managed_session.commit()
            except Exception as exc:
                await managed_session.rollback()
                logger.exception("Referral expiration sweep failed", error=str(exc))
                raise

        self.last_run_at = now
        summary = {"expired": expired}
        logger.info("Referral expiration sweep completed", **summary)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - logged in run_once
                logger.exception("Referral expiration iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session
