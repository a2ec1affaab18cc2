from __future__ import annotations

from typing import AsyncIterator, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from knockbites_loyalty.core.settings import settings

engine = create_async_engine(settings.database_url, echo=settings.database_echo, future=True)
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

SessionFactory = Callable[[], AsyncSession]


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""

    async with async_session() as session:
        yield session


def get_session_factory() -> SessionFactory:
    """FastAPI dependency returning the factory used for independent units of work."""

    return async_session


__all__ = ["SessionFactory", "async_session", "engine", "get_session", "get_session_factory"]
