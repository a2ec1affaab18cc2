from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every loyalty and order table."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_metadata():
    """Return metadata with all model modules registered (used by Alembic)."""

    import knockbites_loyalty.models  # noqa: F401

    return Base.metadata
