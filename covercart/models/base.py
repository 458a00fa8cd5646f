# covercart/models/base.py
"""
Base model with common fields and functionality (SQLAlchemy 2.x, DeclarativeBase).

- Naming conventions so alembic and the ORM agree on constraint/index names.
- utc_now(): naive UTC; every DateTime column in this project is naive UTC.
- new_id(): opaque, immutable string identifiers for orders.
- TimestampMixin with created_at/updated_at.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, MetaData
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    """Naive UTC "now"; columns are DateTime without timezone=True."""
    return datetime.utcnow()


def new_id() -> str:
    return uuid.uuid4().hex


# --------------------------------------------------------------------------------------
# SQLAlchemy naming conventions (alembic and constraint/index names)
# --------------------------------------------------------------------------------------
NAMING_CONVENTIONS: dict[str, str] = {
    "ix": "ix__%(table_name)s__%(column_0_N_name)s",
    "uq": "uq__%(table_name)s__%(column_0_N_name)s",
    "ck": "ck__%(table_name)s__%(constraint_name)s",
    "fk": "fk__%(table_name)s__%(column_0_N_name)s__%(referred_table_name)s",
    "pk": "pk__%(table_name)s",
}


class Base(DeclarativeBase):
    """Root declarative base with naming conventions."""

    metadata = MetaData(naming_convention=NAMING_CONVENTIONS)

    def __repr__(self) -> str:  # pragma: no cover
        try:
            cols = []
            for k in self.__mapper__.c.keys():
                v = getattr(self, k, None)
                if isinstance(v, str) and len(v) > 64:
                    v = v[:64] + "…"
                cols.append(f"{k}={v!r}")
            return f"<{self.__class__.__name__}({', '.join(cols)})>"
        except Exception:
            return super().__repr__()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


__all__ = ["Base", "TimestampMixin", "NAMING_CONVENTIONS", "utc_now", "new_id"]
