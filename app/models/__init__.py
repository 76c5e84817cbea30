from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def value_enum(enum_cls: type[PyEnum], name: str) -> Enum:
    """Postgres enum column type that stores member values, not names.

    Statuses travel through the API and JSON snapshots as their lowercase
    values, so the database type uses the same labels.
    """
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


class Base(DeclarativeBase):
    """Declarative base for the scheduling engine's tables."""


class TimestampMixin:
    """Adds ``created_at`` and ``updated_at`` (UTC) to a model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
