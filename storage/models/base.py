"""
Declarative Base, Column Types and Mixins.

============================================================
PURPOSE
============================================================
Shared building blocks of the session store models.

- Base: declarative base; `datetime` maps to timezone-aware
  DateTime and `Decimal` maps to Amount
- Amount: exact decimal kept as text, so SQLite and PostgreSQL
  return the same value that was written
- RowTimestampMixin: server-side row bookkeeping, distinct from
  the domain timestamps a checkpoint carries

============================================================
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Amount(TypeDecorator):
    """Decimal stored as its canonical string."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Optional[str]:
        if value is None:
            return None
        try:
            return str(Decimal(value))
        except (InvalidOperation, TypeError) as e:
            raise ValueError(f"Not a decimal amount: {value!r}") from e

    def process_result_value(self, value: Optional[str], dialect) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    """Declarative base for the session store models."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        Decimal: Amount(),
    }


class RowTimestampMixin:
    """Row insert/update times, maintained by the database."""

    row_created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    row_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
