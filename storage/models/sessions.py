"""
Session Domain ORM Models.

============================================================
PURPOSE
============================================================
Models for session checkpoints, their worker generations and
the lap history.

============================================================
DATA LIFECYCLE ROLE
============================================================
- sessions: MUTABLE header, one row per session
- session_workers: APPEND-ONLY per generation; the newest
  generation may be rewritten while its lap runs, and
  generations beyond the retention limit are pruned
- lap_records: IMMUTABLE, one row per finalized lap

Amounts are Amount columns: exact decimals kept as text.

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Amount, Base, RowTimestampMixin


class SessionModel(Base, RowTimestampMixin):
    """
    Session header.

    The admin identity and stranded workers are kept as JSON
    documents; the current pool lives in session_workers.
    """

    __tablename__ = "sessions"

    session_ref: Mapped[str] = mapped_column(
        String(120),
        primary_key=True,
        comment="Session reference"
    )

    stage: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Last completed session stage (1-6)"
    )

    resource_ref: Mapped[str] = mapped_column(String(120), nullable=False)
    resource_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    pool_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    funding_amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))
    last_lap_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Highest lap number started"
    )

    pair: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    admin: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Admin identity record, credential included"
    )
    stranded_workers: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    session_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    session_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SessionWorkerModel(Base):
    """One worker of one generation."""

    __tablename__ = "session_workers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    session_ref: Mapped[str] = mapped_column(
        String(120),
        ForeignKey("sessions.session_ref", ondelete="CASCADE"),
        nullable=False,
    )

    generation: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Pool generation, 1 = first pool of the session"
    )

    position: Mapped[int] = mapped_column(Integer, nullable=False, comment="Index within the pool")

    worker_id: Mapped[int] = mapped_column(Integer, nullable=False)
    address: Mapped[str] = mapped_column(String(120), nullable=False)
    credential: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    primary_balance: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))
    secondary_balance: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    worker_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    retired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_session_workers_generation", "session_ref", "generation"),
    )


class LapRecordModel(Base):
    """Finalized lap of a session."""

    __tablename__ = "lap_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_ref: Mapped[str] = mapped_column(String(120), nullable=False)
    lap_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    total_primary_collected: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))
    total_secondary_collected: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))
    primary_distributed: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))
    secondary_distributed: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))
    workers_regenerated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_workers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_collections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_transfers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trading_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phase_durations: Mapped[Dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_lap_records_session_lap", "session_ref", "lap_number", unique=True),
    )
