"""
Lap Engine - Types.

============================================================
PURPOSE
============================================================
Data model shared by every phase of the lap engine.

WORKER LIFECYCLE:
    created (regeneration) -> funded/active (distribution)
    -> swept (collection) -> retired (lap end)

CREDENTIAL RULE:
    WorkerIdentity.credential never appears in repr() or
    to_dict(). Only the session store serializes it.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


ZERO = Decimal("0")

PLACEHOLDER_ADDRESS = "pending"
"""Address of the admin placeholder saved at stage 1."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# ENUMS
# ============================================================

class ResourceKind(Enum):
    """Resource moved by the ledger."""

    PRIMARY = "primary"
    """Base transferable unit (native currency). Pays fees."""

    SECONDARY = "secondary"
    """Optional second asset distributed alongside the primary."""


class LapStatus(Enum):
    """Final (or running) status of a lap."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    def is_terminal(self) -> bool:
        return self != LapStatus.RUNNING


class CollectionStatus(Enum):
    """Per-worker collection status."""

    PENDING = "pending"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferStatus(Enum):
    """Per-recipient transfer status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SessionStage(IntEnum):
    """
    Durable session progress markers.

    A stage value means the named step has completed.
    """

    PAIR_DISCOVERED = 1
    ADMIN_CREATED = 2
    POOL_GENERATED = 3
    PRIMARY_DISTRIBUTED = 4
    SECONDARY_DISTRIBUTED = 5
    ACCOUNTS_SWEPT = 6

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]

    @classmethod
    def parse(cls, value: Any) -> "SessionStage":
        """Parse an int-like value, raising ValueError when out of range."""
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid restart point: {value}") from None


_STAGE_LABELS = {
    SessionStage.PAIR_DISCOVERED: "After pair discovery",
    SessionStage.ADMIN_CREATED: "After admin identity creation",
    SessionStage.POOL_GENERATED: "After worker pool generation",
    SessionStage.PRIMARY_DISTRIBUTED: "After primary distribution",
    SessionStage.SECONDARY_DISTRIBUTED: "After secondary distribution",
    SessionStage.ACCOUNTS_SWEPT: "Accounts swept and closed",
}


# ============================================================
# WORKER IDENTITY
# ============================================================

@dataclass
class WorkerIdentity:
    """
    Ephemeral credentialed actor holding resource balances.

    Owned by the phase currently executing; nothing else mutates it
    while a lap is in progress.
    """

    id: int
    """Pool-local sequence number."""

    address: str
    """Public identifier on the ledger."""

    credential: Optional[str] = field(default=None, repr=False, compare=False)
    """Opaque secret material. Never logged."""

    primary_balance: Decimal = ZERO
    """Last known primary balance."""

    secondary_balance: Decimal = ZERO
    """Last known secondary balance."""

    active: bool = False
    """True only after receiving nonzero primary resource."""

    created_at: datetime = field(default_factory=utcnow)
    """Creation timestamp."""

    retired_at: Optional[datetime] = None
    """Set when the worker is retired at lap end."""

    @property
    def is_retired(self) -> bool:
        return self.retired_at is not None

    def credit(self, kind: ResourceKind, amount: Decimal) -> None:
        if kind == ResourceKind.PRIMARY:
            self.primary_balance += amount
        else:
            self.secondary_balance += amount

    def debit(self, kind: ResourceKind, amount: Decimal) -> None:
        if kind == ResourceKind.PRIMARY:
            self.primary_balance = max(ZERO, self.primary_balance - amount)
        else:
            self.secondary_balance = max(ZERO, self.secondary_balance - amount)

    def retire(self) -> None:
        """Discard the credential and mark the worker unusable."""
        self.credential = None
        self.active = False
        self.retired_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "primary_balance": str(self.primary_balance),
            "secondary_balance": str(self.secondary_balance),
            "active": self.active,
            "created_at": self.created_at.isoformat(),
            "retired_at": self.retired_at.isoformat() if self.retired_at else None,
        }


@dataclass
class BalanceSnapshot:
    """Balances read from the ledger for one identity."""

    primary: Decimal = ZERO
    secondary: Decimal = ZERO


@dataclass
class TransferReceipt:
    """Receipt returned by a successful ledger transfer."""

    reference: str
    """Ledger transaction reference."""

    amount: Decimal
    kind: ResourceKind
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class PairInfo:
    """Tradeable pair resolved by the market data provider."""

    resource_ref: str
    """Reference of the secondary resource (e.g. token address)."""

    pair_ref: str
    """Reference of the market/pool trading the resource."""

    resource_name: str = ""
    price: Optional[Decimal] = None
    liquidity: Optional[Decimal] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_ref": self.resource_ref,
            "pair_ref": self.pair_ref,
            "resource_name": self.resource_name,
            "price": str(self.price) if self.price is not None else None,
            "liquidity": str(self.liquidity) if self.liquidity is not None else None,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PairInfo":
        return cls(
            resource_ref=data["resource_ref"],
            pair_ref=data["pair_ref"],
            resource_name=data.get("resource_name", ""),
            price=Decimal(data["price"]) if data.get("price") is not None else None,
            liquidity=Decimal(data["liquidity"]) if data.get("liquidity") is not None else None,
            extra=data.get("extra") or {},
        )


@dataclass
class TradingResult:
    """Resource deltas reported by the trading strategy."""

    primary_delta: Decimal = ZERO
    secondary_delta: Decimal = ZERO


# ============================================================
# COLLECTION
# ============================================================

@dataclass
class CollectionRecord:
    """Outcome of sweeping one worker."""

    worker_id: int
    address: str
    status: CollectionStatus = CollectionStatus.PENDING
    primary_collected: Decimal = ZERO
    secondary_collected: Decimal = ZERO
    error: Optional[str] = None
    attempts: int = 0
    """Ledger calls issued for this worker, retries included."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "address": self.address,
            "status": self.status.value,
            "primary_collected": str(self.primary_collected),
            "secondary_collected": str(self.secondary_collected),
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class CollectionResult:
    """Outcome of a full collection phase."""

    success: bool
    total_primary_collected: Decimal = ZERO
    total_secondary_collected: Decimal = ZERO
    records: List[CollectionRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed_records(self) -> List[CollectionRecord]:
        return [r for r in self.records if r.status == CollectionStatus.FAILED]

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_records)


# ============================================================
# DISTRIBUTION
# ============================================================

@dataclass
class DistributionPlan:
    """Per-recipient allocation of a resource pool."""

    total_amount: Decimal
    per_recipient_amount: Decimal
    recipients: List[WorkerIdentity]
    kind: ResourceKind = ResourceKind.PRIMARY

    @property
    def planned_total(self) -> Decimal:
        return self.per_recipient_amount * len(self.recipients)


@dataclass
class TransferRecord:
    """Outcome of one distribution transfer."""

    worker_id: int
    address: str
    amount: Decimal
    kind: ResourceKind
    status: TransferStatus = TransferStatus.PENDING
    reference: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


@dataclass
class DistributionResult:
    """Outcome of distributing one resource to a set of recipients."""

    kind: ResourceKind
    planned_amount: Decimal = ZERO
    amount_distributed: Decimal = ZERO
    records: List[TransferRecord] = field(default_factory=list)
    skipped: bool = False

    @property
    def successful_recipients(self) -> int:
        return sum(1 for r in self.records if r.status == TransferStatus.COMPLETED)

    @property
    def failed_recipients(self) -> int:
        return sum(1 for r in self.records if r.status == TransferStatus.FAILED)

    @property
    def total_failure(self) -> bool:
        """Every attempted transfer failed."""
        return bool(self.records) and self.successful_recipients == 0

    @property
    def is_partial(self) -> bool:
        return self.failed_recipients > 0 and not self.total_failure


# ============================================================
# LAP RECORD
# ============================================================

@dataclass
class LapRecord:
    """
    One lap of the session.

    Immutable once finalized: finalize() may be called once.
    """

    lap_number: int
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    total_primary_collected: Decimal = ZERO
    total_secondary_collected: Decimal = ZERO
    workers_regenerated: int = 0
    status: LapStatus = LapStatus.RUNNING
    error_message: Optional[str] = None

    pool_size_at_start: int = 0
    primary_distributed: Decimal = ZERO
    secondary_distributed: Decimal = ZERO
    active_workers: int = 0
    failed_collections: int = 0
    failed_transfers: int = 0
    trading_primary_delta: Decimal = ZERO
    trading_secondary_delta: Decimal = ZERO
    trading_error: Optional[str] = None
    phase_durations: Dict[str, float] = field(default_factory=dict)
    """Elapsed seconds per phase, keyed by phase value."""

    @property
    def is_finalized(self) -> bool:
        return self.status.is_terminal()

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def record_phase(self, phase: str, elapsed_seconds: float) -> None:
        if self.is_finalized:
            raise ValueError(f"Lap {self.lap_number} is already finalized")
        self.phase_durations[phase] = self.phase_durations.get(phase, 0.0) + elapsed_seconds

    def finalize(self, status: LapStatus, error_message: Optional[str] = None) -> None:
        if self.is_finalized:
            raise ValueError(f"Lap {self.lap_number} is already finalized")
        if not status.is_terminal():
            raise ValueError("A lap can only be finalized with a terminal status")
        self.status = status
        self.error_message = error_message
        self.end_time = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lap_number": self.lap_number,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "total_primary_collected": str(self.total_primary_collected),
            "total_secondary_collected": str(self.total_secondary_collected),
            "workers_regenerated": self.workers_regenerated,
            "status": self.status.value,
            "error_message": self.error_message,
            "pool_size_at_start": self.pool_size_at_start,
            "primary_distributed": str(self.primary_distributed),
            "secondary_distributed": str(self.secondary_distributed),
            "active_workers": self.active_workers,
            "failed_collections": self.failed_collections,
            "failed_transfers": self.failed_transfers,
            "trading_error": self.trading_error,
            "phase_durations": dict(self.phase_durations),
        }


# ============================================================
# SESSION CHECKPOINT
# ============================================================

@dataclass
class SessionCheckpoint:
    """
    Minimal durable state needed to resume a session.

    `workers` holds only the latest generation; older generations
    remain in the store for audit but are never loaded.
    """

    session_ref: str
    stage: SessionStage
    resource_ref: str
    resource_name: str = ""
    pair: Optional[PairInfo] = None
    admin: Optional[WorkerIdentity] = None
    workers: List[WorkerIdentity] = field(default_factory=list)
    stranded_workers: List[WorkerIdentity] = field(default_factory=list)
    """Retired-pool workers whose collection failed; swept at stage 6."""
    pool_size: int = 0
    funding_amount: Decimal = ZERO
    last_lap_number: int = 0
    """Highest lap number started by this session; 0 before the first lap."""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_admin(self) -> bool:
        return (
            self.admin is not None
            and bool(self.admin.credential)
            and self.admin.address != PLACEHOLDER_ADDRESS
        )

    @property
    def sweepable_workers(self) -> List[WorkerIdentity]:
        """Workers that still hold a credential, current pool first."""
        return [w for w in self.workers + self.stranded_workers if w.credential]


# ============================================================
# CONTROL SURFACE
# ============================================================

@dataclass
class ControlAck:
    """Immediate acknowledgment returned by every control call."""

    accepted: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"accepted": self.accepted, "message": self.message}


@dataclass
class ControlStatus:
    """Snapshot reported by the control surface."""

    running: bool
    current_lap: int
    global_flag: bool
    paused: bool = False
    stage: Optional[SessionStage] = None
    phase: Optional[str] = None
    session_ref: Optional[str] = None
    last_error: Optional[str] = None
    summary: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "current_lap": self.current_lap,
            "global_flag": self.global_flag,
            "paused": self.paused,
            "stage": int(self.stage) if self.stage is not None else None,
            "phase": self.phase,
            "session_ref": self.session_ref,
            "last_error": self.last_error,
            "summary": self.summary,
        }
