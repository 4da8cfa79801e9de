"""
Lap Engine Package.

============================================================
PURPOSE
============================================================
Drives a rotating pool of ephemeral worker identities through
laps: trade -> collect -> regenerate -> redistribute ->
validate, and persists enough checkpoint state to resume a
session from any of six stages.

CRITICAL PRINCIPLES:
    Per-worker failures never abort a phase.
    Only a FatalError ends a lap early, and it halts the session.
    Every external call is bounded by the guard.

============================================================
MODULES
============================================================
- types: Worker, lap, checkpoint and control data model
- errors: Error taxonomy and codes
- config: Engine configuration
- guard: Timeout guard and bounded retry
- rate_limiter: Token bucket between per-worker operations
- cancellation: Run token (pause / resume / stop)
- state_machine: Lap phase lifecycle
- collection: Sweep every worker to the admin identity
- regeneration: Create a fresh worker pool
- distribution: Split a resource evenly across the pool
- sweep: Final sweep and account close
- aggregator: Lap history and session totals
- orchestrator: Lap loop
- checkpoint: Session stage bookkeeping
- session_runner: Resumable session entry point
- control: Operator control surface
- adapters: Ledger, market data, strategy and store
- cli: Command line interface

============================================================
"""

__version__ = "1.0.0"

# ============================================================
# TYPES
# ============================================================
from .types import (
    BalanceSnapshot,
    CollectionRecord,
    CollectionResult,
    CollectionStatus,
    ControlAck,
    ControlStatus,
    DistributionPlan,
    DistributionResult,
    LapRecord,
    LapStatus,
    PairInfo,
    ResourceKind,
    SessionCheckpoint,
    SessionStage,
    TradingResult,
    TransferReceipt,
    TransferRecord,
    TransferStatus,
    WorkerIdentity,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    CheckpointError,
    ConfigurationError,
    FatalError,
    GuardTimeoutError,
    InsufficientFundsError,
    LapEngineError,
    LedgerError,
    NetworkError,
    NotFoundError,
    PartialFailure,
    StateTransitionError,
    ValidationError,
)

# ============================================================
# CONFIG
# ============================================================
from .config import (
    LapEngineConfig,
    PoolConfig,
    RateLimitConfig,
    RetryConfig,
    StrategyProfile,
    TimeoutConfig,
)

# ============================================================
# ENGINE
# ============================================================
from .aggregator import LapResultAggregator, SessionSummary
from .cancellation import RunToken
from .checkpoint import SessionCheckpointManager
from .collection import CollectionExecutor
from .control import LapController
from .distribution import DistributionEngine
from .guard import guard, guarded_call
from .orchestrator import LapOrchestrator
from .rate_limiter import TokenBucketRateLimiter
from .regeneration import PoolRegenerator
from .session_runner import SessionRequest, SessionRunner
from .state_machine import LapPhase, LapStateMachine
from .sweep import AccountSweeper


__all__ = [
    # Types
    "BalanceSnapshot",
    "CollectionRecord",
    "CollectionResult",
    "CollectionStatus",
    "ControlAck",
    "ControlStatus",
    "DistributionPlan",
    "DistributionResult",
    "LapRecord",
    "LapStatus",
    "PairInfo",
    "ResourceKind",
    "SessionCheckpoint",
    "SessionStage",
    "TradingResult",
    "TransferReceipt",
    "TransferRecord",
    "TransferStatus",
    "WorkerIdentity",
    # Errors
    "CheckpointError",
    "ConfigurationError",
    "FatalError",
    "GuardTimeoutError",
    "InsufficientFundsError",
    "LapEngineError",
    "LedgerError",
    "NetworkError",
    "NotFoundError",
    "PartialFailure",
    "StateTransitionError",
    "ValidationError",
    # Config
    "LapEngineConfig",
    "PoolConfig",
    "RateLimitConfig",
    "RetryConfig",
    "StrategyProfile",
    "TimeoutConfig",
    # Engine
    "AccountSweeper",
    "CollectionExecutor",
    "DistributionEngine",
    "LapController",
    "LapOrchestrator",
    "LapPhase",
    "LapResultAggregator",
    "LapStateMachine",
    "PoolRegenerator",
    "RunToken",
    "SessionCheckpointManager",
    "SessionRequest",
    "SessionRunner",
    "SessionSummary",
    "TokenBucketRateLimiter",
    "guard",
    "guarded_call",
]
