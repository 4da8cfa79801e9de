"""
Lap Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the lap engine.

CRITICAL CONSTRAINTS:
- Every remote call has a bound
- Retries are bounded; timed-out transfers are never retried
- Throughput between workers is set by the rate limiter only

ENVIRONMENT:
Values are read by LapEngineConfig.from_env() after
load_dotenv(). Credentials stay in the environment and are
referenced by variable name.

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from dotenv import load_dotenv


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Bounded retry with exponential backoff.

    max_retries=0 means a single attempt.
    """

    max_retries: int = 3
    """Maximum number of retry attempts."""

    initial_delay_seconds: float = 1.0
    """Initial delay before first retry."""

    max_delay_seconds: float = 30.0
    """Maximum delay between retries."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    retry_on_timeout: bool = True
    """Whether to retry on guard timeouts."""

    retry_on_network_error: bool = True
    """Whether to retry on retryable network errors."""

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    @classmethod
    def disabled(cls) -> "RetryConfig":
        return cls(max_retries=0)


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """Bounds applied by the guard, in seconds."""

    collection_per_worker_seconds: float = 30.0
    """Bound for each ledger call while sweeping one worker."""

    regeneration_batch_seconds: float = 60.0
    """Bound for creating the whole replacement pool."""

    identity_creation_seconds: float = 30.0
    """Bound for a single identity creation."""

    distribution_phase_seconds: float = 120.0
    """Bound for one full distribution phase."""

    transfer_seconds: float = 30.0
    """Bound for a single distribution transfer."""

    trading_grace_seconds: float = 30.0
    """Extra time the strategy may overrun its duration."""

    pair_resolution_seconds: float = 15.0
    """Bound for resolving a pair through market data."""

    store_seconds: float = 10.0
    """Bound for a session store operation."""


# ============================================================
# RATE LIMIT CONFIGURATION
# ============================================================

@dataclass
class RateLimitConfig:
    """
    Token bucket shared by every per-worker ledger operation.

    Default matches one operation every 0.7s.
    """

    enabled: bool = True
    """Whether throttling is applied at all."""

    operations_per_second: float = 1.0 / 0.7
    """Sustained refill rate."""

    burst: int = 1
    """Bucket capacity."""


# ============================================================
# POOL CONFIGURATION
# ============================================================

@dataclass
class PoolConfig:
    """Worker pool and resource handling."""

    min_pool_size: int = 1
    max_pool_size: int = 100

    amount_decimals: int = 9
    """Resource precision; per-recipient amounts round down to it."""

    primary_fee_reserve: Decimal = Decimal("0.000906")
    """Primary left on each worker when sweeping (fees + rent)."""

    secondary_sweep_threshold: Decimal = Decimal("0")
    """Secondary balances at or below this are not swept."""

    over_distribution_epsilon: Decimal = Decimal("1e-12")
    """Tolerance when checking planned total against available total."""

    close_accounts_on_sweep: bool = True
    """Close worker secondary accounts during the stage 6 sweep."""

    final_sweep_reserve: Decimal = Decimal("0.000005")
    """Primary left on each worker by the stage 6 sweep (one transfer fee)."""


# ============================================================
# STRATEGIES
# ============================================================

@dataclass
class StrategyProfile:
    """Named trading strategy and its per-lap duration."""

    strategy_id: str
    lap_duration_seconds: float
    description: str = ""


def default_strategies() -> Dict[str, StrategyProfile]:
    return {
        "increase_makers_volume": StrategyProfile(
            strategy_id="increase_makers_volume",
            lap_duration_seconds=181.0,
            description="Rotate makers every lap",
        ),
        "increase_volume_only": StrategyProfile(
            strategy_id="increase_volume_only",
            lap_duration_seconds=1_200_000.0,
            description="Volume only, practically a single long lap",
        ),
    }


# ============================================================
# BACKENDS
# ============================================================

@dataclass
class LedgerConfig:
    """Which ledger client to build and how to reach it."""

    backend: str = "mock"
    """'mock' or 'http'."""

    base_url: str = "http://localhost:8899"
    """Ledger gateway base URL (http backend)."""

    api_key_env: str = "LAP_LEDGER_API_KEY"
    """Environment variable holding the gateway API key."""

    connection_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 30.0


@dataclass
class MarketDataConfig:
    """Market data provider settings."""

    backend: str = "static"
    """'static' or 'dexscreener'."""

    base_url: str = "https://api.dexscreener.com"
    preferred_dex: Optional[str] = None
    """Prefer pairs on this dex id when several match."""


@dataclass
class StorageConfig:
    """Session store settings."""

    backend: str = "json"
    """'json', 'sql' or 'memory'."""

    session_dir: str = "./sessions"
    """Directory for JSON session files."""

    database_url: Optional[str] = None
    """SQLAlchemy URL for the sql backend; falls back to DATABASE_URL."""

    write_retries: int = 20
    write_retry_delay_seconds: float = 0.5

    max_generations: int = 10
    """Worker generations kept per session; older ones are pruned."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class LapEngineConfig:
    """
    Master configuration for the lap engine.
    """

    read_retry: RetryConfig = field(default_factory=RetryConfig)
    """Retry for balance reads and identity creation."""

    transfer_retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=2, retry_on_timeout=False)
    )
    """Retry for transfers. Timed-out transfers have unknown outcome."""

    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    strategies: Dict[str, StrategyProfile] = field(default_factory=default_strategies)

    log_level: str = "INFO"
    log_format: str = "text"

    def get_strategy(self, strategy_id: str) -> Optional[StrategyProfile]:
        return self.strategies.get(strategy_id)

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when valid)."""
        errors = []

        if self.pool.min_pool_size < 1:
            errors.append("pool.min_pool_size must be at least 1")
        if self.pool.max_pool_size < self.pool.min_pool_size:
            errors.append("pool.max_pool_size must be >= pool.min_pool_size")
        if self.pool.primary_fee_reserve < 0:
            errors.append("pool.primary_fee_reserve must not be negative")
        if self.rate_limit.enabled and self.rate_limit.operations_per_second <= 0:
            errors.append("rate_limit.operations_per_second must be positive")
        if self.rate_limit.burst < 1:
            errors.append("rate_limit.burst must be at least 1")
        for name in ("read_retry", "transfer_retry"):
            retry = getattr(self, name)
            if retry.max_retries < 0:
                errors.append(f"{name}.max_retries must not be negative")
            if retry.backoff_multiplier < 1:
                errors.append(f"{name}.backoff_multiplier must be >= 1")
        if self.ledger.backend not in ("mock", "http"):
            errors.append(f"Unknown ledger backend: {self.ledger.backend}")
        if self.market_data.backend not in ("static", "dexscreener"):
            errors.append(f"Unknown market data backend: {self.market_data.backend}")
        if self.storage.backend not in ("json", "sql", "memory"):
            errors.append(f"Unknown storage backend: {self.storage.backend}")
        if self.storage.max_generations < 1:
            errors.append("storage.max_generations must be at least 1")
        if not self.strategies:
            errors.append("At least one strategy profile is required")

        return errors

    @classmethod
    def for_testing(cls) -> "LapEngineConfig":
        """Get configuration for testing: fast bounds, no throttling, no backoff."""
        return cls(
            read_retry=RetryConfig(max_retries=1, initial_delay_seconds=0.0),
            transfer_retry=RetryConfig(
                max_retries=1,
                initial_delay_seconds=0.0,
                retry_on_timeout=False,
            ),
            timeout=TimeoutConfig(
                collection_per_worker_seconds=0.5,
                regeneration_batch_seconds=2.0,
                identity_creation_seconds=0.5,
                distribution_phase_seconds=5.0,
                transfer_seconds=0.5,
                trading_grace_seconds=0.5,
                pair_resolution_seconds=0.5,
                store_seconds=1.0,
            ),
            rate_limit=RateLimitConfig(enabled=False),
            pool=PoolConfig(primary_fee_reserve=Decimal("0"), final_sweep_reserve=Decimal("0")),
            ledger=LedgerConfig(backend="mock"),
            storage=StorageConfig(backend="memory", write_retries=2, write_retry_delay_seconds=0.0),
            strategies={
                "test": StrategyProfile(strategy_id="test", lap_duration_seconds=0.01),
                **default_strategies(),
            },
        )

    @classmethod
    def for_production(cls) -> "LapEngineConfig":
        """Get configuration for production."""
        return cls(
            ledger=LedgerConfig(backend="http"),
            market_data=MarketDataConfig(backend="dexscreener"),
            storage=StorageConfig(backend="sql"),
            log_format="json",
        )

    @classmethod
    def from_env(cls, base: Optional["LapEngineConfig"] = None) -> "LapEngineConfig":
        """
        Overlay environment variables on a base configuration.

        Args:
            base: Starting configuration (default: LapEngineConfig())

        Returns:
            LapEngineConfig
        """
        load_dotenv()
        config = base or cls()

        config.ledger.backend = os.getenv("LAP_LEDGER_BACKEND", config.ledger.backend)
        config.ledger.base_url = os.getenv("LAP_LEDGER_URL", config.ledger.base_url)
        config.market_data.backend = os.getenv("LAP_MARKET_DATA_BACKEND", config.market_data.backend)
        config.market_data.base_url = os.getenv("LAP_MARKET_DATA_URL", config.market_data.base_url)
        config.storage.backend = os.getenv("LAP_SESSION_BACKEND", config.storage.backend)
        config.storage.session_dir = os.getenv("LAP_SESSION_DIR", config.storage.session_dir)
        config.storage.database_url = os.getenv("DATABASE_URL", config.storage.database_url)
        config.log_level = os.getenv("LAP_LOG_LEVEL", config.log_level)

        ops = os.getenv("LAP_OPS_PER_SECOND")
        if ops:
            config.rate_limit.operations_per_second = float(ops)

        return config
