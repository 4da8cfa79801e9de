"""
Lap Engine - Component Factory.

============================================================
PURPOSE
============================================================
Builds every collaborator from configuration exactly once,
at startup, and wires them into a controller.

FEATURES:
- Ledger backend: mock | http
- Market data backend: static | dexscreener
- Session store backend: json | sql | memory
- Lap history repository when the store is SQL
- Any component can be injected instead (tests, dry runs)

The orchestrator only ever sees the interfaces in base.py.

============================================================
USAGE
============================================================
```python
config = LapEngineConfig.from_env()
engine = build_engine(config)
await engine.start()
ack = await engine.controller.start("increase_makers_volume", session_ref)
```

============================================================
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..aggregator import LapResultAggregator
from ..checkpoint import SessionCheckpointManager
from ..config import LapEngineConfig
from ..control import LapController
from ..errors import ConfigurationError
from ..orchestrator import LapOrchestrator
from ..rate_limiter import TokenBucketRateLimiter
from ..session_runner import SessionRunner
from .base import (
    IdleTradingStrategy,
    LedgerClient,
    MarketDataProvider,
    SessionStore,
    TradingStrategyExecutor,
)
from .dexscreener import DexScreenerMarketData
from .http_ledger import HttpLedgerClient
from .mock import MemorySessionStore, MockLedgerClient, StaticMarketDataProvider


logger = logging.getLogger(__name__)


# ============================================================
# SINGLE COMPONENTS
# ============================================================

def create_ledger(config: LapEngineConfig) -> LedgerClient:
    backend = config.ledger.backend
    if backend == "mock":
        return MockLedgerClient()
    if backend == "http":
        return HttpLedgerClient(config.ledger)
    raise ConfigurationError(f"Unknown ledger backend: {backend}")


def create_market_data(config: LapEngineConfig) -> MarketDataProvider:
    backend = config.market_data.backend
    if backend == "static":
        return StaticMarketDataProvider()
    if backend == "dexscreener":
        return DexScreenerMarketData(
            config.market_data,
            timeout_seconds=config.timeout.pair_resolution_seconds,
        )
    raise ConfigurationError(f"Unknown market data backend: {backend}")


def create_session_store(config: LapEngineConfig) -> SessionStore:
    # Imported here: storage depends on lap_engine, not the other way round.
    backend = config.storage.backend
    if backend == "memory":
        return MemorySessionStore(max_generations=config.storage.max_generations)
    if backend == "json":
        from storage.json_store import JsonSessionStore
        return JsonSessionStore(config.storage)
    if backend == "sql":
        from storage.engine import initialize_database
        from storage.sql_store import SqlSessionStore
        return SqlSessionStore(
            initialize_database(config.storage.database_url),
            create_tables=False,
            max_generations=config.storage.max_generations,
        )
    raise ConfigurationError(f"Unknown storage backend: {backend}")


# ============================================================
# ENGINE
# ============================================================

@dataclass
class LapEngine:
    """Wired set of collaborators for one process."""

    config: LapEngineConfig
    ledger: LedgerClient
    market_data: MarketDataProvider
    strategy: TradingStrategyExecutor
    store: SessionStore
    orchestrator: LapOrchestrator
    checkpoints: SessionCheckpointManager
    runner: SessionRunner
    controller: LapController

    async def start(self) -> None:
        await self.ledger.connect()

    async def close(self) -> None:
        await self.controller.shutdown()
        await self.market_data.close()
        await self.ledger.disconnect()

    def attach_lap_history(self, session_ref: str) -> bool:
        """
        Persist laps of `session_ref` when the store is SQL.

        Lap numbering then also continues after the highest lap
        already in the history, so a restarted process never reuses
        a stored lap number.

        Returns:
            True if a lap history listener was registered
        """
        from storage.sql_store import LapHistoryRepository, SqlSessionStore

        if not isinstance(self.store, SqlSessionStore):
            return False

        repository = LapHistoryRepository(self.store.engine, create_tables=False)
        self.orchestrator.aggregator.register_listener(repository.listener_for(session_ref))
        self.runner.use_lap_history(repository.last_lap_number)
        return True


def build_engine(
    config: LapEngineConfig,
    ledger: Optional[LedgerClient] = None,
    market_data: Optional[MarketDataProvider] = None,
    strategy: Optional[TradingStrategyExecutor] = None,
    store: Optional[SessionStore] = None,
    aggregator: Optional[LapResultAggregator] = None,
) -> LapEngine:
    """
    Build and wire every component.

    Raises:
        ConfigurationError: Configuration invalid
    """
    problems = config.validate()
    if problems:
        raise ConfigurationError("Invalid configuration: " + "; ".join(problems))

    ledger = ledger or create_ledger(config)
    market_data = market_data or create_market_data(config)
    strategy = strategy or IdleTradingStrategy()
    store = store or create_session_store(config)

    orchestrator = LapOrchestrator(
        ledger,
        strategy,
        store,
        config,
        rate_limiter=TokenBucketRateLimiter.from_config(config.rate_limit),
        aggregator=aggregator,
    )
    checkpoints = SessionCheckpointManager(store)
    runner = SessionRunner(ledger, market_data, orchestrator, checkpoints, config)
    controller = LapController(runner, config)

    logger.info(
        f"Lap engine built: ledger={ledger.ledger_id} "
        f"market_data={type(market_data).__name__} store={type(store).__name__}"
    )
    return LapEngine(
        config=config,
        ledger=ledger,
        market_data=market_data,
        strategy=strategy,
        store=store,
        orchestrator=orchestrator,
        checkpoints=checkpoints,
        runner=runner,
        controller=controller,
    )
