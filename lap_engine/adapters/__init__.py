"""
Lap Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Collaborator interfaces and their implementations.

AVAILABLE ADAPTERS:
- HttpLedgerClient: Ledger gateway over HTTP
- MockLedgerClient: In-memory ledger for tests and dry runs
- DexScreenerMarketData: Pair lookup via DexScreener
- StaticMarketDataProvider: Fixed pair table
- MemorySessionStore: In-process session store

The component factory lives in adapters.factory and is
imported explicitly by the entry point.

============================================================
"""

from .base import (
    IdleTradingStrategy,
    LedgerClient,
    MarketDataProvider,
    SessionStore,
    TradingStrategyExecutor,
    merge_generation,
)
from .dexscreener import DexScreenerMarketData
from .http_ledger import HttpLedgerClient
from .mock import (
    MemorySessionStore,
    MockLedgerClient,
    MockLedgerConfig,
    MockTradingStrategy,
    StaticMarketDataProvider,
)

__all__ = [
    "LedgerClient",
    "MarketDataProvider",
    "TradingStrategyExecutor",
    "SessionStore",
    "IdleTradingStrategy",
    "merge_generation",
    "HttpLedgerClient",
    "DexScreenerMarketData",
    "MockLedgerClient",
    "MockLedgerConfig",
    "MockTradingStrategy",
    "StaticMarketDataProvider",
    "MemorySessionStore",
]
