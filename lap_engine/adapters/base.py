"""
Lap Engine - Collaborator Interfaces.

============================================================
PURPOSE
============================================================
Abstract interfaces for everything the lap engine talks to.

DESIGN PRINCIPLES:
- One capability interface per collaborator
- Implementation chosen once at startup (see factory.py)
- Orchestrator code never branches on capability presence
- Fake implementations satisfy the same contracts

============================================================
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, TypeVar

from ..types import (
    BalanceSnapshot,
    PairInfo,
    ResourceKind,
    SessionCheckpoint,
    TradingResult,
    TransferReceipt,
    WorkerIdentity,
)


G = TypeVar("G")


# ============================================================
# LEDGER CLIENT
# ============================================================

class LedgerClient(ABC):
    """
    Creates identities, reads balances and moves resources.

    Implementations:
    - HttpLedgerClient: ledger gateway over HTTP
    - MockLedgerClient: in-memory ledger for tests and dry runs
    """

    @property
    @abstractmethod
    def ledger_id(self) -> str:
        """Get ledger identifier."""
        pass

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """
        Connect to the ledger.

        Raises:
            NetworkError: If connection fails
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the ledger."""
        pass

    # --------------------------------------------------------
    # IDENTITIES
    # --------------------------------------------------------

    @abstractmethod
    async def create_identity(self) -> WorkerIdentity:
        """
        Create a new identity.

        Returns:
            WorkerIdentity with address and credential set; the
            pool-local id is assigned by the caller.
        """
        pass

    @abstractmethod
    async def import_identity(self, credential: str) -> WorkerIdentity:
        """
        Rebuild an identity from existing credential material.

        Raises:
            ValidationError: If the credential is malformed
        """
        pass

    # --------------------------------------------------------
    # BALANCES AND TRANSFERS
    # --------------------------------------------------------

    @abstractmethod
    async def get_balance(
        self,
        identity: WorkerIdentity,
        resource_ref: str,
    ) -> BalanceSnapshot:
        """
        Read primary and secondary balances.

        Args:
            identity: Identity to read
            resource_ref: Secondary resource reference

        Returns:
            BalanceSnapshot
        """
        pass

    @abstractmethod
    async def transfer(
        self,
        source: WorkerIdentity,
        destination: WorkerIdentity,
        amount: Decimal,
        kind: ResourceKind,
        resource_ref: str,
    ) -> TransferReceipt:
        """
        Move an amount of one resource.

        Args:
            source: Paying identity (credential required)
            destination: Receiving identity
            amount: Positive amount
            kind: Resource kind
            resource_ref: Secondary resource reference

        Returns:
            TransferReceipt

        Raises:
            NetworkError: Communication failed
            InsufficientFundsError: Source cannot cover the amount
            LedgerError: Ledger rejected the transfer
        """
        pass

    @abstractmethod
    async def close_account(
        self,
        identity: WorkerIdentity,
        destination: WorkerIdentity,
        resource_ref: str,
    ) -> Optional[TransferReceipt]:
        """
        Close the identity's secondary-resource account.

        Any reclaimed deposit goes to `destination`.

        Returns:
            Receipt, or None when there was no account to close
        """
        pass


# ============================================================
# MARKET DATA PROVIDER
# ============================================================

class MarketDataProvider(ABC):
    """Resolves tradeable pairs for a resource."""

    @abstractmethod
    async def resolve_pair(self, resource_ref: str) -> PairInfo:
        """
        Resolve the pair trading a resource.

        Raises:
            NotFoundError: No pair trades the resource
        """
        pass

    async def close(self) -> None:
        """Release any held connections."""
        return None


# ============================================================
# TRADING STRATEGY EXECUTOR
# ============================================================

class TradingStrategyExecutor(ABC):
    """Opaque work phase run against the current pool."""

    @abstractmethod
    async def run(
        self,
        pool: Sequence[WorkerIdentity],
        duration_seconds: float,
    ) -> TradingResult:
        """
        Trade with the pool for a duration.

        Returns:
            Resource deltas produced by trading
        """
        pass


class IdleTradingStrategy(TradingStrategyExecutor):
    """
    Holds the pool for the lap duration without trading itself.

    Used when trading is done by an external process working on
    the pool the session store publishes.
    """

    async def run(
        self,
        pool: Sequence[WorkerIdentity],
        duration_seconds: float,
    ) -> TradingResult:
        await asyncio.sleep(duration_seconds)
        return TradingResult()


# ============================================================
# SESSION STORE
# ============================================================

def merge_generation(
    generations: List[List[G]],
    pool: Sequence[G],
    address_of: Callable[[G], str],
    keep: Optional[int] = None,
) -> List[List[G]]:
    """
    Add `pool` as the newest worker generation.

    A pool with the same addresses as the newest generation replaces
    it (balances and flags change, identities do not); any other pool
    becomes a new generation. With `keep`, only the newest `keep`
    generations are returned.
    """
    pool = list(pool)
    if not pool:
        merged = list(generations)
    elif generations and [address_of(w) for w in generations[-1]] == [address_of(w) for w in pool]:
        merged = generations[:-1] + [pool]
    else:
        merged = generations + [pool]
    if keep is not None:
        merged = merged[-keep:]
    return merged


class SessionStore(ABC):
    """
    Durable persistence of session checkpoints.

    Worker pools are kept as generations: every regenerated pool is
    appended, older generations stay for audit, and load() returns
    only the newest one.
    """

    @abstractmethod
    async def load(self, session_ref: str) -> SessionCheckpoint:
        """
        Load a session.

        Only the latest generation of workers is returned.

        Raises:
            CheckpointError: Session does not exist
        """
        pass

    @abstractmethod
    async def save(self, checkpoint: SessionCheckpoint) -> None:
        """
        Persist a checkpoint.

        Replaces the session header (stage, admin, pair, stranded
        workers) and merges `checkpoint.workers` as the newest
        generation.

        Raises:
            CheckpointError: Write could not be completed
        """
        pass

    @abstractmethod
    async def append_workers(
        self,
        pool: Sequence[WorkerIdentity],
        session_ref: str,
    ) -> None:
        """
        Append a new worker generation to an existing session.

        Raises:
            CheckpointError: Session does not exist or write failed
        """
        pass

    @abstractmethod
    async def delete(self, session_ref: str) -> None:
        """Delete a session. Deleting a missing session is not an error."""
        pass

    @abstractmethod
    async def list_sessions(self) -> List[str]:
        """List stored session references."""
        pass
