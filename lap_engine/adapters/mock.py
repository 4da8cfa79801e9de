"""
Lap Engine - Mock Collaborators.

============================================================
PURPOSE
============================================================
In-memory ledger, market data, strategy and session store for
tests and dry runs. They satisfy the same interfaces as the real
implementations, so the orchestrator runs unchanged.

FEATURES:
- Configurable latency
- Configurable error injection (network, timeout, rejection)
- Deterministic failures by address
- Seeded randomness for reproducible scenarios
- Full balance and operation tracking

============================================================
"""

import asyncio
import copy
import hashlib
import logging
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..errors import (
    CheckpointError,
    InsufficientFundsError,
    LedgerError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from ..types import (
    ZERO,
    BalanceSnapshot,
    PairInfo,
    ResourceKind,
    SessionCheckpoint,
    TradingResult,
    TransferReceipt,
    WorkerIdentity,
)
from .base import (
    LedgerClient,
    MarketDataProvider,
    SessionStore,
    TradingStrategyExecutor,
    merge_generation,
)


logger = logging.getLogger(__name__)


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockLedgerConfig:
    """Configuration for the mock ledger."""

    # Latency simulation
    min_latency_ms: float = 0.0
    max_latency_ms: float = 0.0

    # Error injection
    network_error_probability: float = 0.0
    """Probability a balance read or transfer raises NetworkError."""

    timeout_probability: float = 0.0
    """Probability an operation hangs for hang_seconds."""

    identity_failure_probability: float = 0.0
    """Probability identity creation raises NetworkError."""

    hang_seconds: float = 5.0
    """How long a simulated hang lasts."""

    transfer_fee: Decimal = ZERO
    """Primary charged to the source on every transfer."""

    account_deposit: Decimal = ZERO
    """Primary returned when a secondary account is closed."""

    seed: Optional[int] = None
    """Seed for reproducible randomness."""


# ============================================================
# MOCK LEDGER
# ============================================================

class MockLedgerClient(LedgerClient):
    """
    In-memory ledger.

    Balances are keyed by address; the primary resource uses the
    key "primary", secondary resources use their reference.
    """

    PRIMARY_KEY = "primary"

    def __init__(self, config: Optional[MockLedgerConfig] = None):
        self._config = config or MockLedgerConfig()
        self._rng = random.Random(self._config.seed)
        self._connected = False

        self._balances: Dict[str, Dict[str, Decimal]] = {}
        self._credentials: Dict[str, str] = {}
        self._open_accounts: Set[Tuple[str, str]] = set()
        self._transfer_count = 0

        # Error injection
        self._fail_addresses: Set[str] = set()
        self._force_next_error: Optional[str] = None

        self.operations: List[Tuple[str, str, Decimal]] = []
        """(operation, address, amount) log in call order."""

    @property
    def ledger_id(self) -> str:
        return "mock"

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        await self._simulate_latency()
        self._connected = True
        logger.info("MockLedgerClient connected")

    async def disconnect(self) -> None:
        self._connected = False
        logger.info("MockLedgerClient disconnected")

    # --------------------------------------------------------
    # TEST HELPERS
    # --------------------------------------------------------

    def fund(
        self,
        address: str,
        primary: Decimal = ZERO,
        secondary: Decimal = ZERO,
        resource_ref: str = "",
    ) -> None:
        """Credit balances directly, bypassing transfers."""
        balances = self._balances.setdefault(address, {})
        balances[self.PRIMARY_KEY] = balances.get(self.PRIMARY_KEY, ZERO) + primary
        if secondary:
            balances[resource_ref] = balances.get(resource_ref, ZERO) + secondary
            self._open_accounts.add((address, resource_ref))

    def balance_of(self, address: str, key: str = PRIMARY_KEY) -> Decimal:
        return self._balances.get(address, {}).get(key, ZERO)

    def fail_address(self, address: str) -> None:
        """Make every read or transfer touching `address` fail."""
        self._fail_addresses.add(address)

    def clear_failures(self) -> None:
        self._fail_addresses.clear()
        self._force_next_error = None

    def force_next_error(self, kind: str) -> None:
        """Inject one error: 'network', 'timeout' or 'rejected'."""
        self._force_next_error = kind

    def is_account_open(self, address: str, resource_ref: str) -> bool:
        return (address, resource_ref) in self._open_accounts

    @property
    def transfer_count(self) -> int:
        return self._transfer_count

    # --------------------------------------------------------
    # IDENTITIES
    # --------------------------------------------------------

    async def create_identity(self) -> WorkerIdentity:
        await self._simulate_latency()
        await self._maybe_fail("create_identity", None, self._config.identity_failure_probability)

        credential = f"{self._rng.getrandbits(256):064x}"
        address = f"mock{self._rng.getrandbits(128):032x}"
        self._credentials[credential] = address
        self._balances.setdefault(address, {self.PRIMARY_KEY: ZERO})
        self.operations.append(("create_identity", address, ZERO))
        return WorkerIdentity(id=0, address=address, credential=credential)

    async def import_identity(self, credential: str) -> WorkerIdentity:
        await self._simulate_latency()
        if not credential:
            raise ValidationError("Credential must not be empty", code="VAL_AMOUNT")

        address = self._credentials.get(credential)
        if address is None:
            address = "mock" + hashlib.sha256(credential.encode()).hexdigest()[:32]
            self._credentials[credential] = address
            self._balances.setdefault(address, {self.PRIMARY_KEY: ZERO})
        return WorkerIdentity(id=0, address=address, credential=credential)

    # --------------------------------------------------------
    # BALANCES AND TRANSFERS
    # --------------------------------------------------------

    async def get_balance(
        self,
        identity: WorkerIdentity,
        resource_ref: str,
    ) -> BalanceSnapshot:
        await self._simulate_latency()
        await self._maybe_fail("get_balance", identity.address, self._config.network_error_probability)

        balances = self._balances.get(identity.address, {})
        return BalanceSnapshot(
            primary=balances.get(self.PRIMARY_KEY, ZERO),
            secondary=balances.get(resource_ref, ZERO),
        )

    async def transfer(
        self,
        source: WorkerIdentity,
        destination: WorkerIdentity,
        amount: Decimal,
        kind: ResourceKind,
        resource_ref: str,
    ) -> TransferReceipt:
        await self._simulate_latency()
        if amount <= 0:
            raise ValidationError(f"Transfer amount must be positive: {amount}")
        self._check_credential(source)
        await self._maybe_fail("transfer", source.address, self._config.network_error_probability)
        if destination.address in self._fail_addresses:
            raise NetworkError(f"Simulated network error for {destination.address}")

        key = self.PRIMARY_KEY if kind == ResourceKind.PRIMARY else resource_ref
        source_balances = self._balances.setdefault(source.address, {})
        fee = self._config.transfer_fee

        available = source_balances.get(key, ZERO)
        if available < amount:
            raise InsufficientFundsError(
                f"{source.address} holds {available}, needs {amount} ({kind.value})"
            )
        if source_balances.get(self.PRIMARY_KEY, ZERO) - (amount if key == self.PRIMARY_KEY else ZERO) < fee:
            raise InsufficientFundsError(f"{source.address} cannot pay transfer fee {fee}")

        source_balances[key] = available - amount
        source_balances[self.PRIMARY_KEY] = source_balances.get(self.PRIMARY_KEY, ZERO) - fee
        dest_balances = self._balances.setdefault(destination.address, {})
        dest_balances[key] = dest_balances.get(key, ZERO) + amount
        if kind == ResourceKind.SECONDARY:
            self._open_accounts.add((destination.address, resource_ref))

        self._transfer_count += 1
        self.operations.append((f"transfer_{kind.value}", source.address, amount))
        return TransferReceipt(reference=f"mocktx{self._transfer_count}", amount=amount, kind=kind)

    async def close_account(
        self,
        identity: WorkerIdentity,
        destination: WorkerIdentity,
        resource_ref: str,
    ) -> Optional[TransferReceipt]:
        await self._simulate_latency()
        self._check_credential(identity)
        await self._maybe_fail("close_account", identity.address, self._config.network_error_probability)

        if (identity.address, resource_ref) not in self._open_accounts:
            return None
        if self._balances.get(identity.address, {}).get(resource_ref, ZERO) > 0:
            raise LedgerError(f"Account of {identity.address} still holds {resource_ref}")

        self._open_accounts.discard((identity.address, resource_ref))
        self._balances[identity.address].pop(resource_ref, None)
        deposit = self._config.account_deposit
        if deposit > 0:
            dest = self._balances.setdefault(destination.address, {})
            dest[self.PRIMARY_KEY] = dest.get(self.PRIMARY_KEY, ZERO) + deposit
        self.operations.append(("close_account", identity.address, deposit))
        return TransferReceipt(reference=f"mockclose{len(self.operations)}", amount=deposit, kind=ResourceKind.PRIMARY)

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _check_credential(self, identity: WorkerIdentity) -> None:
        if not identity.credential or self._credentials.get(identity.credential) != identity.address:
            raise LedgerError(f"Identity {identity.address} cannot sign: unknown or retired credential")

    async def _maybe_fail(self, operation: str, address: Optional[str], probability: float) -> None:
        if self._force_next_error:
            kind = self._force_next_error
            self._force_next_error = None
            await self._raise_injected(kind, operation)

        if address is not None and address in self._fail_addresses:
            raise NetworkError(f"Simulated network error in {operation} for {address}")

        if self._config.timeout_probability and self._rng.random() < self._config.timeout_probability:
            await asyncio.sleep(self._config.hang_seconds)

        if probability and self._rng.random() < probability:
            raise NetworkError(f"Simulated network error in {operation}")

    async def _raise_injected(self, kind: str, operation: str) -> None:
        if kind == "timeout":
            await asyncio.sleep(self._config.hang_seconds)
            return
        if kind == "network":
            raise NetworkError(f"Injected network error in {operation}")
        raise LedgerError(f"Injected rejection in {operation}")

    async def _simulate_latency(self) -> None:
        if self._config.max_latency_ms <= 0:
            return
        latency = self._rng.uniform(self._config.min_latency_ms, self._config.max_latency_ms)
        await asyncio.sleep(latency / 1000)


# ============================================================
# STATIC MARKET DATA
# ============================================================

class StaticMarketDataProvider(MarketDataProvider):
    """Market data from a fixed table."""

    def __init__(self, pairs: Optional[Dict[str, PairInfo]] = None):
        self._pairs = dict(pairs or {})

    def add_pair(self, pair: PairInfo) -> None:
        self._pairs[pair.resource_ref] = pair

    async def resolve_pair(self, resource_ref: str) -> PairInfo:
        pair = self._pairs.get(resource_ref)
        if pair is None:
            raise NotFoundError(f"No pair found for {resource_ref}")
        return pair


# ============================================================
# SCRIPTED STRATEGY
# ============================================================

class MockTradingStrategy(TradingStrategyExecutor):
    """
    Strategy that sleeps for the duration and optionally credits
    every worker on a mock ledger.
    """

    def __init__(
        self,
        ledger: Optional[MockLedgerClient] = None,
        resource_ref: str = "",
        primary_per_worker: Decimal = ZERO,
        secondary_per_worker: Decimal = ZERO,
        error: Optional[Exception] = None,
    ):
        self._ledger = ledger
        self._resource_ref = resource_ref
        self._primary = primary_per_worker
        self._secondary = secondary_per_worker
        self._error = error
        self.runs: List[Tuple[int, float]] = []

    async def run(
        self,
        pool: Sequence[WorkerIdentity],
        duration_seconds: float,
    ) -> TradingResult:
        self.runs.append((len(pool), duration_seconds))
        await asyncio.sleep(duration_seconds)
        if self._error is not None:
            raise self._error

        if self._ledger is not None:
            for worker in pool:
                self._ledger.fund(
                    worker.address,
                    primary=self._primary,
                    secondary=self._secondary,
                    resource_ref=self._resource_ref,
                )

        return TradingResult(
            primary_delta=self._primary * len(pool),
            secondary_delta=self._secondary * len(pool),
        )


# ============================================================
# IN-MEMORY SESSION STORE
# ============================================================

class MemorySessionStore(SessionStore):
    """
    Session store kept in process memory.

    Stores deep copies so callers can keep mutating their own
    checkpoint without changing what was "persisted".
    """

    def __init__(self, max_generations: Optional[int] = None):
        self._headers: Dict[str, SessionCheckpoint] = {}
        self._generations: Dict[str, List[List[WorkerIdentity]]] = {}
        self._keep = max_generations
        self.fail_writes = False
        """When True every write raises CheckpointError."""

        self.write_count = 0

    async def load(self, session_ref: str) -> SessionCheckpoint:
        header = self._headers.get(session_ref)
        if header is None:
            raise CheckpointError(f"Session {session_ref} not found", code="CHK_MISSING")
        checkpoint = copy.deepcopy(header)
        generations = self._generations.get(session_ref) or [[]]
        checkpoint.workers = copy.deepcopy(generations[-1])
        return checkpoint

    async def save(self, checkpoint: SessionCheckpoint) -> None:
        self._check_writable(checkpoint.session_ref)
        header = copy.deepcopy(checkpoint)
        header.workers = []
        self._headers[checkpoint.session_ref] = header
        self._generations[checkpoint.session_ref] = merge_generation(
            self._generations.get(checkpoint.session_ref, []),
            copy.deepcopy(checkpoint.workers),
            lambda w: w.address,
            keep=self._keep,
        )

    async def append_workers(self, pool: Sequence[WorkerIdentity], session_ref: str) -> None:
        self._check_writable(session_ref)
        if session_ref not in self._headers:
            raise CheckpointError(f"Session {session_ref} not found", code="CHK_MISSING")
        self._generations[session_ref] = merge_generation(
            self._generations.get(session_ref, []),
            copy.deepcopy(list(pool)),
            lambda w: w.address,
            keep=self._keep,
        )

    async def delete(self, session_ref: str) -> None:
        self._headers.pop(session_ref, None)
        self._generations.pop(session_ref, None)

    async def list_sessions(self) -> List[str]:
        return sorted(self._headers)

    def generation_count(self, session_ref: str) -> int:
        return len(self._generations.get(session_ref, []))

    def _check_writable(self, session_ref: str) -> None:
        if self.fail_writes:
            raise CheckpointError(f"Simulated write failure for {session_ref}", code="CHK_WRITE_FAILED")
        self.write_count += 1
