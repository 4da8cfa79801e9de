"""
Lap Engine - Lap Orchestrator.

============================================================
PURPOSE
============================================================
Drives laps: trade -> collect -> regenerate -> distribute
primary -> distribute secondary -> validate.

RESPONSIBILITY:
- Sequences phases through LapStateMachine
- Records per-phase elapsed time on the LapRecord
- Persists the new pool before any resource reaches it
- Retires the old pool at lap end
- Reports every finished lap to the aggregator

CANCELLATION:
The RunToken is polled at phase boundaries. Pause holds the
lap at the next boundary. Stop interrupts the trading phase
only; the lap still collects and redistributes so funds end
up on the new pool, then the session goes idle.

FAILURE POLICY:
- Per-worker failures stay inside phase results
- FatalError fails the lap, halts the session (token stopped)

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .adapters.base import LedgerClient, SessionStore, TradingStrategyExecutor
from .aggregator import LapResultAggregator
from .cancellation import RunToken
from .collection import CollectionExecutor
from .config import LapEngineConfig, StrategyProfile
from .distribution import DISTRIBUTION_FAILED, DistributionEngine
from .errors import FatalError, GuardTimeoutError
from .guard import guard
from .rate_limiter import TokenBucketRateLimiter
from .regeneration import PoolRegenerator
from .state_machine import LapPhase, LapStateMachine, PhaseTransitionEvent
from .types import (
    CollectionStatus,
    LapRecord,
    LapStatus,
    ResourceKind,
    SessionCheckpoint,
    WorkerIdentity,
)


logger = logging.getLogger(__name__)

COLLECTION_FAILED = "Collection phase failed"
NO_VALID_WORKERS = "No valid wallets found after regeneration"
STORE_FAILED = "Session store write failed"


class LapOrchestrator:
    """
    Runs laps for one session.

    Only one lap may be active at a time; run() holds a lock for
    the duration of the lap loop.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        strategy: TradingStrategyExecutor,
        session_store: SessionStore,
        config: LapEngineConfig,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        aggregator: Optional[LapResultAggregator] = None,
    ):
        self._ledger = ledger
        self._strategy = strategy
        self._store = session_store
        self._config = config
        self._rate_limiter = rate_limiter or TokenBucketRateLimiter.from_config(config.rate_limit)
        self._aggregator = aggregator or LapResultAggregator()

        self._collector = CollectionExecutor(ledger, config, self._rate_limiter)
        self._regenerator = PoolRegenerator(ledger, config)
        self._distributor = DistributionEngine(ledger, config, self._rate_limiter)

        self._machine = LapStateMachine()
        self._lock = asyncio.Lock()
        self._current_lap: Optional[LapRecord] = None

        self._stats = {
            "laps_started": 0,
            "laps_completed": 0,
            "laps_failed": 0,
            "workers_retired": 0,
            "workers_stranded": 0,
        }

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def phase(self) -> LapPhase:
        return self._machine.phase

    @property
    def current_lap_number(self) -> int:
        return self._machine.lap_number

    @property
    def current_lap(self) -> Optional[LapRecord]:
        return self._current_lap

    @property
    def aggregator(self) -> LapResultAggregator:
        return self._aggregator

    @property
    def state_machine(self) -> LapStateMachine:
        return self._machine

    @property
    def collector(self) -> CollectionExecutor:
        return self._collector

    @property
    def regenerator(self) -> PoolRegenerator:
        return self._regenerator

    @property
    def distributor(self) -> DistributionEngine:
        return self._distributor

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "phase": self.phase.value,
            "current_lap": self.current_lap_number,
            "rate_limiter": self._rate_limiter.get_stats(),
        }

    # --------------------------------------------------------
    # LAP LOOP
    # --------------------------------------------------------

    async def run(
        self,
        checkpoint: SessionCheckpoint,
        profile: StrategyProfile,
        token: RunToken,
        start_lap: int = 1,
    ) -> Optional[LapRecord]:
        """
        Run laps until stopped or a lap fails.

        Args:
            checkpoint: Session state; its worker list is replaced each lap
            profile: Strategy profile giving the lap duration
            token: Run token polled at phase boundaries
            start_lap: Number of the first lap

        Returns:
            The last finished lap, or None if no lap started
        """
        if self._lock.locked():
            raise RuntimeError("A lap is already active for this session")

        async with self._lock:
            if checkpoint.admin is None:
                raise FatalError("Admin identity missing", phase=LapPhase.IDLE.value)

            lap_number = start_lap
            last_lap: Optional[LapRecord] = None

            while True:
                await token.wait_until_resumed()
                if token.stop_requested:
                    break

                last_lap = await self.run_lap(checkpoint, profile, token, lap_number)

                if last_lap.status != LapStatus.COMPLETED:
                    await self._record_halted_lap(checkpoint)
                    token.stop(f"Lap {lap_number} {last_lap.status.value}: {last_lap.error_message}")
                    if self._machine.phase != LapPhase.IDLE:
                        self._machine.transition_to(LapPhase.IDLE, "session halted")
                    break

                if token.stop_requested:
                    self._machine.transition_to(LapPhase.IDLE, "stop requested")
                    break

                lap_number += 1

            if self._machine.phase == LapPhase.COMPLETED:
                self._machine.transition_to(LapPhase.IDLE, "stop requested")

            return last_lap

    async def run_lap(
        self,
        checkpoint: SessionCheckpoint,
        profile: StrategyProfile,
        token: RunToken,
        lap_number: int,
    ) -> LapRecord:
        """
        Run exactly one lap. Never raises FatalError; the lap
        record carries the failure instead.
        """
        old_pool = list(checkpoint.workers)
        admin = checkpoint.admin
        resource_ref = checkpoint.resource_ref

        lap = LapRecord(lap_number=lap_number, pool_size_at_start=len(old_pool))
        self._current_lap = lap
        checkpoint.last_lap_number = max(checkpoint.last_lap_number, lap_number)
        self._stats["laps_started"] += 1

        try:
            self._enter(LapPhase.TRADING, lap, f"lap {lap_number} started", lap_number=lap_number)
            await self._trade(lap, old_pool, profile, token)
            await token.wait_until_resumed()

            # ---------------- Collecting ----------------
            self._enter(LapPhase.COLLECTING, lap, "trading finished")
            collection = await self._collector.collect(old_pool, admin, resource_ref)
            lap.failed_collections = len(collection.failed_records)
            if not collection.success:
                raise FatalError(COLLECTION_FAILED, phase=LapPhase.COLLECTING.value)
            lap.total_primary_collected = collection.total_primary_collected
            lap.total_secondary_collected = collection.total_secondary_collected
            stranded = [
                w for w, r in zip(old_pool, collection.records)
                if r.status == CollectionStatus.FAILED
            ]
            await token.wait_until_resumed()

            # ---------------- Regenerating ----------------
            self._enter(LapPhase.REGENERATING, lap, "collection finished")
            regeneration = await self._regenerator.regenerate(len(old_pool))
            new_pool = regeneration.pool
            lap.workers_regenerated = len(new_pool)

            checkpoint.stranded_workers.extend(stranded)
            checkpoint.workers = new_pool
            await self._persist_new_pool(checkpoint, new_pool)
            await token.wait_until_resumed()

            # ---------------- Distributing ----------------
            self._enter(LapPhase.DISTRIBUTING_PRIMARY, lap, "new pool persisted")
            primary = await self._distributor.distribute(
                admin,
                lap.total_primary_collected,
                new_pool,
                ResourceKind.PRIMARY,
                resource_ref,
            )
            lap.primary_distributed = primary.amount_distributed
            lap.failed_transfers += primary.failed_recipients
            if primary.total_failure:
                raise FatalError(DISTRIBUTION_FAILED, phase=LapPhase.DISTRIBUTING_PRIMARY.value)
            await token.wait_until_resumed()

            if lap.total_secondary_collected > 0:
                self._enter(LapPhase.DISTRIBUTING_SECONDARY, lap, "primary distributed")
                secondary = await self._distributor.distribute(
                    admin,
                    lap.total_secondary_collected,
                    new_pool,
                    ResourceKind.SECONDARY,
                    resource_ref,
                )
                lap.secondary_distributed = secondary.amount_distributed
                lap.failed_transfers += secondary.failed_recipients
                await token.wait_until_resumed()
                self._enter(LapPhase.VALIDATING, lap, "secondary distributed")
            else:
                self._enter(LapPhase.VALIDATING, lap, "no secondary collected")

            # ---------------- Validating ----------------
            lap.active_workers = sum(1 for w in new_pool if w.active)
            if lap.active_workers == 0:
                raise FatalError(NO_VALID_WORKERS, phase=LapPhase.VALIDATING.value)

            self._retire(old_pool, stranded)
            await self._persist(checkpoint)

            self._enter(LapPhase.COMPLETED, lap, f"{lap.active_workers} active workers")
            lap.finalize(LapStatus.COMPLETED)
            self._stats["laps_completed"] += 1

        except FatalError as e:
            self._fail(lap, e)
        except Exception as e:
            logger.exception(f"Lap {lap_number}: unexpected error in {self.phase.value}: {e}")
            self._fail(lap, FatalError(f"Unexpected error in {self.phase.value}: {e}", phase=self.phase.value))

        await self._aggregator.record(lap)
        return lap

    # --------------------------------------------------------
    # PHASES
    # --------------------------------------------------------

    async def _trade(
        self,
        lap: LapRecord,
        pool: List[WorkerIdentity],
        profile: StrategyProfile,
        token: RunToken,
    ) -> None:
        duration = profile.lap_duration_seconds
        bound = duration + self._config.timeout.trading_grace_seconds

        strategy_task = asyncio.ensure_future(self._strategy.run(list(pool), duration))
        stop_task = asyncio.ensure_future(token.wait_for_stop())
        try:
            done, _ = await asyncio.wait(
                {strategy_task, stop_task},
                timeout=bound,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_task.cancel()

        if strategy_task in done:
            try:
                result = strategy_task.result()
            except Exception as e:
                lap.trading_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Lap {lap.lap_number}: trading failed: {e}")
                return
            lap.trading_primary_delta = result.primary_delta
            lap.trading_secondary_delta = result.secondary_delta
            return

        # The pool is about to be swept; trading must not continue on it.
        strategy_task.cancel()
        if token.stop_requested:
            logger.info(f"Lap {lap.lap_number}: trading interrupted by stop request")
        else:
            lap.trading_error = str(GuardTimeoutError(f"trading lap {lap.lap_number}", bound))
            logger.warning(f"Lap {lap.lap_number}: {lap.trading_error}")

    async def _persist_new_pool(
        self,
        checkpoint: SessionCheckpoint,
        new_pool: List[WorkerIdentity],
    ) -> None:
        try:
            await guard(
                self._store.append_workers(new_pool, checkpoint.session_ref),
                self._config.timeout.store_seconds,
                "append_workers",
            )
        except Exception as e:
            logger.error(f"Could not persist new pool for {checkpoint.session_ref}: {e}")
            raise FatalError(STORE_FAILED, phase=LapPhase.REGENERATING.value) from e
        await self._persist(checkpoint)

    async def _persist(self, checkpoint: SessionCheckpoint) -> None:
        try:
            await guard(
                self._store.save(checkpoint),
                self._config.timeout.store_seconds,
                "save_checkpoint",
            )
        except Exception as e:
            logger.error(f"Could not save checkpoint for {checkpoint.session_ref}: {e}")
            raise FatalError(STORE_FAILED, phase=self.phase.value) from e

    async def _record_halted_lap(self, checkpoint: SessionCheckpoint) -> None:
        # A halted lap still uses up its number.
        try:
            await guard(
                self._store.save(checkpoint),
                self._config.timeout.store_seconds,
                "save_checkpoint",
            )
        except Exception as e:
            logger.error(
                f"Could not record halted lap {checkpoint.last_lap_number} "
                f"for {checkpoint.session_ref}: {e}"
            )

    def _retire(self, old_pool: List[WorkerIdentity], stranded: List[WorkerIdentity]) -> None:
        stranded_ids = {id(w) for w in stranded}
        for worker in old_pool:
            if id(worker) in stranded_ids:
                worker.active = False
                continue
            worker.retire()
            self._stats["workers_retired"] += 1

        if stranded:
            self._stats["workers_stranded"] += len(stranded)
            logger.warning(
                f"{len(stranded)} workers could not be swept and are kept for the final sweep: "
                + ", ".join(w.address for w in stranded)
            )

    # --------------------------------------------------------
    # TRANSITIONS
    # --------------------------------------------------------

    def _enter(
        self,
        target: LapPhase,
        lap: LapRecord,
        reason: str,
        lap_number: Optional[int] = None,
    ) -> PhaseTransitionEvent:
        event = self._machine.transition_to(target, reason, lap_number=lap_number)
        if event.from_phase.is_active() and not lap.is_finalized:
            lap.record_phase(event.from_phase.value, event.elapsed_seconds)
        return event

    def _fail(self, lap: LapRecord, error: FatalError) -> None:
        if self._machine.phase.is_active():
            self._enter(LapPhase.FAILED, lap, error.reason)
        status = LapStatus.TIMEOUT if error.timed_out else LapStatus.FAILED
        lap.finalize(status, error.reason)
        self._stats["laps_failed"] += 1
        logger.error(f"Lap {lap.lap_number} {status.value}: {error.reason}")
