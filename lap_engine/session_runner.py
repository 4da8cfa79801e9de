"""
Lap Engine - Session Runner.

============================================================
PURPOSE
============================================================
Single resumable entry point for a session.

run_from(stage) executes every step after `stage`, in order:

    after 1  -> create or import the admin identity   (-> 2)
    after 2  -> generate the worker pool              (-> 3)
    after 3  -> distribute primary to the pool        (-> 4)
    after 4  -> distribute admin secondary, if any    (-> 5)
    after 5  -> run laps until stopped or failed
    at 6     -> sweep and close every worker          (-> 6)

Each step reads what it needs from the checkpoint and records
its own stage, so no step duplicates another's work.

============================================================
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Tuple

from .adapters.base import LedgerClient, MarketDataProvider
from .cancellation import RunToken
from .checkpoint import SessionCheckpointManager
from .config import LapEngineConfig, StrategyProfile
from .distribution import DISTRIBUTION_FAILED
from .errors import CheckpointError, FatalError, ValidationError
from .guard import guarded_call
from .orchestrator import LapOrchestrator
from .sweep import AccountSweeper
from .types import (
    PLACEHOLDER_ADDRESS,
    CollectionResult,
    CollectionStatus,
    LapStatus,
    ResourceKind,
    SessionCheckpoint,
    SessionStage,
    WorkerIdentity,
    utcnow,
)


logger = logging.getLogger(__name__)

Step = Callable[[SessionCheckpoint, StrategyProfile, RunToken], Awaitable[None]]
LapNumberLookup = Callable[[str], Optional[int]]

SESSION_REF_ATTEMPTS = 20


@dataclass
class SessionRequest:
    """Inputs for a brand-new session."""

    resource_ref: str
    pool_size: int
    funding_amount: Decimal
    admin_credential: Optional[str] = None
    session_ref: Optional[str] = None


class SessionRunner:
    """Runs a session from any checkpoint stage."""

    def __init__(
        self,
        ledger: LedgerClient,
        market_data: MarketDataProvider,
        orchestrator: LapOrchestrator,
        checkpoints: SessionCheckpointManager,
        config: LapEngineConfig,
    ):
        self._ledger = ledger
        self._market_data = market_data
        self._orchestrator = orchestrator
        self._checkpoints = checkpoints
        self._config = config
        self._sweeper = AccountSweeper(orchestrator.collector, config)
        self._lap_history: Optional[LapNumberLookup] = None

        self._steps: List[Tuple[SessionStage, Step]] = [
            (SessionStage.ADMIN_CREATED, self._create_admin),
            (SessionStage.POOL_GENERATED, self._generate_pool),
            (SessionStage.PRIMARY_DISTRIBUTED, self._distribute_primary),
            (SessionStage.SECONDARY_DISTRIBUTED, self._distribute_secondary),
        ]

    @property
    def orchestrator(self) -> LapOrchestrator:
        return self._orchestrator

    @property
    def checkpoints(self) -> SessionCheckpointManager:
        return self._checkpoints

    def use_lap_history(self, lookup: LapNumberLookup) -> None:
        """Also number laps after the highest one found in `lookup(session_ref)`."""
        self._lap_history = lookup

    def next_lap_number(self, checkpoint: SessionCheckpoint) -> int:
        last = checkpoint.last_lap_number
        if self._lap_history is not None:
            last = max(last, self._lap_history(checkpoint.session_ref) or 0)
        return last + 1

    # --------------------------------------------------------
    # ENTRY POINTS
    # --------------------------------------------------------

    async def new_session(self, request: SessionRequest) -> SessionCheckpoint:
        """
        Resolve the pair and record stage 1.

        A generated session ref that is already taken gets a numeric
        suffix; an explicit one must be unused.

        Raises:
            ValidationError: Pool size or funding amount invalid
            NotFoundError: No pair trades the resource
            CheckpointError: Session ref already in use (CHK_EXISTS)
        """
        self._orchestrator.regenerator.validate_size(request.pool_size)
        funding = Decimal(request.funding_amount)
        if funding <= 0:
            raise ValidationError(f"Funding amount must be positive: {funding}", code="VAL_AMOUNT")

        pair = await guarded_call(
            lambda: self._market_data.resolve_pair(request.resource_ref),
            self._config.timeout.pair_resolution_seconds,
            f"resolve_pair {request.resource_ref}",
            self._config.read_retry,
        )

        now = utcnow()
        checkpoint = SessionCheckpoint(
            session_ref=request.session_ref or "",
            stage=SessionStage.PAIR_DISCOVERED,
            resource_ref=request.resource_ref,
            resource_name=pair.resource_name,
            pair=pair,
            admin=WorkerIdentity(
                id=0,
                address=PLACEHOLDER_ADDRESS,
                credential=request.admin_credential,
            ),
            pool_size=request.pool_size,
            funding_amount=funding,
            created_at=now,
        )
        if request.session_ref:
            return await self._checkpoints.create(checkpoint)

        base_ref = _session_ref(pair.resource_name or request.resource_ref, now)
        for attempt in range(1, SESSION_REF_ATTEMPTS + 1):
            checkpoint.session_ref = base_ref if attempt == 1 else f"{base_ref}-{attempt}"
            try:
                return await self._checkpoints.create(checkpoint)
            except CheckpointError as e:
                if e.code != "CHK_EXISTS":
                    raise
                logger.debug(f"Session ref {checkpoint.session_ref} taken, trying next")

        raise CheckpointError(
            f"No free session ref after {SESSION_REF_ATTEMPTS} attempts: {base_ref}",
            code="CHK_EXISTS",
        )

    async def run_from(
        self,
        session_ref: str,
        profile: StrategyProfile,
        token: RunToken,
        stage: Optional[SessionStage] = None,
    ) -> SessionCheckpoint:
        """
        Resume a session after `stage` (default: its recorded stage).

        Raises:
            CheckpointError: Session cannot resume from that stage
            FatalError: A step or lap could not produce a usable result
        """
        checkpoint = await self._checkpoints.load_from(session_ref, stage)
        start = checkpoint.stage if stage is None else SessionStage(stage)

        logger.info(f"Session {session_ref}: resuming after stage {int(start)} ({start.label})")

        if start == SessionStage.ACCOUNTS_SWEPT:
            await self._sweep(checkpoint)
            return checkpoint

        for step_stage, step in self._steps:
            if step_stage <= start:
                continue
            await token.wait_until_resumed()
            if token.stop_requested:
                logger.info(f"Session {session_ref}: stopped before stage {int(step_stage)}")
                return checkpoint
            await step(checkpoint, profile, token)

        await self._run_laps(checkpoint, profile, token)
        return checkpoint

    async def sweep_session(self, session_ref: str) -> CollectionResult:
        """Sweep and close every worker of a session (stage 6)."""
        checkpoint = await self._checkpoints.load_from(session_ref, SessionStage.ADMIN_CREATED)
        return await self._sweep(checkpoint)

    # --------------------------------------------------------
    # STEPS
    # --------------------------------------------------------

    async def _create_admin(self, checkpoint: SessionCheckpoint, profile: StrategyProfile, token: RunToken) -> None:
        credential = checkpoint.admin.credential if checkpoint.admin else None
        bound = self._config.timeout.identity_creation_seconds

        if credential:
            admin = await guarded_call(
                lambda: self._ledger.import_identity(credential),
                bound,
                "import admin identity",
                self._config.read_retry,
            )
            logger.info(f"Imported admin identity {admin.address}")
        else:
            admin = await guarded_call(
                self._ledger.create_identity,
                bound,
                "create admin identity",
                self._config.read_retry,
            )
            logger.info(f"Created admin identity {admin.address}")

        admin.id = 0
        checkpoint.admin = admin
        await self._checkpoints.advance(SessionStage.ADMIN_CREATED, checkpoint)

    async def _generate_pool(self, checkpoint: SessionCheckpoint, profile: StrategyProfile, token: RunToken) -> None:
        # A regenerated pool replaces any earlier one; keep the old
        # workers reachable for the final sweep.
        leftovers = [w for w in checkpoint.workers if w.credential]
        if leftovers:
            checkpoint.stranded_workers.extend(leftovers)

        result = await self._orchestrator.regenerator.regenerate(checkpoint.pool_size)
        checkpoint.workers = result.pool
        await self._checkpoints.store.append_workers(result.pool, checkpoint.session_ref)
        await self._checkpoints.advance(SessionStage.POOL_GENERATED, checkpoint)

    async def _distribute_primary(self, checkpoint: SessionCheckpoint, profile: StrategyProfile, token: RunToken) -> None:
        admin = checkpoint.admin
        balance = await guarded_call(
            lambda: self._ledger.get_balance(admin, checkpoint.resource_ref),
            self._config.timeout.collection_per_worker_seconds,
            "get_balance admin",
            self._config.read_retry,
        )
        admin.primary_balance = balance.primary
        admin.secondary_balance = balance.secondary

        if balance.primary < checkpoint.funding_amount:
            raise FatalError(
                f"Admin balance insufficient: holds {balance.primary}, "
                f"needs {checkpoint.funding_amount}",
                phase="distributing_primary",
            )

        result = await self._orchestrator.distributor.distribute(
            admin,
            checkpoint.funding_amount,
            checkpoint.workers,
            ResourceKind.PRIMARY,
            checkpoint.resource_ref,
        )
        if result.total_failure or result.successful_recipients == 0:
            raise FatalError(DISTRIBUTION_FAILED, phase="distributing_primary")

        await self._checkpoints.advance(SessionStage.PRIMARY_DISTRIBUTED, checkpoint)

    async def _distribute_secondary(self, checkpoint: SessionCheckpoint, profile: StrategyProfile, token: RunToken) -> None:
        admin = checkpoint.admin
        balance = await guarded_call(
            lambda: self._ledger.get_balance(admin, checkpoint.resource_ref),
            self._config.timeout.collection_per_worker_seconds,
            "get_balance admin",
            self._config.read_retry,
        )
        admin.secondary_balance = balance.secondary

        if balance.secondary <= 0:
            logger.info("Admin holds no secondary resource; skipping secondary distribution")
        else:
            result = await self._orchestrator.distributor.distribute(
                admin,
                balance.secondary,
                checkpoint.workers,
                ResourceKind.SECONDARY,
                checkpoint.resource_ref,
            )
            if result.is_partial or result.total_failure:
                logger.warning(
                    f"Secondary distribution: {result.failed_recipients}/{len(result.records)} failed"
                )

        await self._checkpoints.advance(SessionStage.SECONDARY_DISTRIBUTED, checkpoint)

    async def _run_laps(self, checkpoint: SessionCheckpoint, profile: StrategyProfile, token: RunToken) -> None:
        start_lap = self.next_lap_number(checkpoint)

        last_lap = await self._orchestrator.run(checkpoint, profile, token, start_lap=start_lap)

        if last_lap is not None and last_lap.status != LapStatus.COMPLETED:
            raise FatalError(
                last_lap.error_message or f"Lap {last_lap.lap_number} {last_lap.status.value}",
                phase="lap",
                timed_out=last_lap.status == LapStatus.TIMEOUT,
            )

    async def _sweep(self, checkpoint: SessionCheckpoint) -> CollectionResult:
        workers = checkpoint.sweepable_workers
        result = await self._sweeper.sweep(workers, checkpoint.admin, checkpoint.resource_ref)

        failed: List[WorkerIdentity] = []
        for worker, record in zip(workers, result.records):
            if record.status == CollectionStatus.COMPLETED:
                worker.retire()
            else:
                failed.append(worker)

        # Failed workers keep their credential and stay sweepable.
        checkpoint.stranded_workers = [w for w in checkpoint.stranded_workers if w.credential]

        if failed:
            logger.warning(
                f"Session {checkpoint.session_ref}: {len(failed)} workers could not be swept; "
                f"stage left at {int(checkpoint.stage)}"
            )
            await self._checkpoints.store.save(checkpoint)
        else:
            await self._checkpoints.advance(SessionStage.ACCOUNTS_SWEPT, checkpoint)
        return result


def _session_ref(name: str, when) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "-", name).strip("-")[:24] or "session"
    return f"{slug}_{when.strftime('%Y%m%d%H%M%S')}"
