"""
Lap Engine - Collection Phase Executor.

============================================================
PURPOSE
============================================================
Sweeps primary and secondary resources from every worker in
the pool into the treasury (admin) identity.

ORDERING:
- Workers are processed one at a time in pool index order
- The rate limiter spaces consecutive workers
- Secondary is swept before primary (primary pays fees)

FAILURES:
- A failed worker is recorded as FAILED and contributes zero
  to the totals; the phase moves on to the next worker
- The phase only fails to start on an empty pool

============================================================
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from .adapters.base import LedgerClient
from .config import LapEngineConfig
from .errors import LapEngineError
from .guard import guarded_call
from .rate_limiter import TokenBucketRateLimiter
from .types import (
    ZERO,
    CollectionRecord,
    CollectionResult,
    CollectionStatus,
    ResourceKind,
    WorkerIdentity,
)


logger = logging.getLogger(__name__)


class CollectionExecutor:
    """
    Collection phase executor.

    One instance per orchestrator; stateless between calls.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        config: LapEngineConfig,
        rate_limiter: TokenBucketRateLimiter,
    ):
        self._ledger = ledger
        self._config = config
        self._rate_limiter = rate_limiter

    async def collect(
        self,
        pool: Sequence[WorkerIdentity],
        treasury: WorkerIdentity,
        resource_ref: str,
        primary_reserve: Optional[Decimal] = None,
        close_accounts: bool = False,
    ) -> CollectionResult:
        """
        Sweep every worker in the pool.

        Args:
            pool: Workers to sweep, in index order
            treasury: Identity receiving the swept resources
            resource_ref: Secondary resource reference
            primary_reserve: Primary left on each worker (default from config)
            close_accounts: Close each worker's secondary account after sweeping

        Returns:
            CollectionResult with one record per worker
        """
        if not pool:
            logger.error("Collection cannot start: worker pool is empty")
            return CollectionResult(success=False, error="Worker pool is empty")

        if primary_reserve is None:
            primary_reserve = self._config.pool.primary_fee_reserve

        records: List[CollectionRecord] = [
            CollectionRecord(worker_id=w.id, address=w.address) for w in pool
        ]

        logger.info(f"Collecting from {len(pool)} workers")

        for worker, record in zip(pool, records):
            await self._rate_limiter.acquire()
            await self.sweep_worker(
                worker,
                record,
                treasury,
                resource_ref,
                primary_reserve,
                close_accounts,
            )

        completed = [r for r in records if r.status == CollectionStatus.COMPLETED]
        result = CollectionResult(
            success=True,
            total_primary_collected=sum((r.primary_collected for r in completed), ZERO),
            total_secondary_collected=sum((r.secondary_collected for r in completed), ZERO),
            records=records,
        )

        if result.is_partial:
            logger.warning(
                f"Collection partial: {len(result.failed_records)}/{len(records)} workers failed"
            )
        logger.info(
            f"Collected primary={result.total_primary_collected} "
            f"secondary={result.total_secondary_collected} "
            f"from {len(completed)}/{len(records)} workers"
        )
        return result

    async def sweep_worker(
        self,
        worker: WorkerIdentity,
        record: CollectionRecord,
        treasury: WorkerIdentity,
        resource_ref: str,
        primary_reserve: Decimal,
        close_account: bool = False,
    ) -> None:
        """
        Sweep one worker into the treasury, filling `record`.

        Never raises for ledger or timeout failures.
        """
        record.status = CollectionStatus.COLLECTING
        bound = self._config.timeout.collection_per_worker_seconds

        def count_attempt(_attempt: int) -> None:
            record.attempts += 1

        try:
            balance = await guarded_call(
                lambda: self._ledger.get_balance(worker, resource_ref),
                bound,
                f"get_balance worker {worker.id}",
                self._config.read_retry,
                count_attempt,
            )
            worker.primary_balance = balance.primary
            worker.secondary_balance = balance.secondary

            secondary = balance.secondary
            if secondary > self._config.pool.secondary_sweep_threshold:
                await guarded_call(
                    lambda: self._ledger.transfer(
                        worker, treasury, secondary, ResourceKind.SECONDARY, resource_ref
                    ),
                    bound,
                    f"sweep secondary worker {worker.id}",
                    self._config.transfer_retry,
                    count_attempt,
                )
                worker.debit(ResourceKind.SECONDARY, secondary)
                treasury.credit(ResourceKind.SECONDARY, secondary)
                record.secondary_collected = secondary

            primary_available = balance.primary
            if close_account:
                receipt = await guarded_call(
                    lambda: self._ledger.close_account(worker, treasury, resource_ref),
                    bound,
                    f"close account worker {worker.id}",
                    self._config.transfer_retry,
                    count_attempt,
                )
                if receipt is not None:
                    logger.debug(f"Closed secondary account of worker {worker.id}")
                refreshed = await guarded_call(
                    lambda: self._ledger.get_balance(worker, resource_ref),
                    bound,
                    f"get_balance worker {worker.id}",
                    self._config.read_retry,
                    count_attempt,
                )
                primary_available = refreshed.primary
                worker.primary_balance = primary_available

            primary = primary_available - primary_reserve
            if primary > 0:
                await guarded_call(
                    lambda: self._ledger.transfer(
                        worker, treasury, primary, ResourceKind.PRIMARY, resource_ref
                    ),
                    bound,
                    f"sweep primary worker {worker.id}",
                    self._config.transfer_retry,
                    count_attempt,
                )
                worker.debit(ResourceKind.PRIMARY, primary)
                treasury.credit(ResourceKind.PRIMARY, primary)
                record.primary_collected = primary

            record.status = CollectionStatus.COMPLETED

        except LapEngineError as e:
            record.status = CollectionStatus.FAILED
            record.error = str(e)
            logger.warning(f"Collection failed for worker {worker.id} ({worker.address}): {e}")
        except Exception as e:
            record.status = CollectionStatus.FAILED
            record.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Unexpected error collecting worker {worker.id}: {e}")
