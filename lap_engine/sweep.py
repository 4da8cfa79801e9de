"""
Lap Engine - Account Sweep.

============================================================
PURPOSE
============================================================
Final sweep of a session (stage 6): every stored worker
returns its balances to the admin identity and its secondary
account is closed.

Safe to repeat: an empty worker transfers nothing.

============================================================
"""

import logging
from typing import Sequence

from .collection import CollectionExecutor
from .config import LapEngineConfig
from .types import CollectionResult, WorkerIdentity


logger = logging.getLogger(__name__)


class AccountSweeper:
    """Sweeps and closes worker accounts back to the admin identity."""

    def __init__(self, collector: CollectionExecutor, config: LapEngineConfig):
        self._collector = collector
        self._config = config

    async def sweep(
        self,
        workers: Sequence[WorkerIdentity],
        admin: WorkerIdentity,
        resource_ref: str,
    ) -> CollectionResult:
        usable = [w for w in workers if w.credential]
        if len(usable) < len(workers):
            logger.warning(f"Skipping {len(workers) - len(usable)} workers without credentials")

        if not usable:
            logger.info("Nothing to sweep: no workers with credentials")
            return CollectionResult(success=True)

        result = await self._collector.collect(
            usable,
            admin,
            resource_ref,
            primary_reserve=self._config.pool.final_sweep_reserve,
            close_accounts=self._config.pool.close_accounts_on_sweep,
        )

        logger.info(
            f"Sweep returned primary={result.total_primary_collected} "
            f"secondary={result.total_secondary_collected} to admin "
            f"({len(result.failed_records)} failures)"
        )
        return result
