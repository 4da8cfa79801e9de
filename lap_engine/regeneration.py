"""
Lap Engine - Worker Pool Regenerator.

============================================================
PURPOSE
============================================================
Mints a full replacement pool of worker identities.

- Pool size is validated before any remote call
- The whole batch shares one deadline; each creation also
  has its own bound
- Fewer identities than requested is a partial result
- Zero identities is fatal

The regenerator never distributes resources.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List

from .adapters.base import LedgerClient
from .config import LapEngineConfig
from .errors import FatalError, GuardTimeoutError, LapEngineError, ValidationError
from .guard import guarded_call
from .types import WorkerIdentity


logger = logging.getLogger(__name__)

REGENERATION_FAILED = "Wallet regeneration failed"


@dataclass
class RegenerationResult:
    """Outcome of one regeneration batch."""

    requested: int
    pool: List[WorkerIdentity] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def is_partial(self) -> bool:
        return 0 < len(self.pool) < self.requested


class PoolRegenerator:
    """Creates replacement worker pools through the ledger."""

    def __init__(self, ledger: LedgerClient, config: LapEngineConfig):
        self._ledger = ledger
        self._config = config

    def validate_size(self, size: int) -> None:
        pool = self._config.pool
        if not isinstance(size, int) or size < pool.min_pool_size or size > pool.max_pool_size:
            raise ValidationError(
                f"Count must be between {pool.min_pool_size} and {pool.max_pool_size}",
                code="VAL_POOL_SIZE",
                context={"requested": size},
            )

    async def regenerate(self, size: int) -> RegenerationResult:
        """
        Create `size` new identities numbered 1..n.

        Args:
            size: Desired pool size

        Returns:
            RegenerationResult

        Raises:
            ValidationError: Size outside the allowed range
            FatalError: No identity could be created
        """
        self.validate_size(size)

        result = RegenerationResult(requested=size)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout.regeneration_batch_seconds

        for index in range(size):
            remaining = deadline - loop.time()
            if remaining <= 0:
                result.timed_out = True
                result.failures.append(
                    f"Batch deadline of {self._config.timeout.regeneration_batch_seconds:.0f}s "
                    f"exceeded after {len(result.pool)} identities"
                )
                break

            bound = min(self._config.timeout.identity_creation_seconds, remaining)
            try:
                identity = await guarded_call(
                    self._ledger.create_identity,
                    bound,
                    f"create_identity {index + 1}/{size}",
                    self._config.read_retry,
                )
            except GuardTimeoutError as e:
                result.timed_out = True
                result.failures.append(str(e))
                logger.warning(f"Identity {index + 1}/{size} timed out: {e}")
                continue
            except LapEngineError as e:
                result.failures.append(str(e))
                logger.warning(f"Identity {index + 1}/{size} failed: {e}")
                continue

            identity.id = len(result.pool) + 1
            result.pool.append(identity)

        if not result.pool:
            logger.error(f"{REGENERATION_FAILED}: 0/{size} identities created")
            raise FatalError(
                REGENERATION_FAILED,
                phase="regenerating",
                timed_out=result.timed_out,
            )

        if result.is_partial:
            logger.warning(f"Regeneration partial: {len(result.pool)}/{size} identities created")
        else:
            logger.info(f"Regenerated {len(result.pool)} identities")

        return result
