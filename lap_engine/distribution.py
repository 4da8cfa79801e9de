"""
Lap Engine - Distribution Engine.

============================================================
PURPOSE
============================================================
Computes and executes an even allocation of a resource total
among recipients.

ALLOCATION:
    per_recipient = floor(total / count) at resource precision

SAFETY:
- A plan whose per_recipient * count exceeds total + epsilon
  is never executed
- total <= 0 or no recipients is a no-op
- One failed recipient never aborts the others
- The whole phase shares one deadline

ACTIVATION:
A recipient becomes active only after a successful, nonzero
primary transfer.

============================================================
"""

import asyncio
import logging
from decimal import ROUND_DOWN, Decimal
from typing import Sequence

from .adapters.base import LedgerClient
from .config import LapEngineConfig
from .errors import LapEngineError, ValidationError
from .guard import guarded_call
from .rate_limiter import TokenBucketRateLimiter
from .types import (
    ZERO,
    DistributionPlan,
    DistributionResult,
    ResourceKind,
    TransferRecord,
    TransferStatus,
    WorkerIdentity,
)


logger = logging.getLogger(__name__)

DISTRIBUTION_FAILED = "Distribution phase failed"


class DistributionEngine:
    """Plans and executes per-recipient transfers from a source identity."""

    def __init__(
        self,
        ledger: LedgerClient,
        config: LapEngineConfig,
        rate_limiter: TokenBucketRateLimiter,
    ):
        self._ledger = ledger
        self._config = config
        self._rate_limiter = rate_limiter
        self._quantum = Decimal(1).scaleb(-config.pool.amount_decimals)

    # --------------------------------------------------------
    # PLANNING
    # --------------------------------------------------------

    def plan(
        self,
        total_amount: Decimal,
        recipients: Sequence[WorkerIdentity],
        kind: ResourceKind = ResourceKind.PRIMARY,
    ) -> DistributionPlan:
        """
        Build a distribution plan.

        Raises:
            ValidationError: Negative total, or plan would over-distribute
        """
        total_amount = Decimal(total_amount)
        if total_amount < 0:
            raise ValidationError(
                f"Distribution amount must not be negative: {total_amount}",
                code="VAL_AMOUNT",
            )

        count = len(recipients)
        if total_amount == 0 or count == 0:
            per_recipient = ZERO
        else:
            per_recipient = (total_amount / count).quantize(self._quantum, rounding=ROUND_DOWN)

        plan = DistributionPlan(
            total_amount=total_amount,
            per_recipient_amount=per_recipient,
            recipients=list(recipients),
            kind=kind,
        )
        self.check_plan(plan)
        return plan

    def check_plan(self, plan: DistributionPlan) -> None:
        epsilon = self._config.pool.over_distribution_epsilon
        if plan.planned_total > plan.total_amount + epsilon:
            raise ValidationError(
                f"Plan distributes {plan.planned_total} but only {plan.total_amount} is available",
                code="VAL_OVER_DISTRIBUTION",
            )

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    async def distribute(
        self,
        source: WorkerIdentity,
        total_amount: Decimal,
        recipients: Sequence[WorkerIdentity],
        kind: ResourceKind,
        resource_ref: str,
    ) -> DistributionResult:
        """
        Plan and execute a distribution.

        Returns:
            DistributionResult; skipped=True for a no-op
        """
        plan = self.plan(total_amount, recipients, kind)
        if plan.per_recipient_amount <= 0:
            logger.info(
                f"Skipping {kind.value} distribution: total={plan.total_amount} "
                f"recipients={len(plan.recipients)}"
            )
            return DistributionResult(kind=kind, planned_amount=ZERO, skipped=True)

        return await self.execute(plan, source, resource_ref)

    async def execute(
        self,
        plan: DistributionPlan,
        source: WorkerIdentity,
        resource_ref: str,
    ) -> DistributionResult:
        """Execute a plan recipient by recipient, in pool order."""
        self.check_plan(plan)

        kind = plan.kind
        amount = plan.per_recipient_amount
        result = DistributionResult(kind=kind, planned_amount=plan.planned_total)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout.distribution_phase_seconds

        logger.info(
            f"Distributing {kind.value}: {amount} to each of {len(plan.recipients)} recipients"
        )

        for recipient in plan.recipients:
            record = TransferRecord(
                worker_id=recipient.id,
                address=recipient.address,
                amount=amount,
                kind=kind,
            )
            result.records.append(record)

            remaining = deadline - loop.time()
            if remaining <= 0:
                record.status = TransferStatus.FAILED
                record.error = "Distribution phase deadline exceeded"
                continue

            await self._rate_limiter.acquire()
            await self._transfer_one(source, recipient, record, resource_ref, remaining)

            if record.status == TransferStatus.COMPLETED:
                result.amount_distributed += amount

        if result.total_failure:
            logger.error(f"{kind.value} distribution failed for every recipient")
        elif result.is_partial:
            logger.warning(
                f"{kind.value} distribution partial: "
                f"{result.failed_recipients}/{len(result.records)} transfers failed"
            )
        logger.info(
            f"Distributed {result.amount_distributed} {kind.value} to "
            f"{result.successful_recipients}/{len(result.records)} recipients"
        )
        return result

    async def _transfer_one(
        self,
        source: WorkerIdentity,
        recipient: WorkerIdentity,
        record: TransferRecord,
        resource_ref: str,
        remaining_seconds: float,
    ) -> None:
        bound = min(self._config.timeout.transfer_seconds, remaining_seconds)

        def count_attempt(_attempt: int) -> None:
            record.attempts += 1

        try:
            receipt = await guarded_call(
                lambda: self._ledger.transfer(
                    source, recipient, record.amount, record.kind, resource_ref
                ),
                bound,
                f"distribute {record.kind.value} to worker {recipient.id}",
                self._config.transfer_retry,
                count_attempt,
            )
        except LapEngineError as e:
            record.status = TransferStatus.FAILED
            record.error = str(e)
            logger.warning(f"Transfer to worker {recipient.id} ({recipient.address}) failed: {e}")
            return
        except Exception as e:
            record.status = TransferStatus.FAILED
            record.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Unexpected error distributing to worker {recipient.id}: {e}")
            return

        record.status = TransferStatus.COMPLETED
        record.reference = receipt.reference
        source.debit(record.kind, record.amount)
        recipient.credit(record.kind, record.amount)
        if record.kind == ResourceKind.PRIMARY and record.amount > 0:
            recipient.active = True
