"""
Lap Engine - Lap Result Aggregator.

============================================================
PURPOSE
============================================================
Keeps the session's lap history and derives session-level
totals from it.

- Only finalized laps are accepted
- Listeners (e.g. the lap history repository) are notified
  once per lap; a failing listener never loses the lap

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .types import ZERO, LapRecord, LapStatus


logger = logging.getLogger(__name__)

LapListener = Callable[[LapRecord], Awaitable[None]]


@dataclass
class SessionSummary:
    """Session-level totals across finalized laps."""

    total_laps: int = 0
    completed_laps: int = 0
    failed_laps: int = 0
    timeout_laps: int = 0
    total_primary_collected: Decimal = ZERO
    total_secondary_collected: Decimal = ZERO
    total_primary_distributed: Decimal = ZERO
    total_workers_regenerated: int = 0
    failed_collections: int = 0
    failed_transfers: int = 0
    average_lap_seconds: float = 0.0
    last_lap_number: Optional[int] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    phase_seconds: Dict[str, float] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.total_laps == 0:
            return 0.0
        return self.completed_laps / self.total_laps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_laps": self.total_laps,
            "completed_laps": self.completed_laps,
            "failed_laps": self.failed_laps,
            "timeout_laps": self.timeout_laps,
            "success_rate": round(self.success_rate, 4),
            "total_primary_collected": str(self.total_primary_collected),
            "total_secondary_collected": str(self.total_secondary_collected),
            "total_primary_distributed": str(self.total_primary_distributed),
            "total_workers_regenerated": self.total_workers_regenerated,
            "failed_collections": self.failed_collections,
            "failed_transfers": self.failed_transfers,
            "average_lap_seconds": round(self.average_lap_seconds, 3),
            "last_lap_number": self.last_lap_number,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "phase_seconds": {k: round(v, 3) for k, v in self.phase_seconds.items()},
        }


class LapResultAggregator:
    """Append-only lap history with derived session totals."""

    def __init__(self, max_history: int = 10_000):
        self._history: List[LapRecord] = []
        self._max_history = max_history
        self._summary = SessionSummary()
        self._total_duration = 0.0
        self._listeners: List[LapListener] = []

    @property
    def history(self) -> List[LapRecord]:
        return list(self._history)

    @property
    def summary(self) -> SessionSummary:
        return self._summary

    def register_listener(self, listener: LapListener) -> None:
        self._listeners.append(listener)

    async def record(self, lap: LapRecord) -> None:
        """
        Add a finalized lap.

        Raises:
            ValueError: If the lap is still running
        """
        if not lap.is_finalized:
            raise ValueError(f"Lap {lap.lap_number} is not finalized")

        self._history.append(lap)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        self._update_summary(lap)

        logger.info(
            f"Lap {lap.lap_number} {lap.status.value}: "
            f"primary={lap.total_primary_collected} secondary={lap.total_secondary_collected} "
            f"workers={lap.workers_regenerated} active={lap.active_workers}"
            + (f" error={lap.error_message}" if lap.error_message else "")
        )

        for listener in self._listeners:
            try:
                await listener(lap)
            except Exception as e:
                logger.error(f"Lap listener error: {e}", exc_info=True)

    def _update_summary(self, lap: LapRecord) -> None:
        s = self._summary
        s.total_laps += 1
        if lap.status == LapStatus.COMPLETED:
            s.completed_laps += 1
        elif lap.status == LapStatus.TIMEOUT:
            s.timeout_laps += 1
        else:
            s.failed_laps += 1

        s.total_primary_collected += lap.total_primary_collected
        s.total_secondary_collected += lap.total_secondary_collected
        s.total_primary_distributed += lap.primary_distributed
        s.total_workers_regenerated += lap.workers_regenerated
        s.failed_collections += lap.failed_collections
        s.failed_transfers += lap.failed_transfers

        self._total_duration += lap.duration_seconds or 0.0
        s.average_lap_seconds = self._total_duration / s.total_laps

        for phase, seconds in lap.phase_durations.items():
            s.phase_seconds[phase] = s.phase_seconds.get(phase, 0.0) + seconds

        s.last_lap_number = lap.lap_number
        s.last_status = lap.status.value
        s.last_error = lap.error_message
