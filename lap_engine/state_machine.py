"""
Lap Engine - Lap State Machine.

============================================================
PURPOSE
============================================================
Sequences the phases of one lap with strict transitions.

STATE MACHINE:

    IDLE ──► TRADING ──► COLLECTING ──► REGENERATING
                                            │
                                            ▼
                                  DISTRIBUTING_PRIMARY
                                     │            │
                                     ▼            │ (secondary total == 0)
                           DISTRIBUTING_SECONDARY │
                                     │            │
                                     ▼            ▼
                                      VALIDATING
                                          │
                                          ▼
                                COMPLETED ──► TRADING (next lap)
                                          └─► IDLE (stop requested)

    Any active phase can transition to FAILED.
    FAILED only transitions to IDLE.

INVARIANTS:
- Exactly one phase is current
- Every transition is logged with elapsed time of the phase left

============================================================
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .errors import StateTransitionError
from .types import utcnow


logger = logging.getLogger(__name__)


# ============================================================
# PHASES
# ============================================================

class LapPhase(Enum):
    """Phase of the lap orchestrator."""

    IDLE = "idle"
    TRADING = "trading"
    COLLECTING = "collecting"
    REGENERATING = "regenerating"
    DISTRIBUTING_PRIMARY = "distributing_primary"
    DISTRIBUTING_SECONDARY = "distributing_secondary"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_active(self) -> bool:
        """A lap is in progress in this phase."""
        return self not in (LapPhase.IDLE, LapPhase.COMPLETED, LapPhase.FAILED)

    def is_terminal(self) -> bool:
        return self in (LapPhase.COMPLETED, LapPhase.FAILED)


_ACTIVE = (
    LapPhase.TRADING,
    LapPhase.COLLECTING,
    LapPhase.REGENERATING,
    LapPhase.DISTRIBUTING_PRIMARY,
    LapPhase.DISTRIBUTING_SECONDARY,
    LapPhase.VALIDATING,
)

VALID_TRANSITIONS: Dict[LapPhase, Set[LapPhase]] = {
    LapPhase.IDLE: {LapPhase.TRADING},
    LapPhase.TRADING: {LapPhase.COLLECTING},
    LapPhase.COLLECTING: {LapPhase.REGENERATING},
    LapPhase.REGENERATING: {LapPhase.DISTRIBUTING_PRIMARY},
    LapPhase.DISTRIBUTING_PRIMARY: {
        LapPhase.DISTRIBUTING_SECONDARY,
        LapPhase.VALIDATING,
    },
    LapPhase.DISTRIBUTING_SECONDARY: {LapPhase.VALIDATING},
    LapPhase.VALIDATING: {LapPhase.COMPLETED},
    LapPhase.COMPLETED: {LapPhase.TRADING, LapPhase.IDLE},
    LapPhase.FAILED: {LapPhase.IDLE},
}

for _phase in _ACTIVE:
    VALID_TRANSITIONS[_phase].add(LapPhase.FAILED)


# ============================================================
# TRANSITION EVENT
# ============================================================

@dataclass
class PhaseTransitionEvent:
    """Event representing a phase transition."""

    lap_number: int
    """Lap the transition belongs to."""

    from_phase: LapPhase
    to_phase: LapPhase

    elapsed_seconds: float
    """Wall-clock time spent in from_phase."""

    reason: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """Checks phase transitions and explains denials."""

    @staticmethod
    def can_transition(from_phase: LapPhase, to_phase: LapPhase) -> Tuple[bool, str]:
        valid_targets = VALID_TRANSITIONS.get(from_phase, set())

        if to_phase in valid_targets:
            return True, "Valid transition"

        return False, f"Invalid transition: {from_phase.value} -> {to_phase.value}"


# ============================================================
# LAP STATE MACHINE
# ============================================================

class LapStateMachine:
    """
    State machine for the lap orchestrator.

    Tracks the current phase, the lap number the phase belongs to,
    and how long each phase took.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._phase = LapPhase.IDLE
        self._lap_number = 0
        self._clock = clock
        self._entered_at = clock()
        self._history: List[PhaseTransitionEvent] = []
        self._max_history = 500
        self._listeners: List[Callable[[PhaseTransitionEvent], None]] = []

    @property
    def phase(self) -> LapPhase:
        return self._phase

    @property
    def lap_number(self) -> int:
        return self._lap_number

    @property
    def history(self) -> List[PhaseTransitionEvent]:
        return list(self._history)

    def add_listener(self, listener: Callable[[PhaseTransitionEvent], None]) -> None:
        self._listeners.append(listener)

    def elapsed_in_phase(self) -> float:
        return self._clock() - self._entered_at

    def transition_to(
        self,
        target: LapPhase,
        reason: str = "",
        lap_number: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> PhaseTransitionEvent:
        """
        Transition to a new phase.

        Args:
            target: Target phase
            reason: Reason for transition
            lap_number: Lap number to adopt (used when entering TRADING)
            details: Additional details

        Returns:
            PhaseTransitionEvent

        Raises:
            StateTransitionError: If transition is not allowed
        """
        allowed, why = TransitionGuard.can_transition(self._phase, target)
        if not allowed:
            raise StateTransitionError(
                f"Lap {self._lap_number}: cannot transition from "
                f"{self._phase.value} to {target.value}: {why}"
            )

        now = self._clock()
        event = PhaseTransitionEvent(
            lap_number=self._lap_number if lap_number is None else lap_number,
            from_phase=self._phase,
            to_phase=target,
            elapsed_seconds=now - self._entered_at,
            reason=reason,
            details=details or {},
        )

        self._phase = target
        self._entered_at = now
        if lap_number is not None:
            self._lap_number = lap_number

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Phase listener error: {e}")

        logger.info(
            f"Lap {event.lap_number}: "
            f"{event.from_phase.value} -> {event.to_phase.value} "
            f"({reason}) after {event.elapsed_seconds:.2f}s"
        )

        return event
