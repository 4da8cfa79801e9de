"""
Lap Engine - Run Token.

============================================================
PURPOSE
============================================================
Explicit pause/resume/stop signal passed into the orchestrator.

The orchestrator polls the token at phase boundaries only.
In-flight external calls are never interrupted by it.

============================================================
"""

import asyncio
import logging
import time
from typing import Optional


logger = logging.getLogger(__name__)


class RunToken:
    """
    Cooperative run control for one session.

    global_flag is True while the session may enter new phases.
    """

    def __init__(self, name: str = "session"):
        self._name = name
        self._stop_requested = False
        self._stop_reason: Optional[str] = None
        self._paused_at: Optional[float] = None
        self._paused_seconds = 0.0

        self._resumed = asyncio.Event()
        self._resumed.set()
        self._stopped = asyncio.Event()

    # --------------------------------------------------------
    # STATE
    # --------------------------------------------------------

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    @property
    def is_paused(self) -> bool:
        return self._paused_at is not None

    @property
    def global_flag(self) -> bool:
        return not self._stop_requested and not self.is_paused

    @property
    def paused_seconds(self) -> float:
        """Total time spent paused, including an ongoing pause."""
        total = self._paused_seconds
        if self._paused_at is not None:
            total += time.monotonic() - self._paused_at
        return total

    # --------------------------------------------------------
    # CONTROL
    # --------------------------------------------------------

    def pause(self) -> bool:
        """Pause at the next phase boundary. Returns False if not applicable."""
        if self._stop_requested or self.is_paused:
            return False
        self._paused_at = time.monotonic()
        self._resumed.clear()
        logger.info(f"{self._name}: pause requested")
        return True

    def resume(self) -> bool:
        if not self.is_paused:
            return False
        self._paused_seconds += time.monotonic() - self._paused_at
        self._paused_at = None
        self._resumed.set()
        logger.info(f"{self._name}: resumed")
        return True

    def stop(self, reason: str = "Stop requested") -> None:
        """Request a stop. Idempotent."""
        if self._stop_requested:
            return
        self._stop_requested = True
        self._stop_reason = reason
        if self._paused_at is not None:
            self._paused_seconds += time.monotonic() - self._paused_at
            self._paused_at = None
        self._stopped.set()
        self._resumed.set()
        logger.info(f"{self._name}: {reason}")

    # --------------------------------------------------------
    # WAITING
    # --------------------------------------------------------

    async def wait_until_resumed(self) -> None:
        """Block while paused. Returns immediately once stopped."""
        if self.is_paused:
            logger.info(f"{self._name}: paused at phase boundary")
        await self._resumed.wait()

    async def wait_for_stop(self) -> None:
        await self._stopped.wait()
