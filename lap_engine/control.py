"""
Lap Engine - Control Surface.

============================================================
PURPOSE
============================================================
Operator-facing commands for one engine instance.

    start(strategy_id, session_ref)
    pause() / resume() / stop()
    restart_from(stage_id, session_ref)
    sweep(session_ref)
    status()

Every mutating call returns a ControlAck immediately. The
session continues in a background task; its failures are
reported only through status() and the lap history, never
raised to a caller that was told "started".

============================================================
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .cancellation import RunToken
from .config import LapEngineConfig, StrategyProfile
from .errors import FatalError, LapEngineError
from .session_runner import SessionRunner
from .types import ControlAck, ControlStatus, SessionStage


logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = "increase_makers_volume"


class LapController:
    """
    Runs at most one session task at a time.

    A fresh RunToken is created for every start so a stale stop
    can never leak into the next run.
    """

    def __init__(
        self,
        runner: SessionRunner,
        config: LapEngineConfig,
        default_strategy: str = DEFAULT_STRATEGY,
    ):
        self._runner = runner
        self._config = config
        self._default_strategy = default_strategy

        self._task: Optional[asyncio.Task] = None
        self._token: Optional[RunToken] = None
        self._session_ref: Optional[str] = None
        self._last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def session_ref(self) -> Optional[str]:
        return self._session_ref

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    # --------------------------------------------------------
    # COMMANDS
    # --------------------------------------------------------

    async def start(self, strategy_id: Optional[str], session_ref: str) -> ControlAck:
        """Resume a session from its recorded stage in the background."""
        profile = self._resolve_strategy(strategy_id)
        if profile is None:
            return ControlAck(False, f"Unknown strategy: {strategy_id}")
        if self.is_running:
            return ControlAck(False, f"Session {self._session_ref} is already running")

        self._launch(
            session_ref,
            lambda t: self._runner.run_from(session_ref, profile, t),
        )
        logger.info(f"Started session {session_ref} with strategy {profile.strategy_id}")
        return ControlAck(True, f"Started {session_ref}")

    async def pause(self) -> ControlAck:
        if not self.is_running or self._token is None:
            return ControlAck(False, "Not running")
        if not self._token.pause():
            return ControlAck(False, "Already paused or stopping")
        return ControlAck(True, "Pausing at next phase boundary")

    async def resume(self) -> ControlAck:
        if not self.is_running or self._token is None:
            return ControlAck(False, "Not running")
        if not self._token.resume():
            return ControlAck(False, "Not paused")
        return ControlAck(True, "Resumed")

    async def stop(self) -> ControlAck:
        """Request a stop. Always accepted; repeating it is harmless."""
        if not self.is_running or self._token is None:
            return ControlAck(True, "Already stopped")
        if self._token.stop_requested:
            return ControlAck(True, "Stop already requested")
        self._token.stop("Stop requested by operator")
        return ControlAck(True, "Stopping at next phase boundary")

    async def restart_from(
        self,
        stage_id,
        session_ref: str,
        strategy_id: Optional[str] = None,
    ) -> ControlAck:
        """
        Reset the recorded stage (possibly backward) and resume after it.

        status() called right after an accepted restart reports
        exactly the requested stage.
        """
        try:
            stage = SessionStage.parse(stage_id)
        except ValueError as e:
            return ControlAck(False, str(e))

        profile = self._resolve_strategy(strategy_id)
        if profile is None:
            return ControlAck(False, f"Unknown strategy: {strategy_id}")
        if self.is_running:
            return ControlAck(False, f"Session {self._session_ref} is running; stop it first")

        try:
            await self._runner.checkpoints.restart_from(session_ref, stage)
        except LapEngineError as e:
            return ControlAck(False, e.message)

        self._launch(
            session_ref,
            lambda t: self._runner.run_from(session_ref, profile, t, stage=stage),
        )
        return ControlAck(True, f"Restarting {session_ref} from stage {int(stage)} ({stage.label})")

    async def sweep(self, session_ref: str) -> ControlAck:
        """Sweep and close every worker account of a stopped session."""
        if self.is_running:
            return ControlAck(False, f"Session {self._session_ref} is running; stop it first")
        self._launch(session_ref, lambda t: self._runner.sweep_session(session_ref))
        return ControlAck(True, f"Sweeping {session_ref}")

    def status(self) -> ControlStatus:
        orchestrator = self._runner.orchestrator
        running = self.is_running
        token = self._token
        return ControlStatus(
            running=running,
            current_lap=orchestrator.current_lap_number,
            global_flag=bool(running and token is not None and token.global_flag),
            paused=bool(token is not None and token.is_paused),
            stage=(
                self._runner.checkpoints.effective_stage(self._session_ref)
                if self._session_ref else None
            ),
            phase=orchestrator.phase.value,
            session_ref=self._session_ref,
            last_error=self._last_error,
            summary=orchestrator.aggregator.summary.to_dict(),
        )

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def wait(self) -> None:
        """Wait for the background session task to finish."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop the session and wait for it; cancel it after `timeout`."""
        await self.stop()
        if self._task is None or self._task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Session task did not stop within {timeout:.0f}s; cancelling")
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _resolve_strategy(self, strategy_id: Optional[str]) -> Optional[StrategyProfile]:
        return self._config.get_strategy(strategy_id or self._default_strategy)

    def _launch(
        self,
        session_ref: str,
        work: Callable[[RunToken], Awaitable[object]],
    ) -> RunToken:
        token = RunToken(name=f"session {session_ref}")
        self._token = token
        self._session_ref = session_ref
        self._last_error = None
        self._task = asyncio.ensure_future(self._run(work, token))
        return token

    async def _run(self, work: Callable[[RunToken], Awaitable[object]], token: RunToken) -> None:
        try:
            await work(token)
        except FatalError as e:
            self._last_error = e.reason
            logger.error(f"Session {self._session_ref} halted: {e.reason}")
        except LapEngineError as e:
            self._last_error = e.message
            logger.error(f"Session {self._session_ref} failed [{e.code}]: {e.message}")
        except asyncio.CancelledError:
            self._last_error = "Session task cancelled"
            raise
        except Exception as e:
            self._last_error = f"Unexpected error: {e}"
            logger.exception(f"Session {self._session_ref} crashed: {e}")
        finally:
            token.stop("Session task finished")
