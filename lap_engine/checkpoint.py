"""
Lap Engine - Session Checkpoint Manager.

============================================================
PURPOSE
============================================================
Records which session stage has completed, and loads the
minimal state needed to resume after any stage.

STAGES:
    1 pair discovered        -> needs resource ref and pair
    2 admin created          -> needs admin identity
    3 pool generated         -> needs admin and worker pool
    4 primary distributed    -> needs admin and worker pool
    5 secondary distributed  -> needs admin and worker pool
    6 accounts swept         -> needs admin identity

RULES:
- create() never overwrites an existing session
- advance() never moves the stage backward
- restart_from() is operator-invoked and may move it backward

============================================================
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from .adapters.base import SessionStore
from .errors import CheckpointError
from .types import SessionCheckpoint, SessionStage, utcnow


logger = logging.getLogger(__name__)


Requirement = Tuple[str, Callable[[SessionCheckpoint], bool]]

_HAS_RESOURCE: Requirement = ("resource reference", lambda cp: bool(cp.resource_ref))
_HAS_PAIR: Requirement = ("pair reference", lambda cp: cp.pair is not None)
_HAS_ADMIN: Requirement = ("admin identity", lambda cp: cp.has_admin)
_HAS_POOL: Requirement = (
    "worker pool",
    lambda cp: bool(cp.workers) and all(w.credential for w in cp.workers),
)

STAGE_REQUIREMENTS: Dict[SessionStage, List[Requirement]] = {
    SessionStage.PAIR_DISCOVERED: [_HAS_RESOURCE, _HAS_PAIR],
    SessionStage.ADMIN_CREATED: [_HAS_RESOURCE, _HAS_ADMIN],
    SessionStage.POOL_GENERATED: [_HAS_RESOURCE, _HAS_ADMIN, _HAS_POOL],
    SessionStage.PRIMARY_DISTRIBUTED: [_HAS_RESOURCE, _HAS_ADMIN, _HAS_POOL],
    SessionStage.SECONDARY_DISTRIBUTED: [_HAS_RESOURCE, _HAS_ADMIN, _HAS_POOL],
    SessionStage.ACCOUNTS_SWEPT: [_HAS_RESOURCE, _HAS_ADMIN],
}


def missing_requirements(checkpoint: SessionCheckpoint, stage: SessionStage) -> List[str]:
    return [name for name, check in STAGE_REQUIREMENTS[stage] if not check(checkpoint)]


class SessionCheckpointManager:
    """
    Stage bookkeeping on top of a SessionStore.

    Keeps the last known stage of every session it touched so the
    control surface can report it without a store round-trip.
    """

    def __init__(self, store: SessionStore):
        self._store = store
        self._stages: Dict[str, SessionStage] = {}
        self._create_lock = asyncio.Lock()

    @property
    def store(self) -> SessionStore:
        return self._store

    def effective_stage(self, session_ref: str) -> Optional[SessionStage]:
        return self._stages.get(session_ref)

    # --------------------------------------------------------
    # FORWARD PROGRESS
    # --------------------------------------------------------

    async def create(self, checkpoint: SessionCheckpoint) -> SessionCheckpoint:
        """
        Persist a brand-new session at stage 1.

        Raises:
            CheckpointError: Session ref already stored (CHK_EXISTS),
                or pair data missing
        """
        checkpoint.stage = SessionStage.PAIR_DISCOVERED
        self._require(checkpoint, SessionStage.PAIR_DISCOVERED)

        async with self._create_lock:
            if checkpoint.session_ref in await self._store.list_sessions():
                raise CheckpointError(
                    f"Session {checkpoint.session_ref} already exists",
                    code="CHK_EXISTS",
                )
            await self._save(checkpoint)
        logger.info(f"Session {checkpoint.session_ref} created for {checkpoint.resource_ref}")
        return checkpoint

    async def advance(self, stage: SessionStage, payload: SessionCheckpoint) -> SessionCheckpoint:
        """
        Record that `stage` has completed.

        Args:
            stage: Completed stage
            payload: Session state holding the data the stage produced

        Raises:
            CheckpointError: Stage would move backward, or data is missing
        """
        stage = SessionStage(stage)
        if stage < payload.stage:
            raise CheckpointError(
                f"Session {payload.session_ref}: cannot advance from stage "
                f"{int(payload.stage)} back to {int(stage)}",
                code="CHK_REGRESSION",
            )
        self._require(payload, stage)

        previous = payload.stage
        payload.stage = stage
        await self._save(payload)

        if stage != previous:
            logger.info(
                f"Session {payload.session_ref}: stage {int(previous)} -> {int(stage)} ({stage.label})"
            )
        return payload

    # --------------------------------------------------------
    # RESUMPTION
    # --------------------------------------------------------

    async def load_from(
        self,
        session_ref: str,
        stage: Optional[SessionStage] = None,
    ) -> SessionCheckpoint:
        """
        Load the session state needed to resume after `stage`.

        Args:
            session_ref: Session reference
            stage: Stage to resume after (default: recorded stage)

        Raises:
            CheckpointError: Session missing, stage not yet reached,
                or required data absent
        """
        checkpoint = await self._store.load(session_ref)
        self._stages[session_ref] = checkpoint.stage

        if stage is None:
            stage = checkpoint.stage
        stage = SessionStage(stage)

        if stage > checkpoint.stage:
            raise CheckpointError(
                f"Session {session_ref} has only reached stage {int(checkpoint.stage)}; "
                f"cannot resume after stage {int(stage)}",
                code="CHK_INCOMPLETE",
            )
        self._require(checkpoint, stage)
        return checkpoint

    async def restart_from(self, session_ref: str, stage: SessionStage) -> SessionCheckpoint:
        """
        Operator restart: set the recorded stage, possibly backward.

        Raises:
            CheckpointError: Session missing or lacking data for `stage`
        """
        stage = SessionStage(stage)
        checkpoint = await self._store.load(session_ref)
        self._require(checkpoint, stage)

        previous = checkpoint.stage
        checkpoint.stage = stage
        await self._save(checkpoint)

        logger.warning(
            f"Session {session_ref}: operator restart from stage {int(stage)} "
            f"({stage.label}), previously {int(previous)}"
        )
        return checkpoint

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _require(self, checkpoint: SessionCheckpoint, stage: SessionStage) -> None:
        missing = missing_requirements(checkpoint, stage)
        if missing:
            raise CheckpointError(
                f"Session {checkpoint.session_ref} cannot use stage {int(stage)}: "
                f"missing {', '.join(missing)}",
                code="CHK_INCOMPLETE",
                context={"missing": missing},
            )

    async def _save(self, checkpoint: SessionCheckpoint) -> None:
        checkpoint.updated_at = utcnow()
        await self._store.save(checkpoint)
        self._stages[checkpoint.session_ref] = checkpoint.stage
