"""
Storage - SQL Session Store and Lap History.

============================================================
PURPOSE
============================================================
SQLAlchemy implementations of:

- SessionStore: session header in `sessions`, one row per
  worker per generation in `session_workers`
  (only the newest `max_generations` generations are kept)
- LapHistoryRepository: finalized laps in `lap_records`,
  registered as a LapResultAggregator listener

Every write runs inside transaction_scope(); a failed write
rolls back and raises CheckpointError.

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from lap_engine.adapters.base import SessionStore
from lap_engine.errors import CheckpointError
from lap_engine.types import LapRecord, SessionCheckpoint, WorkerIdentity

from .documents import checkpoint_from_document, header_to_document
from .engine import create_all_tables, create_session_factory, transaction_scope
from .models import LapRecordModel, SessionModel, SessionWorkerModel


logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; every stored timestamp is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================
# SESSION STORE
# =============================================================

class SqlSessionStore(SessionStore):
    """Session store backed by SQLAlchemy tables."""

    def __init__(
        self,
        engine: Engine,
        create_tables: bool = True,
        max_generations: Optional[int] = None,
    ):
        self._engine = engine
        self._factory: sessionmaker = create_session_factory(engine)
        self._keep = max_generations
        if create_tables:
            create_all_tables(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        return self._factory

    async def load(self, session_ref: str) -> SessionCheckpoint:
        with transaction_scope(self._factory) as session:
            row = session.get(SessionModel, session_ref)
            if row is None:
                raise CheckpointError(f"Session {session_ref} not found", code="CHK_MISSING")

            generation = self._latest_generation(session, session_ref)
            workers = self._generation_rows(session, session_ref, generation) if generation else []

            document = {
                "session_ref": row.session_ref,
                "stage": row.stage,
                "resource_ref": row.resource_ref,
                "resource_name": row.resource_name,
                "pair": row.pair,
                "admin": row.admin,
                "pool_size": row.pool_size,
                "funding_amount": row.funding_amount,
                "last_lap_number": row.last_lap_number,
                "stranded_workers": row.stranded_workers or [],
                "created_at": _aware(row.session_created_at).isoformat(),
                "updated_at": _aware(row.session_updated_at).isoformat(),
            }
            return checkpoint_from_document(document, workers=[self._row_to_record(w) for w in workers])

    async def save(self, checkpoint: SessionCheckpoint) -> None:
        header = header_to_document(checkpoint)
        with transaction_scope(self._factory) as session:
            row = session.get(SessionModel, checkpoint.session_ref)
            if row is None:
                row = SessionModel(session_ref=checkpoint.session_ref)
                session.add(row)

            row.stage = header["stage"]
            row.resource_ref = header["resource_ref"]
            row.resource_name = header["resource_name"]
            row.pool_size = header["pool_size"]
            row.funding_amount = checkpoint.funding_amount
            row.last_lap_number = checkpoint.last_lap_number
            row.pair = header["pair"]
            row.admin = header["admin"]
            row.stranded_workers = header["stranded_workers"]
            row.session_created_at = checkpoint.created_at
            row.session_updated_at = checkpoint.updated_at
            session.flush()

            if checkpoint.workers:
                self._merge_generation(session, checkpoint.session_ref, checkpoint.workers)

    async def append_workers(self, pool: Sequence[WorkerIdentity], session_ref: str) -> None:
        with transaction_scope(self._factory) as session:
            if session.get(SessionModel, session_ref) is None:
                raise CheckpointError(f"Session {session_ref} not found", code="CHK_MISSING")
            generation = self._merge_generation(session, session_ref, pool)
        logger.info(f"Appended {len(pool)} workers to session {session_ref} (generation {generation})")

    async def delete(self, session_ref: str) -> None:
        with transaction_scope(self._factory) as session:
            session.execute(delete(SessionWorkerModel).where(SessionWorkerModel.session_ref == session_ref))
            session.execute(delete(SessionModel).where(SessionModel.session_ref == session_ref))

    async def list_sessions(self) -> List[str]:
        with transaction_scope(self._factory) as session:
            return list(session.scalars(select(SessionModel.session_ref).order_by(SessionModel.session_ref)))

    def generation_count(self, session_ref: str) -> int:
        with transaction_scope(self._factory) as session:
            return self._latest_generation(session, session_ref)

    def retained_generations(self, session_ref: str) -> List[int]:
        with transaction_scope(self._factory) as session:
            return list(session.scalars(
                select(SessionWorkerModel.generation)
                .where(SessionWorkerModel.session_ref == session_ref)
                .distinct()
                .order_by(SessionWorkerModel.generation)
            ))

    # --------------------------------------------------------
    # GENERATIONS
    # --------------------------------------------------------

    def _merge_generation(
        self,
        session: Session,
        session_ref: str,
        pool: Sequence[WorkerIdentity],
    ) -> int:
        """Rewrite the newest generation if it is the same pool, else add one."""
        latest = self._latest_generation(session, session_ref)
        rows = self._generation_rows(session, session_ref, latest) if latest else []

        if rows and [r.address for r in rows] == [w.address for w in pool]:
            for row, worker in zip(rows, pool):
                self._fill_row(row, worker)
            return latest

        generation = latest + 1
        for position, worker in enumerate(pool):
            row = SessionWorkerModel(session_ref=session_ref, generation=generation, position=position)
            self._fill_row(row, worker)
            session.add(row)

        if self._keep is not None and generation > self._keep:
            session.execute(
                delete(SessionWorkerModel).where(
                    SessionWorkerModel.session_ref == session_ref,
                    SessionWorkerModel.generation <= generation - self._keep,
                )
            )
        return generation

    @staticmethod
    def _latest_generation(session: Session, session_ref: str) -> int:
        value = session.scalar(
            select(func.max(SessionWorkerModel.generation)).where(SessionWorkerModel.session_ref == session_ref)
        )
        return int(value or 0)

    @staticmethod
    def _generation_rows(session: Session, session_ref: str, generation: int) -> List[SessionWorkerModel]:
        return list(session.scalars(
            select(SessionWorkerModel)
            .where(
                SessionWorkerModel.session_ref == session_ref,
                SessionWorkerModel.generation == generation,
            )
            .order_by(SessionWorkerModel.position)
        ))

    @staticmethod
    def _fill_row(row: SessionWorkerModel, worker: WorkerIdentity) -> None:
        row.worker_id = worker.id
        row.address = worker.address
        row.credential = worker.credential
        row.primary_balance = worker.primary_balance
        row.secondary_balance = worker.secondary_balance
        row.active = worker.active
        row.worker_created_at = worker.created_at
        row.retired_at = worker.retired_at

    @staticmethod
    def _row_to_record(row: SessionWorkerModel) -> Dict[str, Any]:
        retired_at = _aware(row.retired_at)
        return {
            "id": row.worker_id,
            "address": row.address,
            "credential": row.credential,
            "primary_balance": row.primary_balance,
            "secondary_balance": row.secondary_balance,
            "active": row.active,
            "created_at": _aware(row.worker_created_at).isoformat(),
            "retired_at": retired_at.isoformat() if retired_at else None,
        }


# =============================================================
# LAP HISTORY
# =============================================================

class LapHistoryRepository:
    """Persists finalized laps, one row per (session, lap number)."""

    def __init__(self, engine: Engine, create_tables: bool = True):
        self._factory: sessionmaker = create_session_factory(engine)
        if create_tables:
            create_all_tables(engine)

    def listener_for(self, session_ref: str) -> Callable[[LapRecord], Awaitable[None]]:
        """Aggregator listener writing every lap of `session_ref`."""
        async def listener(lap: LapRecord) -> None:
            self.save_lap(session_ref, lap)
        return listener

    def save_lap(self, session_ref: str, lap: LapRecord) -> None:
        if not lap.is_finalized:
            raise ValueError(f"Lap {lap.lap_number} is not finalized")

        with transaction_scope(self._factory) as session:
            session.add(LapRecordModel(
                session_ref=session_ref,
                lap_number=lap.lap_number,
                status=lap.status.value,
                error_message=lap.error_message,
                start_time=lap.start_time,
                end_time=lap.end_time,
                total_primary_collected=lap.total_primary_collected,
                total_secondary_collected=lap.total_secondary_collected,
                primary_distributed=lap.primary_distributed,
                secondary_distributed=lap.secondary_distributed,
                workers_regenerated=lap.workers_regenerated,
                active_workers=lap.active_workers,
                failed_collections=lap.failed_collections,
                failed_transfers=lap.failed_transfers,
                trading_error=lap.trading_error,
                phase_durations=dict(lap.phase_durations),
            ))
        logger.debug(f"Stored lap {lap.lap_number} of {session_ref}")

    def list_laps(self, session_ref: str) -> List[Dict[str, Any]]:
        with transaction_scope(self._factory) as session:
            rows = session.scalars(
                select(LapRecordModel)
                .where(LapRecordModel.session_ref == session_ref)
                .order_by(LapRecordModel.lap_number)
            )
            return [self._row_to_dict(r) for r in rows]

    def last_lap_number(self, session_ref: str) -> Optional[int]:
        with transaction_scope(self._factory) as session:
            return session.scalar(
                select(func.max(LapRecordModel.lap_number)).where(LapRecordModel.session_ref == session_ref)
            )

    @staticmethod
    def _row_to_dict(row: LapRecordModel) -> Dict[str, Any]:
        end_time = _aware(row.end_time)
        return {
            "lap_number": row.lap_number,
            "status": row.status,
            "error_message": row.error_message,
            "start_time": _aware(row.start_time).isoformat(),
            "end_time": end_time.isoformat() if end_time else None,
            "total_primary_collected": row.total_primary_collected,
            "total_secondary_collected": row.total_secondary_collected,
            "primary_distributed": row.primary_distributed,
            "secondary_distributed": row.secondary_distributed,
            "workers_regenerated": row.workers_regenerated,
            "active_workers": row.active_workers,
            "failed_collections": row.failed_collections,
            "failed_transfers": row.failed_transfers,
            "trading_error": row.trading_error,
            "phase_durations": dict(row.phase_durations or {}),
        }
