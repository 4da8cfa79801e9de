"""
SQL Session Store Tests.

============================================================
PURPOSE
============================================================
Tests for SqlSessionStore, LapHistoryRepository and the
database engine helpers, against a SQLite file.

============================================================
TEST CATEGORIES
============================================================
1. Database URL resolution
2. Session store round trips and generations
3. Lap history persistence
4. Lap numbering across restarted engines

============================================================
"""

from decimal import Decimal

import pytest
from sqlalchemy import inspect

from lap_engine.adapters.factory import build_engine
from lap_engine.adapters.mock import (
    MockLedgerClient,
    MockLedgerConfig,
    MockTradingStrategy,
    StaticMarketDataProvider,
)
from lap_engine.aggregator import LapResultAggregator
from lap_engine.cancellation import RunToken
from lap_engine.config import LapEngineConfig, StorageConfig
from lap_engine.errors import CheckpointError
from lap_engine.session_runner import SessionRequest
from lap_engine.types import (
    LapRecord,
    LapStatus,
    PairInfo,
    SessionCheckpoint,
    SessionStage,
    WorkerIdentity,
)
from storage.engine import (
    DEFAULT_SQLITE_URL,
    create_database_engine,
    get_database_url,
    initialize_database,
    transaction_scope,
    verify_database_connection,
)
from storage.models import Amount, SessionModel
from storage.sql_store import LapHistoryRepository, SqlSessionStore


SESSION = "Test_20260101120000"


@pytest.fixture
def engine(tmp_path):
    engine = create_database_engine(f"sqlite:///{tmp_path / 'lap_engine.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return SqlSessionStore(engine)


def make_pool(prefix: str) -> list:
    return [
        WorkerIdentity(id=i, address=f"{prefix}{i}", credential=f"{prefix}-cred-{i}")
        for i in (1, 2, 3)
    ]


def make_checkpoint(workers=None) -> SessionCheckpoint:
    return SessionCheckpoint(
        session_ref=SESSION,
        stage=SessionStage.POOL_GENERATED,
        resource_ref="TokenMint111",
        resource_name="Test",
        pair=PairInfo(resource_ref="TokenMint111", pair_ref="Pair111", resource_name="Test"),
        admin=WorkerIdentity(id=0, address="admin1", credential="admin-secret"),
        workers=workers if workers is not None else make_pool("w"),
        pool_size=3,
        funding_amount=Decimal("0.75"),
    )


def finalized_lap(number: int, status: LapStatus = LapStatus.COMPLETED) -> LapRecord:
    lap = LapRecord(lap_number=number)
    lap.total_primary_collected = Decimal("0.300000001")
    lap.total_secondary_collected = Decimal("1500")
    lap.workers_regenerated = 3
    lap.active_workers = 3
    lap.record_phase("collecting", 0.25)
    lap.finalize(status, None if status == LapStatus.COMPLETED else "boom")
    return lap


# ============================================================
# DATABASE URL
# ============================================================

class TestDatabaseUrl:
    """Tests for get_database_url()."""

    def test_explicit_url_wins(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://env/db")

        assert get_database_url("sqlite:///explicit.db") == "sqlite:///explicit.db"

    def test_sync_url_preferred(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL_SYNC", "postgresql://sync/db")
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://async/db")

        assert get_database_url() == "postgresql://sync/db"

    def test_async_driver_converted(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL_SYNC", raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://user:pw@host/db")

        assert get_database_url() == "postgresql://user:pw@host/db"

    def test_sqlite_fallback(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL_SYNC", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)

        assert get_database_url() == DEFAULT_SQLITE_URL

    def test_connection_verified(self, engine):
        assert verify_database_connection(engine)

    def test_initialize_database_creates_tables(self, tmp_path):
        engine = initialize_database(f"sqlite:///{tmp_path / 'init.db'}")

        assert {"sessions", "session_workers", "lap_records"} <= set(inspect(engine).get_table_names())
        engine.dispose()


class TestAmountColumn:
    """Tests for the Amount column type."""

    def test_exact_round_trip(self):
        amount = Amount()

        stored = amount.process_bind_param(Decimal("0.000000001"), None)

        assert isinstance(stored, str)
        assert amount.process_result_value(stored, None) == Decimal("0.000000001")

    def test_strings_accepted(self):
        assert Amount().process_bind_param("1.50", None) == "1.50"

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            Amount().process_bind_param("lots", None)


# ============================================================
# SESSION STORE
# ============================================================

class TestSqlSessionStore:
    """Tests for SqlSessionStore."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        checkpoint = make_checkpoint()
        checkpoint.workers[2].secondary_balance = Decimal("12.5")
        checkpoint.last_lap_number = 12

        await store.save(checkpoint)
        loaded = await store.load(SESSION)

        assert loaded.stage == SessionStage.POOL_GENERATED
        assert loaded.admin.credential == "admin-secret"
        assert loaded.funding_amount == Decimal("0.75")
        assert loaded.last_lap_number == 12
        assert [w.address for w in loaded.workers] == ["w1", "w2", "w3"]
        assert loaded.workers[2].secondary_balance == Decimal("12.5")
        assert loaded.workers[0].credential == "w-cred-1"
        assert loaded.created_at == checkpoint.created_at

    @pytest.mark.asyncio
    async def test_header_update(self, store):
        checkpoint = make_checkpoint()
        await store.save(checkpoint)

        checkpoint.stage = SessionStage.SECONDARY_DISTRIBUTED
        checkpoint.stranded_workers = [WorkerIdentity(id=5, address="lost", credential="lost-cred")]
        await store.save(checkpoint)
        loaded = await store.load(SESSION)

        assert loaded.stage == SessionStage.SECONDARY_DISTRIBUTED
        assert loaded.stranded_workers[0].credential == "lost-cred"
        assert store.generation_count(SESSION) == 1

    @pytest.mark.asyncio
    async def test_retired_workers_round_trip(self, store):
        checkpoint = make_checkpoint()
        checkpoint.workers[0].retire()

        await store.save(checkpoint)
        loaded = await store.load(SESSION)

        assert loaded.workers[0].retired_at is not None
        assert loaded.workers[0].retired_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_generations_append(self, store):
        await store.save(make_checkpoint())

        await store.append_workers(make_pool("n"), SESSION)
        await store.append_workers(make_pool("m"), SESSION)
        loaded = await store.load(SESSION)

        assert store.generation_count(SESSION) == 3
        assert [w.address for w in loaded.workers] == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_old_generations_pruned(self, engine):
        store = SqlSessionStore(engine, max_generations=2)
        await store.save(make_checkpoint())

        for prefix in ("n", "m", "o"):
            await store.append_workers(make_pool(prefix), SESSION)
        loaded = await store.load(SESSION)

        assert store.retained_generations(SESSION) == [3, 4]
        assert store.generation_count(SESSION) == 4
        assert [w.address for w in loaded.workers] == ["o1", "o2", "o3"]

    @pytest.mark.asyncio
    async def test_same_pool_not_duplicated(self, store):
        checkpoint = make_checkpoint()
        await store.save(checkpoint)

        await store.append_workers(checkpoint.workers, SESSION)

        assert store.generation_count(SESSION) == 1

    @pytest.mark.asyncio
    async def test_append_to_unknown_session(self, store):
        with pytest.raises(CheckpointError) as exc_info:
            await store.append_workers(make_pool("n"), "missing")
        assert exc_info.value.code == "CHK_MISSING"

    @pytest.mark.asyncio
    async def test_load_missing(self, store):
        with pytest.raises(CheckpointError) as exc_info:
            await store.load("missing")
        assert exc_info.value.code == "CHK_MISSING"

    @pytest.mark.asyncio
    async def test_list_and_delete(self, store):
        await store.save(make_checkpoint())

        assert await store.list_sessions() == [SESSION]

        await store.delete(SESSION)
        assert await store.list_sessions() == []
        assert store.generation_count(SESSION) == 0

    def test_failed_transaction_rolls_back(self, store):
        with pytest.raises(CheckpointError) as exc_info:
            with transaction_scope(store.session_factory) as session:
                # stage is NOT NULL
                session.add(SessionModel(session_ref="bad", resource_ref="x"))
        assert exc_info.value.code == "CHK_WRITE_FAILED"


# ============================================================
# LAP HISTORY
# ============================================================

class TestLapHistoryRepository:
    """Tests for LapHistoryRepository."""

    def test_save_and_list(self, engine):
        repository = LapHistoryRepository(engine)

        repository.save_lap(SESSION, finalized_lap(1))
        repository.save_lap(SESSION, finalized_lap(2, LapStatus.FAILED))
        laps = repository.list_laps(SESSION)

        assert [lap["lap_number"] for lap in laps] == [1, 2]
        assert laps[0]["total_primary_collected"] == Decimal("0.300000001")
        assert laps[0]["phase_durations"] == {"collecting": 0.25}
        assert laps[1]["status"] == "failed"
        assert laps[1]["error_message"] == "boom"
        assert repository.last_lap_number(SESSION) == 2

    def test_running_lap_rejected(self, engine):
        repository = LapHistoryRepository(engine)

        with pytest.raises(ValueError):
            repository.save_lap(SESSION, LapRecord(lap_number=1))

    def test_lap_numbers_unique_per_session(self, engine):
        repository = LapHistoryRepository(engine)
        repository.save_lap(SESSION, finalized_lap(1))

        with pytest.raises(CheckpointError):
            repository.save_lap(SESSION, finalized_lap(1))

        repository.save_lap("other", finalized_lap(1))
        assert repository.last_lap_number("other") == 1

    def test_no_laps(self, engine):
        assert LapHistoryRepository(engine).last_lap_number(SESSION) is None

    @pytest.mark.asyncio
    async def test_aggregator_listener(self, engine):
        repository = LapHistoryRepository(engine)
        aggregator = LapResultAggregator()
        aggregator.register_listener(repository.listener_for(SESSION))

        await aggregator.record(finalized_lap(1))
        await aggregator.record(finalized_lap(1))

        assert len(aggregator.history) == 2
        assert len(repository.list_laps(SESSION)) == 1


# ============================================================
# FACTORY WIRING
# ============================================================

class TestSqlWiring:
    """Tests for building an engine on the SQL backend."""

    def test_sql_backend_selected(self, tmp_path):
        config = LapEngineConfig.for_testing()
        config.storage = StorageConfig(backend="sql", database_url=f"sqlite:///{tmp_path / 'wired.db'}")

        engine = build_engine(config)

        assert isinstance(engine.store, SqlSessionStore)
        assert engine.attach_lap_history(SESSION)

    def test_json_backend_has_no_lap_history(self, tmp_path):
        config = LapEngineConfig.for_testing()
        config.storage = StorageConfig(backend="json", session_dir=str(tmp_path))

        engine = build_engine(config)

        assert not engine.attach_lap_history(SESSION)


# ============================================================
# RESTART
# ============================================================

class StopAfterTrading(MockTradingStrategy):
    """Stops the session after one trading phase."""

    token = None

    async def run(self, pool, duration_seconds):
        result = await super().run(pool, duration_seconds)
        if self.token is not None:
            self.token.stop("one lap")
        return result


def build_sql_engine(url: str, ledger: MockLedgerClient):
    config = LapEngineConfig.for_testing()
    config.storage = StorageConfig(backend="sql", database_url=url)
    market = StaticMarketDataProvider({
        "TokenMint111": PairInfo(resource_ref="TokenMint111", pair_ref="Pair111", resource_name="Test"),
    })
    return build_engine(config, ledger=ledger, market_data=market, strategy=StopAfterTrading())


async def run_one_lap(engine, session_ref: str):
    token = RunToken()
    engine.strategy.token = token
    await engine.runner.run_from(session_ref, engine.config.get_strategy("test"), token)


async def funded_ledger() -> MockLedgerClient:
    ledger = MockLedgerClient(MockLedgerConfig(seed=5))
    admin = await ledger.import_identity("admin-secret")
    ledger.fund(admin.address, primary=Decimal("1.0"))
    return ledger


async def start_session(engine) -> str:
    checkpoint = await engine.runner.new_session(SessionRequest(
        resource_ref="TokenMint111",
        pool_size=2,
        funding_amount=Decimal("0.2"),
        admin_credential="admin-secret",
    ))
    engine.attach_lap_history(checkpoint.session_ref)
    return checkpoint.session_ref


class TestRestartedProcess:
    """Tests for lap history across engines sharing one database."""

    @pytest.mark.asyncio
    async def test_lap_numbers_continue_after_restart(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'restart.db'}"
        ledger = await funded_ledger()
        first = build_sql_engine(url, ledger)
        session_ref = await start_session(first)
        await run_one_lap(first, session_ref)

        second = build_sql_engine(url, ledger)
        assert second.attach_lap_history(session_ref)
        await run_one_lap(second, session_ref)

        laps = LapHistoryRepository(second.store.engine).list_laps(session_ref)
        assert [lap["lap_number"] for lap in laps] == [1, 2]
        assert all(lap["status"] == "completed" for lap in laps)

    @pytest.mark.asyncio
    async def test_numbering_resumes_after_stored_laps(self, tmp_path):
        """Test that a lap stored after the last checkpoint save is not reused."""
        url = f"sqlite:///{tmp_path / 'ahead.db'}"
        engine = build_sql_engine(url, await funded_ledger())
        session_ref = await start_session(engine)
        repository = LapHistoryRepository(engine.store.engine)
        repository.save_lap(session_ref, finalized_lap(3, LapStatus.FAILED))

        await run_one_lap(engine, session_ref)

        assert [lap["lap_number"] for lap in repository.list_laps(session_ref)] == [3, 4]
        assert (await engine.store.load(session_ref)).last_lap_number == 4
