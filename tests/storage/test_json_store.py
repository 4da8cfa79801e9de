"""
JSON Session Store Tests.

============================================================
PURPOSE
============================================================
Tests for JsonSessionStore against a temporary directory.

============================================================
TEST CATEGORIES
============================================================
1. Save and load
2. Worker generations
3. Listing and deletion
4. Failure handling

============================================================
"""

import json
from decimal import Decimal

import pytest

from lap_engine.config import StorageConfig
from lap_engine.errors import CheckpointError
from lap_engine.types import PairInfo, SessionCheckpoint, SessionStage, WorkerIdentity
from storage.json_store import JsonSessionStore


def make_store(directory, max_generations: int = 10) -> JsonSessionStore:
    return JsonSessionStore(StorageConfig(
        backend="json",
        session_dir=str(directory),
        write_retries=2,
        write_retry_delay_seconds=0.0,
        max_generations=max_generations,
    ))


def make_checkpoint(session_ref: str = "Test_20260101120000", workers=None) -> SessionCheckpoint:
    return SessionCheckpoint(
        session_ref=session_ref,
        stage=SessionStage.POOL_GENERATED,
        resource_ref="TokenMint111",
        resource_name="Test",
        pair=PairInfo(resource_ref="TokenMint111", pair_ref="Pair111", resource_name="Test"),
        admin=WorkerIdentity(id=0, address="admin1", credential="admin-secret"),
        workers=workers if workers is not None else make_pool("w"),
        pool_size=2,
        funding_amount=Decimal("0.5"),
    )


def make_pool(prefix: str) -> list:
    return [
        WorkerIdentity(id=i, address=f"{prefix}{i}", credential=f"{prefix}-cred-{i}")
        for i in (1, 2)
    ]


# ============================================================
# SAVE AND LOAD
# ============================================================

class TestSaveAndLoad:
    """Tests for save() and load()."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        store = make_store(tmp_path)
        checkpoint = make_checkpoint()
        checkpoint.workers[0].primary_balance = Decimal("0.123456789")
        checkpoint.last_lap_number = 5

        await store.save(checkpoint)
        loaded = await store.load(checkpoint.session_ref)

        assert loaded.stage == SessionStage.POOL_GENERATED
        assert loaded.pair.pair_ref == "Pair111"
        assert loaded.funding_amount == Decimal("0.5")
        assert loaded.last_lap_number == 5
        assert loaded.workers[0].primary_balance == Decimal("0.123456789")
        assert loaded.created_at == checkpoint.created_at

    @pytest.mark.asyncio
    async def test_credentials_persisted(self, tmp_path):
        store = make_store(tmp_path)
        await store.save(make_checkpoint())

        document = json.loads(store.path_for("Test_20260101120000").read_text())

        assert document["admin"]["credential"] == "admin-secret"
        assert document["generations"][0][1]["credential"] == "w-cred-2"

    @pytest.mark.asyncio
    async def test_file_name(self, tmp_path):
        store = make_store(tmp_path)
        await store.save(make_checkpoint())

        assert (tmp_path / "Test_20260101120000_session.json").exists()
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_stranded_workers_kept(self, tmp_path):
        store = make_store(tmp_path)
        checkpoint = make_checkpoint()
        checkpoint.stranded_workers = [WorkerIdentity(id=9, address="lost", credential="lost-cred")]

        await store.save(checkpoint)
        loaded = await store.load(checkpoint.session_ref)

        assert [(w.address, w.credential) for w in loaded.stranded_workers] == [("lost", "lost-cred")]

    @pytest.mark.asyncio
    async def test_creates_missing_directory(self, tmp_path):
        store = make_store(tmp_path / "nested" / "sessions")

        await store.save(make_checkpoint())

        assert store.path_for("Test_20260101120000").exists()


# ============================================================
# GENERATIONS
# ============================================================

class TestGenerations:
    """Tests for worker generation handling."""

    @pytest.mark.asyncio
    async def test_same_pool_rewrites_newest(self, tmp_path):
        store = make_store(tmp_path)
        checkpoint = make_checkpoint()
        await store.save(checkpoint)

        checkpoint.workers[0].active = True
        await store.save(checkpoint)

        generations = store.generations(checkpoint.session_ref)
        assert len(generations) == 1
        assert generations[0][0]["active"] is True

    @pytest.mark.asyncio
    async def test_append_keeps_previous_pools(self, tmp_path):
        store = make_store(tmp_path)
        await store.save(make_checkpoint())

        await store.append_workers(make_pool("n"), "Test_20260101120000")

        generations = store.generations("Test_20260101120000")
        assert [[r["address"] for r in g] for g in generations] == [["w1", "w2"], ["n1", "n2"]]
        loaded = await store.load("Test_20260101120000")
        assert [w.address for w in loaded.workers] == ["n1", "n2"]

    @pytest.mark.asyncio
    async def test_old_generations_pruned(self, tmp_path):
        """Test that a long session keeps only the newest pools on disk."""
        store = make_store(tmp_path, max_generations=3)
        checkpoint = make_checkpoint()
        checkpoint.stranded_workers = [WorkerIdentity(id=9, address="lost", credential="lost-cred")]
        await store.save(checkpoint)

        for lap in range(10):
            await store.append_workers(make_pool(f"lap{lap}-"), checkpoint.session_ref)

        generations = store.generations(checkpoint.session_ref)
        assert [g[0]["address"] for g in generations] == ["lap7-1", "lap8-1", "lap9-1"]
        loaded = await store.load(checkpoint.session_ref)
        assert [w.address for w in loaded.stranded_workers] == ["lost"]

    @pytest.mark.asyncio
    async def test_append_to_unknown_session(self, tmp_path):
        store = make_store(tmp_path)

        with pytest.raises(CheckpointError) as exc_info:
            await store.append_workers(make_pool("n"), "missing")
        assert exc_info.value.code == "CHK_MISSING"

    @pytest.mark.asyncio
    async def test_session_without_workers(self, tmp_path):
        store = make_store(tmp_path)
        await store.save(make_checkpoint(workers=[]))

        loaded = await store.load("Test_20260101120000")

        assert loaded.workers == []
        assert store.generations("Test_20260101120000") == []


# ============================================================
# LISTING AND DELETION
# ============================================================

class TestListAndDelete:
    """Tests for list_sessions() and delete()."""

    @pytest.mark.asyncio
    async def test_list_sessions(self, tmp_path):
        store = make_store(tmp_path)
        await store.save(make_checkpoint("b_20260101000000"))
        await store.save(make_checkpoint("a_20260101000000"))
        (tmp_path / "notes.txt").write_text("ignored")

        assert await store.list_sessions() == ["a_20260101000000", "b_20260101000000"]

    @pytest.mark.asyncio
    async def test_list_missing_directory(self, tmp_path):
        store = make_store(tmp_path / "absent")

        assert await store.list_sessions() == []

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        store = make_store(tmp_path)
        await store.save(make_checkpoint())

        await store.delete("Test_20260101120000")
        await store.delete("Test_20260101120000")

        assert await store.list_sessions() == []


# ============================================================
# FAILURE HANDLING
# ============================================================

class TestFailures:
    """Tests for unreadable files and failed writes."""

    @pytest.mark.asyncio
    async def test_missing_session(self, tmp_path):
        store = make_store(tmp_path)

        with pytest.raises(CheckpointError) as exc_info:
            await store.load("missing")
        assert exc_info.value.code == "CHK_MISSING"

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        store = make_store(tmp_path)
        store.path_for("broken").write_text("{not json")

        with pytest.raises(CheckpointError, match="unreadable"):
            await store.load("broken")

    @pytest.mark.asyncio
    async def test_write_failure_after_retries(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file where the directory should be")
        store = make_store(blocker)

        with pytest.raises(CheckpointError) as exc_info:
            await store.save(make_checkpoint())

        assert exc_info.value.code == "CHK_WRITE_FAILED"
        assert "after 2 attempts" in exc_info.value.message
