"""
Tests for PositionStore: atomic commit, recovery, trust-chain mode, pruning.
"""

import gzip
import json

import pytest

from lpkeeper.core.errors import StateCommitError
from lpkeeper.core.models import EngineState, IntentKind, TxOutcome, TxRecord
from lpkeeper.state.archive import TxArchive
from lpkeeper.state.position_store import PositionStore, PositionStoreConfig

from conftest import make_position, seed


def _record(i):
    return TxRecord(intent_id=f"intent-{i}", correlation_id="c", kind=IntentKind.DEPOSIT, pool_id="pool-1",
                    outcome=TxOutcome.SUCCESS, timestamp_ms=1000 + i, gas_cost_usd=0.1)


class TestLoad:
    @pytest.mark.asyncio
    async def test_fresh_directory(self, store):
        state = await store.load()
        assert state.positions == {}
        assert not state.control.trust_chain
        assert store.loaded

    @pytest.mark.asyncio
    async def test_round_trip_through_disk(self, store, tmp_path):
        pos = make_position()
        await seed(store, pos, paused=True)
        reopened = PositionStore(str(tmp_path / "state"), config=PositionStoreConfig(fsync=False))
        state = await reopened.load()
        assert state.positions[pos.position_id] == pos
        assert state.control.paused
        assert state.seq == 1

    @pytest.mark.asyncio
    async def test_corrupt_primary_falls_back_to_recovery_point(self, store, tmp_path):
        await seed(store, make_position("pool-1"))
        await seed(store, make_position("pool-2"))
        store.path.write_text("{not json")
        reopened = PositionStore(str(tmp_path / "state"), config=PositionStoreConfig(fsync=False))
        state = await reopened.load()
        # newest recovery point is the state before the second commit
        assert state.seq == 1
        assert [p.pool_id for p in state.positions.values()] == ["pool-1"]
        assert not state.control.trust_chain

    @pytest.mark.asyncio
    async def test_skips_invalid_recovery_points(self, store, tmp_path):
        await seed(store, make_position("pool-1"))
        await seed(store, make_position("pool-2"))
        await seed(store, make_position("pool-3"))
        points = sorted(store.state_dir.glob("engine_state.json.rp.*"))
        points[-1].write_text(json.dumps({"version": 1}))
        store.path.write_text("")
        state = await PositionStore(str(tmp_path / "state"), config=PositionStoreConfig(fsync=False)).load()
        assert state.seq == 1

    @pytest.mark.asyncio
    async def test_trust_chain_when_nothing_valid(self, store, tmp_path):
        await seed(store, make_position())
        await seed(store, make_position("pool-2"))
        for path in store.state_dir.glob("engine_state.json*"):
            path.write_text("garbage")
        state = await PositionStore(str(tmp_path / "state"), config=PositionStoreConfig(fsync=False)).load()
        assert state.control.trust_chain
        assert state.positions == {}
        assert not state.control.autonomous


class TestCommit:
    """commit() applies a whole transform or nothing."""

    @pytest.mark.asyncio
    async def test_transform_error_applies_nothing(self, store):
        await seed(store, make_position())

        def broken(state: EngineState) -> None:
            state.control.paused = True
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await store.commit(broken)
        assert not store.snapshot().control.paused
        assert store.snapshot().seq == 1

    @pytest.mark.asyncio
    async def test_transform_may_return_replacement(self, store):
        await seed(store, make_position())
        state = await store.commit(lambda s: EngineState(), reason="reset")
        assert state.positions == {}
        assert state.seq == 2

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self, store):
        pos = make_position()
        await seed(store, pos)
        view = store.snapshot()
        view.positions[pos.position_id].value_usd = 1.0
        assert store.snapshot().positions[pos.position_id].value_usd == pos.value_usd

    @pytest.mark.asyncio
    async def test_no_staging_file_left(self, store):
        await seed(store, make_position())
        assert store.path.exists()
        assert not store.staging_path.exists()

    @pytest.mark.asyncio
    async def test_recovery_points_bounded(self, tmp_path):
        store = PositionStore(str(tmp_path / "s"), config=PositionStoreConfig(recovery_points=2, fsync=False))
        for i in range(6):
            await seed(store, make_position(f"pool-{i}"))
        assert len(list(store.state_dir.glob("engine_state.json.rp.*"))) == 2

    @pytest.mark.asyncio
    async def test_write_failure_is_fatal(self, store, monkeypatch):
        def fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("lpkeeper.state.position_store.os.replace", fail)
        with pytest.raises(StateCommitError):
            await seed(store, make_position())
        assert store.snapshot().positions == {}

    @pytest.mark.asyncio
    async def test_failed_swap_leaves_previous_state_loadable(self, store, tmp_path, monkeypatch):
        pos = make_position("pool-1")
        await seed(store, pos)
        before = store.path.read_bytes()

        def fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("lpkeeper.state.position_store.os.replace", fail)
        with pytest.raises(StateCommitError):
            await seed(store, make_position("pool-2"))
        monkeypatch.undo()

        assert list(store.snapshot().positions) == [pos.position_id]
        assert store.path.read_bytes() == before
        reopened = PositionStore(str(tmp_path / "state"), config=PositionStoreConfig(fsync=False))
        state = await reopened.load()
        assert state.seq == 1
        assert state.positions == {pos.position_id: pos}
        assert not state.control.trust_chain


class TestPruning:
    @pytest.mark.asyncio
    async def test_tx_log_overflow_archived(self, tmp_path):
        archive = TxArchive(str(tmp_path / "s"), s3_bucket="")
        store = PositionStore(str(tmp_path / "s"), archive=archive,
                              config=PositionStoreConfig(tx_log_max=3, fsync=False))

        def add(state):
            state.tx_log.extend(_record(i) for i in range(5))

        state = await store.commit(add)
        assert [r.intent_id for r in state.tx_log] == ["intent-2", "intent-3", "intent-4"]
        archived = archive.read_all()
        assert [r["intent_id"] for r in archived] == ["intent-0", "intent-1"]

    @pytest.mark.asyncio
    async def test_overflow_not_archived_when_commit_fails(self, tmp_path, monkeypatch):
        archive = TxArchive(str(tmp_path / "s"), s3_bucket="")
        store = PositionStore(str(tmp_path / "s"), archive=archive,
                              config=PositionStoreConfig(tx_log_max=3, fsync=False))

        def add(state):
            state.tx_log.extend(_record(i) for i in range(5))

        def fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("lpkeeper.state.position_store.os.replace", fail)
        with pytest.raises(StateCommitError):
            await store.commit(add)
        assert archive.read_all() == []

        monkeypatch.undo()
        await store.commit(add)
        assert [r["intent_id"] for r in archive.read_all()] == ["intent-0", "intent-1"]

    @pytest.mark.asyncio
    async def test_history_bounded(self, tmp_path):
        store = PositionStore(str(tmp_path / "s"), config=PositionStoreConfig(history_max=2, fsync=False))

        def add(state):
            state.history.extend(make_position(f"old-{i}") for i in range(4))

        state = await store.commit(add)
        assert [p.pool_id for p in state.history] == ["old-2", "old-3"]


class TestArchive:
    def test_gzip_jsonl(self, tmp_path):
        archive = TxArchive(str(tmp_path), s3_bucket="")
        path = archive.write([{"intent_id": "a"}, {"intent_id": "b"}])
        assert path.name.startswith("tx_log_") and path.name.endswith(".jsonl.gz")
        with gzip.open(path, "rt") as fh:
            assert [json.loads(ln)["intent_id"] for ln in fh] == ["a", "b"]

    def test_empty_write_is_noop(self, tmp_path):
        assert TxArchive(str(tmp_path), s3_bucket="").write([]) is None
        assert TxArchive(str(tmp_path), s3_bucket="").read_all() == []

    def test_upload_when_bucket_set(self, tmp_path, monkeypatch):
        uploads = []

        class FakeS3:
            def upload_file(self, path, bucket, key):
                uploads.append((bucket, key))

        monkeypatch.setattr("boto3.client", lambda name: FakeS3())
        archive = TxArchive(str(tmp_path), s3_bucket="bucket", s3_prefix="p/")
        path = archive.write([{"intent_id": "a"}])
        assert uploads == [("bucket", "p/" + path.name)]
