"""Tests for the SQLite storage backend."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from solesync.core.config import StorageConfig
from solesync.core.exceptions import StorageError
from solesync.core.models import JobRun, Provider
from solesync.ingestion.store import (
    SqliteStore,
    StorageProtocol,
    create_store,
    format_ts,
    parse_ts,
)


class TestCodecs:
    def test_format_ts_fixed_width(self):
        a = format_ts(datetime(2025, 3, 14, 9, 0, tzinfo=UTC))
        b = format_ts(datetime(2025, 3, 14, 10, 0, 0, 123456, tzinfo=UTC))
        assert len(a) == len(b)
        assert a < b
        assert a == "2025-03-14T09:00:00.000000+00:00"

    def test_parse_ts_round_trip(self):
        ts = datetime(2025, 3, 14, 9, 5, 7, 42, tzinfo=UTC)
        assert parse_ts(format_ts(ts)) == ts
        assert parse_ts(None) is None


class TestLifecycle:
    async def test_protocol(self, store):
        assert isinstance(store, StorageProtocol)

    async def test_schema_version(self, store):
        row = await store.fetch_one("SELECT MAX(version) AS v FROM schema_version")
        assert row["v"] == 1

    async def test_reopen_is_idempotent(self, tmp_path):
        config = StorageConfig(sqlite_path=str(tmp_path / "db" / "s.db"))
        first = await create_store(config)
        await first.close()
        second = await create_store(config)
        rows = await second.fetch_all("SELECT version FROM schema_version")
        assert [r["version"] for r in rows] == [1]
        await second.close()

    async def test_health_check(self, store):
        assert await store.health_check() is True

    async def test_uninitialized_store_raises(self):
        s = SqliteStore(StorageConfig(sqlite_path=":memory:"))
        assert await s.health_check() is False
        with pytest.raises(StorageError, match="not initialized"):
            await s.fetch_all("SELECT 1")


class TestTransaction:
    async def test_commit(self, store):
        async with store.transaction(table="job_runs") as db:
            await db.execute(
                "INSERT INTO job_runs (run_id, started_at) VALUES ('r1', '2025')"
            )
        assert await store.fetch_one("SELECT * FROM job_runs WHERE run_id = 'r1'")

    async def test_domain_error_rolls_back_and_propagates(self, store):
        with pytest.raises(ValueError, match="nope"):
            async with store.transaction(table="job_runs") as db:
                await db.execute(
                    "INSERT INTO job_runs (run_id, started_at) VALUES ('r2', '2025')"
                )
                raise ValueError("nope")
        assert await store.fetch_one("SELECT * FROM job_runs WHERE run_id = 'r2'") is None

    async def test_sqlite_error_wrapped(self, store):
        with pytest.raises(StorageError) as exc_info:
            async with store.transaction(table="nowhere") as db:
                await db.execute("INSERT INTO nowhere VALUES (1)")
        assert exc_info.value.context["table"] == "nowhere"

    async def test_write_error_wrapped(self, store):
        with pytest.raises(StorageError) as exc_info:
            await store.write("UPDATE nowhere SET x = 1", table="nowhere")
        assert exc_info.value.context["operation"] == "update"


class TestSnapshots:
    async def test_insert_and_list(self, store, make_snapshot):
        inserted = await store.insert_snapshots([make_snapshot(), make_snapshot(size_key="11")])
        assert inserted == 2
        snaps = await store.list_snapshots(sku="dd1391-100")
        assert len(snaps) == 2
        assert all(s.id is not None for s in snaps)

    async def test_empty_insert(self, store):
        assert await store.insert_snapshots([]) == 0

    async def test_duplicate_observation_skipped(self, store, make_snapshot):
        assert await store.insert_snapshots([make_snapshot()]) == 1
        assert await store.insert_snapshots([make_snapshot(lowest_ask=Decimal("1"))]) == 0
        assert await store.count_snapshots() == 1

    async def test_null_variant_participates_in_uniqueness(self, store, make_snapshot):
        await store.insert_snapshots([make_snapshot(provider_variant_id=None)])
        assert await store.insert_snapshots([make_snapshot(provider_variant_id=None)]) == 0
        [snap] = await store.list_snapshots()
        assert snap.provider_variant_id is None

    async def test_decimals_preserved(self, store, make_snapshot):
        await store.insert_snapshots([make_snapshot(lowest_ask=Decimal("199.90"))])
        [snap] = await store.list_snapshots()
        assert snap.lowest_ask == Decimal("199.90")
        assert str(snap.lowest_ask) == "199.90"

    async def test_list_filters(self, store, make_snapshot, now):
        await store.insert_snapshots(
            [
                make_snapshot(),
                make_snapshot(provider=Provider.ALIAS, provider_product_id="alias-prod-1"),
                make_snapshot(snapshot_at=now - timedelta(days=2)),
            ]
        )
        assert len(await store.list_snapshots(provider=Provider.ALIAS)) == 1
        assert len(await store.list_snapshots(since=now - timedelta(hours=1))) == 2
        newest = await store.list_snapshots(limit=1)
        assert newest[0].snapshot_at == now

    async def test_archive(self, store, make_snapshot, now):
        await store.insert_snapshots(
            [make_snapshot(), make_snapshot(snapshot_at=now - timedelta(days=10))]
        )
        moved = await store.archive_snapshots(now - timedelta(days=7))
        assert moved == 1
        assert await store.count_snapshots() == 1
        row = await store.fetch_one("SELECT COUNT(*) AS n FROM price_snapshots_archive")
        assert row["n"] == 1


class TestMappings:
    async def test_upsert_reports_changes(self, store, make_mapping):
        mapping = make_mapping()
        assert await store.upsert_mapping(mapping) is True
        assert await store.upsert_mapping(mapping) is False
        changed = make_mapping(provider_product_id="stockx-prod-2")
        assert await store.upsert_mapping(changed) is True
        [stored] = await store.get_mappings("dd1391-100")
        assert stored.provider_product_id == "stockx-prod-2"

    async def test_variant_change_counts(self, store, make_mapping):
        await store.upsert_mapping(make_mapping())
        assert await store.upsert_mapping(make_mapping(provider_variant_id="v-1")) is True

    async def test_get_and_list(self, store, make_mapping):
        await store.upsert_mapping(make_mapping(Provider.STOCKX))
        await store.upsert_mapping(make_mapping(Provider.ALIAS))
        await store.upsert_mapping(make_mapping(Provider.EBAY, sku="FZ5000"))
        mappings = await store.get_mappings("DD1391-100")
        assert [m.provider for m in mappings] == [Provider.ALIAS, Provider.STOCKX]
        assert await store.list_mapped_skus() == ["DD1391-100", "FZ5000"]

    async def test_delete(self, store, make_mapping):
        await store.upsert_mapping(make_mapping())
        assert await store.delete_mapping("dd1391-100", Provider.STOCKX) is True
        assert await store.delete_mapping("dd1391-100", Provider.STOCKX) is False
        assert await store.get_mappings("DD1391-100") == []


class TestJobRuns:
    async def test_save_and_list(self, store, now):
        run = JobRun(run_id="abc", started_at=now)
        await store.save_job_run(run)
        finished = run.model_copy(
            update={"completed_at": now + timedelta(seconds=5), "jobs_selected": 3}
        )
        await store.save_job_run(finished)
        [stored] = await store.list_job_runs()
        assert stored.jobs_selected == 3
        assert stored.completed_at == now + timedelta(seconds=5)


class TestFileStore:
    async def test_reader_sees_committed_writes(self, file_store, make_snapshot):
        await file_store.insert_snapshots([make_snapshot()])
        assert await file_store.count_snapshots() == 1
        assert file_store.path.endswith("solesync.db")
