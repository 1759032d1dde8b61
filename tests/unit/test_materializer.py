"""Tests for the latest-price projection."""

import asyncio
from datetime import timedelta

import pytest

from solesync.core.config import FreshnessConfig
from solesync.core.models import Freshness, Provider
from solesync.market.materializer import LatestPriceMaterializer, age_minutes, classify


@pytest.fixture
def materializer(store):
    return LatestPriceMaterializer(
        store, FreshnessConfig(fresh_minutes=60, aging_minutes=360, retention_days=7)
    )


class TestClassify:
    @pytest.mark.parametrize(
        "age, expected",
        [
            (0, Freshness.FRESH),
            (59.9, Freshness.FRESH),
            (60, Freshness.AGING),
            (359, Freshness.AGING),
            (360, Freshness.STALE),
            (10_000, Freshness.STALE),
        ],
    )
    def test_boundaries(self, age, expected):
        assert classify(age, FreshnessConfig()) == expected

    def test_age_never_negative(self, now):
        assert age_minutes(now + timedelta(minutes=5), now) == 0.0
        assert age_minutes(now - timedelta(minutes=90), now) == 90.0


class TestRefresh:
    async def test_projects_newest_per_dimension(
        self, store, materializer, make_snapshot, now
    ):
        t = now - timedelta(minutes=30)
        await store.insert_snapshots(
            [
                make_snapshot(currency_code="GBP", snapshot_at=t),
                make_snapshot(currency_code="GBP", snapshot_at=t + timedelta(minutes=5)),
                make_snapshot(
                    currency_code="GBP",
                    snapshot_at=t + timedelta(minutes=10),
                    lowest_ask=None,
                ),
            ]
        )
        assert await materializer.refresh(now) == 1

        [latest] = await materializer.latest(sku="DD1391-100", now=now)
        assert latest.snapshot.snapshot_at == t + timedelta(minutes=10)
        assert latest.snapshot.lowest_ask is None
        assert latest.age_minutes == pytest.approx(20.0)
        assert latest.freshness == Freshness.FRESH

    async def test_age_computed_at_read_time(self, store, materializer, make_snapshot, now):
        await store.insert_snapshots([make_snapshot(snapshot_at=now)])
        await materializer.refresh(now)
        [later] = await materializer.latest(now=now + timedelta(hours=2))
        assert later.freshness == Freshness.AGING
        [much_later] = await materializer.latest(now=now + timedelta(hours=8))
        assert much_later.freshness == Freshness.STALE

    async def test_dimensions_kept_apart(self, store, materializer, make_snapshot, now):
        await store.insert_snapshots(
            [
                make_snapshot(),
                make_snapshot(is_flex=True),
                make_snapshot(is_consigned=True),
                make_snapshot(currency_code="EUR"),
                make_snapshot(region_code="UK"),
                make_snapshot(size_key="11", size_numeric=11.0),
            ]
        )
        assert await materializer.refresh(now) == 6
        assert await materializer.count() == 6

    async def test_retention_window(self, store, materializer, make_snapshot, now):
        await store.insert_snapshots(
            [
                make_snapshot(snapshot_at=now - timedelta(days=8)),
                make_snapshot(size_key="11", snapshot_at=now - timedelta(days=1)),
            ]
        )
        assert await materializer.refresh(now) == 1

    async def test_refresh_replaces_previous_projection(
        self, store, materializer, make_snapshot, now
    ):
        await store.insert_snapshots([make_snapshot(snapshot_at=now - timedelta(minutes=10))])
        await materializer.refresh(now)
        await store.insert_snapshots([make_snapshot(snapshot_at=now)])
        assert await materializer.count() == 1
        [before] = await materializer.latest(now=now)
        assert before.snapshot.snapshot_at == now - timedelta(minutes=10)

        await materializer.refresh(now)
        [after] = await materializer.latest(now=now)
        assert after.snapshot.snapshot_at == now

    async def test_snapshot_id_carried(self, store, materializer, make_snapshot, now):
        await store.insert_snapshots([make_snapshot()])
        await materializer.refresh(now)
        [stored] = await store.list_snapshots()
        [latest] = await materializer.latest(now=now)
        assert latest.snapshot.id == stored.id

    async def test_reader_sees_swap_on_file_store(self, file_store, make_snapshot, now):
        materializer = LatestPriceMaterializer(file_store, FreshnessConfig())
        assert await materializer.count() == 0
        await file_store.insert_snapshots([make_snapshot()])
        await materializer.refresh(now)
        assert await materializer.count() == 1

    async def test_file_store_reads_during_open_rebuild(self, file_store, make_snapshot, now):
        materializer = LatestPriceMaterializer(file_store, FreshnessConfig())
        await file_store.insert_snapshots([make_snapshot()])
        await materializer.refresh(now)

        async with file_store.transaction(table="latest_prices") as db:
            await db.execute("DELETE FROM latest_prices")
            rows = await asyncio.wait_for(materializer.latest(now=now), timeout=5)
            assert len(rows) == 1
        assert await materializer.count() == 0


class TestQueries:
    async def test_provider_filter(self, store, materializer, make_snapshot, now):
        await store.insert_snapshots(
            [
                make_snapshot(),
                make_snapshot(provider=Provider.ALIAS, provider_product_id="alias-prod-1"),
            ]
        )
        await materializer.refresh(now)
        rows = await materializer.latest(providers=[Provider.ALIAS], now=now)
        assert [r.provider for r in rows] == [Provider.ALIAS]
        assert await materializer.latest(providers=[], now=now) == []

    async def test_stale_targets(self, store, materializer, make_snapshot, now):
        await store.insert_snapshots(
            [
                make_snapshot(snapshot_at=now - timedelta(hours=6)),
                make_snapshot(size_key="11", snapshot_at=now - timedelta(hours=7)),
                make_snapshot(sku="FZ5000", snapshot_at=now - timedelta(minutes=1)),
            ]
        )
        await materializer.refresh(now)
        assert await materializer.stale_targets(now) == [(Provider.STOCKX, "DD1391-100")]
