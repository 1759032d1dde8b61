"""Tests for the sync scheduler: enqueue paths, budget gating, status."""

from datetime import timedelta

import pytest

from solesync.core.config import (
    FreshnessConfig,
    ProviderConfig,
    ProvidersConfig,
    QueueConfig,
)
from solesync.core.exceptions import NoMappingError
from solesync.core.models import (
    PRIORITY_BACKGROUND,
    PRIORITY_MANUAL,
    JobStatus,
    OverallSyncState,
    Provider,
    ProviderSyncState,
)
from solesync.ingestion.mappings import StoreMappingResolver
from solesync.market.materializer import LatestPriceMaterializer
from solesync.scheduling.budget import BudgetManager, next_window
from solesync.scheduling.queue import SyncQueue
from solesync.scheduling.scheduler import SyncScheduler, derive_overall

NM = ProviderSyncState.NOT_MAPPED
PEND = ProviderSyncState.PENDING
PROC = ProviderSyncState.PROCESSING
OK = ProviderSyncState.COMPLETED
FAIL = ProviderSyncState.FAILED


@pytest.fixture
def providers():
    return ProvidersConfig(
        alias=ProviderConfig(hourly_rate_limit=1),
        ebay=ProviderConfig(enabled=False, default_currency="GBP"),
    )


@pytest.fixture
def materializer(store):
    return LatestPriceMaterializer(store, FreshnessConfig())


@pytest.fixture
def scheduler(store, providers, materializer):
    return SyncScheduler(
        SyncQueue(store, QueueConfig()),
        BudgetManager(store, providers),
        StoreMappingResolver(store),
        providers,
        materializer,
    )


@pytest.fixture
async def mapped(store, make_mapping):
    for provider in Provider:
        await store.upsert_mapping(make_mapping(provider))
    return "DD1391-100"


class TestDeriveOverall:
    @pytest.mark.parametrize(
        "states, expected",
        [
            ((OK, OK), OverallSyncState.READY),
            ((OK, PEND), OverallSyncState.SYNCING),
            ((PROC, FAIL), OverallSyncState.SYNCING),
            ((NM, NM), OverallSyncState.NOT_MAPPED),
            ((OK, FAIL), OverallSyncState.PARTIAL),
            ((OK, NM), OverallSyncState.PARTIAL),
            ((FAIL, NM), OverallSyncState.FAILED),
            ((FAIL, FAIL), OverallSyncState.FAILED),
        ],
    )
    def test_rules(self, states, expected):
        assert derive_overall(dict(zip([Provider.STOCKX, Provider.ALIAS], states))) == expected


class TestEnqueue:
    async def test_no_mapping_raises(self, scheduler):
        with pytest.raises(NoMappingError):
            await scheduler.enqueue_for_sku("UNKNOWN-1")

    async def test_fans_out_to_enabled_providers(self, scheduler, mapped, now):
        jobs = await scheduler.enqueue_for_sku(mapped, size="10", now=now)
        assert set(jobs) == {Provider.STOCKX, Provider.ALIAS}
        job = await scheduler.queue.get(jobs[Provider.STOCKX])
        assert job.priority == PRIORITY_MANUAL
        assert job.size == "10"

    async def test_repeat_refresh_is_idempotent(self, scheduler, mapped, now):
        first = await scheduler.enqueue_for_sku(mapped, now=now)
        second = await scheduler.enqueue_for_sku(mapped.lower(), now=now)
        assert first == second

    async def test_mapping_change_queues_background_job(self, scheduler, now):
        job_id = await scheduler.on_mapping_changed("DD1391-100", Provider.STOCKX, now=now)
        job = await scheduler.queue.get(job_id)
        assert job.priority == PRIORITY_BACKGROUND

    async def test_mapping_change_for_disabled_provider_ignored(self, scheduler, now):
        assert await scheduler.on_mapping_changed("DD1391-100", Provider.EBAY, now=now) is None
        assert sum((await scheduler.queue.counts()).values()) == 0

    async def test_enqueue_stale(self, scheduler, store, materializer, make_snapshot, now):
        await store.insert_snapshots(
            [
                make_snapshot(snapshot_at=now - timedelta(hours=7)),
                make_snapshot(sku="FZ5000", snapshot_at=now - timedelta(minutes=5)),
                make_snapshot(
                    provider=Provider.EBAY,
                    provider_product_id="ebay-prod-1",
                    snapshot_at=now - timedelta(hours=9),
                ),
            ]
        )
        await materializer.refresh(now)
        assert await scheduler.enqueue_stale(now) == 1
        assert await scheduler.enqueue_stale(now) == 1
        [job] = await scheduler.queue.list_jobs()
        assert (job.provider, job.sku) == (Provider.STOCKX, "DD1391-100")


class TestClaimRunnable:
    async def test_defers_when_budget_exhausted(self, scheduler, now):
        first = await scheduler.enqueue(Provider.ALIAS, "A", now=now)
        second = await scheduler.enqueue(Provider.ALIAS, "B", now=now)
        stockx = await scheduler.enqueue(Provider.STOCKX, "A", now=now)

        result = await scheduler.claim_runnable(10, worker_id="w1", now=now)

        assert {j.id for j in result.runnable} == {first, stockx}
        assert [j.id for j in result.deferred] == [second]
        parked = await scheduler.queue.get(second)
        assert parked.status == JobStatus.DEFERRED
        assert parked.not_before == next_window(now)
        assert parked.retry_count == 0

    async def test_deferred_job_runs_next_hour(self, scheduler, now):
        await scheduler.enqueue(Provider.ALIAS, "A", now=now)
        job_id = await scheduler.enqueue(Provider.ALIAS, "B", now=now)
        await scheduler.claim_runnable(10, now=now)

        later = next_window(now)
        assert await scheduler.promote_deferred(later) == 1
        result = await scheduler.claim_runnable(10, now=later)
        assert [j.id for j in result.runnable] == [job_id]


class TestSyncStatus:
    async def test_unmapped_sku(self, scheduler):
        status = await scheduler.sync_status("NOPE-1")
        assert status.overall == OverallSyncState.NOT_MAPPED
        assert set(status.providers) == {Provider.STOCKX, Provider.ALIAS}

    async def test_queued_then_mixed(self, scheduler, mapped, now):
        jobs = await scheduler.enqueue_for_sku(mapped, now=now)
        status = await scheduler.sync_status(mapped)
        assert status.overall == OverallSyncState.SYNCING

        queue = scheduler.queue
        claimed = await queue.claim(10, now=now)
        assert len(claimed) == 2
        await queue.complete(jobs[Provider.STOCKX], now=now)
        await queue.record_failure(jobs[Provider.ALIAS], "gone", retryable=False, now=now)

        status = await scheduler.sync_status(mapped)
        assert status.providers == {Provider.STOCKX: OK, Provider.ALIAS: FAIL}
        assert status.overall == OverallSyncState.PARTIAL
        assert status.last_errors == {Provider.ALIAS: "gone"}

    async def test_data_without_jobs_counts_as_completed(
        self, scheduler, store, materializer, make_snapshot, mapped, now
    ):
        await store.insert_snapshots(
            [
                make_snapshot(snapshot_at=now),
                make_snapshot(
                    provider=Provider.ALIAS, provider_product_id="alias-prod-1", snapshot_at=now
                ),
            ]
        )
        await materializer.refresh(now)
        status = await scheduler.sync_status(mapped)
        assert status.overall == OverallSyncState.READY
