"""Workers — claimed jobs in, snapshots out.

One job's path::

    resolve mapping -> pace per provider -> ProviderClient.fetch_market
        -> SnapshotAdapter.adapt -> store.insert_snapshots -> queue.complete

Failure handling:

- no mapping / malformed mapping: the job fails immediately, no retry
- client raised or the response could not be adapted: retried with
  exponential backoff until max_attempts
- snapshots could not be written after a successful upstream call: the job
  stays running, the snapshots wait in the worker's buffer, and
  ``flush_unpersisted`` retries only the write, renewing the lease until
  it lands
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from uuid import uuid4

from aiolimiter import AsyncLimiter

from solesync.core.config import ProvidersConfig, SolesyncConfig, WorkerConfig
from solesync.core.exceptions import (
    ConfigError,
    MappingError,
    NoMappingError,
    PartialWriteError,
    SolesyncError,
    StorageError,
    UpstreamUnavailableError,
)
from solesync.core.models import (
    JobRun,
    JobStatus,
    PriceSnapshot,
    Provider,
    SyncJob,
    utcnow,
)
from solesync.ingestion.adapters import get_adapter
from solesync.ingestion.mappings import mapping_for_provider
from solesync.ingestion.provider import CatalogMappingResolver, ProviderClient, SnapshotAdapter
from solesync.ingestion.store import SqliteStore
from solesync.market.materializer import LatestPriceMaterializer
from solesync.scheduling.queue import SyncQueue
from solesync.scheduling.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class JobOutcome(StrEnum):
    DONE = "done"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    UNPERSISTED = "unpersisted"


@dataclass
class JobResult:
    """What happened to one job."""

    job_id: int
    provider: Provider
    outcome: JobOutcome
    snapshots_written: int = 0
    error: str | None = None


@dataclass
class _PendingWrite:
    job: SyncJob
    snapshots: list[PriceSnapshot] = field(default_factory=list)


def build_limiters(providers: ProvidersConfig) -> dict[Provider, AsyncLimiter]:
    """One request pacer per provider, from ``requests_per_second``."""
    return {
        p: AsyncLimiter(1, 1.0 / providers.get(p).requests_per_second)
        for p in Provider
    }


def load_clients(factory_path: str, config: SolesyncConfig) -> dict[Provider, ProviderClient]:
    """Import ``package.module:callable`` and call it with the config.

    The callable returns either a mapping of Provider to client or an
    iterable of clients exposing a ``provider`` attribute.
    """
    module_name, _, attr = factory_path.partition(":")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(
            f"Cannot load client factory {factory_path!r}: {e}",
            context={"field": "worker.client_factory", "value": factory_path},
        ) from e

    produced = factory(config)
    if isinstance(produced, Mapping):
        clients = {Provider(k): v for k, v in produced.items()}
    else:
        clients = {Provider(c.provider): c for c in produced}
    for provider, client in clients.items():
        if not isinstance(client, ProviderClient):
            raise ConfigError(
                f"Client for {provider.value} does not implement fetch_market",
                context={"field": "worker.client_factory", "value": factory_path},
            )
    return clients


class Worker:
    """Processes claimed jobs against provider clients.

    Parameters
    ----------
    queue : SyncQueue
    store : SqliteStore
    resolver : CatalogMappingResolver
    clients : Mapping[Provider, ProviderClient]
        Upstream client per provider. A job whose provider has no client
        fails without retry.
    providers : ProvidersConfig
        Supplies the currency requested from each provider.
    limiters : dict[Provider, AsyncLimiter] | None
        Per-provider request pacing; built from ``providers`` if omitted.
    adapters : Mapping[Provider, SnapshotAdapter] | None
        Overrides the built-in adapters.
    worker_id : str | None
        Recorded on claimed jobs; random if omitted.
    """

    def __init__(
        self,
        queue: SyncQueue,
        store: SqliteStore,
        resolver: CatalogMappingResolver,
        clients: Mapping[Provider, ProviderClient],
        providers: ProvidersConfig,
        limiters: dict[Provider, AsyncLimiter] | None = None,
        adapters: Mapping[Provider, SnapshotAdapter] | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._queue = queue
        self._store = store
        self._resolver = resolver
        self._clients = dict(clients)
        self._providers = providers
        self._limiters = limiters if limiters is not None else build_limiters(providers)
        self._adapters = dict(adapters or {})
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self._unpersisted: list[_PendingWrite] = []

    @property
    def unpersisted_count(self) -> int:
        return len(self._unpersisted)

    def _adapter_for(self, provider: Provider) -> SnapshotAdapter:
        return self._adapters.get(provider) or get_adapter(provider)

    async def process(self, job: SyncJob) -> JobResult:
        """Run one claimed job to a recorded outcome."""
        try:
            mappings = await self._resolver.mappings_for(job.sku)
            mapping = mapping_for_provider(mappings, job.provider)
            if mapping is None:
                raise NoMappingError(
                    f"No {job.provider.value} mapping for {job.sku}",
                    context={"sku": job.sku, "provider": job.provider.value},
                )
        except MappingError as e:
            return await self._fail(job, e, retryable=False)

        client = self._clients.get(job.provider)
        if client is None:
            return await self._fail(
                job,
                UpstreamUnavailableError(
                    f"No client configured for {job.provider.value}",
                    context={"job_id": job.id, "provider": job.provider.value},
                ),
                retryable=False,
            )

        currency = self._providers.get(job.provider).default_currency
        target = mapping.provider_variant_id or job.size
        try:
            limiter = self._limiters.get(job.provider)
            if limiter is not None:
                async with limiter:
                    raw = await client.fetch_market(mapping.provider_product_id, target, currency)
            else:
                raw = await client.fetch_market(mapping.provider_product_id, target, currency)
            snapshots = self._adapter_for(job.provider).adapt(raw, mapping)
        except Exception as e:
            error = UpstreamUnavailableError(
                f"{job.provider.value} fetch failed for {job.sku}: {e}",
                context={"job_id": job.id, "provider": job.provider.value},
            )
            return await self._fail(job, error, retryable=True)

        try:
            written = await self._store.insert_snapshots(snapshots)
        except StorageError as e:
            partial = PartialWriteError(
                f"Fetched {len(snapshots)} snapshots for job {job.id} but could not store them: {e}",
                snapshots=snapshots,
                context={"job_id": job.id, "provider": job.provider.value},
            )
            self._unpersisted.append(_PendingWrite(job=job, snapshots=partial.snapshots))
            logger.error("%s", partial)
            return JobResult(
                job_id=job.id,
                provider=job.provider,
                outcome=JobOutcome.UNPERSISTED,
                error=str(partial),
            )

        if not await self._queue.complete(job.id, worker_id=self.worker_id):
            logger.warning("Job %d lease lost before completion; snapshots kept", job.id)
        logger.info(
            "Job %d done: %s %s, %d/%d snapshots written",
            job.id,
            job.provider.value,
            job.sku,
            written,
            len(snapshots),
        )
        return JobResult(
            job_id=job.id,
            provider=job.provider,
            outcome=JobOutcome.DONE,
            snapshots_written=written,
        )

    async def _fail(self, job: SyncJob, error: SolesyncError, retryable: bool) -> JobResult:
        updated = await self._queue.record_failure(
            job.id, str(error), retryable=retryable, worker_id=self.worker_id
        )
        outcome = (
            JobOutcome.RETRY_SCHEDULED
            if updated is not None and updated.status == JobStatus.PENDING
            else JobOutcome.FAILED
        )
        log = logger.warning if outcome == JobOutcome.RETRY_SCHEDULED else logger.error
        log("Job %d %s: %s", job.id, outcome.value, error)
        return JobResult(job_id=job.id, provider=job.provider, outcome=outcome, error=str(error))

    async def flush_unpersisted(self, now: datetime | None = None) -> list[JobResult]:
        """Retry buffered snapshot writes without calling upstream again.

        A job whose write fails again keeps its lease, so the expired-lease
        sweep never hands it to another fetch while its snapshots wait here.
        """
        pending, self._unpersisted = self._unpersisted, []
        results: list[JobResult] = []
        for item in pending:
            try:
                written = await self._store.insert_snapshots(item.snapshots)
                completed = await self._queue.complete(
                    item.job.id, worker_id=self.worker_id, now=now
                )
            except StorageError as e:
                self._unpersisted.append(item)
                logger.warning("Write retry for job %d failed again: %s", item.job.id, e)
                await self._hold_lease(item.job, now)
                results.append(
                    JobResult(
                        job_id=item.job.id,
                        provider=item.job.provider,
                        outcome=JobOutcome.UNPERSISTED,
                        error=str(e),
                    )
                )
                continue
            if not completed:
                logger.warning("Job %d lease lost before its buffered write landed", item.job.id)
            logger.info("Flushed %d buffered snapshots for job %d", written, item.job.id)
            results.append(
                JobResult(
                    job_id=item.job.id,
                    provider=item.job.provider,
                    outcome=JobOutcome.DONE,
                    snapshots_written=written,
                )
            )
        return results

    async def _hold_lease(self, job: SyncJob, now: datetime | None) -> None:
        try:
            held = await self._queue.renew_lease(job.id, worker_id=self.worker_id, now=now)
        except StorageError as e:
            logger.warning("Could not renew lease for job %d: %s", job.id, e)
            return
        if not held:
            logger.warning("Job %d is no longer leased to %s", job.id, self.worker_id)


class WorkerPool:
    """Runs scheduling passes with bounded concurrency.

    Each pass: flush buffered writes (renewing their leases), reclaim
    expired leases, promote deferred jobs, claim a batch under budget, process it concurrently,
    refresh latest prices if anything was written, and record a JobRun.
    """

    def __init__(
        self,
        scheduler: SyncScheduler,
        worker: Worker,
        materializer: LatestPriceMaterializer,
        store: SqliteStore,
        config: WorkerConfig,
        claim_batch_size: int = 10,
    ) -> None:
        self._scheduler = scheduler
        self._worker = worker
        self._materializer = materializer
        self._store = store
        self._config = config
        self._batch = claim_batch_size

    async def run_once(self, now: datetime | None = None) -> JobRun:
        run = JobRun(run_id=uuid4().hex, started_at=utcnow())

        flushed = await self._worker.flush_unpersisted(now)
        await self._scheduler.sweep_expired_leases(now)
        await self._scheduler.promote_deferred(now)

        claim = await self._scheduler.claim_runnable(
            self._batch, worker_id=self._worker.worker_id, now=now
        )
        semaphore = asyncio.Semaphore(self._config.concurrency)

        async def guarded(job: SyncJob) -> JobResult:
            async with semaphore:
                return await self._worker.process(job)

        outcomes = await asyncio.gather(
            *(guarded(job) for job in claim.runnable), return_exceptions=True
        )

        succeeded = failed = 0
        written = sum(r.snapshots_written for r in flushed)
        for job, outcome in zip(claim.runnable, outcomes):
            if isinstance(outcome, BaseException):
                failed += 1
                logger.error("Job %d raised during processing: %r", job.id, outcome)
                continue
            written += outcome.snapshots_written
            if outcome.outcome == JobOutcome.DONE:
                succeeded += 1
            elif outcome.outcome in (JobOutcome.FAILED, JobOutcome.RETRY_SCHEDULED):
                failed += 1

        if written or any(r.outcome == JobOutcome.DONE for r in flushed):
            await self._materializer.refresh(now)

        run = run.model_copy(
            update={
                "completed_at": utcnow(),
                "jobs_selected": len(claim.runnable) + len(claim.deferred),
                "jobs_succeeded": succeeded,
                "jobs_failed": failed,
                "jobs_deferred": len(claim.deferred),
            }
        )
        await self._store.save_job_run(run)
        if run.jobs_selected:
            logger.info(
                "Run %s: %d selected, %d succeeded, %d failed, %d deferred",
                run.run_id,
                run.jobs_selected,
                run.jobs_succeeded,
                run.jobs_failed,
                run.jobs_deferred,
            )
        return run

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Loop passes until `stop_event` is set, idling when the queue is empty."""
        stop = stop_event or asyncio.Event()
        while not stop.is_set():
            idle = True
            try:
                run = await self.run_once()
                idle = run.jobs_selected == 0
            except SolesyncError as e:
                logger.error("Worker pass failed: %s", e)
            if idle:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._config.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
