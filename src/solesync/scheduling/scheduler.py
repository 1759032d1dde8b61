"""Sync scheduler — enqueue paths, budget-gated claiming, sweeps, status."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from solesync.core.config import ProvidersConfig
from solesync.core.exceptions import NoMappingError
from solesync.core.models import (
    PRIORITY_BACKGROUND,
    PRIORITY_MANUAL,
    JobStatus,
    OverallSyncState,
    Provider,
    ProviderSyncState,
    SyncJob,
    SyncStatus,
    normalize_sku,
    utcnow,
)
from solesync.ingestion.provider import CatalogMappingResolver
from solesync.market.materializer import LatestPriceMaterializer
from solesync.scheduling.budget import BudgetManager, next_window
from solesync.scheduling.queue import SyncQueue

logger = logging.getLogger(__name__)

_JOB_TO_SYNC_STATE = {
    JobStatus.PENDING: ProviderSyncState.PENDING,
    JobStatus.DEFERRED: ProviderSyncState.PENDING,
    JobStatus.RUNNING: ProviderSyncState.PROCESSING,
    JobStatus.DONE: ProviderSyncState.COMPLETED,
    JobStatus.FAILED: ProviderSyncState.FAILED,
}


@dataclass
class ClaimResult:
    """Jobs cleared to run, and jobs parked for lack of budget."""

    runnable: list[SyncJob] = field(default_factory=list)
    deferred: list[SyncJob] = field(default_factory=list)


def derive_overall(states: dict[Provider, ProviderSyncState]) -> OverallSyncState:
    """Overall SKU status from per-provider states.

    syncing while anything is queued or running; ready when every provider
    completed; not_mapped when none is mapped; partial when some completed;
    failed when something failed and nothing completed.
    """
    values = list(states.values())
    if any(s in (ProviderSyncState.PENDING, ProviderSyncState.PROCESSING) for s in values):
        return OverallSyncState.SYNCING
    if all(s == ProviderSyncState.COMPLETED for s in values):
        return OverallSyncState.READY
    if all(s == ProviderSyncState.NOT_MAPPED for s in values):
        return OverallSyncState.NOT_MAPPED
    if any(s == ProviderSyncState.COMPLETED for s in values):
        return OverallSyncState.PARTIAL
    if any(s == ProviderSyncState.FAILED for s in values):
        return OverallSyncState.FAILED
    return OverallSyncState.PARTIAL


class SyncScheduler:
    """Front door to the queue for callers and workers.

    Parameters
    ----------
    queue : SyncQueue
    budget : BudgetManager
    resolver : CatalogMappingResolver
        Used to fan SKU-level refreshes out to mapped providers.
    providers : ProvidersConfig
        Disabled providers are never enqueued.
    materializer : LatestPriceMaterializer | None
        Needed by ``enqueue_stale`` and ``sync_status``.
    """

    def __init__(
        self,
        queue: SyncQueue,
        budget: BudgetManager,
        resolver: CatalogMappingResolver,
        providers: ProvidersConfig,
        materializer: LatestPriceMaterializer | None = None,
    ) -> None:
        self.queue = queue
        self.budget = budget
        self._resolver = resolver
        self._providers = providers
        self._materializer = materializer

    # --- Enqueue paths ---

    async def enqueue(
        self,
        provider: Provider,
        sku: str,
        size: str | None = None,
        priority: int = PRIORITY_BACKGROUND,
        now: datetime | None = None,
    ) -> int:
        return await self.queue.enqueue(provider, sku, size=size, priority=priority, now=now)

    async def enqueue_for_sku(
        self,
        sku: str,
        priority: int = PRIORITY_MANUAL,
        size: str | None = None,
        now: datetime | None = None,
    ) -> dict[Provider, int]:
        """Refresh a SKU on every enabled, mapped provider.

        Raises NoMappingError when the SKU has no mapping at all.
        """
        sku = normalize_sku(sku)
        mappings = await self._resolver.mappings_for(sku)
        if not mappings:
            raise NoMappingError(
                f"No catalog mapping for {sku}", context={"sku": sku, "provider": None}
            )
        enabled = set(self._providers.enabled())
        job_ids: dict[Provider, int] = {}
        for mapping in mappings:
            if mapping.provider not in enabled or mapping.provider in job_ids:
                continue
            job_ids[mapping.provider] = await self.queue.enqueue(
                mapping.provider, sku, size=size, priority=priority, now=now
            )
        return job_ids

    async def on_mapping_changed(
        self, sku: str, provider: Provider, now: datetime | None = None
    ) -> int | None:
        """Queue a background refresh after a mapping was created or changed."""
        provider = Provider(provider)
        if provider not in self._providers.enabled():
            logger.debug("Mapping change for disabled provider %s ignored", provider.value)
            return None
        return await self.queue.enqueue(provider, sku, priority=PRIORITY_BACKGROUND, now=now)

    async def enqueue_stale(self, now: datetime | None = None) -> int:
        """Queue a background refresh for every (provider, SKU) with stale prices.

        Returns the number of distinct jobs now covering stale data.
        """
        if self._materializer is None:
            raise RuntimeError("enqueue_stale requires a materializer")
        enabled = set(self._providers.enabled())
        job_ids = set()
        for provider, sku in await self._materializer.stale_targets(now):
            if provider not in enabled:
                continue
            job_ids.add(
                await self.queue.enqueue(provider, sku, priority=PRIORITY_BACKGROUND, now=now)
            )
        if job_ids:
            logger.info("Stale sweep queued %d jobs", len(job_ids))
        return len(job_ids)

    # --- Worker side ---

    async def claim_runnable(
        self,
        limit: int,
        provider: Provider | None = None,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> ClaimResult:
        """Claim jobs and reserve one budget token for each.

        Jobs that do not get a token move to deferred until the next hour
        window, without touching retry_count.
        """
        now = now or utcnow()
        result = ClaimResult()
        jobs = await self.queue.claim(limit, provider=provider, worker_id=worker_id, now=now)
        for job in jobs:
            grant = await self.budget.try_reserve(job.provider, hour_window=now, n=1)
            if grant.is_granted:
                result.runnable.append(job)
                continue
            resume_at = next_window(now)
            await self.queue.defer(job.id, resume_at, worker_id=worker_id, now=now)
            result.deferred.append(
                job.model_copy(update={"status": JobStatus.DEFERRED, "not_before": resume_at})
            )
            logger.info(
                "Deferred job %d (%s) until %s: budget %s",
                job.id,
                job.provider.value,
                resume_at.isoformat(),
                "unavailable" if not grant.available else "exhausted",
            )
        return result

    async def promote_deferred(self, now: datetime | None = None) -> int:
        return await self.queue.promote_deferred(now)

    async def sweep_expired_leases(self, now: datetime | None = None) -> int:
        return await self.queue.sweep_expired_leases(now)

    # --- Status ---

    async def sync_status(self, sku: str) -> SyncStatus:
        """Per-provider and overall sync state for a SKU."""
        sku = normalize_sku(sku)
        mapped = {m.provider for m in await self._resolver.mappings_for(sku)}
        jobs = await self.queue.latest_for_sku(sku)
        with_data: set[Provider] = set()
        if self._materializer is not None and mapped:
            with_data = {lp.provider for lp in await self._materializer.latest(sku=sku)}

        states: dict[Provider, ProviderSyncState] = {}
        errors: dict[Provider, str] = {}
        for provider in self._providers.enabled():
            if provider not in mapped:
                states[provider] = ProviderSyncState.NOT_MAPPED
                continue
            job = jobs.get(provider)
            state = _JOB_TO_SYNC_STATE.get(job.status) if job else None
            if state is None:
                state = (
                    ProviderSyncState.COMPLETED
                    if provider in with_data
                    else ProviderSyncState.PENDING
                )
            states[provider] = state
            if job is not None and job.status == JobStatus.FAILED and job.last_error:
                errors[provider] = job.last_error

        return SyncStatus(
            sku=sku,
            providers=states,
            overall=derive_overall(states),
            last_errors=errors,
        )
