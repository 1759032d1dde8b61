"""FastAPI route definitions for the solesync API."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError

import solesync
from solesync.api.deps import (
    get_fx,
    get_market,
    get_materializer,
    get_scheduler,
    get_store,
)
from solesync.api.schemas import (
    BudgetWindowResponse,
    EnqueueRequest,
    FxConversionResponse,
    FxEventRequest,
    FxEventResponse,
    FxRateRequest,
    FxRateResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    MappingRequest,
    MappingResponse,
    MarketResponse,
    RefreshRequest,
    RefreshResponse,
    SyncStatusResponse,
    UnifiedRowResponse,
)
from solesync.core.models import (
    Channel,
    JobStatus,
    Provider,
    ProviderMapping,
    normalize_sku,
    utcnow,
)
from solesync.ingestion.store import SqliteStore
from solesync.market.fx import FxService
from solesync.market.materializer import LatestPriceMaterializer
from solesync.market.service import MarketReadService
from solesync.scheduling.scheduler import SyncScheduler

router = APIRouter()


# -- Health --


@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: SqliteStore = Depends(get_store),
    scheduler: SyncScheduler = Depends(get_scheduler),
    materializer: LatestPriceMaterializer = Depends(get_materializer),
):
    """System health and queue statistics."""
    counts = await scheduler.queue.counts()
    return HealthResponse(
        status="ok",
        version=solesync.__version__,
        storage_ok=await store.health_check(),
        latest_prices=await materializer.count(),
        jobs={status.value: n for status, n in counts.items()},
    )


# -- Refresh / Jobs --


@router.post("/refresh", response_model=RefreshResponse, status_code=202)
async def refresh_sku(
    body: RefreshRequest,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Queue a refresh of a SKU on every mapped provider."""
    jobs = await scheduler.enqueue_for_sku(body.sku, priority=body.priority, size=body.size)
    return RefreshResponse(
        sku=normalize_sku(body.sku),
        jobs=jobs,
        message=f"Refresh queued on {len(jobs)} provider(s)",
    )


@router.post("/jobs", response_model=JobResponse, status_code=202)
async def enqueue_job(
    body: EnqueueRequest,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Queue a single provider fetch. Returns the active job for the same key if any."""
    job_id = await scheduler.enqueue(
        body.provider, body.sku, size=body.size, priority=body.priority
    )
    job = await scheduler.queue.get(job_id)
    return JobResponse.from_job(job)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    status: JobStatus | None = Query(None),
    provider: Provider | None = Query(None),
    sku: str | None = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """List jobs in claim order with filtering and pagination."""
    page = await scheduler.queue.list_jobs(
        status=status, provider=provider, sku=sku, limit=limit, offset=offset
    )
    total = await scheduler.queue.count_jobs(status=status, provider=provider, sku=sku)
    return JobListResponse(
        total=total,
        offset=offset,
        limit=limit,
        items=[JobResponse.from_job(j) for j in page],
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: int,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    job = await scheduler.queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: int,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Cancel a pending job. Running and finished jobs cannot be cancelled."""
    job = await scheduler.queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    if not await scheduler.queue.cancel(job_id):
        raise HTTPException(
            status_code=409,
            detail=f"Job {job_id} is {job.status.value} and cannot be cancelled",
        )
    return JobResponse.from_job(await scheduler.queue.get(job_id))


@router.get("/sync-status/{sku}", response_model=SyncStatusResponse)
async def sync_status(
    sku: str,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    status = await scheduler.sync_status(sku)
    return SyncStatusResponse(
        sku=status.sku,
        overall=status.overall.value,
        providers={p: s.value for p, s in status.providers.items()},
        last_errors=status.last_errors,
    )


# -- Market --


@router.get("/market/{sku}", response_model=MarketResponse)
async def market_prices(
    sku: str,
    size: str | None = Query(None, description="Any size form, e.g. '10.5', 'UK 9', '14W'"),
    currency: str | None = Query(None, description="GBP, USD or EUR; omit for native"),
    as_of: date | None = Query(None, description="FX date; defaults to today"),
    region: str | None = Query(None),
    channel: list[Channel] | None = Query(None),
    market: MarketReadService = Depends(get_market),
):
    """Unified latest prices for a SKU across every mapped provider."""
    rows = await market.unified_prices(
        sku,
        size=size,
        currency=currency,
        as_of=as_of,
        channels=channel,
        region=region,
    )
    return MarketResponse(
        sku=normalize_sku(sku),
        currency=currency.strip().upper() if currency else None,
        as_of=(as_of or utcnow().date()) if currency else None,
        rows=[UnifiedRowResponse.from_row(r) for r in rows],
    )


# -- Catalog mappings --


@router.put("/mappings", response_model=MappingResponse)
async def put_mapping(
    body: MappingRequest,
    store: SqliteStore = Depends(get_store),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Create or change a mapping; a change queues a background refresh."""
    try:
        mapping = ProviderMapping(
            sku=body.sku,
            provider=body.provider,
            provider_product_id=body.provider_product_id,
            provider_variant_id=body.provider_variant_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    changed = await store.upsert_mapping(mapping)
    job_id = None
    if changed:
        job_id = await scheduler.on_mapping_changed(mapping.sku, mapping.provider)
    return MappingResponse(
        sku=mapping.sku,
        provider=mapping.provider,
        provider_product_id=mapping.provider_product_id,
        provider_variant_id=mapping.provider_variant_id,
        changed=changed,
        job_id=job_id,
    )


@router.get("/mappings/{sku}", response_model=list[MappingRequest])
async def get_mappings(
    sku: str,
    store: SqliteStore = Depends(get_store),
):
    mappings = await store.get_mappings(sku)
    if not mappings:
        raise HTTPException(
            status_code=404, detail=f"No mappings for '{normalize_sku(sku)}'"
        )
    return [
        MappingRequest(
            sku=m.sku,
            provider=m.provider,
            provider_product_id=m.provider_product_id,
            provider_variant_id=m.provider_variant_id,
        )
        for m in mappings
    ]


# -- FX --


@router.put("/fx/{as_of}", response_model=FxRateResponse)
async def put_fx_rate(
    as_of: date,
    body: FxRateRequest,
    fx: FxService = Depends(get_fx),
):
    rate = await fx.upsert_rate(
        as_of,
        gbp_per_usd=body.gbp_per_usd,
        gbp_per_eur=body.gbp_per_eur,
        source=body.source,
    )
    return FxRateResponse.from_rate(rate)


@router.get("/fx", response_model=list[FxRateResponse])
async def list_fx_rates(
    limit: int = Query(30, ge=1, le=365),
    fx: FxService = Depends(get_fx),
):
    return [FxRateResponse.from_rate(r) for r in await fx.list_rates(limit)]


@router.get("/fx/rate", response_model=FxConversionResponse)
async def fx_rate(
    from_ccy: str = Query(..., alias="from"),
    to_ccy: str = Query(..., alias="to"),
    as_of: date | None = Query(None),
    amount: Decimal | None = Query(None, ge=0),
    fx: FxService = Depends(get_fx),
):
    """Cross rate for a date, and optionally a converted amount."""
    day = as_of or utcnow().date()
    rate = await fx.rate_for(day, from_ccy, to_ccy)
    converted = await fx.convert(amount, day, from_ccy, to_ccy) if amount is not None else None
    return FxConversionResponse(
        as_of=day,
        from_ccy=from_ccy.strip().upper(),
        to_ccy=to_ccy.strip().upper(),
        rate=rate,
        amount=amount,
        converted=converted,
    )


@router.post("/fx/events", response_model=FxEventResponse)
async def pin_fx_event(
    body: FxEventRequest,
    fx: FxService = Depends(get_fx),
):
    """Pin the base-currency value of a purchase or sale. Later calls return the pinned value."""
    snap = await fx.snapshot_event(
        body.event_id,
        body.event_type,
        body.event_date,
        body.amount,
        body.currency,
        base_currency=body.base_currency,
    )
    return FxEventResponse.from_snapshot(snap)


# -- Budgets --


@router.get("/budgets", response_model=list[BudgetWindowResponse])
async def list_budgets(
    provider: Provider | None = Query(None),
    limit: int = Query(24, ge=1, le=500),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    windows = await scheduler.budget.windows(provider=provider, limit=limit)
    return [BudgetWindowResponse.from_window(w) for w in windows]
