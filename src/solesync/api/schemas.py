"""API-specific request/response schemas (Pydantic v2)."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from solesync.core.models import (
    PRIORITY_BACKGROUND,
    PRIORITY_MANUAL,
    BudgetWindow,
    Channel,
    EventType,
    Freshness,
    FxEventSnapshot,
    FxRate,
    Provider,
    ProviderQuote,
    SyncJob,
    UnifiedRow,
)


# -- Pagination --


class PaginatedResponse(BaseModel):
    """Wrapper for paginated list responses."""

    total: int
    offset: int
    limit: int


# -- Error --


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    error: str
    detail: str | None = None


# -- Health --


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    status: str = "ok"
    version: str
    storage_ok: bool
    latest_prices: int
    jobs: dict[str, int]


# -- Jobs --


class RefreshRequest(BaseModel):
    """Request body for POST /api/refresh: refresh a SKU on every mapped provider."""

    sku: str = Field(..., min_length=1, max_length=64)
    size: str | None = Field(default=None, max_length=32)
    priority: int = Field(default=PRIORITY_MANUAL, ge=0, le=1000)


class RefreshResponse(BaseModel):
    sku: str
    jobs: dict[Provider, int]
    message: str


class EnqueueRequest(BaseModel):
    """Request body for POST /api/jobs: one provider, one SKU."""

    provider: Provider
    sku: str = Field(..., min_length=1, max_length=64)
    size: str | None = Field(default=None, max_length=32)
    priority: int = Field(default=PRIORITY_BACKGROUND, ge=0, le=1000)


class JobResponse(BaseModel):
    id: int
    provider: Provider
    sku: str
    size: str | None = None
    priority: int
    status: str
    retry_count: int
    not_before: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: SyncJob) -> JobResponse:
        return cls(
            id=job.id,
            provider=job.provider,
            sku=job.sku,
            size=job.size,
            priority=job.priority,
            status=job.status.value,
            retry_count=job.retry_count,
            not_before=job.not_before,
            last_error=job.last_error,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )


class JobListResponse(PaginatedResponse):
    items: list[JobResponse]


class SyncStatusResponse(BaseModel):
    sku: str
    overall: str
    providers: dict[Provider, str]
    last_errors: dict[Provider, str] = {}


# -- Market --


class QuoteResponse(BaseModel):
    """One provider's prices for a size, in the requested currency."""

    size_key: str
    currency_code: str
    region_code: str
    lowest_ask: Decimal | None = None
    highest_bid: Decimal | None = None
    last_sale_price: Decimal | None = None
    snapshot_at: datetime
    age_minutes: float
    freshness: Freshness
    fx_rate: Decimal | None = None

    @classmethod
    def from_quote(cls, quote: ProviderQuote) -> QuoteResponse:
        return cls(
            size_key=quote.size_key,
            currency_code=quote.currency_code,
            region_code=quote.region_code,
            lowest_ask=quote.lowest_ask,
            highest_bid=quote.highest_bid,
            last_sale_price=quote.last_sale_price,
            snapshot_at=quote.snapshot_at,
            age_minutes=round(quote.age_minutes, 1),
            freshness=quote.freshness,
            fx_rate=quote.fx_rate,
        )


class UnifiedRowResponse(BaseModel):
    size: str
    size_numeric: float | None = None
    channel: Channel
    quotes: dict[Provider, QuoteResponse | None]

    @classmethod
    def from_row(cls, row: UnifiedRow) -> UnifiedRowResponse:
        return cls(
            size=row.size_display,
            size_numeric=row.size_numeric,
            channel=row.channel,
            quotes={
                p: QuoteResponse.from_quote(q) if q is not None else None
                for p, q in row.quotes.items()
            },
        )


class MarketResponse(BaseModel):
    """Response for GET /api/market/{sku}."""

    sku: str
    currency: str | None = None
    as_of: date | None = None
    rows: list[UnifiedRowResponse]


# -- Catalog mappings --


class MappingRequest(BaseModel):
    sku: str = Field(..., min_length=1, max_length=64)
    provider: Provider
    provider_product_id: str = Field(..., min_length=1)
    provider_variant_id: str | None = None


class MappingResponse(BaseModel):
    sku: str
    provider: Provider
    provider_product_id: str
    provider_variant_id: str | None = None
    changed: bool
    job_id: int | None = None


# -- FX --


class FxRateRequest(BaseModel):
    """Request body for PUT /api/fx/{as_of}. An omitted leg is carried forward."""

    gbp_per_usd: Decimal | None = Field(default=None, gt=0)
    gbp_per_eur: Decimal | None = Field(default=None, gt=0)
    source: str = "manual"


class FxRateResponse(BaseModel):
    as_of: date
    gbp_per_usd: Decimal
    gbp_per_eur: Decimal
    source: str

    @classmethod
    def from_rate(cls, rate: FxRate) -> FxRateResponse:
        return cls(
            as_of=rate.as_of,
            gbp_per_usd=rate.gbp_per_usd,
            gbp_per_eur=rate.gbp_per_eur,
            source=rate.source,
        )


class FxConversionResponse(BaseModel):
    as_of: date
    from_ccy: str
    to_ccy: str
    rate: Decimal
    amount: Decimal | None = None
    converted: Decimal | None = None


class FxEventRequest(BaseModel):
    """Request body for POST /api/fx/events."""

    event_id: str = Field(..., min_length=1)
    event_type: EventType
    event_date: date
    amount: Decimal = Field(..., ge=0)
    currency: str
    base_currency: str | None = None


class FxEventResponse(BaseModel):
    event_id: str
    event_type: EventType
    event_date: date
    original_amount: Decimal
    original_currency: str
    base_currency: str
    fx_rate: Decimal
    base_amount: Decimal

    @classmethod
    def from_snapshot(cls, snap: FxEventSnapshot) -> FxEventResponse:
        return cls(
            event_id=snap.event_id,
            event_type=snap.event_type,
            event_date=snap.event_date,
            original_amount=snap.original_amount,
            original_currency=snap.original_currency,
            base_currency=snap.base_currency,
            fx_rate=snap.fx_rate,
            base_amount=snap.base_amount,
        )


# -- Budgets --


class BudgetWindowResponse(BaseModel):
    provider: Provider
    hour_window: datetime
    rate_limit: int
    used: int
    remaining: int

    @classmethod
    def from_window(cls, window: BudgetWindow) -> BudgetWindowResponse:
        return cls(
            provider=window.provider,
            hour_window=window.hour_window,
            rate_limit=window.rate_limit,
            used=window.used,
            remaining=window.remaining,
        )
