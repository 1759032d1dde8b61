"""Pydantic data models — the system's type contracts."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

# --- Type Aliases ---

Sku = str
SizeKey = str
CurrencyCode = str
RegionCode = str

# --- Priorities ---

PRIORITY_MANUAL = 200
PRIORITY_HOT = 150
PRIORITY_BACKGROUND = 100

# --- Enumerations ---


class Provider(StrEnum):
    """Marketplaces the engine synchronizes."""

    STOCKX = "stockx"
    ALIAS = "alias"
    EBAY = "ebay"


class JobStatus(StrEnum):
    """Lifecycle states of a sync job."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    DEFERRED = "deferred"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.DEFERRED)


class Freshness(StrEnum):
    """Age class of a latest price, computed at read time."""

    FRESH = "fresh"
    AGING = "aging"
    STALE = "stale"


class Channel(StrEnum):
    """Selling channel a snapshot belongs to. Never mixed by the unifier."""

    STANDARD = "standard"
    FLEX = "flex"
    CONSIGNED = "consigned"


class Currency(StrEnum):
    """Currencies carried by the GBP-pivot FX table."""

    GBP = "GBP"
    USD = "USD"
    EUR = "EUR"


class SizeSystem(StrEnum):
    US = "US"
    UK = "UK"
    EU = "EU"
    JP = "JP"


class EventType(StrEnum):
    PURCHASE = "purchase"
    SALE = "sale"


class ProviderSyncState(StrEnum):
    """Per-provider sync state for one SKU."""

    NOT_MAPPED = "not_mapped"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OverallSyncState(StrEnum):
    SYNCING = "syncing"
    READY = "ready"
    PARTIAL = "partial"
    FAILED = "failed"
    NOT_MAPPED = "not_mapped"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_sku(sku: str) -> Sku:
    return sku.strip().upper()


def make_dedupe_key(provider: Provider | str, sku: str, size: str | None) -> str:
    """Composite identity used to prevent duplicate in-flight work."""
    return f"{Provider(provider).value}|{normalize_sku(sku)}|{(size or '').strip()}"


# --- Queue Models ---


class SyncJob(BaseModel):
    """One unit of scheduled fetch work."""

    model_config = ConfigDict(frozen=True)

    id: int
    provider: Provider
    sku: Sku
    size: SizeKey | None = None
    priority: int = PRIORITY_BACKGROUND
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    not_before: datetime | None = None
    leased_until: datetime | None = None
    worker_id: str | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("retry_count")
    @classmethod
    def retry_count_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"retry_count must be >= 0, got {v}")
        return v

    @property
    def dedupe_key(self) -> str:
        return make_dedupe_key(self.provider, self.sku, self.size)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES


class BudgetGrant(BaseModel):
    """Result of a budget reservation attempt."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    hour_window: datetime
    requested: int
    granted: int
    remaining: int
    available: bool = True

    @property
    def is_granted(self) -> bool:
        return self.granted > 0 and self.granted == self.requested


class BudgetWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Provider
    hour_window: datetime
    rate_limit: int
    used: int

    @property
    def remaining(self) -> int:
        return max(0, self.rate_limit - self.used)


class JobRun(BaseModel):
    """Audit record of one worker-pool pass."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    started_at: datetime
    completed_at: datetime | None = None
    jobs_selected: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_deferred: int = 0


# --- Catalog Models ---


class ProviderMapping(BaseModel):
    """Link between a catalog SKU and one provider's product."""

    model_config = ConfigDict(frozen=True)

    sku: Sku
    provider: Provider
    provider_product_id: str
    provider_variant_id: str | None = None

    @field_validator("sku")
    @classmethod
    def sku_normalized(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("sku must not be empty")
        return normalize_sku(v)

    @field_validator("provider_product_id")
    @classmethod
    def product_id_present(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("provider_product_id must not be empty")
        return v.strip()

    @field_validator("provider_variant_id")
    @classmethod
    def blank_variant_is_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()


# --- Price Models ---


class PriceSnapshot(BaseModel):
    """One immutable provider price observation."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    provider: Provider
    provider_source: str
    provider_product_id: str
    provider_variant_id: str | None = None
    sku: Sku
    size_key: SizeKey
    size_numeric: float | None = None
    size_system: SizeSystem | None = None
    currency_code: CurrencyCode
    region_code: RegionCode = ""
    is_flex: bool = False
    is_consigned: bool = False
    lowest_ask: Decimal | None = None
    highest_bid: Decimal | None = None
    last_sale_price: Decimal | None = None
    ask_count: int | None = None
    bid_count: int | None = None
    sales_last_72h: int | None = None
    sales_last_30d: int | None = None
    snapshot_at: datetime

    @field_validator("currency_code")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("sku")
    @classmethod
    def sku_upper(cls, v: str) -> str:
        return normalize_sku(v)

    @field_validator("snapshot_at")
    @classmethod
    def snapshot_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("lowest_ask", "highest_bid", "last_sale_price")
    @classmethod
    def amount_non_negative(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v < 0:
            raise ValueError(f"price must be >= 0, got {v}")
        return v

    @property
    def channel(self) -> Channel:
        if self.is_consigned:
            return Channel.CONSIGNED
        if self.is_flex:
            return Channel.FLEX
        return Channel.STANDARD

    @property
    def dimension_key(self) -> tuple:
        """Identity of the time series this observation belongs to."""
        return (
            self.provider.value,
            self.provider_product_id,
            self.provider_variant_id,
            self.size_key,
            self.currency_code,
            self.region_code,
            self.is_flex,
            self.is_consigned,
        )


class LatestPrice(BaseModel):
    """Most recent snapshot for one dimension tuple, aged at read time."""

    model_config = ConfigDict(frozen=True)

    snapshot: PriceSnapshot
    age_minutes: float
    freshness: Freshness

    @property
    def provider(self) -> Provider:
        return self.snapshot.provider


class ProviderQuote(BaseModel):
    """One provider's side of a unified row."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    provider_variant_id: str | None = None
    size_key: SizeKey
    currency_code: CurrencyCode
    region_code: RegionCode = ""
    lowest_ask: Decimal | None = None
    highest_bid: Decimal | None = None
    last_sale_price: Decimal | None = None
    snapshot_at: datetime
    age_minutes: float
    freshness: Freshness
    fx_rate: Decimal | None = None

    @classmethod
    def from_latest(cls, latest: LatestPrice) -> ProviderQuote:
        snap = latest.snapshot
        return cls(
            provider=snap.provider,
            provider_variant_id=snap.provider_variant_id,
            size_key=snap.size_key,
            currency_code=snap.currency_code,
            region_code=snap.region_code,
            lowest_ask=snap.lowest_ask,
            highest_bid=snap.highest_bid,
            last_sale_price=snap.last_sale_price,
            snapshot_at=snap.snapshot_at,
            age_minutes=latest.age_minutes,
            freshness=latest.freshness,
        )


class UnifiedRow(BaseModel):
    """One physical size's pricing merged across providers. Never persisted."""

    model_config = ConfigDict(frozen=True)

    size_display: SizeKey
    size_numeric: float | None = None
    channel: Channel = Channel.STANDARD
    quotes: dict[Provider, ProviderQuote | None]

    def quote(self, provider: Provider) -> ProviderQuote | None:
        return self.quotes.get(provider)

    def has(self, provider: Provider) -> bool:
        return self.quotes.get(provider) is not None


# --- FX Models ---


class FxRate(BaseModel):
    """GBP-pivot rates for one calendar date."""

    model_config = ConfigDict(frozen=True)

    as_of: date
    gbp_per_usd: Decimal
    gbp_per_eur: Decimal
    source: str = "manual"

    @field_validator("gbp_per_usd", "gbp_per_eur")
    @classmethod
    def rate_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError(f"rate must be > 0, got {v}")
        return v

    def to_pivot(self, currency: CurrencyCode) -> Decimal:
        """GBP per one unit of `currency`."""
        code = Currency(currency.strip().upper())
        if code == Currency.GBP:
            return Decimal(1)
        if code == Currency.USD:
            return self.gbp_per_usd
        return self.gbp_per_eur


class FxEventSnapshot(BaseModel):
    """Conversion pinned onto a purchase or sale. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: EventType
    event_date: date
    original_amount: Decimal
    original_currency: CurrencyCode
    base_currency: CurrencyCode
    fx_rate: Decimal
    base_amount: Decimal
    created_at: datetime | None = None


# --- Sync Status ---


class SyncStatus(BaseModel):
    """Per-SKU view of synchronization progress across providers."""

    model_config = ConfigDict(frozen=True)

    sku: Sku
    providers: dict[Provider, ProviderSyncState]
    overall: OverallSyncState
    last_errors: dict[Provider, str] = {}

    @model_validator(mode="after")
    def providers_not_empty(self) -> SyncStatus:
        if not self.providers:
            raise ValueError("providers must not be empty")
        return self
