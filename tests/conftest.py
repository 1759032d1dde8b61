"""Shared pytest fixtures for solesync."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from solesync.core.config import SolesyncConfig, StorageConfig
from solesync.core.models import PriceSnapshot, Provider, ProviderMapping, SizeSystem
from solesync.ingestion.provider import RawPriceResponse
from solesync.ingestion.store import SqliteStore

NOW = datetime(2025, 3, 14, 12, 30, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    """A fixed wall clock, half past the hour."""
    return NOW


@pytest.fixture
async def store():
    """An initialized in-memory SqliteStore."""
    s = SqliteStore(StorageConfig(sqlite_path=":memory:"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def file_store(tmp_path):
    """An initialized on-disk SqliteStore (WAL, separate reader connection)."""
    s = SqliteStore(StorageConfig(sqlite_path=str(tmp_path / "solesync.db")))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def config(tmp_path) -> SolesyncConfig:
    return SolesyncConfig(storage=StorageConfig(sqlite_path=str(tmp_path / "solesync.db")))


@pytest.fixture
def make_snapshot():
    """Factory for PriceSnapshot with overridable defaults."""

    def _make(**overrides) -> PriceSnapshot:
        defaults = dict(
            provider=Provider.STOCKX,
            provider_source="stockx_market_data",
            provider_product_id="stockx-prod-1",
            provider_variant_id=None,
            sku="DD1391-100",
            size_key="10",
            size_numeric=10.0,
            size_system=SizeSystem.US,
            currency_code="USD",
            region_code="",
            lowest_ask=Decimal("200.00"),
            highest_bid=Decimal("180.00"),
            last_sale_price=Decimal("190.00"),
            snapshot_at=NOW,
        )
        defaults.update(overrides)
        return PriceSnapshot(**defaults)

    return _make


@pytest.fixture
def make_mapping():
    """Factory for ProviderMapping; product id defaults per provider."""

    def _make(provider: Provider = Provider.STOCKX, sku: str = "DD1391-100", **overrides):
        defaults = dict(
            sku=sku,
            provider=provider,
            provider_product_id=f"{Provider(provider).value}-prod-1",
        )
        defaults.update(overrides)
        return ProviderMapping(**defaults)

    return _make


def _stockx_payload(*variants: tuple[str, str, str | None]) -> dict:
    """StockX market-data payload from (variant_id, size, lowest_ask) tuples."""
    return {
        "variants": [
            {
                "variantId": variant_id,
                "variantValue": size,
                "lowestAskAmount": ask,
                "highestBidAmount": None,
                "lastSaleAmount": None,
            }
            for variant_id, size, ask in variants
        ]
    }


class FakeClient:
    """ProviderClient double that records calls and replays a payload or error."""

    def __init__(self, provider: Provider, payload: dict | None = None, error: Exception | None = None):
        self.provider = provider
        self.payload = payload or {}
        self.error = error
        self.calls: list[tuple[str, str | None, str]] = []

    async def fetch_market(self, product_id, size_or_variant_id, currency):
        self.calls.append((product_id, size_or_variant_id, currency))
        if self.error is not None:
            raise self.error
        return RawPriceResponse(
            provider=self.provider,
            source=f"{self.provider.value}_fake",
            payload=self.payload,
            currency_code=currency,
            fetched_at=NOW,
        )


@pytest.fixture
def fake_client():
    """Factory for FakeClient."""
    return FakeClient


@pytest.fixture
def stockx_payload():
    """Factory for StockX payloads."""
    return _stockx_payload
