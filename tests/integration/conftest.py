"""Integration test fixtures — real SQLite files, fake provider clients, no network."""

from __future__ import annotations

from pathlib import Path

import pytest

from solesync.core.config import (
    ProviderConfig,
    ProvidersConfig,
    SolesyncConfig,
    StorageConfig,
    WorkerConfig,
)
from solesync.core.models import Provider
from solesync.services import open_services


def _alias_variant(size, lowest_cents, **extra):
    return {
        "size": size,
        "size_unit": "US",
        "product_condition": "PRODUCT_CONDITION_NEW",
        "packaging_condition": "PACKAGING_CONDITION_GOOD_CONDITION",
        "consigned": False,
        "availability": {"lowest_listing_price_cents": lowest_cents, **extra},
    }


@pytest.fixture
def integration_config(tmp_path: Path) -> SolesyncConfig:
    return SolesyncConfig(
        storage=StorageConfig(sqlite_path=str(tmp_path / "integration.db")),
        providers=ProvidersConfig(
            stockx=ProviderConfig(requests_per_second=1000),
            alias=ProviderConfig(requests_per_second=1000, hourly_rate_limit=2),
            ebay=ProviderConfig(enabled=False, default_currency="GBP"),
        ),
        worker=WorkerConfig(concurrency=3, poll_interval_seconds=0.01),
    )


@pytest.fixture
async def services(integration_config):
    """Every component wired over an on-disk store."""
    s = await open_services(integration_config)
    yield s
    await s.close()


@pytest.fixture
def clients(fake_client, stockx_payload):
    """StockX and Alias fakes quoting the same two physical sizes."""
    return {
        Provider.STOCKX: fake_client(
            Provider.STOCKX,
            stockx_payload(("v-105", "10.5", "140"), ("v-14w", "14W", "300")),
        ),
        Provider.ALIAS: fake_client(
            Provider.ALIAS,
            {"variants": [_alias_variant(10.5, "15000"), _alias_variant(11, "16000")]},
        ),
    }
