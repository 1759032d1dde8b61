"""Provider response adapters — raw marketplace payloads into PriceSnapshots.

Each adapter understands exactly one provider's payload shape:

- StockX market data: one entry per variant, amounts in major units
  (numbers or decimal strings), optional flex and direct (consigned)
  sub-markets.
- Alias availabilities: one entry per size, amounts in integer cents
  (often as strings), a ``consigned`` flag and a marketplace region id.
- eBay sold listings: individual transactions; aggregated per size into a
  72-hour median sale price plus sale counts.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import numpy as np

from solesync.core.models import (
    PriceSnapshot,
    Provider,
    ProviderMapping,
    SizeSystem,
    ensure_utc,
)
from solesync.ingestion.provider import RawPriceResponse, SnapshotAdapter
from solesync.market.sizes import parse_size, size_identity

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def parse_amount(value: Any) -> Decimal | None:
    """Parse a major-unit amount. Missing, malformed or negative -> None."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def parse_cents(value: Any) -> Decimal | None:
    """Parse an integer-cents amount into major units."""
    cents = parse_amount(value)
    if cents is None:
        return None
    return (cents / 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def _actionable(*amounts: Decimal | None) -> bool:
    return any(a is not None and a > 0 for a in amounts)


class StockXAdapter:
    """Transforms StockX market-data responses into PriceSnapshot records.

    Every variant yields a standard snapshot. Variants with a flex market
    yield an additional ``is_flex`` snapshot, and variants with a direct
    market yield an additional ``is_consigned`` snapshot. Sizes are US
    unless the variant value says otherwise.
    """

    provider = Provider.STOCKX

    def adapt(self, raw: RawPriceResponse, mapping: ProviderMapping) -> list[PriceSnapshot]:
        variants = raw.payload.get("variants")
        if not isinstance(variants, list):
            logger.warning(
                "StockX payload for %s has no variants list", mapping.provider_product_id
            )
            return []

        snapshots: list[PriceSnapshot] = []
        for variant in variants:
            variant_id = variant.get("variantId")
            if not variant_id:
                logger.warning("Skipping StockX variant without variantId: %r", variant)
                continue

            size_raw = variant.get("variantValue") or variant.get("size")
            parsed = parse_size(size_raw)
            if not parsed.display:
                logger.warning("Skipping StockX variant %s without size", variant_id)
                continue

            base = dict(
                provider=Provider.STOCKX,
                provider_product_id=mapping.provider_product_id,
                provider_variant_id=str(variant_id),
                sku=mapping.sku,
                size_key=parsed.display,
                size_numeric=parsed.numeric,
                size_system=parsed.system or SizeSystem.US,
                currency_code=variant.get("currencyCode") or raw.currency_code,
                region_code=raw.region_code,
                snapshot_at=raw.fetched_at,
            )
            last_sale = parse_amount(variant.get("lastSaleAmount"))
            snapshots.append(
                PriceSnapshot(
                    **base,
                    provider_source="stockx_market_data",
                    lowest_ask=parse_amount(variant.get("lowestAskAmount")),
                    highest_bid=parse_amount(variant.get("highestBidAmount")),
                    last_sale_price=last_sale,
                    sales_last_72h=variant.get("salesLast72Hours"),
                )
            )

            flex = variant.get("flexMarketData") or {}
            flex_ask = parse_amount(flex.get("lowestAsk") or variant.get("flexLowestAskAmount"))
            if flex_ask is not None:
                snapshots.append(
                    PriceSnapshot(
                        **base,
                        provider_source="stockx_market_data_flex",
                        is_flex=True,
                        lowest_ask=flex_ask,
                        highest_bid=parse_amount(
                            flex.get("highestBidAmount") or variant.get("flexHighestBidAmount")
                        ),
                        last_sale_price=last_sale,
                    )
                )

            direct = variant.get("directMarketData") or {}
            direct_ask = parse_amount(direct.get("lowestAsk"))
            if direct_ask is not None:
                snapshots.append(
                    PriceSnapshot(
                        **base,
                        provider_source="stockx_market_data_direct",
                        is_consigned=True,
                        lowest_ask=direct_ask,
                        highest_bid=parse_amount(direct.get("highestBidAmount")),
                        last_sale_price=last_sale,
                    )
                )

        return snapshots


# Alias marketplace region ids. Prices are always quoted in USD.
_ALIAS_REGIONS: dict[str, str] = {"1": "US", "2": "EU", "3": "UK"}
_ALIAS_CONDITIONS = {
    "product_condition": "PRODUCT_CONDITION_NEW",
    "packaging_condition": "PACKAGING_CONDITION_GOOD_CONDITION",
}


class AliasAdapter:
    """Transforms Alias availability responses into PriceSnapshot records.

    Only new, good-packaging listings are kept. Sizes with no actionable
    price (every amount zero or absent) are dropped.
    """

    provider = Provider.ALIAS

    def adapt(self, raw: RawPriceResponse, mapping: ProviderMapping) -> list[PriceSnapshot]:
        variants = raw.payload.get("variants")
        if not isinstance(variants, list):
            logger.warning(
                "Alias payload for %s has no variants list", mapping.provider_product_id
            )
            return []

        region_id = raw.payload.get("region_id")
        region = _ALIAS_REGIONS.get(str(region_id), raw.region_code) if region_id else raw.region_code

        snapshots: list[PriceSnapshot] = []
        dropped = 0
        for variant in variants:
            if any(
                variant.get(field, expected) != expected
                for field, expected in _ALIAS_CONDITIONS.items()
            ):
                continue
            availability = variant.get("availability")
            if not availability:
                dropped += 1
                continue

            lowest = parse_cents(availability.get("lowest_listing_price_cents"))
            highest = parse_cents(availability.get("highest_offer_price_cents"))
            last = parse_cents(availability.get("last_sold_listing_price_cents"))
            if not _actionable(lowest, highest, last):
                dropped += 1
                continue

            unit = str(variant.get("size_unit") or "").upper()
            size_raw = variant.get("size")
            parsed = parse_size(size_raw)
            system = parsed.system
            if system is None and unit in SizeSystem.__members__:
                system = SizeSystem(unit)

            snapshots.append(
                PriceSnapshot(
                    provider=Provider.ALIAS,
                    provider_source=(
                        "alias_availabilities_consigned"
                        if variant.get("consigned")
                        else "alias_availabilities"
                    ),
                    provider_product_id=mapping.provider_product_id,
                    provider_variant_id=mapping.provider_variant_id,
                    sku=mapping.sku,
                    size_key=parsed.display,
                    size_numeric=parsed.numeric,
                    size_system=system or SizeSystem.US,
                    currency_code="USD",
                    region_code=region,
                    is_consigned=bool(variant.get("consigned")),
                    lowest_ask=lowest,
                    highest_bid=highest,
                    last_sale_price=last,
                    ask_count=availability.get("number_of_listings"),
                    bid_count=availability.get("number_of_offers"),
                    snapshot_at=raw.fetched_at,
                )
            )

        if dropped:
            logger.debug(
                "Dropped %d non-actionable Alias sizes for %s",
                dropped,
                mapping.provider_product_id,
            )
        return snapshots


class EbaySoldAdapter:
    """Aggregates eBay sold transactions into one snapshot per size.

    ``last_sale_price`` is the median sale price over the 72 hours before
    the fetch; ``sales_last_72h`` and ``sales_last_30d`` count the sales in
    those windows. Sizes with no sale in 30 days produce no snapshot, and
    sales in a currency other than the requested one are ignored.
    """

    provider = Provider.EBAY

    median_window = timedelta(hours=72)
    volume_window = timedelta(days=30)

    def adapt(self, raw: RawPriceResponse, mapping: ProviderMapping) -> list[PriceSnapshot]:
        sales = raw.payload.get("sales")
        if not isinstance(sales, list):
            logger.warning(
                "eBay payload for %s has no sales list", mapping.provider_product_id
            )
            return []

        now = ensure_utc(raw.fetched_at)
        groups: dict[tuple, list[tuple[datetime, Decimal, str]]] = {}
        for sale in sales:
            price = parse_amount(sale.get("price"))
            sold_raw = sale.get("sold_at")
            if price is None or not sold_raw or not sale.get("size"):
                continue
            currency = str(sale.get("currency") or raw.currency_code).upper()
            if currency != raw.currency_code:
                continue
            sold_at = (
                ensure_utc(sold_raw)
                if isinstance(sold_raw, datetime)
                else ensure_utc(datetime.fromisoformat(str(sold_raw)))
            )
            if sold_at > now or now - sold_at > self.volume_window:
                continue
            parsed = parse_size(sale["size"])
            groups.setdefault((parsed.system, size_identity(parsed)), []).append(
                (sold_at, price, parsed.display)
            )

        snapshots: list[PriceSnapshot] = []
        for (system, _), entries in sorted(groups.items(), key=lambda kv: (str(kv[0][0]), kv[0][1])):
            entries.sort(key=lambda e: e[0], reverse=True)
            recent = [float(p) for sold_at, p, _ in entries if now - sold_at <= self.median_window]
            display = entries[0][2]
            parsed = parse_size(display)
            median = (
                Decimal(str(np.median(np.array(recent)))).quantize(_CENT, rounding=ROUND_HALF_UP)
                if recent
                else None
            )
            snapshots.append(
                PriceSnapshot(
                    provider=Provider.EBAY,
                    provider_source="ebay_sold_median",
                    provider_product_id=mapping.provider_product_id,
                    provider_variant_id=mapping.provider_variant_id,
                    sku=mapping.sku,
                    size_key=display,
                    size_numeric=parsed.numeric,
                    size_system=system,
                    currency_code=raw.currency_code,
                    region_code=raw.region_code,
                    last_sale_price=median,
                    sales_last_72h=len(recent),
                    sales_last_30d=len(entries),
                    snapshot_at=now,
                )
            )
        return snapshots


_ADAPTERS: dict[Provider, SnapshotAdapter] = {
    Provider.STOCKX: StockXAdapter(),
    Provider.ALIAS: AliasAdapter(),
    Provider.EBAY: EbaySoldAdapter(),
}


def get_adapter(provider: Provider | str) -> SnapshotAdapter:
    """Adapter registered for a provider."""
    return _ADAPTERS[Provider(provider)]
