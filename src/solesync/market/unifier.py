"""Cross-Provider Unifier — one row per physical size across marketplaces.

Matching works on a size identity:

1. rows whose size parses to a number are compared by their US-equivalent
   numeric size (UK/EU sizes are converted through the size charts);
2. rows without a numeric size fall back to a case-folded comparison of
   the display string ("14W" == "14w").

Channels (standard, flex, consigned) are never merged: each channel gets
its own rows. Within one provider and channel, several rows landing on the
same identity (another currency, a region, a renamed size) are resolved by
recency and logged. Providers that hold a mapping but no row for a size
appear in the row with a ``None`` quote.
"""

from __future__ import annotations

import logging
from datetime import datetime

from solesync.core.exceptions import NoMappingError
from solesync.core.models import (
    Channel,
    LatestPrice,
    Provider,
    ProviderMapping,
    ProviderQuote,
    SizeSystem,
    UnifiedRow,
    normalize_sku,
)
from solesync.ingestion.mappings import mapping_for_provider
from solesync.ingestion.provider import CatalogMappingResolver
from solesync.market.materializer import LatestPriceMaterializer
from solesync.market.sizes import ParsedSize, convert_size, format_size, parse_size, to_us_numeric

logger = logging.getLogger(__name__)

SizeIdentity = tuple[int, float | str]

_CHANNEL_ORDER = {Channel.STANDARD: 0, Channel.FLEX: 1, Channel.CONSIGNED: 2}


def identity_of(latest: LatestPrice) -> SizeIdentity:
    """Size identity of a latest-price row."""
    snap = latest.snapshot
    numeric = snap.size_numeric
    if numeric is not None and snap.size_system not in (None, SizeSystem.US):
        numeric = convert_size(numeric, snap.size_system, SizeSystem.US)
    if numeric is not None:
        return (0, float(numeric))
    return (1, snap.size_key.strip().casefold())


def identity_of_filter(size_filter: str) -> SizeIdentity | None:
    parsed: ParsedSize = parse_size(size_filter)
    if parsed.numeric is not None:
        us = to_us_numeric(parsed)
        return None if us is None else (0, float(us))
    if not parsed.display:
        return None
    return (1, parsed.display.casefold())


class Unifier:
    """Merges latest prices for one SKU across every mapped provider."""

    def __init__(
        self,
        materializer: LatestPriceMaterializer,
        resolver: CatalogMappingResolver,
    ) -> None:
        self._materializer = materializer
        self._resolver = resolver

    async def mappings(self, sku: str) -> dict[Provider, ProviderMapping]:
        """Provider mappings for a SKU.

        Raises NoMappingError when there are none and MappingError when
        they are malformed.
        """
        sku = normalize_sku(sku)
        mappings = await self._resolver.mappings_for(sku)
        if not mappings:
            raise NoMappingError(
                f"No catalog mapping for {sku}", context={"sku": sku, "provider": None}
            )
        by_provider: dict[Provider, ProviderMapping] = {}
        for provider in Provider:
            mapping = mapping_for_provider(mappings, provider)
            if mapping is not None:
                by_provider[provider] = mapping
        return by_provider

    async def unify(
        self,
        sku: str,
        size_filter: str | None = None,
        channels: list[Channel] | None = None,
        region: str | None = None,
        now: datetime | None = None,
    ) -> list[UnifiedRow]:
        """Build unified rows for a SKU, optionally for one size.

        `size_filter` accepts any form parse_size understands ("10.5",
        "UK 9", "14W"). Unmatched sizes are returned as rows where the
        other providers' quotes are None.
        """
        mapped = await self.mappings(sku)
        providers = list(mapped)
        rows = await self._materializer.latest(sku=sku, providers=providers, now=now)

        wanted_channels = set(channels) if channels else None
        wanted_region = region.strip().upper() if region else None
        wanted_identity = identity_of_filter(size_filter) if size_filter else None
        if size_filter and wanted_identity is None:
            return []

        # (channel, identity) -> provider -> chosen row
        chosen: dict[tuple[Channel, SizeIdentity], dict[Provider, LatestPrice]] = {}
        for latest in rows:
            snap = latest.snapshot
            if snap.provider_product_id != mapped[snap.provider].provider_product_id:
                continue
            if wanted_channels is not None and snap.channel not in wanted_channels:
                continue
            if wanted_region is not None and snap.region_code.upper() != wanted_region:
                continue
            identity = identity_of(latest)
            if wanted_identity is not None and identity != wanted_identity:
                continue

            slot = chosen.setdefault((snap.channel, identity), {})
            current = slot.get(snap.provider)
            if current is None:
                slot[snap.provider] = latest
                continue
            winner, loser = (
                (latest, current) if _recency(latest) > _recency(current) else (current, latest)
            )
            slot[snap.provider] = winner
            logger.info(
                "Ambiguous %s size match for %s %r: kept %r at %s, dropped %r at %s",
                snap.provider.value,
                snap.sku,
                identity[1],
                winner.snapshot.size_key,
                winner.snapshot.snapshot_at.isoformat(),
                loser.snapshot.size_key,
                loser.snapshot.snapshot_at.isoformat(),
            )

        unified = [
            self._build_row(channel, identity, by_provider, providers)
            for (channel, identity), by_provider in chosen.items()
        ]
        unified.sort(key=_row_order)
        return unified

    @staticmethod
    def _build_row(
        channel: Channel,
        identity: SizeIdentity,
        by_provider: dict[Provider, LatestPrice],
        providers: list[Provider],
    ) -> UnifiedRow:
        if identity[0] == 0:
            numeric: float | None = float(identity[1])
            display = format_size(numeric)
        else:
            numeric = None
            first = next(p for p in providers if p in by_provider)
            display = by_provider[first].snapshot.size_key.strip()
        return UnifiedRow(
            size_display=display,
            size_numeric=numeric,
            channel=channel,
            quotes={
                p: ProviderQuote.from_latest(by_provider[p]) if p in by_provider else None
                for p in providers
            },
        )


def _recency(latest: LatestPrice) -> tuple:
    return (latest.snapshot.snapshot_at, latest.snapshot.id or 0)


def _row_order(row: UnifiedRow) -> tuple:
    if row.size_numeric is not None:
        return (0, row.size_numeric, "", _CHANNEL_ORDER[row.channel])
    return (1, 0.0, row.size_display, _CHANNEL_ORDER[row.channel])
