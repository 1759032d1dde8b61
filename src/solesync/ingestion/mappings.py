"""Catalog mapping resolvers."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from solesync.core.exceptions import MappingError
from solesync.core.models import Provider, ProviderMapping, normalize_sku
from solesync.ingestion.store import SqliteStore

logger = logging.getLogger(__name__)


class StoreMappingResolver:
    """Resolves SKUs through the ``catalog_mappings`` table."""

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    async def mappings_for(self, sku: str) -> list[ProviderMapping]:
        try:
            return await self._store.get_mappings(sku)
        except ValidationError as e:
            raise MappingError(
                f"Malformed catalog mapping for {normalize_sku(sku)}: {e}",
                context={"sku": normalize_sku(sku), "provider": None},
            ) from e


class StaticMappingResolver:
    """In-memory resolver over a fixed list of mappings."""

    def __init__(self, mappings: list[ProviderMapping] | None = None) -> None:
        self._by_sku: dict[str, dict[Provider, ProviderMapping]] = {}
        for mapping in mappings or []:
            self.add(mapping)

    def add(self, mapping: ProviderMapping) -> None:
        self._by_sku.setdefault(mapping.sku, {})[mapping.provider] = mapping

    async def mappings_for(self, sku: str) -> list[ProviderMapping]:
        by_provider = self._by_sku.get(normalize_sku(sku), {})
        return [by_provider[p] for p in sorted(by_provider, key=lambda p: p.value)]


def mapping_for_provider(
    mappings: list[ProviderMapping], provider: Provider
) -> ProviderMapping | None:
    """Pick one provider's mapping. Two mappings for one provider is malformed."""
    matches = [m for m in mappings if m.provider == provider]
    if len(matches) > 1:
        raise MappingError(
            f"SKU {matches[0].sku} has {len(matches)} mappings for {provider.value}",
            context={"sku": matches[0].sku, "provider": provider.value},
        )
    return matches[0] if matches else None
