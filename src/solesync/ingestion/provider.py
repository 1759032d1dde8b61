"""Collaborator protocols — the provider-agnostic interface layer.

Architecture
------------
The ingestion path decouples marketplace access from normalization:

    ProviderClient → RawPriceResponse → SnapshotAdapter → list[PriceSnapshot]

- **ProviderClient** performs the upstream call for one marketplace. Concrete
  HTTP clients live outside this package; the worker depends only on this
  protocol and selects an implementation by ``Provider`` tag.

- **SnapshotAdapter** turns one provider's raw response shape into canonical
  ``PriceSnapshot`` records. Adding a marketplace means writing one client
  and one adapter; the scheduler and worker do not change.

- **CatalogMappingResolver** answers which provider products a catalog SKU
  corresponds to.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from solesync.core.models import PriceSnapshot, Provider, ProviderMapping, utcnow


class RawPriceResponse(BaseModel):
    """Opaque upstream payload plus the request context it answers."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    source: str
    payload: dict[str, Any] = Field(default_factory=dict)
    currency_code: str = "USD"
    region_code: str = ""
    fetched_at: datetime = Field(default_factory=utcnow)

    @field_validator("currency_code")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        return v.strip().upper()


@runtime_checkable
class ProviderClient(Protocol):
    """One marketplace's market-data endpoint.

    Parameters
    ----------
    product_id : str
        The provider's product identifier from the catalog mapping.
    size_or_variant_id : str | None
        Variant id when the mapping carries one, else the job's size.
    currency : str
        Currency the response should be quoted in.

    Raises
    ------
    Exception
        Any exception is treated by the worker as the upstream being
        unavailable and retried with backoff.
    """

    provider: Provider

    async def fetch_market(
        self, product_id: str, size_or_variant_id: str | None, currency: str
    ) -> RawPriceResponse: ...


@runtime_checkable
class SnapshotAdapter(Protocol):
    """Transforms one provider's raw response into PriceSnapshot records."""

    provider: Provider

    def adapt(
        self, raw: RawPriceResponse, mapping: ProviderMapping
    ) -> list[PriceSnapshot]: ...


@runtime_checkable
class CatalogMappingResolver(Protocol):
    """Resolves a catalog SKU to its provider products."""

    async def mappings_for(self, sku: str) -> list[ProviderMapping]:
        """Return every provider mapping for the SKU (possibly empty).

        Raises MappingError when a stored mapping is malformed.
        """
        ...
