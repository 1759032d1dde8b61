"""Snapshot ingestion: collaborator protocols, adapters, mappings, and storage."""

from solesync.ingestion.adapters import (
    AliasAdapter,
    EbaySoldAdapter,
    StockXAdapter,
    get_adapter,
)
from solesync.ingestion.mappings import StaticMappingResolver, StoreMappingResolver
from solesync.ingestion.provider import (
    CatalogMappingResolver,
    ProviderClient,
    RawPriceResponse,
    SnapshotAdapter,
)
from solesync.ingestion.store import SqliteStore, StorageProtocol, create_store

__all__ = [
    "AliasAdapter",
    "CatalogMappingResolver",
    "EbaySoldAdapter",
    "ProviderClient",
    "RawPriceResponse",
    "SnapshotAdapter",
    "SqliteStore",
    "StaticMappingResolver",
    "StockXAdapter",
    "StorageProtocol",
    "StoreMappingResolver",
    "create_store",
    "get_adapter",
]
