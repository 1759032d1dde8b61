"""Component wiring shared by the API and the CLI."""

from __future__ import annotations

from dataclasses import dataclass

from solesync.core.config import SolesyncConfig
from solesync.ingestion.mappings import StoreMappingResolver
from solesync.ingestion.store import SqliteStore, create_store
from solesync.market.fx import FxService
from solesync.market.materializer import LatestPriceMaterializer
from solesync.market.service import MarketReadService
from solesync.market.unifier import Unifier
from solesync.scheduling.budget import BudgetManager
from solesync.scheduling.queue import SyncQueue
from solesync.scheduling.scheduler import SyncScheduler


@dataclass
class Services:
    """Every long-lived component built over one store."""

    config: SolesyncConfig
    store: SqliteStore
    resolver: StoreMappingResolver
    queue: SyncQueue
    budget: BudgetManager
    materializer: LatestPriceMaterializer
    scheduler: SyncScheduler
    fx: FxService
    unifier: Unifier
    market: MarketReadService

    async def close(self) -> None:
        await self.store.close()


def build_services(config: SolesyncConfig, store: SqliteStore) -> Services:
    resolver = StoreMappingResolver(store)
    queue = SyncQueue(store, config.queue)
    budget = BudgetManager(store, config.providers)
    materializer = LatestPriceMaterializer(store, config.freshness)
    scheduler = SyncScheduler(queue, budget, resolver, config.providers, materializer)
    fx = FxService(store, config.fx.base_currency)
    unifier = Unifier(materializer, resolver)
    return Services(
        config=config,
        store=store,
        resolver=resolver,
        queue=queue,
        budget=budget,
        materializer=materializer,
        scheduler=scheduler,
        fx=fx,
        unifier=unifier,
        market=MarketReadService(unifier, fx),
    )


async def open_services(config: SolesyncConfig) -> Services:
    """Open (and migrate) the store, then wire components over it."""
    store = await create_store(config.storage)
    return build_services(config, store)
