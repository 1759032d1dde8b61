"""Dependency injection for FastAPI routes."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse

from solesync.core.config import SolesyncConfig
from solesync.ingestion.store import SqliteStore
from solesync.market.fx import FxService
from solesync.market.materializer import LatestPriceMaterializer
from solesync.market.service import MarketReadService
from solesync.scheduling.scheduler import SyncScheduler
from solesync.services import Services


@dataclass
class AppState:
    """Shared application state, attached to app.state during lifespan."""

    config: SolesyncConfig
    services: Services


def get_store(request: Request) -> SqliteStore:
    """Dependency: retrieve storage backend."""
    return request.app.state.app_state.services.store


def get_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.app_state.services.scheduler


def get_materializer(request: Request) -> LatestPriceMaterializer:
    return request.app.state.app_state.services.materializer


def get_fx(request: Request) -> FxService:
    return request.app.state.app_state.services.fx


def get_market(request: Request) -> MarketReadService:
    return request.app.state.app_state.services.market


EXEMPT_PATHS = {"/api/health"}


async def api_key_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware: validate X-API-Key header when authentication is enabled."""
    if request.url.path in EXEMPT_PATHS:
        return await call_next(request)

    config = request.app.state.app_state.config
    if config.api.api_key:
        api_key = request.headers.get("X-API-Key")
        if api_key != config.api.api_key:
            return JSONResponse(
                status_code=401,
                content={"error": "Unauthorized", "detail": "Invalid or missing API key"},
            )
    return await call_next(request)
