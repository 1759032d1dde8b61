"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from solesync.api.deps import AppState, api_key_middleware
from solesync.api.routes import router
from solesync.api.schemas import ErrorResponse
from solesync.core.config import SolesyncConfig, load_config
from solesync.core.exceptions import (
    ConfigError,
    MappingError,
    NoFxRateError,
    NoMappingError,
    SolesyncError,
    StorageError,
    UnsupportedCurrencyError,
)
from solesync.services import open_services

_STATUS_MAP: dict[type[SolesyncError], int] = {
    NoMappingError: 404,
    MappingError: 422,
    NoFxRateError: 422,
    UnsupportedCurrencyError: 422,
    ConfigError: 400,
    StorageError: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle."""
    config = app.state._pending_config or load_config()
    services = await open_services(config)

    app.state.app_state = AppState(config=config, services=services)

    yield

    await services.close()


def create_app(config: SolesyncConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    import solesync

    app = FastAPI(
        title="solesync API",
        description="Sneaker market-data sync and cross-provider pricing",
        version=solesync.__version__,
        lifespan=lifespan,
    )

    # Stash config so lifespan can retrieve it
    app.state._pending_config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Checks config.api.api_key per request; config may only be known at startup
    app.middleware("http")(api_key_middleware)

    app.include_router(router, prefix="/api")

    @app.exception_handler(SolesyncError)
    async def solesync_exception_handler(request: Request, exc: SolesyncError):
        status = _STATUS_MAP.get(type(exc), 500)
        return JSONResponse(
            status_code=status,
            content=ErrorResponse(error=type(exc).__name__, detail=str(exc)).model_dump(),
        )

    return app
