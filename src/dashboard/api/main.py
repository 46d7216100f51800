"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dashboard.cache.durable import SqlCacheTier
from dashboard.cache.multilevel import MultiLevelCache
from dashboard.config import get_settings
from dashboard.db.engine import create_tables, get_engine
from dashboard.gripp.client import GrippClient
from dashboard.gripp.sync_service import SyncService
from dashboard.api.routes import cache as cache_routes, reports, sync as sync_routes


def create_app(engine=None, client=None) -> FastAPI:
    """Build and return the FastAPI app.

    The app owns one MultiLevelCache and one SyncService, stored on
    app.state for the route dependencies in dashboard.api.deps.
    """
    settings = get_settings()
    engine = engine if engine is not None else get_engine()
    owns_client = client is None
    client = client if client is not None else GrippClient(
        api_url=settings.gripp_api_url,
        api_key=settings.gripp_api_key,
        timeout=settings.gripp_timeout_seconds,
    )
    cache = MultiLevelCache(
        durable=SqlCacheTier(engine),
        default_ttl=settings.cache_default_ttl_seconds,
        max_items=settings.cache_max_items,
    )
    service = SyncService(client=client, engine=engine, cache=cache, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        create_tables(engine)
        yield
        if owns_client:
            await client.aclose()

    app = FastAPI(
        title="Gripp Dashboard API",
        description="Gripp sync engine and cached report data",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.cache = cache
    app.state.sync_service = service

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(cache_routes.router, prefix="/cache", tags=["cache"])
    app.include_router(reports.router, prefix="/reports", tags=["reports"])

    return app


# Module-level app instance for uvicorn
app = create_app()
