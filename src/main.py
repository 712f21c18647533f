"""NutriSync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.routers import health, wearables
from src.services.database import close_pool, init_pool
from src.services.encryption import TokenEncryptor
from src.wearables.config_loader import get_sync_config, reload_sync_config
from src.wearables.connectors import build_default_registry
from src.wearables.sync.postgres_repository import PostgresSyncRepository
from src.wearables.sync.repository import InMemorySyncRepository, SyncRepository
from src.wearables.sync.service import WearableSyncService

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("nutrisync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting NutriSync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    config = reload_sync_config(Path(settings.sync_config_path)) if settings.sync_config_path else get_sync_config()

    repository: SyncRepository
    if settings.database_url:
        await init_pool(settings)
        repository = PostgresSyncRepository()
        await repository.ensure_schema()
    else:
        logger.warning("DATABASE_URL not set; using the in-memory repository")
        repository = InMemorySyncRepository()

    http_client = httpx.AsyncClient(timeout=config.orchestrator.connector_timeout_seconds)
    service = WearableSyncService(
        repository,
        TokenEncryptor(settings.token_encryption_key),
        connectors=build_default_registry(
            http_client=http_client,
            initial_lookback_days=config.orchestrator.initial_lookback_days,
        ),
        config=config,
        max_concurrent=settings.worker_pool_size,
    )
    app.state.sync_service = service

    stop_event = asyncio.Event()
    app.state.scheduler_task = None
    if settings.scheduler_enabled:
        app.state.scheduler_task = asyncio.create_task(
            service.scheduler.run_forever(stop_event, settings.scheduler_tick_seconds)
        )

    yield

    stop_event.set()
    if app.state.scheduler_task is not None:
        await app.state.scheduler_task
        app.state.scheduler_task = None
    await http_client.aclose()
    if settings.database_url:
        await close_pool()
    logger.info("NutriSync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="NutriSync API",
        description=(
            "Wearable health-data sync engine — multi-source ingestion, "
            "conflict reconciliation, and health metric correlations."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside the v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(wearables.router, prefix="/api/v1")

    return app


app = create_app()
