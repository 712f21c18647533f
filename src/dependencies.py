"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.wearables.sync.service import WearableSyncService


async def get_sync_service(request: Request) -> WearableSyncService:
    """Return the sync service built during application startup.

    The lifespan hook sets ``app.state.sync_service`` before routes run.
    """
    service: WearableSyncService | None = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return service


# Annotated shortcuts for route signatures
SyncService = Annotated[WearableSyncService, Depends(get_sync_service)]
AppSettings = Annotated[Settings, Depends(get_settings)]
