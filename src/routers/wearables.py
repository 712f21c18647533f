"""Wearable sync endpoints: pairing, settings, manual sync, status, conflicts, health data, correlations."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import SyncService
from src.models.wearables import (
    AggregatedPointRead,
    ConflictRead,
    CorrelationRead,
    CorrelationRun,
    DeviceConnect,
    DeviceRead,
    DeviceSettingsRead,
    DeviceSettingsWrite,
    DeviceStatusRead,
    ObservationRead,
    OverrideRead,
    OverrideWrite,
    SyncLogRead,
    SyncResultRead,
    SyncTrigger,
)
from src.wearables.aggregation import AggregateFunction, AggregationPeriod
from src.wearables.base import MetricType
from src.wearables.errors import ConnectorNotRegistered, DeviceNotFound

router = APIRouter(prefix="/wearables", tags=["wearables"])


# ---------- Devices ----------

@router.post("/devices", response_model=DeviceRead, status_code=201)
async def connect_device(service: SyncService, body: DeviceConnect) -> Any:
    try:
        device = await service.connect_device(
            body.user_id,
            body.device_type,
            body.to_tokens(),
            display_name=body.display_name,
            device_id=body.device_id,
            metric_types=body.metric_types,
            frequency_minutes=body.frequency_minutes,
            auto_sync=body.auto_sync,
        )
    except (ConnectorNotRegistered, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return DeviceRead.model_validate(device)


@router.get("/users/{user_id}/devices", response_model=list[DeviceRead])
async def list_devices(user_id: str, service: SyncService) -> Any:
    return [DeviceRead.model_validate(d) for d in await service.list_devices(user_id)]


@router.post("/devices/{device_id}/disconnect", response_model=DeviceRead)
async def disconnect_device(device_id: str, service: SyncService) -> Any:
    try:
        device = await service.disconnect_device(device_id)
    except DeviceNotFound:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceRead.model_validate(device)


@router.get("/devices/{device_id}/status", response_model=DeviceStatusRead)
async def get_device_status(device_id: str, service: SyncService) -> Any:
    try:
        status = await service.get_device_status(device_id)
    except DeviceNotFound:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceStatusRead.model_validate(status)


@router.get("/devices/{device_id}/settings", response_model=DeviceSettingsRead)
async def get_device_settings(device_id: str, service: SyncService) -> Any:
    try:
        settings = await service.get_device_settings(device_id)
    except DeviceNotFound:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceSettingsRead.model_validate(settings)


@router.put("/devices/{device_id}/settings", response_model=DeviceSettingsRead)
async def update_device_settings(device_id: str, service: SyncService, body: DeviceSettingsWrite) -> Any:
    try:
        settings = await service.update_device_settings(
            device_id,
            auto_sync=body.auto_sync,
            frequency_minutes=body.frequency_minutes,
            settings=body.settings,
        )
    except DeviceNotFound:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceSettingsRead.model_validate(settings)


# ---------- Sync ----------

@router.post("/devices/{device_id}/sync", response_model=SyncResultRead)
async def trigger_sync(device_id: str, service: SyncService, body: SyncTrigger | None = None) -> Any:
    body = body or SyncTrigger()
    try:
        outbound = None
        if body.outbound is not None:
            device = await service.repository.require_device(device_id)
            outbound = [o.to_observation(device.user_id) for o in body.outbound]
        result = await service.trigger_sync(device_id, body.sync_type, outbound)
    except DeviceNotFound:
        raise HTTPException(status_code=404, detail="Device not found")
    return SyncResultRead.model_validate(result)


@router.get("/devices/{device_id}/sync-logs", response_model=list[SyncLogRead])
async def list_sync_logs(
    device_id: str,
    service: SyncService,
    limit: int = Query(default=50, ge=1, le=500),
) -> Any:
    try:
        logs = await service.list_sync_logs(device_id, limit)
    except DeviceNotFound:
        raise HTTPException(status_code=404, detail="Device not found")
    return [SyncLogRead.model_validate(log) for log in logs]


# ---------- Conflicts ----------

@router.get("/users/{user_id}/conflicts", response_model=list[ConflictRead])
async def list_conflicts(
    user_id: str,
    service: SyncService,
    metric_type: MetricType | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> Any:
    rows = await service.list_conflicts(user_id, metric_type, limit)
    return [ConflictRead.model_validate(r) for r in rows]


@router.put("/users/{user_id}/overrides/{metric_type}", response_model=OverrideRead)
async def set_override(
    user_id: str, metric_type: MetricType, service: SyncService, body: OverrideWrite
) -> Any:
    try:
        override = await service.set_manual_override(
            user_id, metric_type, body.policy, body.preferred_device_id
        )
    except DeviceNotFound as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return OverrideRead.model_validate(override)


@router.delete("/users/{user_id}/overrides/{metric_type}", status_code=204)
async def clear_override(user_id: str, metric_type: MetricType, service: SyncService) -> None:
    if not await service.clear_manual_override(user_id, metric_type):
        raise HTTPException(status_code=404, detail="Override not found")


# ---------- Health data ----------

@router.get("/users/{user_id}/health-data", response_model=list[ObservationRead])
async def get_health_data(
    user_id: str,
    service: SyncService,
    metric_type: list[MetricType] | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> Any:
    rows = await service.get_health_data(user_id, metric_type, start, end)
    return [ObservationRead.model_validate(r) for r in rows]


@router.get("/users/{user_id}/health-data/aggregated", response_model=list[AggregatedPointRead])
async def get_aggregated_health_data(
    user_id: str,
    service: SyncService,
    metric_type: list[MetricType] | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    aggregation: AggregationPeriod = Query(default=AggregationPeriod.DAILY),
    aggregate_function: AggregateFunction = Query(default=AggregateFunction.AVG),
) -> Any:
    points = await service.aggregate_health_data(
        user_id, metric_type, start, end, aggregation, aggregate_function
    )
    return [AggregatedPointRead.model_validate(p) for p in points]


# ---------- Correlations ----------

@router.post("/users/{user_id}/correlations", response_model=list[CorrelationRead])
async def run_correlations(
    user_id: str, service: SyncService, body: CorrelationRun | None = None
) -> Any:
    period_end = body.period_end if body else None
    analyses = await service.run_correlations(user_id, period_end)
    return [CorrelationRead.model_validate(a) for a in analyses]


@router.get("/users/{user_id}/correlations", response_model=list[CorrelationRead])
async def list_correlations(user_id: str, service: SyncService) -> Any:
    return [CorrelationRead.model_validate(a) for a in await service.list_correlations(user_id)]
