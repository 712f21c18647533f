"""Pydantic models for the wearable sync API: devices, sync jobs, conflicts, health data."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from src.models.base import NutriSyncBase
from src.wearables.base import (
    ConflictKind,
    ConnectionState,
    DeviceType,
    HealthObservation,
    MetricType,
    OAuthTokens,
    ResolutionPolicy,
    ResolvedBy,
    SyncDirection,
    SyncStatus,
    observation_id_for,
)


# ---------- Devices ----------

class DeviceConnect(NutriSyncBase):
    user_id: str = Field(min_length=1)
    device_type: DeviceType
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    display_name: str | None = Field(default=None, max_length=100)
    device_id: str | None = None
    metric_types: list[MetricType] | None = None
    frequency_minutes: int | None = Field(default=None, ge=1, le=1440)
    auto_sync: bool = True

    def to_tokens(self) -> OAuthTokens:
        return OAuthTokens(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            scopes=list(self.scopes),
        )


class DeviceRead(NutriSyncBase):
    device_id: str
    user_id: str
    device_type: DeviceType
    display_name: str
    state: ConnectionState
    capabilities: list[MetricType] = Field(default_factory=list)
    last_sync_at: datetime | None = None
    battery_level: int | None = None
    is_active: bool
    last_error: str | None = None
    created_at: datetime

    @field_validator("capabilities", mode="before")
    @classmethod
    def _sorted_capabilities(cls, value: Any) -> list:
        return sorted(value or (), key=lambda m: getattr(m, "value", m))


class DeviceStatusRead(NutriSyncBase):
    device_id: str
    status: ConnectionState
    last_sync_at: datetime | None = None
    battery_level: int | None = None


class DeviceSettingsRead(NutriSyncBase):
    device_id: str
    auto_sync: bool
    frequency_minutes: int
    settings: dict[str, Any] = Field(default_factory=dict)


class DeviceSettingsWrite(NutriSyncBase):
    """Fields left out are not changed."""

    auto_sync: bool | None = None
    frequency_minutes: int | None = Field(default=None, ge=1, le=1440)
    settings: dict[str, Any] | None = None


# ---------- Sync jobs ----------

class OutboundObservation(NutriSyncBase):
    """A value the platform wants written back to the vendor."""

    metric_type: MetricType
    value: float
    unit: str
    event_time: datetime
    source_device_id: str = "nutrisync"
    source_record_id: str = Field(min_length=1)

    def to_observation(self, user_id: str) -> HealthObservation:
        return HealthObservation(
            observation_id=observation_id_for(
                self.source_device_id, self.source_record_id, self.event_time, self.value
            ),
            user_id=user_id,
            metric_type=self.metric_type,
            value=self.value,
            unit=self.unit,
            event_time=self.event_time,
            source_device_id=self.source_device_id,
            source_record_id=self.source_record_id,
        )


class SyncTrigger(NutriSyncBase):
    sync_type: SyncDirection = SyncDirection.PULL
    outbound: list[OutboundObservation] | None = None


class SyncResultRead(NutriSyncBase):
    device_id: str
    status: SyncStatus
    direction: SyncDirection
    records_processed: int
    records_added: int
    records_updated: int
    records_failed: int
    conflicts_detected: int
    pages_fetched: int
    error: str | None = None
    retry_after_seconds: float | None = None
    log_id: uuid.UUID | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class SyncLogRead(NutriSyncBase):
    log_id: uuid.UUID
    device_id: str
    direction: SyncDirection
    status: SyncStatus
    records_processed: int
    records_added: int
    records_updated: int
    records_failed: int
    conflicts_detected: int
    pages_fetched: int
    started_at: datetime
    completed_at: datetime
    error_message: str | None = None


# ---------- Conflicts ----------

class ConflictRead(NutriSyncBase):
    resolution_id: uuid.UUID
    metric_type: MetricType
    conflict_kind: ConflictKind
    competing: list[dict[str, Any]]
    policy: ResolutionPolicy
    resolved_value: float
    authoritative_id: uuid.UUID
    resolved_by: ResolvedBy
    resolved_at: datetime


class OverrideWrite(NutriSyncBase):
    policy: ResolutionPolicy
    preferred_device_id: str | None = None


class OverrideRead(NutriSyncBase):
    user_id: str
    metric_type: MetricType
    policy: ResolutionPolicy
    preferred_device_id: str | None = None


# ---------- Health data ----------

class ObservationRead(NutriSyncBase):
    observation_id: uuid.UUID
    metric_type: MetricType
    value: float
    unit: str
    event_time: datetime
    source_device_id: str
    confidence: float | None = None


class AggregatedPointRead(NutriSyncBase):
    period_start: datetime
    metric_type: MetricType
    value: float
    sample_count: int


class CorrelationRun(NutriSyncBase):
    period_end: datetime | None = None


class CorrelationRead(NutriSyncBase):
    pair_name: str
    metric_a: MetricType
    metric_b: MetricType
    period_start: datetime
    period_end: datetime
    correlation_score: float
    confidence: float
    data_points: int
    insights: dict[str, Any] = Field(default_factory=dict)
