"""NutriSync wearable health-data sync engine.

This package ingests observations from independently clocked wearable
sources, reconciles overlapping readings into one authoritative value per
physical event, and keeps every device's sync state consistent under
unreliable, rate-limited vendor APIs.

Subpackages:
    connectors/ — Vendor API connectors (Google Fit, Fitbit, Garmin, Whoop)
    sync/       — Credential store, orchestrator, scheduler, repository, service

Core modules:
    base            — DeviceConnector ABC and canonical data models
    errors          — Connector fault taxonomy and engine errors
    config_loader   — Load/validate/hot-reload sync_config.yaml
    conflict_engine — Clustering, conflict classification and resolution
    aggregation     — Hourly/daily/weekly/monthly buckets
    correlation     — Metric-pair correlation analyzer
"""

from src.wearables.base import (
    DeviceConnector,
    HealthObservation,
    MetricType,
    OAuthTokens,
    WearableDevice,
)
from src.wearables.config_loader import SyncConfig, get_sync_config

__all__ = [
    "DeviceConnector",
    "HealthObservation",
    "MetricType",
    "OAuthTokens",
    "WearableDevice",
    "SyncConfig",
    "get_sync_config",
]
