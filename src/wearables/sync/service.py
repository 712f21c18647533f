"""Wearable sync service: the single entry point for the host application.

Wires the repository, credential store, connector registry, orchestrator,
scheduler and correlation analyzer together and exposes the Trigger and
Status operations plus the supporting reads the API layer serves.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

from src.services.encryption import TokenEncryptor
from src.wearables.aggregation import (
    AggregatedPoint,
    AggregateFunction,
    AggregationPeriod,
    aggregate_observations,
)
from src.wearables.base import (
    ConflictResolution,
    ConnectionState,
    CorrelationAnalysis,
    DeviceSettings,
    DeviceStatus,
    DeviceType,
    HealthObservation,
    ManualOverride,
    MetricType,
    OAuthTokens,
    ResolutionPolicy,
    SyncDirection,
    SyncEventKind,
    SyncLog,
    WearableDevice,
    utc_now,
)
from src.wearables.config_loader import SyncConfig, get_sync_config
from src.wearables.connectors import ConnectorRegistry, build_default_registry
from src.wearables.correlation import CorrelationAnalyzer
from src.wearables.errors import DeviceNotFound
from src.wearables.sync.credentials import CredentialStore
from src.wearables.sync.events import EventCallback, SyncEvent, emit
from src.wearables.sync.orchestrator import SyncOrchestrator, SyncResult
from src.wearables.sync.repository import SyncRepository
from src.wearables.sync.scheduler import SyncScheduler

logger = logging.getLogger("nutrisync.wearables.sync.service")


class WearableSyncService:
    """Facade over the sync engine.

    Usage::

        service = WearableSyncService(repository, TokenEncryptor(key))
        device = await service.connect_device(user_id, "fitbit", tokens)
        result = await service.trigger_sync(device.device_id)
    """

    def __init__(
        self,
        repository: SyncRepository,
        encryptor: TokenEncryptor,
        connectors: ConnectorRegistry | None = None,
        config: SyncConfig | None = None,
        on_event: EventCallback | None = None,
        max_concurrent: int = 5,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or get_sync_config()
        self.repository = repository
        self.connectors = connectors or build_default_registry(
            initial_lookback_days=self.config.orchestrator.initial_lookback_days
        )
        self._on_event = on_event
        self._clock = clock
        self.credentials = CredentialStore(
            repository,
            encryptor,
            self.connectors,
            refresh_margin_seconds=self.config.refresh_margin_seconds,
            refresh_timeout_seconds=self.config.orchestrator.connector_timeout_seconds,
            clock=clock,
        )
        self.orchestrator = SyncOrchestrator(
            repository,
            self.credentials,
            self.connectors,
            config=self.config,
            on_event=on_event,
            clock=clock,
            sleep=sleep,
        )
        self.scheduler = SyncScheduler(
            repository, self.orchestrator, config=self.config, max_concurrent=max_concurrent, clock=clock
        )
        self.analyzer = CorrelationAnalyzer(repository, config=self.config, clock=clock)

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------

    async def connect_device(
        self,
        user_id: str,
        device_type: DeviceType | str,
        tokens: OAuthTokens,
        display_name: str | None = None,
        device_id: str | None = None,
        metric_types: list[MetricType] | None = None,
        frequency_minutes: int | None = None,
        auto_sync: bool = True,
    ) -> WearableDevice:
        """Pair (or re-pair) a device and schedule its first sync.

        Re-pairing an existing ``device_id`` keeps its history and cursor and
        re-enables automatic sync.

        Raises:
            ConnectorNotRegistered: If no connector serves ``device_type``.
            ValueError:             If ``device_id`` belongs to another user.
        """
        device_type = DeviceType(device_type)
        connector = self.connectors.get(device_type)
        capabilities = connector.capabilities().negotiate(frozenset(metric_types or ()))

        device = await self.repository.get_device(device_id) if device_id else None
        if device is not None:
            if device.user_id != user_id or device.device_type != device_type:
                raise ValueError(f"device {device_id} is already paired to a different account or type")
            device.state = ConnectionState.CONNECTED
            device.is_active = True
            device.last_error = None
            device.capabilities = capabilities
            if display_name:
                device.display_name = display_name
            await self.repository.update_device(device)
        else:
            device = WearableDevice(
                device_id=device_id or str(uuid.uuid4()),
                user_id=user_id,
                device_type=device_type,
                display_name=display_name or connector.DISPLAY_NAME,
                capabilities=capabilities,
                created_at=self._clock(),
            )
            await self.repository.add_device(device)

        await self.credentials.store_tokens(device.device_id, tokens)
        await self.scheduler.ensure_schedule(device, frequency_minutes=frequency_minutes, auto_sync=auto_sync)
        logger.info("Connected %s device %s for user %s", device_type.value, device.device_id, user_id)
        return device

    async def disconnect_device(self, device_id: str) -> WearableDevice:
        """Soft-disable a device and cancel any in-flight sync.

        Observations, logs and resolutions are retained.

        Raises:
            DeviceNotFound: If the device does not exist.
        """
        device = await self.repository.require_device(device_id)
        device.state = ConnectionState.DISCONNECTED
        device.is_active = False
        await self.repository.update_device(device)
        self.orchestrator.cancel(device_id)
        await self.scheduler.set_auto_sync(device_id, False)
        logger.info("Disconnected device %s", device_id)
        await emit(
            self._on_event,
            SyncEvent(
                SyncEventKind.DEVICE_DISCONNECTED,
                device_id,
                device.user_id,
                self._clock(),
                {"reason": "user_disconnect"},
            ),
        )
        return device

    async def list_devices(self, user_id: str) -> list[WearableDevice]:
        devices = await self.repository.list_devices(user_id)
        return sorted(devices, key=lambda d: (d.created_at, d.device_id))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_device_settings(self, device_id: str) -> DeviceSettings:
        """Raises DeviceNotFound if the device does not exist."""
        device = await self.repository.require_device(device_id)
        schedule = await self.repository.get_schedule(device_id)
        if schedule is None:
            return DeviceSettings(device_id, True, self.scheduler.get_interval(device), dict(device.settings))
        return DeviceSettings(device_id, schedule.auto_sync, schedule.frequency_minutes, dict(device.settings))

    async def update_device_settings(
        self,
        device_id: str,
        auto_sync: bool | None = None,
        frequency_minutes: int | None = None,
        settings: dict[str, Any] | None = None,
    ) -> DeviceSettings:
        """Change a device's sync settings.  Omitted fields are left as they are.

        Turning ``auto_sync`` off only removes the device from scheduled runs;
        ``trigger_sync`` still works.  ``settings`` replaces the stored blob.

        Raises:
            DeviceNotFound: If the device does not exist.
            ValueError:     If ``frequency_minutes`` is less than one.
        """
        if frequency_minutes is not None and frequency_minutes < 1:
            raise ValueError("frequency_minutes must be at least 1")
        device = await self.repository.require_device(device_id)
        if settings is not None:
            device.settings = dict(settings)
            await self.repository.update_device(device)
        schedule = await self.scheduler.update_schedule(
            device, frequency_minutes=frequency_minutes, auto_sync=auto_sync
        )
        return DeviceSettings(device_id, schedule.auto_sync, schedule.frequency_minutes, dict(device.settings))

    # ------------------------------------------------------------------
    # Trigger / status
    # ------------------------------------------------------------------

    async def trigger_sync(
        self,
        device_id: str,
        sync_type: SyncDirection | str = SyncDirection.PULL,
        outbound: list[HealthObservation] | None = None,
    ) -> SyncResult:
        """Run a sync now, bypassing the schedule but not the device lock.

        The outcome still feeds the device's backoff state.

        Raises:
            DeviceNotFound: If the device does not exist.
        """
        result = await self.orchestrator.run(device_id, SyncDirection(sync_type), outbound)
        await self.scheduler.record_result(result)
        return result

    async def get_device_status(self, device_id: str) -> DeviceStatus:
        device = await self.repository.require_device(device_id)
        return DeviceStatus(
            device_id=device.device_id,
            status=device.state,
            last_sync_at=device.last_sync_at,
            battery_level=device.battery_level,
        )

    async def list_sync_logs(self, device_id: str, limit: int = 50) -> list[SyncLog]:
        await self.repository.require_device(device_id)
        return await self.repository.list_sync_logs(device_id, limit)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def set_manual_override(
        self,
        user_id: str,
        metric_type: MetricType | str,
        policy: ResolutionPolicy | str,
        preferred_device_id: str | None = None,
    ) -> ManualOverride:
        """Pin a conflict policy for one of the user's metrics.

        Raises:
            DeviceNotFound: If ``preferred_device_id`` is not one of the user's devices.
        """
        if preferred_device_id is not None:
            device = await self.repository.get_device(preferred_device_id)
            if device is None or device.user_id != user_id:
                raise DeviceNotFound(f"device {preferred_device_id} not found for user {user_id}")
        override = ManualOverride(
            user_id=user_id,
            metric_type=MetricType(metric_type),
            policy=ResolutionPolicy(policy),
            preferred_device_id=preferred_device_id,
        )
        await self.repository.save_override(override)
        logger.info(
            "Override for user %s: %s → %s (prefer %s)",
            user_id, override.metric_type.value, override.policy.value, preferred_device_id,
        )
        return override

    async def clear_manual_override(self, user_id: str, metric_type: MetricType | str) -> bool:
        return await self.repository.delete_override(user_id, MetricType(metric_type))

    async def list_conflicts(
        self, user_id: str, metric_type: MetricType | str | None = None, limit: int = 100
    ) -> list[ConflictResolution]:
        metric = MetricType(metric_type) if metric_type else None
        return await self.repository.list_resolutions(user_id, metric, limit)

    # ------------------------------------------------------------------
    # Health data
    # ------------------------------------------------------------------

    async def get_health_data(
        self,
        user_id: str,
        metric_types: list[MetricType] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[HealthObservation]:
        """Authoritative observations only."""
        return await self.repository.list_observations(user_id, metric_types=metric_types, start=start, end=end)

    async def aggregate_health_data(
        self,
        user_id: str,
        metric_types: list[MetricType] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        period: AggregationPeriod | str = AggregationPeriod.DAILY,
        function: AggregateFunction | str = AggregateFunction.AVG,
    ) -> list[AggregatedPoint]:
        observations = await self.get_health_data(user_id, metric_types, start, end)
        return aggregate_observations(observations, period, function)

    async def run_correlations(
        self, user_id: str, period_end: datetime | None = None
    ) -> list[CorrelationAnalysis]:
        return await self.analyzer.run_for_user(user_id, period_end)

    async def list_correlations(self, user_id: str) -> list[CorrelationAnalysis]:
        return await self.repository.list_correlations(user_id)
