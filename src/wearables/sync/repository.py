"""Persistence collaborator for the sync engine.

:class:`SyncRepository` is the CRUD surface the engine reads and writes
through, keyed by user id and device id.  Observations, sync logs and
conflict resolutions are only ever appended; the one permitted mutation of
an observation is stamping ``superseded_by`` on a row that is still
authoritative.  A reconciled page is written through
``persist_reconciliation`` so its supersedes and appends land together.

:class:`InMemorySyncRepository` backs tests and single-process use.  The
asyncpg implementation lives in ``postgres_repository``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

from src.wearables.base import (
    ConflictResolution,
    ConnectionState,
    CorrelationAnalysis,
    DeviceAuth,
    HealthObservation,
    ManualOverride,
    MetricType,
    SyncLog,
    SyncSchedule,
    WearableDevice,
)
from src.wearables.errors import DeviceNotFound

logger = logging.getLogger("nutrisync.wearables.sync.repository")


class SyncRepository(ABC):
    """Storage operations required by the sync engine."""

    # ── Devices ──

    @abstractmethod
    async def add_device(self, device: WearableDevice) -> None: ...

    @abstractmethod
    async def get_device(self, device_id: str) -> WearableDevice | None: ...

    @abstractmethod
    async def update_device(self, device: WearableDevice) -> None: ...

    @abstractmethod
    async def list_devices(self, user_id: str | None = None) -> list[WearableDevice]: ...

    @abstractmethod
    async def mark_device_syncing(self, device_id: str) -> bool:
        """Set ``state`` to syncing unless the device is disconnected or inactive.

        Only the state column changes; returns False when the device is gone,
        disconnected or inactive.
        """

    async def require_device(self, device_id: str) -> WearableDevice:
        device = await self.get_device(device_id)
        if device is None:
            raise DeviceNotFound(f"device {device_id} not found")
        return device

    # ── Credentials (ciphertext only) ──

    @abstractmethod
    async def save_auth(self, auth: DeviceAuth) -> None: ...

    @abstractmethod
    async def get_auth(self, device_id: str) -> DeviceAuth | None: ...

    # ── Observations ──

    @abstractmethod
    async def append_observations(self, observations: list[HealthObservation]) -> int:
        """Append observations, ignoring ids already stored.  Returns rows written."""

    @abstractmethod
    async def supersede_observations(
        self, pairs: list[tuple[UUID, UUID]], superseded_at: datetime
    ) -> int:
        """Mark still-authoritative rows as superseded.  Returns rows changed."""

    @abstractmethod
    async def persist_reconciliation(
        self,
        new_rows: list[HealthObservation],
        supersede: list[tuple[UUID, UUID]],
        resolutions: list[ConflictResolution],
        superseded_at: datetime,
    ) -> None:
        """Write one reconciled page as a single unit.

        Supersedes stored rows, appends new rows, then appends resolutions.
        Either all three writes land or none do.
        """

    @abstractmethod
    async def list_observations(
        self,
        user_id: str,
        metric_types: list[MetricType] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        include_superseded: bool = False,
    ) -> list[HealthObservation]:
        """Observations for a user, ordered by event time, bounds inclusive."""

    # ── Sync logs ──

    @abstractmethod
    async def append_sync_log(self, log: SyncLog) -> None: ...

    @abstractmethod
    async def list_sync_logs(self, device_id: str, limit: int = 50) -> list[SyncLog]:
        """Most recent first."""

    # ── Schedules ──

    @abstractmethod
    async def get_schedule(self, device_id: str) -> SyncSchedule | None: ...

    @abstractmethod
    async def save_schedule(self, schedule: SyncSchedule) -> None: ...

    @abstractmethod
    async def list_schedules(self) -> list[SyncSchedule]: ...

    # ── Conflicts and overrides ──

    @abstractmethod
    async def append_resolutions(self, resolutions: list[ConflictResolution]) -> int: ...

    @abstractmethod
    async def list_resolutions(
        self, user_id: str, metric_type: MetricType | None = None, limit: int = 100
    ) -> list[ConflictResolution]:
        """Most recent first."""

    @abstractmethod
    async def get_overrides(self, user_id: str) -> dict[MetricType, ManualOverride]: ...

    @abstractmethod
    async def save_override(self, override: ManualOverride) -> None: ...

    @abstractmethod
    async def delete_override(self, user_id: str, metric_type: MetricType) -> bool: ...

    # ── Correlations ──

    @abstractmethod
    async def upsert_correlation(self, analysis: CorrelationAnalysis) -> None:
        """Insert or replace the row for (user, pair, period_end)."""

    @abstractmethod
    async def list_correlations(self, user_id: str) -> list[CorrelationAnalysis]: ...


class InMemorySyncRepository(SyncRepository):
    """Dict-backed repository.

    Every method completes without awaiting, so a single coroutine's
    read-modify-write cannot interleave with another task's.
    """

    def __init__(self) -> None:
        self._devices: dict[str, WearableDevice] = {}
        self._auth: dict[str, DeviceAuth] = {}
        self._observations: dict[UUID, HealthObservation] = {}
        self._logs: list[SyncLog] = []
        self._schedules: dict[str, SyncSchedule] = {}
        self._resolutions: dict[UUID, ConflictResolution] = {}
        self._overrides: dict[tuple[str, MetricType], ManualOverride] = {}
        self._correlations: dict[tuple[str, str, datetime], CorrelationAnalysis] = {}

    # ── Devices ──

    async def add_device(self, device: WearableDevice) -> None:
        self._devices[device.device_id] = device

    async def get_device(self, device_id: str) -> WearableDevice | None:
        return self._devices.get(device_id)

    async def update_device(self, device: WearableDevice) -> None:
        if device.device_id not in self._devices:
            raise DeviceNotFound(f"device {device.device_id} not found")
        self._devices[device.device_id] = device

    async def list_devices(self, user_id: str | None = None) -> list[WearableDevice]:
        return [d for d in self._devices.values() if user_id is None or d.user_id == user_id]

    async def mark_device_syncing(self, device_id: str) -> bool:
        device = self._devices.get(device_id)
        if device is None or not device.is_active or device.state == ConnectionState.DISCONNECTED:
            return False
        device.state = ConnectionState.SYNCING
        return True

    # ── Credentials ──

    async def save_auth(self, auth: DeviceAuth) -> None:
        self._auth[auth.device_id] = auth

    async def get_auth(self, device_id: str) -> DeviceAuth | None:
        return self._auth.get(device_id)

    # ── Observations ──

    async def append_observations(self, observations: list[HealthObservation]) -> int:
        written = 0
        for obs in observations:
            if obs.observation_id in self._observations:
                continue
            self._observations[obs.observation_id] = obs
            written += 1
        return written

    async def supersede_observations(
        self, pairs: list[tuple[UUID, UUID]], superseded_at: datetime
    ) -> int:
        changed = 0
        for loser_id, winner_id in pairs:
            current = self._observations.get(loser_id)
            if current is None or not current.is_authoritative:
                continue
            self._observations[loser_id] = current.superseded(winner_id, superseded_at)
            changed += 1
        return changed

    async def persist_reconciliation(
        self,
        new_rows: list[HealthObservation],
        supersede: list[tuple[UUID, UUID]],
        resolutions: list[ConflictResolution],
        superseded_at: datetime,
    ) -> None:
        observations = dict(self._observations)
        stored_resolutions = dict(self._resolutions)
        try:
            await self.supersede_observations(supersede, superseded_at)
            await self.append_observations(new_rows)
            await self.append_resolutions(resolutions)
        except Exception:
            self._observations = observations
            self._resolutions = stored_resolutions
            raise

    async def list_observations(
        self,
        user_id: str,
        metric_types: list[MetricType] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        include_superseded: bool = False,
    ) -> list[HealthObservation]:
        rows = [
            o for o in self._observations.values()
            if o.user_id == user_id
            and (not metric_types or o.metric_type in metric_types)
            and (start is None or o.event_time >= start)
            and (end is None or o.event_time <= end)
            and (include_superseded or o.is_authoritative)
        ]
        return sorted(rows, key=lambda o: (o.event_time, o.source_device_id, o.source_record_id))

    # ── Sync logs ──

    async def append_sync_log(self, log: SyncLog) -> None:
        if any(existing.log_id == log.log_id for existing in self._logs):
            raise ValueError(f"sync log {log.log_id} already written")
        self._logs.append(log)

    async def list_sync_logs(self, device_id: str, limit: int = 50) -> list[SyncLog]:
        logs = [log for log in self._logs if log.device_id == device_id]
        return list(reversed(logs))[:limit]

    # ── Schedules ──

    async def get_schedule(self, device_id: str) -> SyncSchedule | None:
        return self._schedules.get(device_id)

    async def save_schedule(self, schedule: SyncSchedule) -> None:
        self._schedules[schedule.device_id] = schedule

    async def list_schedules(self) -> list[SyncSchedule]:
        return list(self._schedules.values())

    # ── Conflicts and overrides ──

    async def append_resolutions(self, resolutions: list[ConflictResolution]) -> int:
        written = 0
        for resolution in resolutions:
            if resolution.resolution_id in self._resolutions:
                continue
            self._resolutions[resolution.resolution_id] = resolution
            written += 1
        return written

    async def list_resolutions(
        self, user_id: str, metric_type: MetricType | None = None, limit: int = 100
    ) -> list[ConflictResolution]:
        rows = [
            r for r in self._resolutions.values()
            if r.user_id == user_id and (metric_type is None or r.metric_type == metric_type)
        ]
        rows.sort(key=lambda r: (r.resolved_at, str(r.resolution_id)), reverse=True)
        return rows[:limit]

    async def get_overrides(self, user_id: str) -> dict[MetricType, ManualOverride]:
        return {m: o for (uid, m), o in self._overrides.items() if uid == user_id}

    async def save_override(self, override: ManualOverride) -> None:
        self._overrides[(override.user_id, override.metric_type)] = override

    async def delete_override(self, user_id: str, metric_type: MetricType) -> bool:
        return self._overrides.pop((user_id, metric_type), None) is not None

    # ── Correlations ──

    async def upsert_correlation(self, analysis: CorrelationAnalysis) -> None:
        self._correlations[(analysis.user_id, analysis.pair_name, analysis.period_end)] = analysis

    async def list_correlations(self, user_id: str) -> list[CorrelationAnalysis]:
        rows = [c for c in self._correlations.values() if c.user_id == user_id]
        return sorted(rows, key=lambda c: (c.period_end, c.pair_name))
