"""Background sync scheduler for wearable devices.

Keeps one ``SyncSchedule`` per device and, on every tick:
1. Selects devices whose ``next_sync_at`` has passed
2. Skips devices with auto-sync off or that are disconnected
3. Runs the due jobs through the orchestrator with a bounded worker pool
4. Computes each device's next run from the job outcome

Backoff after failures (frequency F, consecutive failures n, cap C):
    success / partial / conflict  → next = started_at + F, n reset to 0
    failed                        → next = completed_at + F × min(2ⁿ, C)
    rate limited                  → next = completed_at + retry_after, n unchanged
    cancelled                     → next = completed_at + F
    skipped                       → schedule unchanged

Default frequencies per device type live in sync_config.yaml.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from src.wearables.base import (
    ConnectionState,
    SyncSchedule,
    SyncStatus,
    WearableDevice,
    utc_now,
)
from src.wearables.config_loader import SyncConfig, get_sync_config
from src.wearables.sync.locks import KeyedLocks
from src.wearables.sync.orchestrator import SyncOrchestrator, SyncResult
from src.wearables.sync.repository import SyncRepository

logger = logging.getLogger("nutrisync.wearables.sync.scheduler")


class SyncScheduler:
    """Schedule and execute automatic sync jobs.

    Jobs for different devices run concurrently up to ``max_concurrent`` at
    a time; the orchestrator serializes jobs for the same device.

    Usage::

        scheduler = SyncScheduler(repository, orchestrator, max_concurrent=5)
        await scheduler.ensure_schedule(device)
        results = await scheduler.tick()
    """

    def __init__(
        self,
        repository: SyncRepository,
        orchestrator: SyncOrchestrator,
        config: SyncConfig | None = None,
        max_concurrent: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            repository:     Holds schedules and devices.
            orchestrator:   Executes the sync jobs.
            config:         Sync config (global singleton if omitted).
            max_concurrent: Maximum number of simultaneous sync jobs.
            clock:          Returns the current UTC time.
        """
        self._repository = repository
        self._orchestrator = orchestrator
        self._config = config or get_sync_config()
        self._max_concurrent = max_concurrent
        self._clock = clock
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Schedule table
    # ------------------------------------------------------------------

    def get_interval(self, device: WearableDevice) -> int:
        """Return the base sync interval in minutes for a device."""
        return self._config.frequency_minutes(device.device_type.value)

    async def ensure_schedule(
        self,
        device: WearableDevice,
        frequency_minutes: int | None = None,
        auto_sync: bool = True,
    ) -> SyncSchedule:
        """Create (or reset) the schedule for a newly paired device.

        The first automatic sync is due immediately.
        """
        async with self._locks.hold(device.device_id):
            schedule = SyncSchedule(
                device_id=device.device_id,
                frequency_minutes=frequency_minutes or self.get_interval(device),
                auto_sync=auto_sync,
                next_sync_at=self._clock(),
            )
            await self._repository.save_schedule(schedule)
        logger.info(
            "Scheduled device %s every %d min (auto_sync=%s)",
            device.device_id, schedule.frequency_minutes, auto_sync,
        )
        return schedule

    async def set_auto_sync(self, device_id: str, enabled: bool) -> SyncSchedule | None:
        async with self._locks.hold(device_id):
            schedule = await self._repository.get_schedule(device_id)
            if schedule is None:
                return None
            schedule.auto_sync = enabled
            await self._repository.save_schedule(schedule)
        return schedule

    async def update_schedule(
        self,
        device: WearableDevice,
        frequency_minutes: int | None = None,
        auto_sync: bool | None = None,
    ) -> SyncSchedule:
        """Apply user settings to a device's schedule.

        A new frequency re-bases ``next_sync_at`` on the last run (or now, if
        the device has never synced), never earlier than a vendor retry-after.
        Backoff state is kept.
        """
        async with self._locks.hold(device.device_id):
            now = self._clock()
            schedule = await self._repository.get_schedule(device.device_id)
            if schedule is None:
                schedule = SyncSchedule(
                    device_id=device.device_id,
                    frequency_minutes=self.get_interval(device),
                    next_sync_at=now,
                )
            if auto_sync is not None:
                schedule.auto_sync = auto_sync
            if frequency_minutes is not None and frequency_minutes != schedule.frequency_minutes:
                schedule.frequency_minutes = frequency_minutes
                next_sync_at = (
                    schedule.last_run_at + timedelta(minutes=frequency_minutes)
                    if schedule.last_run_at else now
                )
                if schedule.retry_after_until and schedule.retry_after_until > next_sync_at:
                    next_sync_at = schedule.retry_after_until
                schedule.next_sync_at = next_sync_at
            await self._repository.save_schedule(schedule)
        logger.info(
            "Schedule for device %s updated: every %d min, auto_sync=%s, next at %s",
            device.device_id, schedule.frequency_minutes, schedule.auto_sync, schedule.next_sync_at,
        )
        return schedule

    async def due_device_ids(self, now: datetime | None = None) -> list[str]:
        """Return ids of devices the next tick would enqueue, soonest first."""
        now = now or self._clock()
        due: list[SyncSchedule] = []
        for schedule in await self._repository.list_schedules():
            if not schedule.is_due(now):
                continue
            device = await self._repository.get_device(schedule.device_id)
            if device is None or not device.is_active or device.state == ConnectionState.DISCONNECTED:
                continue
            if self._orchestrator.is_running(schedule.device_id):
                continue
            due.append(schedule)
        due.sort(key=lambda s: (s.next_sync_at or now, s.device_id))
        return [s.device_id for s in due]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> list[SyncResult]:
        """Run every due device once.

        Returns:
            List of SyncResult for all executed jobs.
        """
        device_ids = await self.due_device_ids(now)
        if not device_ids:
            logger.debug("SyncScheduler: no devices due")
            return []

        logger.info("SyncScheduler: running %d jobs", len(device_ids))
        semaphore = asyncio.Semaphore(self._max_concurrent)
        tasks = [self._run_job(device_id, semaphore) for device_id in device_ids]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        results: list[SyncResult] = []
        for device_id, outcome in zip(device_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Sync job for device %s raised: %s", device_id, outcome)
            else:
                results.append(outcome)

        logger.info(
            "SyncScheduler: %d jobs complete, %d failed",
            len(results),
            sum(1 for r in results if r.status == SyncStatus.FAILED),
        )
        return results

    async def _run_job(self, device_id: str, semaphore: asyncio.Semaphore) -> SyncResult:
        async with semaphore:
            result = await self._orchestrator.run(device_id)
        await self.record_result(result)
        return result

    async def record_result(self, result: SyncResult) -> SyncSchedule | None:
        """Advance a device's schedule from a job outcome.

        Used for scheduled and manually triggered jobs alike.
        """
        if result.status == SyncStatus.SKIPPED:
            return None

        async with self._locks.hold(result.device_id):
            schedule = await self._repository.get_schedule(result.device_id)
            if schedule is None:
                return None
            self.apply_result(schedule, result)
            await self._repository.save_schedule(schedule)
        logger.info(
            "Device %s next sync at %s (failures=%d)",
            schedule.device_id, schedule.next_sync_at, schedule.consecutive_failures,
        )
        return schedule

    def apply_result(self, schedule: SyncSchedule, result: SyncResult) -> None:
        """Mutate ``schedule`` according to the backoff rules."""
        completed_at = result.completed_at or self._clock()
        started_at = result.started_at or completed_at
        frequency = timedelta(minutes=schedule.frequency_minutes)
        schedule.last_run_at = started_at

        if result.disconnected:
            schedule.auto_sync = False

        if result.rate_limited:
            schedule.retry_after_until = completed_at + timedelta(seconds=result.retry_after_seconds)
            schedule.next_sync_at = schedule.retry_after_until
            return

        schedule.retry_after_until = None
        if result.status.advances_cursor:
            schedule.consecutive_failures = 0
            schedule.next_sync_at = started_at + frequency
        elif result.status == SyncStatus.FAILED:
            schedule.consecutive_failures += 1
            multiplier = min(2 ** schedule.consecutive_failures, self._config.scheduler.backoff_cap_multiplier)
            schedule.next_sync_at = completed_at + frequency * multiplier
        else:
            schedule.next_sync_at = completed_at + frequency

    async def run_forever(self, stop_event: asyncio.Event, tick_seconds: float | None = None) -> None:
        """Tick until ``stop_event`` is set."""
        interval = tick_seconds or self._config.scheduler.tick_seconds
        logger.info("SyncScheduler started (tick every %ss)", interval)
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("SyncScheduler tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("SyncScheduler stopped")
