"""Tests for the sync scheduler: due selection, backoff and the worker pool."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.wearables.base import ConnectionState, DeviceType, SyncSchedule, SyncStatus
from src.wearables.errors import ConsentRevoked, RateLimited, TransientError
from src.wearables.sync.orchestrator import SyncResult
from src.wearables.sync.scheduler import SyncScheduler
from src.wearables.tests.conftest import NOW, make_device, valid_tokens


@pytest.fixture
def scheduler(repository, orchestrator, sync_config, clock) -> SyncScheduler:
    return SyncScheduler(repository, orchestrator, config=sync_config, clock=clock)


def result(status: SyncStatus, **kwargs) -> SyncResult:
    kwargs.setdefault("started_at", NOW)
    kwargs.setdefault("completed_at", NOW + timedelta(seconds=5))
    return SyncResult(device_id="device-a", status=status, **kwargs)


class CountingOrchestrator:
    """Stands in for the orchestrator and records peak concurrency."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.active = 0
        self.peak = 0
        self.calls: list[str] = []
        self.fail_for = fail_for or set()

    def is_running(self, device_id: str) -> bool:
        return False

    async def run(self, device_id: str) -> SyncResult:
        self.calls.append(device_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.active -= 1
        if device_id in self.fail_for:
            raise RuntimeError("boom")
        return SyncResult(device_id=device_id, status=SyncStatus.SUCCESS, started_at=NOW, completed_at=NOW)


# ---------------------------------------------------------------------------
# Schedule table
# ---------------------------------------------------------------------------


class TestSchedules:
    @pytest.mark.asyncio
    async def test_new_schedule_is_due_immediately(self, scheduler, repository):
        device = make_device()
        schedule = await scheduler.ensure_schedule(device)

        assert schedule.frequency_minutes == 30  # fitbit default
        assert schedule.next_sync_at == NOW
        assert schedule.auto_sync
        assert await repository.get_schedule("device-a") == schedule

    @pytest.mark.asyncio
    async def test_frequency_override(self, scheduler):
        schedule = await scheduler.ensure_schedule(make_device(device_type=DeviceType.GARMIN), frequency_minutes=5)
        assert schedule.frequency_minutes == 5

    def test_interval_per_device_type(self, scheduler):
        assert scheduler.get_interval(make_device(device_type=DeviceType.GARMIN)) == 15
        assert scheduler.get_interval(make_device(device_type=DeviceType.WHOOP)) == 60

    @pytest.mark.asyncio
    async def test_set_auto_sync_unknown_device(self, scheduler):
        assert await scheduler.set_auto_sync("missing", False) is None

    @pytest.mark.asyncio
    async def test_update_schedule_keeps_retry_after_floor(self, scheduler, repository):
        device = make_device()
        await repository.save_schedule(SyncSchedule(
            device_id="device-a",
            frequency_minutes=30,
            last_run_at=NOW,
            next_sync_at=NOW + timedelta(minutes=20),
            consecutive_failures=1,
            retry_after_until=NOW + timedelta(minutes=20),
        ))

        schedule = await scheduler.update_schedule(device, frequency_minutes=5)

        assert schedule.next_sync_at == NOW + timedelta(minutes=20)
        assert schedule.consecutive_failures == 1
        assert await repository.get_schedule("device-a") == schedule

    @pytest.mark.asyncio
    async def test_update_schedule_creates_missing_schedule(self, scheduler):
        schedule = await scheduler.update_schedule(make_device(), auto_sync=False)

        assert schedule.frequency_minutes == 30
        assert schedule.next_sync_at == NOW
        assert not schedule.auto_sync


class TestDueSelection:
    @pytest.mark.asyncio
    async def test_due_selection_filters(self, scheduler, repository, clock):
        for device_id in ("due", "later", "off", "gone"):
            device = make_device(device_id)
            await repository.add_device(device)
            await scheduler.ensure_schedule(device)

        later = await repository.get_schedule("later")
        later.next_sync_at = NOW + timedelta(minutes=10)
        await repository.save_schedule(later)
        await scheduler.set_auto_sync("off", False)
        gone = await repository.get_device("gone")
        gone.state = ConnectionState.DISCONNECTED
        await repository.update_device(gone)

        assert await scheduler.due_device_ids() == ["due"]
        assert await scheduler.due_device_ids(NOW + timedelta(minutes=10)) == ["due", "later"]


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_success_resets_failures(self, scheduler):
        schedule = SyncSchedule("device-a", frequency_minutes=30, consecutive_failures=3)
        scheduler.apply_result(schedule, result(SyncStatus.SUCCESS))

        assert schedule.consecutive_failures == 0
        assert schedule.next_sync_at == NOW + timedelta(minutes=30)
        assert schedule.last_run_at == NOW

    @pytest.mark.parametrize("status", [SyncStatus.PARTIAL, SyncStatus.CONFLICT])
    def test_partial_and_conflict_count_as_progress(self, scheduler, status):
        schedule = SyncSchedule("device-a", frequency_minutes=30, consecutive_failures=2)
        scheduler.apply_result(schedule, result(status))
        assert schedule.consecutive_failures == 0

    def test_failures_back_off_exponentially_up_to_cap(self, scheduler):
        schedule = SyncSchedule("device-a", frequency_minutes=30)
        completed = NOW + timedelta(seconds=5)
        expected_multipliers = [2, 4, 8, 16, 24, 24]

        for multiplier in expected_multipliers:
            scheduler.apply_result(schedule, result(SyncStatus.FAILED))
            assert schedule.next_sync_at == completed + timedelta(minutes=30 * multiplier)

        assert schedule.consecutive_failures == len(expected_multipliers)

    def test_rate_limit_waits_retry_after(self, scheduler):
        schedule = SyncSchedule("device-a", frequency_minutes=30, consecutive_failures=1)
        scheduler.apply_result(schedule, result(SyncStatus.FAILED, retry_after_seconds=60))

        assert schedule.next_sync_at == NOW + timedelta(seconds=65)
        assert schedule.retry_after_until == schedule.next_sync_at
        assert schedule.consecutive_failures == 1

    def test_disconnect_turns_auto_sync_off(self, scheduler):
        schedule = SyncSchedule("device-a")
        scheduler.apply_result(schedule, result(SyncStatus.FAILED, disconnected=True))
        assert not schedule.auto_sync

    def test_cancelled_waits_one_interval(self, scheduler):
        schedule = SyncSchedule("device-a", frequency_minutes=30, consecutive_failures=1)
        scheduler.apply_result(schedule, result(SyncStatus.CANCELLED))

        assert schedule.next_sync_at == NOW + timedelta(seconds=5, minutes=30)
        assert schedule.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_skipped_leaves_schedule_unchanged(self, scheduler, repository):
        await scheduler.ensure_schedule(make_device())
        before = await repository.get_schedule("device-a")
        snapshot = SyncSchedule(**vars(before))

        assert await scheduler.record_result(result(SyncStatus.SKIPPED)) is None
        assert await repository.get_schedule("device-a") == snapshot


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------


class TestTick:
    @pytest.mark.asyncio
    async def test_tick_syncs_due_device_and_reschedules(
        self, scheduler, repository, connector, paired_device
    ):
        await scheduler.ensure_schedule(paired_device)

        results = await scheduler.tick()

        assert [r.status for r in results] == [SyncStatus.SUCCESS]
        schedule = await repository.get_schedule("device-a")
        assert schedule.next_sync_at == NOW + timedelta(minutes=30)
        assert await scheduler.due_device_ids() == []

    @pytest.mark.asyncio
    async def test_rate_limited_device_not_retried_early(self, scheduler, repository, connector, paired_device):
        await scheduler.ensure_schedule(paired_device)
        connector.script = [RateLimited(60)]

        await scheduler.tick()

        schedule = await repository.get_schedule("device-a")
        assert schedule.next_sync_at >= NOW + timedelta(seconds=60)
        assert await scheduler.due_device_ids(NOW + timedelta(seconds=59)) == []
        assert await scheduler.due_device_ids(NOW + timedelta(seconds=60)) == ["device-a"]

    @pytest.mark.asyncio
    async def test_failed_job_backs_off(self, scheduler, repository, connector, paired_device):
        await scheduler.ensure_schedule(paired_device)
        connector.script = [TransientError("503")] * 4

        await scheduler.tick()

        schedule = await repository.get_schedule("device-a")
        assert schedule.consecutive_failures == 1
        assert schedule.next_sync_at == NOW + timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_revoked_device_is_not_rescheduled(self, scheduler, repository, connector, paired_device):
        await scheduler.ensure_schedule(paired_device)
        connector.script = [ConsentRevoked("revoked")]

        await scheduler.tick()

        schedule = await repository.get_schedule("device-a")
        assert not schedule.auto_sync
        assert await scheduler.due_device_ids(NOW + timedelta(days=1)) == []

    @pytest.mark.asyncio
    async def test_worker_pool_bounds_concurrency(self, repository, sync_config, clock):
        orchestrator = CountingOrchestrator()
        scheduler = SyncScheduler(repository, orchestrator, config=sync_config, max_concurrent=2, clock=clock)
        for i in range(5):
            device = make_device(f"device-{i}")
            await repository.add_device(device)
            await scheduler.ensure_schedule(device)

        results = await scheduler.tick()

        assert len(results) == 5
        assert orchestrator.peak == 2

    @pytest.mark.asyncio
    async def test_one_crashing_job_does_not_stop_others(self, repository, sync_config, clock):
        orchestrator = CountingOrchestrator(fail_for={"device-1"})
        scheduler = SyncScheduler(repository, orchestrator, config=sync_config, clock=clock)
        for i in range(3):
            device = make_device(f"device-{i}")
            await repository.add_device(device)
            await scheduler.ensure_schedule(device)

        results = await scheduler.tick()

        assert sorted(r.device_id for r in results) == ["device-0", "device-2"]

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, scheduler):
        stop = asyncio.Event()

        async def tick_once():
            stop.set()
            return []

        scheduler.tick = AsyncMock(side_effect=tick_once)
        await asyncio.wait_for(scheduler.run_forever(stop, tick_seconds=0.01), timeout=1)

        scheduler.tick.assert_awaited_once()


class TestTickWithSecondDevice:
    @pytest.mark.asyncio
    async def test_devices_sync_independently(self, scheduler, repository, credentials, connector, paired_device):
        other = make_device("device-b")
        await repository.add_device(other)
        await credentials.store_tokens("device-b", valid_tokens("access-b"))
        await scheduler.ensure_schedule(paired_device)
        await scheduler.ensure_schedule(other)

        results = await scheduler.tick()

        assert sorted(r.device_id for r in results) == ["device-a", "device-b"]
        assert all(r.status == SyncStatus.SUCCESS for r in results)
