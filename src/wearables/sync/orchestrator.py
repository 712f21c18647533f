"""Sync orchestrator: executes one sync job for one device end-to-end.

1. Take the per-device lock without waiting (held → ``skipped``).
2. Resolve a valid credential through the credential store.
3. Pull page by page from the device's cursor, up to ``max_pages``.
4. Normalize each record; malformed records count as ``records_failed``.
5. Reconcile each page against the stored window and persist it
   (supersedes and appends in one write).
6. Append one SyncLog row; advance ``last_sync_at`` and the cursor only on
   success, partial success or a resolved conflict.

Fault handling follows the connector taxonomy: transient faults retry within
the job, an expired token gets one forced refresh, a rate limit ends the job
and hands ``retry_after`` to the scheduler, and a revoked grant disconnects
the device.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from src.wearables.base import (
    ConnectionState,
    DeviceConnector,
    HealthObservation,
    PullPage,
    SyncDirection,
    SyncEventKind,
    SyncLog,
    SyncStatus,
    WearableDevice,
    utc_now,
)
from src.wearables.config_loader import SyncConfig, get_sync_config
from src.wearables.conflict_engine import ConflictEngine
from src.wearables.connectors import ConnectorRegistry
from src.wearables.errors import (
    AuthExpired,
    ConnectorError,
    ConnectorNotRegistered,
    ConsentRevoked,
    LockContention,
    PermanentError,
    RateLimited,
    TransientError,
    classify_exception,
)
from src.wearables.sync.credentials import CredentialStore
from src.wearables.sync.events import EventCallback, SyncEvent, emit
from src.wearables.sync.locks import KeyedLocks
from src.wearables.sync.repository import SyncRepository

logger = logging.getLogger("nutrisync.wearables.sync.orchestrator")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    """Outcome of one sync job, as returned to the trigger API and scheduler.

    Attributes:
        device_id:           Device synced.
        status:              Job outcome.
        direction:           pull / push / both.
        records_processed:   Raw records seen (pulled or pushed).
        records_added:       New authoritative values.
        records_updated:     Stored authoritative values replaced.
        records_failed:      Records that could not be normalized or reconciled.
        conflicts_detected:  ConflictResolution records written.
        pages_fetched:       Pages successfully processed.
        cursor:              Cursor after the last processed page.
        error:               Job-level error message, if any.
        retry_after_seconds: Vendor-imposed wait before the next attempt.
        disconnected:        True if this job moved the device to disconnected.
        log_id:              Id of the SyncLog row (None for skipped jobs).
    """

    device_id: str
    status: SyncStatus
    direction: SyncDirection = SyncDirection.PULL
    records_processed: int = 0
    records_added: int = 0
    records_updated: int = 0
    records_failed: int = 0
    conflicts_detected: int = 0
    pages_fetched: int = 0
    cursor: str | None = None
    error: str | None = None
    retry_after_seconds: float | None = None
    disconnected: bool = False
    log_id: uuid.UUID | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def rate_limited(self) -> bool:
        return self.retry_after_seconds is not None


@dataclass
class _AuthState:
    tokens: Any
    refreshed: bool = False

    @property
    def access_token(self) -> str:
        return self.tokens.access_token


@dataclass
class _JobState:
    cursor: str | None
    pages_ok: int = 0
    processed: int = 0
    added: int = 0
    updated: int = 0
    failed: int = 0
    conflicts: int = 0
    cancelled: bool = False
    battery_level: int | None = None
    failure_reasons: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SyncOrchestrator:
    """Run sync jobs with per-device mutual exclusion.

    Usage::

        orchestrator = SyncOrchestrator(repository, credentials, registry, on_event=notify)
        result = await orchestrator.run(device_id)
    """

    def __init__(
        self,
        repository: SyncRepository,
        credentials: CredentialStore,
        connectors: ConnectorRegistry,
        engine: ConflictEngine | None = None,
        config: SyncConfig | None = None,
        on_event: EventCallback | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            repository:  Persistence collaborator.
            credentials: Supplies valid access tokens.
            connectors:  Connector instance per device type.
            engine:      Conflict engine (built from ``config`` if omitted).
            config:      Sync config (global singleton if omitted).
            on_event:    Async callback(SyncEvent) → None for notifications.
            clock:       Returns the current UTC time.
            sleep:       Awaitable used between transient retries.
        """
        self._config = config or get_sync_config()
        self._repository = repository
        self._credentials = credentials
        self._connectors = connectors
        self._engine = engine or ConflictEngine(self._config)
        self._on_event = on_event
        self._clock = clock
        self._sleep = sleep
        self._locks = KeyedLocks()
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_running(self, device_id: str) -> bool:
        return self._locks.is_held(device_id)

    def cancel(self, device_id: str) -> bool:
        """Ask the in-flight job for a device to stop at the next page boundary.

        Returns:
            True if a job was running and has been signalled.
        """
        event = self._cancel_events.get(device_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for device %s", device_id)
        return True

    async def run(
        self,
        device_id: str,
        direction: SyncDirection = SyncDirection.PULL,
        push_observations: list[HealthObservation] | None = None,
    ) -> SyncResult:
        """Execute one sync job for a device.

        Args:
            device_id:         Device to sync.
            direction:         pull, push or both.
            push_observations: Observations to write back (push/both only).
                               Defaults to authoritative values from other
                               sources since the last sync.

        Returns:
            SyncResult.  ``skipped`` if another job holds the device lock or
            the device is disconnected.

        Raises:
            DeviceNotFound: If the device does not exist.
        """
        device = await self._repository.require_device(device_id)
        if device.state == ConnectionState.DISCONNECTED or not device.is_active:
            logger.info("Skipping sync for disconnected device %s", device_id)
            return SyncResult(
                device_id=device_id,
                status=SyncStatus.SKIPPED,
                direction=direction,
                error="device is disconnected; re-authentication required",
            )

        try:
            async with self._locks.try_hold(device_id):
                return await self._execute(device, direction, push_observations)
        except LockContention:
            logger.info("Sync already in flight for device %s; skipping", device_id)
            return SyncResult(
                device_id=device_id,
                status=SyncStatus.SKIPPED,
                direction=direction,
                error="another sync for this device is in progress",
            )

    # ------------------------------------------------------------------
    # Job execution (device lock held)
    # ------------------------------------------------------------------

    async def _execute(
        self,
        device: WearableDevice,
        direction: SyncDirection,
        push_observations: list[HealthObservation] | None,
    ) -> SyncResult:
        cancel_event = asyncio.Event()
        self._cancel_events[device.device_id] = cancel_event
        if not await self._repository.mark_device_syncing(device.device_id):
            self._cancel_events.pop(device.device_id, None)
            logger.info("Device %s disconnected before its sync started; skipping", device.device_id)
            return SyncResult(
                device_id=device.device_id,
                status=SyncStatus.SKIPPED,
                direction=direction,
                error="device is disconnected; re-authentication required",
            )
        device = await self._repository.get_device(device.device_id) or device

        started_at = self._clock()
        job = _JobState(cursor=device.sync_cursor)
        error: str | None = None
        retry_after: float | None = None
        disconnected = False
        job_failed = False
        interrupted: asyncio.CancelledError | None = None

        try:
            connector = self._connectors.get(device.device_type)
            auth = _AuthState(tokens=await self._credentials.get_valid_credential(device))

            if direction in (SyncDirection.PUSH, SyncDirection.BOTH):
                await self._push(device, connector, auth, job, push_observations)
            if direction in (SyncDirection.PULL, SyncDirection.BOTH) and not job.cancelled:
                await self._pull(device, connector, auth, job, cancel_event)

        except ConsentRevoked as exc:
            job_failed, disconnected, error = True, True, f"consent revoked: {exc}"
            await self._mark_disconnected(device, error)
        except AuthExpired as exc:
            job_failed, disconnected, error = True, True, f"authentication failed after refresh: {exc}"
            await self._mark_disconnected(device, error)
        except RateLimited as exc:
            job_failed, error, retry_after = True, str(exc), exc.retry_after_seconds
        except (TransientError, PermanentError, ConnectorNotRegistered) as exc:
            job_failed, error = True, f"{type(exc).__name__}: {exc}"
        except asyncio.CancelledError as exc:
            job.cancelled, error, interrupted = True, "sync task cancelled", exc
        except Exception as exc:
            logger.exception("Unexpected error syncing device %s", device.device_id)
            job_failed, error = True, f"{type(exc).__name__}: {exc}"
        finally:
            self._cancel_events.pop(device.device_id, None)

        status = self._job_status(job, job_failed)
        if error is None and job.failure_reasons:
            error = "; ".join(job.failure_reasons[:3])
        completed_at = self._clock()

        log = SyncLog(
            log_id=uuid.uuid4(),
            device_id=device.device_id,
            user_id=device.user_id,
            direction=direction,
            status=status,
            records_processed=job.processed,
            records_added=job.added,
            records_updated=job.updated,
            records_failed=job.failed,
            started_at=started_at,
            completed_at=completed_at,
            error_message=error,
            conflicts_detected=job.conflicts,
            pages_fetched=job.pages_ok,
        )
        await self._repository.append_sync_log(log)
        await self._finish_device(device, status, job, error, completed_at)
        if interrupted is not None:
            logger.warning("Sync task for device %s cancelled after %d pages", device.device_id, job.pages_ok)
            raise interrupted

        result = SyncResult(
            device_id=device.device_id,
            status=status,
            direction=direction,
            records_processed=job.processed,
            records_added=job.added,
            records_updated=job.updated,
            records_failed=job.failed,
            conflicts_detected=job.conflicts,
            pages_fetched=job.pages_ok,
            cursor=job.cursor,
            error=error,
            retry_after_seconds=retry_after,
            disconnected=disconnected,
            log_id=log.log_id,
            started_at=started_at,
            completed_at=completed_at,
        )
        logger.info(
            "Sync %s: device %s → %d processed, %d added, %d updated, %d failed, %d conflicts, %d pages",
            status.value, device.device_id, job.processed, job.added, job.updated,
            job.failed, job.conflicts, job.pages_ok,
        )
        await self._emit_events(device, result)
        return result

    @staticmethod
    def _job_status(job: _JobState, job_failed: bool) -> SyncStatus:
        if job.cancelled:
            return SyncStatus.CANCELLED
        if job_failed:
            return SyncStatus.PARTIAL if job.pages_ok > 0 else SyncStatus.FAILED
        if job.failed:
            return SyncStatus.PARTIAL if job.failed < job.processed else SyncStatus.FAILED
        if job.conflicts:
            return SyncStatus.CONFLICT
        return SyncStatus.SUCCESS

    async def _pull(
        self,
        device: WearableDevice,
        connector: DeviceConnector,
        auth: _AuthState,
        job: _JobState,
        cancel_event: asyncio.Event,
    ) -> None:
        metric_types = connector.capabilities().negotiate(device.capabilities or None)
        for _ in range(self._config.orchestrator.max_pages):
            if cancel_event.is_set():
                job.cancelled = True
                logger.info("Sync for device %s cancelled after %d pages", device.device_id, job.pages_ok)
                return

            cursor = job.cursor
            page: PullPage = await self._call(
                device, auth, lambda token: connector.pull(device, token, cursor, metric_types)
            )
            await self._process_page(device, connector, page, job)
            job.cursor = page.cursor
            job.pages_ok += 1
            if page.battery_level is not None:
                job.battery_level = page.battery_level
            if not page.has_more:
                return

        logger.warning(
            "Page limit (%d) reached for device %s; remaining pages deferred to the next sync",
            self._config.orchestrator.max_pages, device.device_id,
        )

    async def _process_page(
        self,
        device: WearableDevice,
        connector: DeviceConnector,
        page: PullPage,
        job: _JobState,
    ) -> None:
        observations: list[HealthObservation] = []
        for record in page.records:
            job.processed += 1
            try:
                observations.append(connector.normalize(record, device))
            except (PermanentError, KeyError, TypeError, ValueError) as exc:
                job.failed += 1
                job.failure_reasons.append(f"malformed record: {exc}")
                logger.warning("Dropping malformed %s record for device %s: %s",
                               connector.DISPLAY_NAME, device.device_id, exc)
        if not observations:
            return

        metric_types = sorted({o.metric_type for o in observations}, key=lambda m: m.value)
        pad = timedelta(seconds=max(
            self._config.metric(m).cluster_window_seconds for m in metric_types
        ))
        existing = await self._repository.list_observations(
            device.user_id,
            metric_types=metric_types,
            start=min(o.event_time for o in observations) - pad,
            end=max(o.event_time for o in observations) + pad,
            include_superseded=True,
        )
        overrides = await self._repository.get_overrides(device.user_id)
        as_of = self._clock()
        result = self._engine.reconcile(observations, existing, overrides, as_of=as_of)

        await self._repository.persist_reconciliation(
            result.new_rows, result.supersede, result.resolutions, as_of
        )

        job.added += result.records_added
        job.updated += result.records_updated
        job.conflicts += result.conflicts_detected
        job.failed += len(result.failed)
        job.failure_reasons.extend(reason for _, reason in result.failed)

    async def _push(
        self,
        device: WearableDevice,
        connector: DeviceConnector,
        auth: _AuthState,
        job: _JobState,
        observations: list[HealthObservation] | None,
    ) -> None:
        capabilities = connector.capabilities()
        if not capabilities.supports_push:
            raise PermanentError(f"{connector.DISPLAY_NAME} does not support write-back")

        if observations is None:
            observations = [
                o for o in await self._repository.list_observations(
                    device.user_id,
                    metric_types=sorted(capabilities.push_metric_types, key=lambda m: m.value),
                    start=device.last_sync_at,
                )
                if o.source_device_id != device.device_id
            ]
        pushable = [o for o in observations if o.metric_type in capabilities.push_metric_types]
        job.processed += len(observations)
        job.failed += len(observations) - len(pushable)
        if not pushable:
            return

        try:
            await self._call(device, auth, lambda token: connector.push(device, token, pushable))
        except PermanentError as exc:
            job.failed += len(pushable)
            job.failure_reasons.append(f"push rejected: {exc}")

    async def _call(
        self,
        device: WearableDevice,
        auth: _AuthState,
        make_call: Callable[[str], Awaitable[T]],
    ) -> T:
        """Run one bounded connector call with transient retry and one forced refresh."""
        settings = self._config.orchestrator
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    make_call(auth.access_token), timeout=settings.connector_timeout_seconds
                )
            except asyncio.TimeoutError:
                fault: ConnectorError = TransientError(
                    f"connector call timed out after {settings.connector_timeout_seconds:.0f}s"
                )
            except Exception as exc:
                fault = classify_exception(exc)

            if isinstance(fault, AuthExpired) and not isinstance(fault, ConsentRevoked) and not auth.refreshed:
                logger.info("Access token rejected for device %s; forcing refresh", device.device_id)
                auth.refreshed = True
                auth.tokens = await self._credentials.force_refresh(device, auth.access_token)
                continue
            if isinstance(fault, TransientError) and attempt < settings.transient_retries:
                attempt += 1
                logger.warning(
                    "Transient fault for device %s (attempt %d/%d): %s",
                    device.device_id, attempt, settings.transient_retries, fault,
                )
                await self._sleep(settings.retry_delay_seconds * attempt)
                continue
            raise fault

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _mark_disconnected(self, device: WearableDevice, reason: str) -> None:
        current = await self._repository.get_device(device.device_id) or device
        current.state = ConnectionState.DISCONNECTED
        current.last_error = reason
        await self._repository.update_device(current)

    async def _finish_device(
        self,
        device: WearableDevice,
        status: SyncStatus,
        job: _JobState,
        error: str | None,
        completed_at: datetime,
    ) -> None:
        # Re-read: a disconnect may have landed while the job ran.
        current = await self._repository.get_device(device.device_id) or device
        if current.state != ConnectionState.DISCONNECTED and current.is_active:
            current.state = ConnectionState.ERROR if status == SyncStatus.FAILED else ConnectionState.CONNECTED
        elif current.state != ConnectionState.DISCONNECTED:
            current.state = ConnectionState.DISCONNECTED
        if status.advances_cursor:
            current.last_sync_at = completed_at
            current.sync_cursor = job.cursor
        if job.battery_level is not None:
            current.battery_level = job.battery_level
        current.last_error = error
        await self._repository.update_device(current)

    async def _emit_events(self, device: WearableDevice, result: SyncResult) -> None:
        now = result.completed_at or self._clock()
        detail = {
            "status": result.status.value,
            "records_added": result.records_added,
            "records_updated": result.records_updated,
            "records_failed": result.records_failed,
            "conflicts_detected": result.conflicts_detected,
            "error": result.error,
        }
        kind = SyncEventKind.SYNC_FAILED if result.status == SyncStatus.FAILED else SyncEventKind.SYNC_COMPLETED
        await emit(self._on_event, SyncEvent(kind, device.device_id, device.user_id, now, detail))
        if result.conflicts_detected:
            await emit(
                self._on_event,
                SyncEvent(SyncEventKind.CONFLICT_DETECTED, device.device_id, device.user_id, now, detail),
            )
        if result.disconnected:
            await emit(
                self._on_event,
                SyncEvent(SyncEventKind.DEVICE_DISCONNECTED, device.device_id, device.user_id, now, detail),
            )
