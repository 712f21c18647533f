"""asyncpg-backed :class:`SyncRepository`.

Tables mirror the engine's dataclasses one-to-one.  Observations, sync logs
and conflict resolutions are written with ``ON CONFLICT DO NOTHING``; the
only UPDATE on ``health_observations`` sets ``superseded_by`` on rows where
it is still NULL.  ``persist_reconciliation`` runs a page's supersedes, inserts
and resolution inserts inside one transaction.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from uuid import UUID

import asyncpg

from src.services import database as db
from src.wearables.base import (
    ConflictKind,
    ConflictResolution,
    ConnectionState,
    CorrelationAnalysis,
    DeviceAuth,
    DeviceType,
    HealthObservation,
    ManualOverride,
    MetricType,
    ResolutionPolicy,
    ResolvedBy,
    SyncDirection,
    SyncLog,
    SyncSchedule,
    SyncStatus,
    WearableDevice,
)
from src.wearables.errors import DeviceNotFound
from src.wearables.sync.dedup import build_insert_query, build_upsert_query
from src.wearables.sync.repository import SyncRepository

logger = logging.getLogger("nutrisync.wearables.sync.postgres")

SCHEMA = """
CREATE TABLE IF NOT EXISTS wearable_devices (
    device_id      TEXT PRIMARY KEY,
    user_id        TEXT NOT NULL,
    device_type    TEXT NOT NULL,
    display_name   TEXT NOT NULL DEFAULT '',
    state          TEXT NOT NULL,
    capabilities   TEXT[] NOT NULL DEFAULT '{}',
    last_sync_at   TIMESTAMPTZ,
    sync_cursor    TEXT,
    battery_level  INTEGER,
    settings       JSONB NOT NULL DEFAULT '{}',
    is_active      BOOLEAN NOT NULL DEFAULT TRUE,
    last_error     TEXT,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS wearable_devices_user_idx ON wearable_devices (user_id);

CREATE TABLE IF NOT EXISTS device_auth (
    device_id          TEXT PRIMARY KEY REFERENCES wearable_devices (device_id),
    ciphertext         TEXT NOT NULL,
    expires_at         TIMESTAMPTZ,
    last_refreshed_at  TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS health_observations (
    observation_id    UUID PRIMARY KEY,
    user_id           TEXT NOT NULL,
    metric_type       TEXT NOT NULL,
    value             DOUBLE PRECISION NOT NULL,
    unit              TEXT NOT NULL,
    event_time        TIMESTAMPTZ NOT NULL,
    source_device_id  TEXT NOT NULL,
    source_record_id  TEXT NOT NULL,
    confidence        DOUBLE PRECISION,
    ingested_at       TIMESTAMPTZ,
    superseded_by     UUID,
    superseded_at     TIMESTAMPTZ,
    metadata          JSONB NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS health_observations_window_idx
    ON health_observations (user_id, metric_type, event_time);

CREATE TABLE IF NOT EXISTS sync_logs (
    log_id              UUID PRIMARY KEY,
    device_id           TEXT NOT NULL,
    user_id             TEXT NOT NULL,
    direction           TEXT NOT NULL,
    status              TEXT NOT NULL,
    records_processed   INTEGER NOT NULL,
    records_added       INTEGER NOT NULL,
    records_updated     INTEGER NOT NULL,
    records_failed      INTEGER NOT NULL,
    started_at          TIMESTAMPTZ NOT NULL,
    completed_at        TIMESTAMPTZ NOT NULL,
    error_message       TEXT,
    conflicts_detected  INTEGER NOT NULL DEFAULT 0,
    pages_fetched       INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS sync_logs_device_idx ON sync_logs (device_id, started_at DESC);

CREATE TABLE IF NOT EXISTS sync_schedules (
    device_id             TEXT PRIMARY KEY,
    frequency_minutes     INTEGER NOT NULL,
    auto_sync             BOOLEAN NOT NULL,
    last_run_at           TIMESTAMPTZ,
    next_sync_at          TIMESTAMPTZ,
    consecutive_failures  INTEGER NOT NULL DEFAULT 0,
    retry_after_until     TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS conflict_resolutions (
    resolution_id     UUID PRIMARY KEY,
    user_id           TEXT NOT NULL,
    metric_type       TEXT NOT NULL,
    conflict_kind     TEXT NOT NULL,
    competing         JSONB NOT NULL,
    policy            TEXT NOT NULL,
    resolved_value    DOUBLE PRECISION NOT NULL,
    authoritative_id  UUID NOT NULL,
    resolved_by       TEXT NOT NULL,
    resolved_at       TIMESTAMPTZ NOT NULL,
    device_id         TEXT
);

CREATE TABLE IF NOT EXISTS manual_overrides (
    user_id              TEXT NOT NULL,
    metric_type          TEXT NOT NULL,
    policy               TEXT NOT NULL,
    preferred_device_id  TEXT,
    PRIMARY KEY (user_id, metric_type)
);

CREATE TABLE IF NOT EXISTS correlation_analyses (
    user_id            TEXT NOT NULL,
    pair_name          TEXT NOT NULL,
    metric_a           TEXT NOT NULL,
    metric_b           TEXT NOT NULL,
    period_start       TIMESTAMPTZ NOT NULL,
    period_end         TIMESTAMPTZ NOT NULL,
    correlation_score  DOUBLE PRECISION NOT NULL,
    confidence         DOUBLE PRECISION NOT NULL,
    data_points        INTEGER NOT NULL,
    insights           JSONB NOT NULL DEFAULT '{}',
    computed_at        TIMESTAMPTZ NOT NULL,
    UNIQUE (user_id, pair_name, period_end)
);
"""

_DEVICE_COLUMNS = [
    "device_id", "user_id", "device_type", "display_name", "state", "capabilities",
    "last_sync_at", "sync_cursor", "battery_level", "settings", "is_active",
    "last_error", "created_at",
]
_OBSERVATION_COLUMNS = [
    "observation_id", "user_id", "metric_type", "value", "unit", "event_time",
    "source_device_id", "source_record_id", "confidence", "ingested_at",
    "superseded_by", "superseded_at", "metadata",
]
_LOG_COLUMNS = [
    "log_id", "device_id", "user_id", "direction", "status", "records_processed",
    "records_added", "records_updated", "records_failed", "started_at",
    "completed_at", "error_message", "conflicts_detected", "pages_fetched",
]
_SCHEDULE_COLUMNS = [
    "device_id", "frequency_minutes", "auto_sync", "last_run_at", "next_sync_at",
    "consecutive_failures", "retry_after_until",
]
_RESOLUTION_COLUMNS = [
    "resolution_id", "user_id", "metric_type", "conflict_kind", "competing", "policy",
    "resolved_value", "authoritative_id", "resolved_by", "resolved_at", "device_id",
]
_CORRELATION_COLUMNS = [
    "user_id", "pair_name", "metric_a", "metric_b", "period_start", "period_end",
    "correlation_score", "confidence", "data_points", "insights", "computed_at",
]


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _json_in(value: object) -> str:
    return json.dumps(value, default=str)


def _json_out(value: object) -> object:
    return json.loads(value) if isinstance(value, str) else value


def _device_from_row(row: asyncpg.Record) -> WearableDevice:
    return WearableDevice(
        device_id=row["device_id"],
        user_id=row["user_id"],
        device_type=DeviceType(row["device_type"]),
        display_name=row["display_name"],
        state=ConnectionState(row["state"]),
        capabilities=frozenset(MetricType(m) for m in row["capabilities"] or []),
        last_sync_at=row["last_sync_at"],
        sync_cursor=row["sync_cursor"],
        battery_level=row["battery_level"],
        settings=_json_out(row["settings"]) or {},
        is_active=row["is_active"],
        last_error=row["last_error"],
        created_at=row["created_at"],
    )


def _device_values(device: WearableDevice) -> tuple:
    return (
        device.device_id, device.user_id, device.device_type.value, device.display_name,
        device.state.value, sorted(m.value for m in device.capabilities), device.last_sync_at,
        device.sync_cursor, device.battery_level, _json_in(device.settings), device.is_active,
        device.last_error, device.created_at,
    )


def _observation_from_row(row: asyncpg.Record) -> HealthObservation:
    return HealthObservation(
        observation_id=row["observation_id"],
        user_id=row["user_id"],
        metric_type=MetricType(row["metric_type"]),
        value=row["value"],
        unit=row["unit"],
        event_time=row["event_time"],
        source_device_id=row["source_device_id"],
        source_record_id=row["source_record_id"],
        confidence=row["confidence"],
        ingested_at=row["ingested_at"],
        superseded_by=row["superseded_by"],
        superseded_at=row["superseded_at"],
        metadata=_json_out(row["metadata"]) or {},
    )


def _observation_values(obs: HealthObservation) -> tuple:
    return (
        obs.observation_id, obs.user_id, obs.metric_type.value, obs.value, obs.unit,
        obs.event_time, obs.source_device_id, obs.source_record_id, obs.confidence,
        obs.ingested_at, obs.superseded_by, obs.superseded_at, _json_in(obs.metadata),
    )


def _log_from_row(row: asyncpg.Record) -> SyncLog:
    return SyncLog(
        log_id=row["log_id"],
        device_id=row["device_id"],
        user_id=row["user_id"],
        direction=SyncDirection(row["direction"]),
        status=SyncStatus(row["status"]),
        records_processed=row["records_processed"],
        records_added=row["records_added"],
        records_updated=row["records_updated"],
        records_failed=row["records_failed"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        error_message=row["error_message"],
        conflicts_detected=row["conflicts_detected"],
        pages_fetched=row["pages_fetched"],
    )


def _schedule_from_row(row: asyncpg.Record) -> SyncSchedule:
    return SyncSchedule(**{col: row[col] for col in _SCHEDULE_COLUMNS})


def _resolution_from_row(row: asyncpg.Record) -> ConflictResolution:
    return ConflictResolution(
        resolution_id=row["resolution_id"],
        user_id=row["user_id"],
        metric_type=MetricType(row["metric_type"]),
        conflict_kind=ConflictKind(row["conflict_kind"]),
        competing=tuple(_json_out(row["competing"]) or ()),
        policy=ResolutionPolicy(row["policy"]),
        resolved_value=row["resolved_value"],
        authoritative_id=row["authoritative_id"],
        resolved_by=ResolvedBy(row["resolved_by"]),
        resolved_at=row["resolved_at"],
        device_id=row["device_id"],
    )


def _correlation_from_row(row: asyncpg.Record) -> CorrelationAnalysis:
    return CorrelationAnalysis(
        user_id=row["user_id"],
        pair_name=row["pair_name"],
        metric_a=MetricType(row["metric_a"]),
        metric_b=MetricType(row["metric_b"]),
        period_start=row["period_start"],
        period_end=row["period_end"],
        correlation_score=row["correlation_score"],
        confidence=row["confidence"],
        data_points=row["data_points"],
        insights=_json_out(row["insights"]) or {},
        computed_at=row["computed_at"],
    )


def _resolution_values(r: ConflictResolution) -> tuple:
    return (
        r.resolution_id, r.user_id, r.metric_type.value, r.conflict_kind.value,
        _json_in(list(r.competing)), r.policy.value, r.resolved_value,
        r.authoritative_id, r.resolved_by.value, r.resolved_at, r.device_id,
    )


def _row_count(status: str) -> int:
    """Rows affected, from an asyncpg command tag such as ``UPDATE 1``."""
    return int(status.rsplit(" ", 1)[-1])


# ---------------------------------------------------------------------------
# Writes on an open connection
# ---------------------------------------------------------------------------

SUPERSEDE_QUERY = (
    "UPDATE health_observations SET superseded_by = $2, superseded_at = $3 "
    "WHERE observation_id = $1 AND superseded_by IS NULL"
)


async def _supersede(
    conn: asyncpg.Connection, pairs: list[tuple[UUID, UUID]], superseded_at: datetime
) -> int:
    changed = 0
    for loser_id, winner_id in pairs:
        changed += _row_count(await conn.execute(SUPERSEDE_QUERY, loser_id, winner_id, superseded_at))
    return changed


async def _insert_observations(conn: asyncpg.Connection, observations: list[HealthObservation]) -> int:
    query = build_insert_query("health_observations", _OBSERVATION_COLUMNS, ["observation_id"])
    written = 0
    for obs in observations:
        written += _row_count(await conn.execute(query, *_observation_values(obs)))
    return written


async def _insert_resolutions(conn: asyncpg.Connection, resolutions: list[ConflictResolution]) -> int:
    query = build_insert_query("conflict_resolutions", _RESOLUTION_COLUMNS, ["resolution_id"])
    written = 0
    for r in resolutions:
        written += _row_count(await conn.execute(query, *_resolution_values(r)))
    return written


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PostgresSyncRepository(SyncRepository):
    """SyncRepository over the module-level asyncpg pool in ``src.services.database``."""

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        await db.execute(SCHEMA)
        logger.info("Sync schema ensured")

    # ── Devices ──

    async def add_device(self, device: WearableDevice) -> None:
        query = build_upsert_query("wearable_devices", _DEVICE_COLUMNS, ["device_id"])
        await db.execute(query, *_device_values(device))

    async def get_device(self, device_id: str) -> WearableDevice | None:
        row = await db.fetchrow("SELECT * FROM wearable_devices WHERE device_id = $1", device_id)
        return _device_from_row(row) if row else None

    async def update_device(self, device: WearableDevice) -> None:
        assignments = ", ".join(f"{col} = ${i + 1}" for i, col in enumerate(_DEVICE_COLUMNS))
        status = await db.execute(
            f"UPDATE wearable_devices SET {assignments} WHERE device_id = $1",
            *_device_values(device),
        )
        if status.endswith(" 0"):
            raise DeviceNotFound(f"device {device.device_id} not found")

    async def mark_device_syncing(self, device_id: str) -> bool:
        status = await db.execute(
            "UPDATE wearable_devices SET state = $2 "
            "WHERE device_id = $1 AND is_active AND state <> $3",
            device_id, ConnectionState.SYNCING.value, ConnectionState.DISCONNECTED.value,
        )
        return _row_count(status) > 0

    async def list_devices(self, user_id: str | None = None) -> list[WearableDevice]:
        if user_id is None:
            rows = await db.fetch("SELECT * FROM wearable_devices ORDER BY created_at")
        else:
            rows = await db.fetch(
                "SELECT * FROM wearable_devices WHERE user_id = $1 ORDER BY created_at", user_id
            )
        return [_device_from_row(r) for r in rows]

    # ── Credentials ──

    async def save_auth(self, auth: DeviceAuth) -> None:
        query = build_upsert_query(
            "device_auth",
            ["device_id", "ciphertext", "expires_at", "last_refreshed_at"],
            ["device_id"],
        )
        await db.execute(query, auth.device_id, auth.ciphertext, auth.expires_at, auth.last_refreshed_at)

    async def get_auth(self, device_id: str) -> DeviceAuth | None:
        row = await db.fetchrow("SELECT * FROM device_auth WHERE device_id = $1", device_id)
        if row is None:
            return None
        return DeviceAuth(
            device_id=row["device_id"],
            ciphertext=row["ciphertext"],
            expires_at=row["expires_at"],
            last_refreshed_at=row["last_refreshed_at"],
        )

    # ── Observations ──

    async def append_observations(self, observations: list[HealthObservation]) -> int:
        if not observations:
            return 0
        async with db.get_connection() as conn:
            return await _insert_observations(conn, observations)

    async def supersede_observations(
        self, pairs: list[tuple[UUID, UUID]], superseded_at: datetime
    ) -> int:
        if not pairs:
            return 0
        async with db.get_connection() as conn:
            return await _supersede(conn, pairs, superseded_at)

    async def persist_reconciliation(
        self,
        new_rows: list[HealthObservation],
        supersede: list[tuple[UUID, UUID]],
        resolutions: list[ConflictResolution],
        superseded_at: datetime,
    ) -> None:
        async with db.get_connection() as conn:
            changed = await _supersede(conn, supersede, superseded_at)
            written = await _insert_observations(conn, new_rows)
            await _insert_resolutions(conn, resolutions)
        logger.debug("Persisted page: %d observations written, %d superseded", written, changed)

    async def list_observations(
        self,
        user_id: str,
        metric_types: list[MetricType] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        include_superseded: bool = False,
    ) -> list[HealthObservation]:
        clauses = ["user_id = $1"]
        args: list[object] = [user_id]
        if metric_types:
            args.append([m.value for m in metric_types])
            clauses.append(f"metric_type = ANY(${len(args)})")
        if start is not None:
            args.append(start)
            clauses.append(f"event_time >= ${len(args)}")
        if end is not None:
            args.append(end)
            clauses.append(f"event_time <= ${len(args)}")
        if not include_superseded:
            clauses.append("superseded_by IS NULL")
        rows = await db.fetch(
            f"SELECT * FROM health_observations WHERE {' AND '.join(clauses)} "
            "ORDER BY event_time, source_device_id, source_record_id",
            *args,
        )
        return [_observation_from_row(r) for r in rows]

    # ── Sync logs ──

    async def append_sync_log(self, log: SyncLog) -> None:
        query = build_insert_query("sync_logs", _LOG_COLUMNS, ["log_id"])
        await db.execute(
            query,
            log.log_id, log.device_id, log.user_id, log.direction.value, log.status.value,
            log.records_processed, log.records_added, log.records_updated, log.records_failed,
            log.started_at, log.completed_at, log.error_message, log.conflicts_detected,
            log.pages_fetched,
        )

    async def list_sync_logs(self, device_id: str, limit: int = 50) -> list[SyncLog]:
        rows = await db.fetch(
            "SELECT * FROM sync_logs WHERE device_id = $1 ORDER BY started_at DESC LIMIT $2",
            device_id, limit,
        )
        return [_log_from_row(r) for r in rows]

    # ── Schedules ──

    async def get_schedule(self, device_id: str) -> SyncSchedule | None:
        row = await db.fetchrow("SELECT * FROM sync_schedules WHERE device_id = $1", device_id)
        return _schedule_from_row(row) if row else None

    async def save_schedule(self, schedule: SyncSchedule) -> None:
        query = build_upsert_query("sync_schedules", _SCHEDULE_COLUMNS, ["device_id"])
        await db.execute(query, *(getattr(schedule, col) for col in _SCHEDULE_COLUMNS))

    async def list_schedules(self) -> list[SyncSchedule]:
        rows = await db.fetch("SELECT * FROM sync_schedules")
        return [_schedule_from_row(r) for r in rows]

    # ── Conflicts and overrides ──

    async def append_resolutions(self, resolutions: list[ConflictResolution]) -> int:
        if not resolutions:
            return 0
        async with db.get_connection() as conn:
            return await _insert_resolutions(conn, resolutions)

    async def list_resolutions(
        self, user_id: str, metric_type: MetricType | None = None, limit: int = 100
    ) -> list[ConflictResolution]:
        if metric_type is None:
            rows = await db.fetch(
                "SELECT * FROM conflict_resolutions WHERE user_id = $1 "
                "ORDER BY resolved_at DESC LIMIT $2",
                user_id, limit,
            )
        else:
            rows = await db.fetch(
                "SELECT * FROM conflict_resolutions WHERE user_id = $1 AND metric_type = $2 "
                "ORDER BY resolved_at DESC LIMIT $3",
                user_id, metric_type.value, limit,
            )
        return [_resolution_from_row(r) for r in rows]

    async def get_overrides(self, user_id: str) -> dict[MetricType, ManualOverride]:
        rows = await db.fetch("SELECT * FROM manual_overrides WHERE user_id = $1", user_id)
        overrides = {}
        for row in rows:
            metric_type = MetricType(row["metric_type"])
            overrides[metric_type] = ManualOverride(
                user_id=row["user_id"],
                metric_type=metric_type,
                policy=ResolutionPolicy(row["policy"]),
                preferred_device_id=row["preferred_device_id"],
            )
        return overrides

    async def save_override(self, override: ManualOverride) -> None:
        query = build_upsert_query(
            "manual_overrides",
            ["user_id", "metric_type", "policy", "preferred_device_id"],
            ["user_id", "metric_type"],
        )
        await db.execute(
            query, override.user_id, override.metric_type.value, override.policy.value,
            override.preferred_device_id,
        )

    async def delete_override(self, user_id: str, metric_type: MetricType) -> bool:
        status = await db.execute(
            "DELETE FROM manual_overrides WHERE user_id = $1 AND metric_type = $2",
            user_id, metric_type.value,
        )
        return not status.endswith(" 0")

    # ── Correlations ──

    async def upsert_correlation(self, analysis: CorrelationAnalysis) -> None:
        query = build_upsert_query(
            "correlation_analyses", _CORRELATION_COLUMNS, ["user_id", "pair_name", "period_end"]
        )
        await db.execute(
            query,
            analysis.user_id, analysis.pair_name, analysis.metric_a.value, analysis.metric_b.value,
            analysis.period_start, analysis.period_end, analysis.correlation_score,
            analysis.confidence, analysis.data_points, _json_in(analysis.insights),
            analysis.computed_at,
        )

    async def list_correlations(self, user_id: str) -> list[CorrelationAnalysis]:
        rows = await db.fetch(
            "SELECT * FROM correlation_analyses WHERE user_id = $1 ORDER BY period_end, pair_name",
            user_id,
        )
        return [_correlation_from_row(r) for r in rows]
