"""Canonical data models and the connector contract for the wearable sync engine.

Every device connector implements :class:`DeviceConnector` and turns vendor
records into :class:`HealthObservation`.  These types are the single source of
truth consumed by the conflict engine, the sync orchestrator, the repository
layer and the API.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from src.wearables.errors import PermanentError

logger = logging.getLogger("nutrisync.wearables")

# Namespace for deterministic observation / resolution ids.
OBSERVATION_NAMESPACE = UUID("7c1f8a52-3b0e-4d6a-9f57-2d4c8e1b6a90")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DeviceType(str, Enum):
    """Connector kinds.  Each value maps to one registered connector."""

    GOOGLE_FIT = "google_fit"  # phone health API
    FITBIT = "fitbit"          # fitness band
    GARMIN = "garmin"          # smartwatch
    WHOOP = "whoop"            # wrist tracker


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SYNCING = "syncing"
    ERROR = "error"


class MetricType(str, Enum):
    STEPS = "steps"
    DISTANCE = "distance"
    CALORIES_BURNED = "calories_burned"
    HEART_RATE = "heart_rate"
    RESTING_HEART_RATE = "resting_heart_rate"
    HEART_RATE_VARIABILITY = "heart_rate_variability"
    SLEEP_DURATION = "sleep_duration"
    WEIGHT = "weight"
    BODY_FAT = "body_fat"
    BLOOD_OXYGEN = "blood_oxygen"
    RESPIRATORY_RATE = "respiratory_rate"
    STRESS_LEVEL = "stress_level"
    ACTIVITY_MINUTES = "activity_minutes"


class SyncDirection(str, Enum):
    PULL = "pull"
    PUSH = "push"
    BOTH = "both"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def advances_cursor(self) -> bool:
        """True for outcomes after which the stored cursor may move forward."""
        return self in (SyncStatus.SUCCESS, SyncStatus.PARTIAL, SyncStatus.CONFLICT)


class ConflictKind(str, Enum):
    TIMESTAMP = "timestamp"
    VALUE = "value"
    SOURCE = "source"


class ResolutionPolicy(str, Enum):
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGED = "merged"


class ResolvedBy(str, Enum):
    SYSTEM = "system"
    POLICY = "policy"
    MANUAL = "manual"


class SyncEventKind(str, Enum):
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    CONFLICT_DETECTED = "conflict_detected"
    DEVICE_DISCONNECTED = "device_disconnected"


# ---------------------------------------------------------------------------
# Devices and credentials
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token material for one device.

    Only ever held in memory by the credential store and the connector that
    uses it.  Persisted exclusively in encrypted form.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scopes:        Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scopes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "token_type": self.token_type,
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthTokens":
        expires_at = data.get("expires_at")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            token_type=data.get("token_type", "Bearer"),
            scopes=list(data.get("scopes") or []),
        )


@dataclass
class DeviceAuth:
    """Encrypted credential envelope for one device, as persisted.

    Attributes:
        device_id:         Owning device.
        ciphertext:        Fernet token holding the serialized OAuthTokens.
        expires_at:        Plaintext expiry, kept for refresh scheduling only.
        last_refreshed_at: When the store last rotated the tokens.
    """

    device_id: str
    ciphertext: str
    expires_at: datetime | None = None
    last_refreshed_at: datetime | None = None


@dataclass
class WearableDevice:
    """One user-owned data source.

    Attributes:
        device_id:      Internal device id.
        user_id:        Owning user.
        device_type:    Connector kind.
        display_name:   Human-readable name.
        state:          Connection state.
        capabilities:   Metric types this device can supply.
        last_sync_at:   UTC timestamp of the last successful (or partial) sync.
        sync_cursor:    Opaque connector cursor for the next incremental pull.
        battery_level:  Last reported battery percentage, if any.
        settings:       Opaque per-device settings.
        is_active:      False once soft-disabled on disconnect.
        last_error:     Last job-level error message.
    """

    device_id: str
    user_id: str
    device_type: DeviceType
    display_name: str = ""
    state: ConnectionState = ConnectionState.CONNECTED
    capabilities: frozenset[MetricType] = frozenset()
    last_sync_at: datetime | None = None
    sync_cursor: str | None = None
    battery_level: int | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    last_error: str | None = None
    created_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HealthObservation:
    """One normalized health measurement.

    Immutable once created.  Reconciliation never edits an observation; it
    appends a new authoritative record and marks the losers superseded.

    Attributes:
        observation_id:   Deterministic id (see :func:`observation_id_for`).
        user_id:          Owning user.
        metric_type:      Metric enumeration value.
        value:            Numeric value in ``unit``.
        unit:             Canonical unit for the metric.
        event_time:       UTC time the measurement occurred.
        source_device_id: Device that reported the value.
        source_record_id: Stable per-source id used for idempotent upsert.
        confidence:       Source-reported confidence 0–1, if provided.
        ingested_at:      UTC time the engine first saw the record.
        superseded_by:    Id of the authoritative record that replaced this one.
        superseded_at:    When it was superseded.
        metadata:         Vendor extras (never used for comparison).
    """

    observation_id: UUID
    user_id: str
    metric_type: MetricType
    value: float
    unit: str
    event_time: datetime
    source_device_id: str
    source_record_id: str
    confidence: float | None = None
    ingested_at: datetime | None = None
    superseded_by: UUID | None = None
    superseded_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_authoritative(self) -> bool:
        return self.superseded_by is None

    @property
    def source_key(self) -> tuple[str, str]:
        return (self.source_device_id, self.source_record_id)

    def superseded(self, by: UUID, at: datetime) -> "HealthObservation":
        return replace(self, superseded_by=by, superseded_at=at)


def observation_id_for(
    device_id: str, source_record_id: str, event_time: datetime, value: float
) -> UUID:
    """Deterministic id for an observation version.

    A vendor revision of the same record (new value or time) gets a new id,
    so history is appended rather than overwritten.
    """
    name = f"{device_id}|{source_record_id}|{event_time.isoformat()}|{value!r}"
    return uuid.uuid5(OBSERVATION_NAMESPACE, name)


# ---------------------------------------------------------------------------
# Audit records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConflictResolution:
    """Record of one reconciliation decision.  Immutable once written.

    Attributes:
        resolution_id:     Deterministic id derived from the competing records.
        user_id:           Owning user.
        metric_type:       Metric involved.
        conflict_kind:     timestamp / value / source.
        competing:         Every competing observation as a plain dict
                           (id, device, value, event time, confidence).
        policy:            Policy applied.
        resolved_value:    The authoritative value that resulted.
        authoritative_id:  Id of the authoritative observation.
        resolved_by:       system / policy / manual.
        resolved_at:       Supplied by the caller; never read from a clock here.
    """

    resolution_id: UUID
    user_id: str
    metric_type: MetricType
    conflict_kind: ConflictKind
    competing: tuple[dict[str, Any], ...]
    policy: ResolutionPolicy
    resolved_value: float
    authoritative_id: UUID
    resolved_by: ResolvedBy
    resolved_at: datetime
    device_id: str | None = None


@dataclass(frozen=True)
class SyncLog:
    """One row per sync attempt.  Append-only."""

    log_id: UUID
    device_id: str
    user_id: str
    direction: SyncDirection
    status: SyncStatus
    records_processed: int
    records_added: int
    records_updated: int
    records_failed: int
    started_at: datetime
    completed_at: datetime
    error_message: str | None = None
    conflicts_detected: int = 0
    pages_fetched: int = 0

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class SyncSchedule:
    """Per-device scheduling and backoff state.  Mutated only by the scheduler.

    Attributes:
        device_id:            Scheduled device.
        frequency_minutes:    Base sync interval.
        auto_sync:            Whether the scheduler enqueues this device.
        last_run_at:          Start time of the last completed job.
        next_sync_at:         Earliest time of the next automatic sync.
        consecutive_failures: Failures since the last success (drives backoff).
        retry_after_until:    Vendor-imposed earliest retry time, if any.
    """

    device_id: str
    frequency_minutes: int = 60
    auto_sync: bool = True
    last_run_at: datetime | None = None
    next_sync_at: datetime | None = None
    consecutive_failures: int = 0
    retry_after_until: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        return self.auto_sync and (self.next_sync_at is None or self.next_sync_at <= now)


@dataclass(frozen=True)
class ManualOverride:
    """A user's explicit conflict policy for one metric type."""

    user_id: str
    metric_type: MetricType
    policy: ResolutionPolicy
    preferred_device_id: str | None = None


@dataclass
class CorrelationAnalysis:
    """Correlation score for one user / metric pair / period."""

    user_id: str
    pair_name: str
    metric_a: MetricType
    metric_b: MetricType
    period_start: datetime
    period_end: datetime
    correlation_score: float
    confidence: float
    data_points: int
    insights: dict[str, Any] = field(default_factory=dict)
    computed_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class DeviceStatus:
    """Dashboard view of one device."""

    device_id: str
    status: ConnectionState
    last_sync_at: datetime | None = None
    battery_level: int | None = None


@dataclass(frozen=True)
class DeviceSettings:
    """User-editable sync settings for one device.

    ``settings`` is opaque to the engine (notification and privacy choices
    the host application stores alongside the device).
    """

    device_id: str
    auto_sync: bool
    frequency_minutes: int
    settings: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Connector contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectorCapabilities:
    """What a connector can do, negotiated once per device."""

    metric_types: frozenset[MetricType]
    push_metric_types: frozenset[MetricType] = frozenset()

    @property
    def supports_push(self) -> bool:
        return bool(self.push_metric_types)

    def negotiate(self, requested: frozenset[MetricType] | None) -> frozenset[MetricType]:
        """Return the requested metrics this connector can actually supply."""
        if not requested:
            return self.metric_types
        return self.metric_types & requested


@dataclass
class PullPage:
    """One page of raw vendor records.

    Attributes:
        records:  Raw vendor records, one dict each.
        cursor:   Cursor that resumes *after* this page.  Always usable.
        has_more: True if the connector has further pages for this pull.
    """

    records: list[dict[str, Any]]
    cursor: str | None
    has_more: bool = False
    battery_level: int | None = None


class DeviceConnector(ABC):
    """Contract every vendor connector implements.

    Connectors are standalone: they hold only immutable configuration and an
    optional injected HTTP client.  They never write to storage.  Every fault
    surfaces as one of ``AuthExpired``, ``RateLimited``, ``TransientError`` or
    ``PermanentError`` from :mod:`src.wearables.errors`.
    """

    #: Device type this connector serves.
    DEVICE_TYPE: DeviceType

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Device"

    @abstractmethod
    def capabilities(self) -> ConnectorCapabilities:
        """Return the metric types this connector supplies and whether it can push."""

    @abstractmethod
    async def pull(
        self,
        device: WearableDevice,
        access_token: str,
        cursor: str | None,
        metric_types: frozenset[MetricType],
    ) -> PullPage:
        """Fetch one page of records newer than ``cursor``.

        A ``None`` cursor means "first sync"; the connector picks its own
        initial lookback.  The returned cursor must be usable for the next
        call even when the caller stops after this page.
        """

    @abstractmethod
    async def refresh_token(self, device: WearableDevice, tokens: OAuthTokens) -> OAuthTokens:
        """Run the vendor refresh-token flow.

        Raises ``ConsentRevoked`` when the vendor reports the grant is gone.
        """

    @abstractmethod
    def normalize(self, record: dict[str, Any], device: WearableDevice) -> HealthObservation:
        """Convert one raw vendor record into a HealthObservation.

        Pure: no I/O.  Raises ``PermanentError`` on a malformed record.
        """

    async def push(
        self,
        device: WearableDevice,
        access_token: str,
        observations: list[HealthObservation],
    ) -> None:
        """Write observations back to the vendor.  Unsupported by default."""
        raise PermanentError(f"{self.DISPLAY_NAME} does not support write-back")

    # ------------------------------------------------------------------
    # Shared helpers (stateless)
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 string to an aware UTC datetime.

        Naive strings are assumed UTC.  Returns None if unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @staticmethod
    def _from_epoch(value: object, scale: float = 1.0) -> datetime | None:
        """Convert an epoch number (seconds × scale) to an aware UTC datetime."""
        try:
            return datetime.fromtimestamp(float(value) / scale, tz=timezone.utc)  # type: ignore[arg-type]
        except (TypeError, ValueError, OverflowError, OSError):
            return None

    def _build_observation(
        self,
        device: WearableDevice,
        metric_type: MetricType,
        value: float,
        unit: str,
        event_time: datetime,
        source_record_id: str,
        confidence: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> HealthObservation:
        return HealthObservation(
            observation_id=observation_id_for(
                device.device_id, source_record_id, event_time, value
            ),
            user_id=device.user_id,
            metric_type=metric_type,
            value=value,
            unit=unit,
            event_time=event_time,
            source_device_id=device.device_id,
            source_record_id=source_record_id,
            confidence=confidence,
            metadata=metadata or {},
        )
