"""Shared fixtures, fakes and builders for wearable sync engine tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from src.services.encryption import TokenEncryptor
from src.wearables.base import (
    ConnectorCapabilities,
    DeviceConnector,
    DeviceType,
    HealthObservation,
    MetricType,
    OAuthTokens,
    PullPage,
    WearableDevice,
    observation_id_for,
)
from src.wearables.config_loader import SyncConfig, load_sync_config
from src.wearables.connectors import ConnectorRegistry
from src.wearables.errors import PermanentError
from src.wearables.sync.credentials import CredentialStore
from src.wearables.sync.orchestrator import SyncOrchestrator
from src.wearables.sync.repository import InMemorySyncRepository

# Canonical test identities
TEST_USER_ID = "user-1"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
EIGHT_AM = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Scripted connector
# ---------------------------------------------------------------------------


def raw(metric: str, value: Any, at: datetime, record_id: str, confidence: float | None = None) -> dict:
    """One raw record in the scripted connector's vendor format."""
    record = {"metric": metric, "value": value, "time": at.isoformat(), "id": record_id}
    if confidence is not None:
        record["confidence"] = confidence
    return record


class ScriptedConnector(DeviceConnector):
    """Connector whose pulls replay a script of pages and exceptions.

    Each ``pull`` call consumes the next script entry: a PullPage is
    returned, an exception is raised.  An exhausted script returns an empty
    final page that keeps the caller's cursor.
    """

    DISPLAY_NAME = "Scripted"

    def __init__(
        self,
        device_type: DeviceType = DeviceType.FITBIT,
        script: list[PullPage | BaseException] | None = None,
        push_metrics: frozenset[MetricType] = frozenset(),
    ) -> None:
        self.DEVICE_TYPE = device_type
        self.script = list(script or [])
        self.push_metrics = push_metrics
        self.pull_calls: list[tuple[str | None, str]] = []
        self.pushed: list[HealthObservation] = []
        self.refresh_calls = 0
        self.refresh_result: OAuthTokens | BaseException | None = None
        self.refresh_delay: float = 0.0

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(metric_types=frozenset(MetricType), push_metric_types=self.push_metrics)

    async def pull(
        self,
        device: WearableDevice,
        access_token: str,
        cursor: str | None,
        metric_types: frozenset[MetricType],
    ) -> PullPage:
        self.pull_calls.append((cursor, access_token))
        if not self.script:
            return PullPage(records=[], cursor=cursor, has_more=False)
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    async def push(
        self,
        device: WearableDevice,
        access_token: str,
        observations: list[HealthObservation],
    ) -> None:
        self.pushed.extend(observations)

    async def refresh_token(self, device: WearableDevice, tokens: OAuthTokens) -> OAuthTokens:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if isinstance(self.refresh_result, BaseException):
            raise self.refresh_result
        if self.refresh_result is not None:
            return self.refresh_result
        return OAuthTokens(
            access_token=f"refreshed-{self.refresh_calls}",
            refresh_token=tokens.refresh_token,
            expires_at=NOW + timedelta(hours=1),
        )

    def normalize(self, record: dict[str, Any], device: WearableDevice) -> HealthObservation:
        if record.get("value") is None:
            raise PermanentError(f"record {record.get('id')!r} has no value")
        at = datetime.fromisoformat(record["time"])
        return self._build_observation(
            device,
            metric_type=MetricType(record["metric"]),
            value=float(record["value"]),
            unit="count",
            event_time=at,
            source_record_id=record["id"],
            confidence=record.get("confidence"),
        )


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_observation(
    value: float,
    at: datetime = EIGHT_AM,
    device_id: str = "device-a",
    metric: MetricType = MetricType.STEPS,
    record_id: str | None = None,
    confidence: float | None = None,
    user_id: str = TEST_USER_ID,
) -> HealthObservation:
    record_id = record_id or f"{device_id}:{metric.value}:{at.isoformat()}"
    return HealthObservation(
        observation_id=observation_id_for(device_id, record_id, at, value),
        user_id=user_id,
        metric_type=metric,
        value=value,
        unit="count",
        event_time=at,
        source_device_id=device_id,
        source_record_id=record_id,
        confidence=confidence,
    )


def make_device(
    device_id: str = "device-a",
    device_type: DeviceType = DeviceType.FITBIT,
    user_id: str = TEST_USER_ID,
) -> WearableDevice:
    return WearableDevice(
        device_id=device_id,
        user_id=user_id,
        device_type=device_type,
        display_name=device_id,
        created_at=NOW,
    )


def valid_tokens(access_token: str = "access-1") -> OAuthTokens:
    return OAuthTokens(
        access_token=access_token,
        refresh_token="refresh-1",
        expires_at=NOW + timedelta(hours=1),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def repository() -> InMemorySyncRepository:
    return InMemorySyncRepository()


@pytest.fixture
def encryptor() -> TokenEncryptor:
    return TokenEncryptor(TokenEncryptor.generate_key())


@pytest.fixture
def connector() -> ScriptedConnector:
    return ScriptedConnector(DeviceType.FITBIT)


@pytest.fixture
def registry(connector: ScriptedConnector) -> ConnectorRegistry:
    return ConnectorRegistry([connector])


@pytest.fixture
def credentials(
    repository: InMemorySyncRepository,
    encryptor: TokenEncryptor,
    registry: ConnectorRegistry,
    clock: FixedClock,
) -> CredentialStore:
    return CredentialStore(
        repository, encryptor, registry, refresh_margin_seconds=60, refresh_timeout_seconds=5, clock=clock
    )


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def orchestrator(
    repository: InMemorySyncRepository,
    credentials: CredentialStore,
    registry: ConnectorRegistry,
    sync_config: SyncConfig,
    clock: FixedClock,
    events: list,
) -> SyncOrchestrator:
    async def on_event(event):
        events.append(event)

    return SyncOrchestrator(
        repository,
        credentials,
        registry,
        config=sync_config,
        on_event=on_event,
        clock=clock,
        sleep=AsyncMock(),
    )


@pytest_asyncio.fixture
async def paired_device(
    repository: InMemorySyncRepository, credentials: CredentialStore
) -> WearableDevice:
    """device-a (Fitbit) with valid stored tokens."""
    device = make_device()
    await repository.add_device(device)
    await credentials.store_tokens(device.device_id, valid_tokens())
    return device
