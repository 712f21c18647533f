"""Tests for the wearable sync HTTP endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.config import get_settings
from src.routers import health, wearables
from src.services.encryption import TokenEncryptor
from src.wearables.base import MetricType, PullPage
from src.wearables.sync.service import WearableSyncService
from src.wearables.tests.conftest import EIGHT_AM, TEST_USER_ID, make_observation, raw

API = "/api/v1/wearables"


@pytest.fixture
def service(repository, encryptor, registry, sync_config, clock) -> WearableSyncService:
    return WearableSyncService(
        repository, encryptor, connectors=registry, config=sync_config, clock=clock, sleep=AsyncMock()
    )


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", TokenEncryptor.generate_key())
    monkeypatch.delenv("DATABASE_URL", raising=False)
    get_settings.cache_clear()

    app = FastAPI()
    app.include_router(health.router)
    app.include_router(wearables.router, prefix="/api/v1")
    app.state.sync_service = service
    with TestClient(app) as test_client:
        yield test_client
    get_settings.cache_clear()


def connect(client: TestClient, **overrides) -> dict:
    body = {
        "user_id": TEST_USER_ID,
        "device_type": "fitbit",
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "device_id": "device-a",
    }
    body.update(overrides)
    response = client.post(f"{API}/devices", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthEndpoint:
    def test_health_without_database(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "in_memory"
        assert body["scheduler"] == "stopped"

    def test_missing_service_is_unavailable(self, client) -> None:
        client.app.state.sync_service = None
        assert client.get(f"{API}/users/{TEST_USER_ID}/devices").status_code == 503


class TestDeviceEndpoints:
    def test_connect_and_list(self, client) -> None:
        device = connect(client)

        assert device["device_type"] == "fitbit"
        assert device["state"] == "connected"
        assert "access_token" not in device
        listed = client.get(f"{API}/users/{TEST_USER_ID}/devices").json()
        assert [d["device_id"] for d in listed] == ["device-a"]

    def test_connect_unregistered_type_is_bad_request(self, client) -> None:
        response = client.post(
            f"{API}/devices",
            json={"user_id": TEST_USER_ID, "device_type": "garmin", "access_token": "a"},
        )
        assert response.status_code == 400

    def test_connect_rejects_unknown_device_type(self, client) -> None:
        response = client.post(
            f"{API}/devices",
            json={"user_id": TEST_USER_ID, "device_type": "pager", "access_token": "a"},
        )
        assert response.status_code == 422

    def test_disconnect(self, client) -> None:
        connect(client)

        response = client.post(f"{API}/devices/device-a/disconnect")

        assert response.status_code == 200
        assert response.json()["state"] == "disconnected"
        assert response.json()["is_active"] is False

    def test_unknown_device_is_not_found(self, client) -> None:
        assert client.get(f"{API}/devices/missing/status").status_code == 404
        assert client.post(f"{API}/devices/missing/disconnect").status_code == 404
        assert client.post(f"{API}/devices/missing/sync").status_code == 404
        assert client.get(f"{API}/devices/missing/sync-logs").status_code == 404


class TestSyncEndpoints:
    def test_trigger_sync_and_read_logs(self, client, connector) -> None:
        connect(client)
        connector.script = [
            PullPage(records=[raw("steps", 5000, EIGHT_AM, "r1")], cursor="c1", has_more=False, battery_level=64)
        ]

        response = client.post(f"{API}/devices/device-a/sync", json={"sync_type": "pull"})

        assert response.status_code == 200
        result = response.json()
        assert result["status"] == "success"
        assert result["records_added"] == 1

        logs = client.get(f"{API}/devices/device-a/sync-logs").json()
        assert [log["log_id"] for log in logs] == [result["log_id"]]

        status = client.get(f"{API}/devices/device-a/status").json()
        assert status["status"] == "connected"
        assert status["battery_level"] == 64

    def test_trigger_without_body_defaults_to_pull(self, client) -> None:
        connect(client)

        response = client.post(f"{API}/devices/device-a/sync")

        assert response.status_code == 200
        assert response.json()["direction"] == "pull"


class TestConflictEndpoints:
    def test_override_lifecycle(self, client) -> None:
        connect(client)
        path = f"{API}/users/{TEST_USER_ID}/overrides/steps"

        response = client.put(path, json={"policy": "server_wins", "preferred_device_id": "device-a"})
        assert response.status_code == 200
        assert response.json()["policy"] == "server_wins"

        assert client.delete(path).status_code == 204
        assert client.delete(path).status_code == 404

    def test_override_with_foreign_device_is_bad_request(self, client) -> None:
        connect(client)
        response = client.put(
            f"{API}/users/user-2/overrides/steps",
            json={"policy": "client_wins", "preferred_device_id": "device-a"},
        )
        assert response.status_code == 400

    def test_conflicts_listed_after_cross_device_sync(self, client, connector, repository) -> None:
        connect(client)
        connector.script = [PullPage(records=[raw("steps", 5120, EIGHT_AM, "r1")], cursor="c1", has_more=False)]

        async def seed():
            await repository.append_observations([make_observation(5000, EIGHT_AM, "device-b")])

        client.portal.call(seed)
        client.post(f"{API}/devices/device-a/sync")

        conflicts = client.get(f"{API}/users/{TEST_USER_ID}/conflicts", params={"metric_type": "steps"}).json()
        assert len(conflicts) == 1
        assert conflicts[0]["conflict_kind"] == "value"
        assert len(conflicts[0]["competing"]) == 2


class TestHealthDataEndpoints:
    @pytest.fixture(autouse=True)
    def seeded(self, client, repository) -> None:
        async def seed():
            await repository.append_observations([
                make_observation(4000, EIGHT_AM),
                make_observation(1000, EIGHT_AM.replace(hour=11)),
                make_observation(61, EIGHT_AM, metric=MetricType.HEART_RATE),
            ])

        client.portal.call(seed)

    def test_raw_health_data(self, client) -> None:
        response = client.get(f"{API}/users/{TEST_USER_ID}/health-data", params={"metric_type": "heart_rate"})

        assert response.status_code == 200
        assert [row["value"] for row in response.json()] == [61]

    def test_aggregated_health_data(self, client) -> None:
        response = client.get(
            f"{API}/users/{TEST_USER_ID}/health-data/aggregated",
            params={"metric_type": "steps", "aggregation": "daily", "aggregate_function": "sum"},
        )

        assert response.status_code == 200
        points = response.json()
        assert [(p["metric_type"], p["value"], p["sample_count"]) for p in points] == [("steps", 5000, 2)]

    def test_invalid_aggregation_is_rejected(self, client) -> None:
        response = client.get(
            f"{API}/users/{TEST_USER_ID}/health-data/aggregated", params={"aggregation": "fortnightly"}
        )
        assert response.status_code == 422

    def test_correlations_with_too_little_data(self, client) -> None:
        assert client.post(f"{API}/users/{TEST_USER_ID}/correlations").json() == []
        assert client.get(f"{API}/users/{TEST_USER_ID}/correlations").json() == []


class TestDeviceSettingsEndpoints:
    def test_get_and_update_settings(self, client) -> None:
        connect(client)
        path = f"{API}/devices/device-a/settings"

        assert client.get(path).json() == {
            "device_id": "device-a", "auto_sync": True, "frequency_minutes": 30, "settings": {},
        }
        response = client.put(path, json={"frequency_minutes": 60, "settings": {"share_data": False}})

        assert response.status_code == 200
        body = response.json()
        assert body["frequency_minutes"] == 60
        assert body["auto_sync"] is True
        assert body["settings"] == {"share_data": False}
        assert client.get(path).json() == body

    def test_manual_sync_runs_with_auto_sync_disabled(self, client, connector) -> None:
        connect(client)
        client.put(f"{API}/devices/device-a/settings", json={"auto_sync": False})
        connector.script = [PullPage(records=[raw("steps", 5000, EIGHT_AM, "s1")], cursor="c1", has_more=False)]

        response = client.post(f"{API}/devices/device-a/sync")

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert client.get(f"{API}/devices/device-a/settings").json()["auto_sync"] is False

    def test_invalid_frequency_is_unprocessable(self, client) -> None:
        connect(client)
        response = client.put(f"{API}/devices/device-a/settings", json={"frequency_minutes": 0})
        assert response.status_code == 422

    def test_unknown_device_settings(self, client) -> None:
        assert client.get(f"{API}/devices/missing/settings").status_code == 404
        assert client.put(f"{API}/devices/missing/settings", json={"auto_sync": False}).status_code == 404
