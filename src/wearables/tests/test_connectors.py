"""Tests for vendor connectors, HTTP fault classification and the registry."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from src.wearables.base import DeviceType, MetricType, OAuthTokens
from src.wearables.connectors import (
    ConnectorRegistry,
    FitbitConnector,
    GarminConnector,
    GoogleFitConnector,
    WhoopConnector,
    build_default_registry,
    get_connector_class,
)
from src.wearables.connectors.http import decode_cursor, encode_cursor, refresh_oauth2, request_json
from src.wearables.errors import (
    AuthExpired,
    ConnectorNotRegistered,
    ConsentRevoked,
    PermanentError,
    RateLimited,
    TransientError,
    classify_exception,
    classify_http_status,
    parse_retry_after,
)
from src.wearables.tests.conftest import NOW, FixedClock, make_device, make_observation


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def json_response(payload, status_code: int = 200, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(status_code, json=payload, headers=headers)


# ---------------------------------------------------------------------------
# Fault classification
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (401, AuthExpired),
            (403, AuthExpired),
            (429, RateLimited),
            (408, TransientError),
            (500, TransientError),
            (503, TransientError),
            (400, PermanentError),
            (404, PermanentError),
        ],
    )
    def test_http_status(self, status, expected):
        assert isinstance(classify_http_status(status), expected)

    def test_success_is_not_a_fault(self):
        assert classify_http_status(200) is None

    def test_retry_after_seconds(self):
        fault = classify_http_status(429, {"Retry-After": "120"})
        assert fault.retry_after_seconds == 120

    def test_retry_after_http_date(self):
        seconds = parse_retry_after("Mon, 02 Mar 2026 12:05:00 GMT", now=NOW)
        assert seconds == 300

    def test_retry_after_missing_uses_default(self):
        assert parse_retry_after(None) == 60
        assert parse_retry_after("soon") == 60

    def test_transport_errors_are_transient(self):
        assert isinstance(classify_exception(httpx.ConnectError("refused")), TransientError)
        assert isinstance(classify_exception(TimeoutError()), TransientError)

    def test_malformed_data_is_permanent(self):
        assert isinstance(classify_exception(KeyError("value")), PermanentError)

    def test_classified_faults_pass_through(self):
        fault = RateLimited(5)
        assert classify_exception(fault) is fault


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


class TestHttpHelpers:
    @pytest.mark.asyncio
    async def test_request_json_sends_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            return json_response({"ok": True})

        async with mock_client(handler) as client:
            data = await request_json("GET", "https://api.example.com/x", access_token="tok", http_client=client)

        assert data == {"ok": True}
        assert seen["auth"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_request_json_raises_rate_limited(self):
        def handler(request):
            return json_response({}, status_code=429, headers={"Retry-After": "30"})

        async with mock_client(handler) as client:
            with pytest.raises(RateLimited) as exc_info:
                await request_json("GET", "https://api.example.com/x", http_client=client)

        assert exc_info.value.retry_after_seconds == 30

    @pytest.mark.asyncio
    async def test_request_json_non_json_body_is_permanent(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        async with mock_client(handler) as client:
            with pytest.raises(PermanentError):
                await request_json("GET", "https://api.example.com/x", http_client=client)

    @pytest.mark.asyncio
    async def test_refresh_oauth2_success(self):
        def handler(request):
            form = dict(httpx.QueryParams(request.content.decode()))
            assert form["grant_type"] == "refresh_token"
            assert form["refresh_token"] == "r-1"
            return json_response({"access_token": "new", "expires_in": 600, "scope": "activity sleep"})

        async with mock_client(handler) as client:
            tokens = await refresh_oauth2(
                "https://auth.example.com/token",
                OAuthTokens(access_token="old", refresh_token="r-1"),
                "id", "secret", now=NOW, http_client=client,
            )

        assert tokens.access_token == "new"
        assert tokens.refresh_token == "r-1"
        assert tokens.scopes == ["activity", "sleep"]
        assert (tokens.expires_at - NOW).total_seconds() == 600

    @pytest.mark.asyncio
    async def test_rejected_grant_is_consent_revoked(self):
        def handler(request):
            return json_response({"error": "invalid_grant"}, status_code=400)

        async with mock_client(handler) as client:
            with pytest.raises(ConsentRevoked):
                await refresh_oauth2(
                    "https://auth.example.com/token",
                    OAuthTokens(access_token="old", refresh_token="r-1"),
                    "id", "secret", now=NOW, http_client=client,
                )

    @pytest.mark.asyncio
    async def test_missing_refresh_token_is_consent_revoked(self):
        with pytest.raises(ConsentRevoked):
            await refresh_oauth2("https://auth.example.com/token", OAuthTokens(access_token="old"), "id", "s", now=NOW)

    def test_cursor_encoding(self):
        state = {"since": "2026-03-01T00:00:00+00:00", "collection": 1}
        assert decode_cursor(encode_cursor(state)) == state
        assert decode_cursor(None) == {}
        assert decode_cursor("not json") == {}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_default_registry_covers_every_device_type(self):
        registry = build_default_registry()
        assert set(registry.device_types) == set(DeviceType)

    def test_connector_class_lookup(self):
        assert get_connector_class("fitbit") is FitbitConnector
        assert get_connector_class(DeviceType.WHOOP) is WhoopConnector

    def test_unknown_type_raises(self):
        with pytest.raises(ConnectorNotRegistered):
            get_connector_class("pebble")
        with pytest.raises(ConnectorNotRegistered):
            ConnectorRegistry([]).get(DeviceType.GARMIN)


# ---------------------------------------------------------------------------
# Fitbit
# ---------------------------------------------------------------------------


class TestFitbit:
    @pytest.mark.asyncio
    async def test_pull_steps_from_lookback(self):
        requested = []

        def handler(request):
            requested.append(request.url.path)
            return json_response({"activities-steps": [
                {"dateTime": "2026-02-24", "value": "8120"},
                {"dateTime": "2026-02-25", "value": "10433"},
            ]})

        async with mock_client(handler) as client:
            connector = FitbitConnector("id", "secret", http_client=client, clock=FixedClock())
            page = await connector.pull(make_device(), "tok", None, frozenset({MetricType.STEPS}))

        assert requested == ["/1/user/-/activities/steps/date/2026-02-23/2026-03-02.json"]
        assert page.cursor == "2026-03-02"
        assert not page.has_more
        assert len(page.records) == 2

        observation = connector.normalize(page.records[0], make_device())
        assert observation.metric_type == MetricType.STEPS
        assert observation.value == 8120
        assert observation.event_time == datetime(2026, 2, 24, tzinfo=timezone.utc)
        assert observation.source_record_id == "activities-steps:2026-02-24"

    @pytest.mark.asyncio
    async def test_old_cursor_pages_through_history(self):
        def handler(request):
            return json_response({"activities-steps": []})

        async with mock_client(handler) as client:
            connector = FitbitConnector("id", "secret", http_client=client, clock=FixedClock())
            page = await connector.pull(make_device(), "tok", "2026-01-01", frozenset({MetricType.STEPS}))

        assert page.cursor == "2026-01-30"
        assert page.has_more

    def test_normalize_resting_heart_rate(self):
        connector = FitbitConnector("id", "secret")
        obs = connector.normalize(
            {"resource": "activities-heart", "dateTime": "2026-03-01", "value": {"restingHeartRate": 58}},
            make_device(),
        )
        assert obs.metric_type == MetricType.RESTING_HEART_RATE
        assert obs.value == 58

    def test_normalize_distance_converts_km(self):
        connector = FitbitConnector("id", "secret")
        obs = connector.normalize(
            {"resource": "activities-distance", "dateTime": "2026-03-01", "value": "5.2"}, make_device()
        )
        assert obs.unit == "m"
        assert obs.value == 5200

    def test_normalize_rejects_non_numeric(self):
        connector = FitbitConnector("id", "secret")
        with pytest.raises(PermanentError):
            connector.normalize({"resource": "activities-steps", "dateTime": "2026-03-01", "value": "n/a"}, make_device())

    @pytest.mark.asyncio
    async def test_push_weight(self):
        bodies = []

        def handler(request):
            bodies.append((request.url.path, dict(httpx.QueryParams(request.content.decode()))))
            return json_response({})

        weight = make_observation(81.25, NOW, "device-b", metric=MetricType.WEIGHT)
        async with mock_client(handler) as client:
            connector = FitbitConnector("id", "secret", http_client=client, clock=FixedClock())
            await connector.push(make_device(), "tok", [weight])

        assert bodies == [("/1/user/-/body/log/weight.json", {"weight": "81.25", "date": "2026-03-02", "time": "12:00:00"})]
        assert connector.capabilities().supports_push


# ---------------------------------------------------------------------------
# Google Fit
# ---------------------------------------------------------------------------


class TestGoogleFit:
    @pytest.mark.asyncio
    async def test_pull_aggregate_window(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return json_response({"bucket": [{
                "dataset": [{
                    "dataSourceId": "derived:com.google.step_count.delta",
                    "point": [{
                        "dataTypeName": "com.google.step_count.delta",
                        "startTimeNanos": "1772409600000000000",
                        "endTimeNanos": "1772413200000000000",
                        "value": [{"intVal": 812}],
                    }],
                }],
            }]})

        cursor = str(int(datetime(2026, 3, 1, 12, tzinfo=timezone.utc).timestamp() * 1000))
        async with mock_client(handler) as client:
            connector = GoogleFitConnector("id", "secret", http_client=client, clock=FixedClock())
            page = await connector.pull(make_device(device_type=DeviceType.GOOGLE_FIT), "tok", cursor,
                                        frozenset({MetricType.STEPS}))

        assert bodies[0]["aggregateBy"] == [{"dataTypeName": "com.google.step_count.delta"}]
        assert bodies[0]["endTimeMillis"] - bodies[0]["startTimeMillis"] == 86_400_000
        assert page.cursor == str(bodies[0]["endTimeMillis"])
        assert not page.has_more

        obs = connector.normalize(page.records[0], make_device(device_type=DeviceType.GOOGLE_FIT))
        assert obs.value == 812
        assert obs.event_time == datetime(2026, 3, 2, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_caught_up_cursor_returns_empty_page(self):
        def handler(request):
            raise AssertionError("no request expected")

        cursor = str(int(NOW.timestamp() * 1000))
        async with mock_client(handler) as client:
            connector = GoogleFitConnector("id", "secret", http_client=client, clock=FixedClock())
            page = await connector.pull(make_device(), "tok", cursor, frozenset())

        assert page.records == []
        assert page.cursor == cursor

    def test_normalize_heart_rate_summary(self):
        connector = GoogleFitConnector("id", "secret")
        obs = connector.normalize(
            {
                "dataTypeName": "com.google.heart_rate.summary",
                "startTimeNanos": "1772409600000000000",
                "endTimeNanos": "1772413200000000000",
                "value": [{"fpVal": 64.5}, {"fpVal": 90}, {"fpVal": 52}],
            },
            make_device(),
        )
        assert obs.metric_type == MetricType.HEART_RATE
        assert obs.value == 64.5
        assert obs.event_time == datetime(2026, 3, 2, tzinfo=timezone.utc)

    def test_read_only(self):
        assert not GoogleFitConnector("id", "secret").capabilities().supports_push


# ---------------------------------------------------------------------------
# Garmin
# ---------------------------------------------------------------------------


class TestGarmin:
    @pytest.mark.asyncio
    async def test_pull_flattens_summaries(self):
        def handler(request):
            if request.url.path.endswith("/dailies"):
                return json_response([{
                    "summaryId": "d-1",
                    "startTimeInSeconds": 1772323200,
                    "durationInSeconds": 86400,
                    "steps": 9021,
                    "restingHeartRateInBeatsPerMinute": 55,
                }])
            return json_response([])

        cursor = str(int(NOW.timestamp()) - 3600)
        async with mock_client(handler) as client:
            connector = GarminConnector("id", "secret", http_client=client, clock=FixedClock())
            page = await connector.pull(
                make_device(device_type=DeviceType.GARMIN), "tok", cursor,
                frozenset({MetricType.STEPS, MetricType.RESTING_HEART_RATE}),
            )

        assert page.cursor == str(int(NOW.timestamp()))
        assert not page.has_more
        assert sorted(r["field"] for r in page.records) == ["restingHeartRateInBeatsPerMinute", "steps"]

        steps = next(r for r in page.records if r["field"] == "steps")
        obs = connector.normalize(steps, make_device(device_type=DeviceType.GARMIN))
        assert obs.value == 9021
        assert obs.event_time == datetime(2026, 3, 2, tzinfo=timezone.utc)
        assert obs.source_record_id == "d-1:steps"

    @pytest.mark.asyncio
    async def test_window_capped_at_one_day(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return json_response([])

        async with mock_client(handler) as client:
            connector = GarminConnector("id", "secret", http_client=client, clock=FixedClock())
            page = await connector.pull(make_device(), "tok", None, frozenset({MetricType.STEPS}))

        params = seen[0]
        assert int(params["uploadEndTimeInSeconds"]) - int(params["uploadStartTimeInSeconds"]) == 86_400
        assert page.has_more

    def test_normalize_weight_grams(self):
        connector = GarminConnector("id", "secret")
        obs = connector.normalize(
            {"summaryType": "bodyComps", "field": "weightInGrams", "value": 80500,
             "summaryId": "b-1", "startTimeInSeconds": 1772438400},
            make_device(),
        )
        assert obs.metric_type == MetricType.WEIGHT
        assert obs.value == 80.5

    def test_normalize_rejects_missing_time(self):
        connector = GarminConnector("id", "secret")
        with pytest.raises(PermanentError):
            connector.normalize({"summaryType": "dailies", "field": "steps", "value": 10}, make_device())


# ---------------------------------------------------------------------------
# Whoop
# ---------------------------------------------------------------------------


class TestWhoop:
    @pytest.mark.asyncio
    async def test_pages_within_and_across_collections(self):
        responses = {
            "/developer/v1/recovery": [
                {"records": [{
                    "cycle_id": 7, "created_at": "2026-03-01T07:00:00Z", "updated_at": "2026-03-01T07:05:00Z",
                    "score_state": "SCORED", "score": {"resting_heart_rate": 52, "hrv_rmssd_milli": 71.2},
                }], "next_token": "page-2"},
                {"records": [], "next_token": None},
            ],
        }

        def handler(request):
            queue = responses.get(request.url.path)
            return json_response(queue.pop(0) if queue else {"records": []})

        device = make_device(device_type=DeviceType.WHOOP)
        wanted = frozenset({MetricType.RESTING_HEART_RATE})
        async with mock_client(handler) as client:
            connector = WhoopConnector("id", "secret", http_client=client, clock=FixedClock())
            first = await connector.pull(device, "tok", None, wanted)
            second = await connector.pull(device, "tok", first.cursor, wanted)
            third = await connector.pull(device, "tok", second.cursor, wanted)

        assert first.has_more
        assert decode_cursor(first.cursor)["next_token"] == "page-2"
        assert [r["field"] for r in first.records] == ["resting_heart_rate"]
        # Recovery exhausted; sleep and cycle carry no wanted metric.
        assert second.has_more
        assert decode_cursor(second.cursor)["collection"] == 1
        assert not third.has_more
        assert third.records == []
        assert decode_cursor(third.cursor) == {"since": "2026-03-01T07:05:00Z"}

        obs = connector.normalize(first.records[0], device)
        assert obs.value == 52
        assert obs.source_record_id == "recovery:7:resting_heart_rate"

    def test_normalize_sleep_stamped_at_wake(self):
        connector = WhoopConnector("id", "secret")
        obs = connector.normalize(
            {"collection": "sleep", "field": "total_sleep_time_milli", "value": 25_200_000, "id": "s-1",
             "start": "2026-03-01T23:00:00Z", "end": "2026-03-02T07:00:00Z"},
            make_device(),
        )
        assert obs.metric_type == MetricType.SLEEP_DURATION
        assert obs.value == 420
        assert obs.event_time == datetime(2026, 3, 2, 7, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_unauthorized_is_auth_expired(self):
        def handler(request):
            return json_response({"error": "unauthorized"}, status_code=401)

        async with mock_client(handler) as client:
            connector = WhoopConnector("id", "secret", http_client=client, clock=FixedClock())
            with pytest.raises(AuthExpired):
                await connector.pull(make_device(), "tok", None, frozenset())
