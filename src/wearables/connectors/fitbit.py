"""Fitbit Web API connector (fitness band).

Uses OAuth2.

Environment variables:
    FITBIT_CLIENT_ID     — OAuth2 client ID
    FITBIT_CLIENT_SECRET — OAuth2 client secret

API base: https://api.fitbit.com/1/user/-

Endpoints used:
    /{resource}/date/{start}/{end}.json — daily time series per resource
    /body/log/weight.json                — weight write-back
    /body/log/fat.json                   — body fat write-back

Cursor: ISO date of the last day fetched.  The next pull starts on that
day again, because today's totals keep growing until midnight.
"""

from __future__ import annotations

import logging
import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable

import httpx

from src.wearables.base import (
    ConnectorCapabilities,
    DeviceConnector,
    DeviceType,
    HealthObservation,
    MetricType,
    OAuthTokens,
    PullPage,
    WearableDevice,
    utc_now,
)
from src.wearables.connectors.http import refresh_oauth2, request_json
from src.wearables.errors import PermanentError

logger = logging.getLogger("nutrisync.wearables.fitbit")

_FITBIT_API_BASE = "https://api.fitbit.com/1/user/-"
_FITBIT_TOKEN_URL = "https://api.fitbit.com/oauth2/token"

# Fitbit caps a daily time series request at roughly a month.
_PAGE_DAYS = 30

# Metric → (resource path, unit, multiplier to canonical unit)
_RESOURCES: dict[MetricType, tuple[str, str, float]] = {
    MetricType.STEPS: ("activities/steps", "count", 1.0),
    MetricType.DISTANCE: ("activities/distance", "m", 1000.0),  # km → m
    MetricType.CALORIES_BURNED: ("activities/calories", "kcal", 1.0),
    MetricType.RESTING_HEART_RATE: ("activities/heart", "bpm", 1.0),
    MetricType.ACTIVITY_MINUTES: ("activities/minutesVeryActive", "min", 1.0),
    MetricType.SLEEP_DURATION: ("sleep/minutesAsleep", "min", 1.0),
    MetricType.WEIGHT: ("body/weight", "kg", 1.0),
    MetricType.BODY_FAT: ("body/fat", "pct", 1.0),
}
# Response key ("activities-steps") → metric
_RESPONSE_KEYS: dict[str, MetricType] = {
    path.replace("/", "-"): metric for metric, (path, _, _) in _RESOURCES.items()
}

_PUSH_ENDPOINTS: dict[MetricType, tuple[str, str]] = {
    MetricType.WEIGHT: ("body/log/weight.json", "weight"),
    MetricType.BODY_FAT: ("body/log/fat.json", "fat"),
}


class FitbitConnector(DeviceConnector):
    """Fitbit daily time-series connector with weight/body-fat write-back."""

    DEVICE_TYPE = DeviceType.FITBIT
    DISPLAY_NAME = "Fitbit"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        initial_lookback_days: int = 7,
    ) -> None:
        self._client_id = client_id or os.environ.get("FITBIT_CLIENT_ID", "")
        self._client_secret = client_secret or os.environ.get("FITBIT_CLIENT_SECRET", "")
        self._http_client = http_client
        self._clock = clock
        self._initial_lookback_days = initial_lookback_days

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(
            metric_types=frozenset(_RESOURCES),
            push_metric_types=frozenset(_PUSH_ENDPOINTS),
        )

    async def pull(
        self,
        device: WearableDevice,
        access_token: str,
        cursor: str | None,
        metric_types: frozenset[MetricType],
    ) -> PullPage:
        today = self._clock().date()
        if cursor:
            try:
                start = date.fromisoformat(cursor)
            except ValueError as exc:
                raise PermanentError(f"invalid Fitbit cursor {cursor!r}") from exc
        else:
            start = today - timedelta(days=self._initial_lookback_days)
        end = min(start + timedelta(days=_PAGE_DAYS - 1), today)

        records: list[dict[str, Any]] = []
        for metric in sorted(self.capabilities().negotiate(metric_types), key=lambda m: m.value):
            path = _RESOURCES[metric][0]
            data = await request_json(
                "GET",
                f"{_FITBIT_API_BASE}/{path}/date/{start.isoformat()}/{end.isoformat()}.json",
                access_token=access_token,
                http_client=self._http_client,
            )
            key = path.replace("/", "-")
            for entry in data.get(key, []):
                value = entry.get("value")
                if isinstance(value, dict) and "restingHeartRate" not in value:
                    continue  # no resting rate computed that day
                records.append({"resource": key, **entry})

        logger.debug(
            "Fitbit: %d entries for device %s from %s to %s", len(records), device.device_id, start, end
        )
        return PullPage(records=records, cursor=end.isoformat(), has_more=end < today)

    async def push(
        self,
        device: WearableDevice,
        access_token: str,
        observations: list[HealthObservation],
    ) -> None:
        """Log weight / body-fat entries to the user's Fitbit account."""
        for obs in observations:
            endpoint = _PUSH_ENDPOINTS.get(obs.metric_type)
            if endpoint is None:
                raise PermanentError(f"Fitbit cannot store {obs.metric_type.value}")
            path, field_name = endpoint
            await request_json(
                "POST",
                f"{_FITBIT_API_BASE}/{path}",
                access_token=access_token,
                data={
                    field_name: f"{obs.value:.2f}",
                    "date": obs.event_time.date().isoformat(),
                    "time": obs.event_time.strftime("%H:%M:%S"),
                },
                http_client=self._http_client,
            )
        logger.info("Fitbit: pushed %d observations for device %s", len(observations), device.device_id)

    async def refresh_token(self, device: WearableDevice, tokens: OAuthTokens) -> OAuthTokens:
        return await refresh_oauth2(
            _FITBIT_TOKEN_URL,
            tokens,
            self._client_id,
            self._client_secret,
            now=self._clock(),
            http_client=self._http_client,
        )

    def normalize(self, record: dict[str, Any], device: WearableDevice) -> HealthObservation:
        """Convert one daily series entry to a HealthObservation.

        Daily values are stamped at midnight UTC of their calendar date.
        """
        resource = record.get("resource", "")
        metric_type = _RESPONSE_KEYS.get(resource)
        if metric_type is None:
            raise PermanentError(f"unsupported Fitbit resource {resource!r}")
        _, unit, multiplier = _RESOURCES[metric_type]

        try:
            day = date.fromisoformat(record["dateTime"])
        except (KeyError, TypeError, ValueError) as exc:
            raise PermanentError(f"Fitbit entry has no valid dateTime: {record!r}") from exc

        raw_value = record.get("value")
        if isinstance(raw_value, dict):
            # activities-heart nests the resting rate
            raw_value = raw_value.get("restingHeartRate")
        value = self._safe_float(raw_value)
        if value is None:
            raise PermanentError(f"Fitbit {resource} value {raw_value!r} is not numeric")

        return self._build_observation(
            device,
            metric_type=metric_type,
            value=round(value * multiplier, 4),
            unit=unit,
            event_time=datetime.combine(day, time.min, tzinfo=timezone.utc),
            source_record_id=f"{resource}:{day.isoformat()}",
        )
