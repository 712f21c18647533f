"""Google Fit REST API connector (phone health platform).

Uses OAuth2.

Environment variables:
    GOOGLE_FIT_CLIENT_ID     — OAuth2 client ID
    GOOGLE_FIT_CLIENT_SECRET — OAuth2 client secret

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    /dataset:aggregate — hourly buckets per data type

Cursor: end of the last fully fetched window, in epoch milliseconds.  Each
page covers at most one day; ``has_more`` stays true until the window
reaches "now".
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
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

logger = logging.getLogger("nutrisync.wearables.google_fit")

_GOOGLE_FIT_API_BASE = "https://www.googleapis.com/fitness/v1/users/me"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

_PAGE_SPAN = timedelta(days=1)
_BUCKET_MILLIS = 3_600_000

# Google Fit data type → (metric, unit)
_DATA_TYPE_MAP: dict[str, tuple[MetricType, str]] = {
    "com.google.step_count.delta": (MetricType.STEPS, "count"),
    "com.google.distance.delta": (MetricType.DISTANCE, "m"),
    "com.google.calories.expended": (MetricType.CALORIES_BURNED, "kcal"),
    "com.google.heart_rate.bpm": (MetricType.HEART_RATE, "bpm"),
    "com.google.weight": (MetricType.WEIGHT, "kg"),
    "com.google.body.fat.percentage": (MetricType.BODY_FAT, "pct"),
    "com.google.oxygen_saturation": (MetricType.BLOOD_OXYGEN, "pct"),
    "com.google.active_minutes": (MetricType.ACTIVITY_MINUTES, "min"),
}
_METRIC_TO_DATA_TYPE = {metric: data_type for data_type, (metric, _) in _DATA_TYPE_MAP.items()}

# Aggregated instantaneous types come back as summaries whose first value is the average.
_SUMMARY_TYPES: dict[str, str] = {
    "com.google.heart_rate.summary": "com.google.heart_rate.bpm",
    "com.google.weight.summary": "com.google.weight",
    "com.google.body.fat.percentage.summary": "com.google.body.fat.percentage",
    "com.google.oxygen_saturation.summary": "com.google.oxygen_saturation",
}


class GoogleFitConnector(DeviceConnector):
    """Google Fit aggregate-dataset connector.

    Google Fit aggregates every app on the phone, so its readings overlap
    heavily with dedicated wearables; the conflict engine sorts that out.
    """

    DEVICE_TYPE = DeviceType.GOOGLE_FIT
    DISPLAY_NAME = "Google Fit"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        initial_lookback_days: int = 7,
    ) -> None:
        """Initialize the Google Fit connector.

        Args:
            client_id:             OAuth2 client ID (GOOGLE_FIT_CLIENT_ID env var).
            client_secret:         OAuth2 client secret (GOOGLE_FIT_CLIENT_SECRET env var).
            http_client:           Optional pre-configured httpx client (for testing).
            clock:                 Returns the current UTC time.
            initial_lookback_days: History fetched on the first sync.
        """
        self._client_id = client_id or os.environ.get("GOOGLE_FIT_CLIENT_ID", "")
        self._client_secret = client_secret or os.environ.get("GOOGLE_FIT_CLIENT_SECRET", "")
        self._http_client = http_client
        self._clock = clock
        self._initial_lookback = timedelta(days=initial_lookback_days)

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(metric_types=frozenset(_METRIC_TO_DATA_TYPE))

    async def pull(
        self,
        device: WearableDevice,
        access_token: str,
        cursor: str | None,
        metric_types: frozenset[MetricType],
    ) -> PullPage:
        now = self._clock()
        now_millis = int(now.timestamp() * 1000)
        if cursor:
            try:
                start_millis = int(cursor)
            except ValueError as exc:
                raise PermanentError(f"invalid Google Fit cursor {cursor!r}") from exc
        else:
            start_millis = int((now - self._initial_lookback).timestamp() * 1000)

        end_millis = min(start_millis + int(_PAGE_SPAN.total_seconds() * 1000), now_millis)
        # Only whole buckets are final; the partial current hour is re-read next time.
        end_millis -= (end_millis - start_millis) % _BUCKET_MILLIS
        if end_millis <= start_millis:
            return PullPage(records=[], cursor=str(start_millis), has_more=False)

        data_types = sorted(
            _METRIC_TO_DATA_TYPE[m] for m in self.capabilities().negotiate(metric_types)
        )
        body = {
            "aggregateBy": [{"dataTypeName": dt} for dt in data_types],
            "bucketByTime": {"durationMillis": _BUCKET_MILLIS},
            "startTimeMillis": start_millis,
            "endTimeMillis": end_millis,
        }
        data = await request_json(
            "POST",
            f"{_GOOGLE_FIT_API_BASE}/dataset:aggregate",
            access_token=access_token,
            json_body=body,
            http_client=self._http_client,
        )

        records: list[dict[str, Any]] = []
        for bucket in data.get("bucket", []):
            for dataset in bucket.get("dataset", []):
                for point in dataset.get("point", []):
                    records.append({**point, "dataSourceId": dataset.get("dataSourceId")})

        logger.debug(
            "Google Fit: %d points for device %s in [%d, %d)",
            len(records), device.device_id, start_millis, end_millis,
        )
        return PullPage(
            records=records,
            cursor=str(end_millis),
            has_more=end_millis + _BUCKET_MILLIS <= now_millis,
        )

    async def refresh_token(self, device: WearableDevice, tokens: OAuthTokens) -> OAuthTokens:
        return await refresh_oauth2(
            _GOOGLE_TOKEN_URL,
            tokens,
            self._client_id,
            self._client_secret,
            now=self._clock(),
            http_client=self._http_client,
        )

    def normalize(self, record: dict[str, Any], device: WearableDevice) -> HealthObservation:
        """Convert one aggregate data point to a HealthObservation.

        Cumulative types (steps, distance, calories) are stamped at the end
        of their bucket; instantaneous readings at the start.
        """
        data_type = record.get("dataTypeName", "")
        mapping = _DATA_TYPE_MAP.get(_SUMMARY_TYPES.get(data_type, data_type))
        if mapping is None:
            raise PermanentError(f"unsupported Google Fit data type {data_type!r}")
        metric_type, unit = mapping

        values = record.get("value") or []
        if not values:
            raise PermanentError("Google Fit point has no value")
        first = values[0]
        raw_value = first.get("fpVal", first.get("intVal"))
        value = self._safe_float(raw_value)
        if value is None:
            raise PermanentError(f"Google Fit point value {raw_value!r} is not numeric")

        cumulative = metric_type in (MetricType.STEPS, MetricType.DISTANCE, MetricType.CALORIES_BURNED)
        nanos = record.get("endTimeNanos") if cumulative else record.get("startTimeNanos")
        event_time = self._from_epoch(nanos, scale=1e9)
        if event_time is None:
            raise PermanentError("Google Fit point has no timestamp")

        return self._build_observation(
            device,
            metric_type=metric_type,
            value=value,
            unit=unit,
            event_time=event_time,
            source_record_id=f"{data_type}:{record.get('startTimeNanos')}:{record.get('endTimeNanos')}",
            metadata={"data_source_id": record.get("dataSourceId")},
        )
