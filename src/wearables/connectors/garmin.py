"""Garmin Health API connector (smartwatch).

Uses OAuth2 (Garmin Connect Developer Program).

Environment variables:
    GARMIN_CLIENT_ID     — OAuth2 client ID
    GARMIN_CLIENT_SECRET — OAuth2 client secret

API base: https://apis.garmin.com/wellness-api/rest

Endpoints used:
    /dailies    — Daily activity summaries
    /sleeps     — Sleep summaries
    /bodyComps  — Body composition snapshots

Garmin queries by *upload* time, not event time, and rejects windows longer
than 24 hours.  Cursor: upload end time of the last window, epoch seconds.
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

logger = logging.getLogger("nutrisync.wearables.garmin")

_GARMIN_API_BASE = "https://apis.garmin.com/wellness-api/rest"
_GARMIN_TOKEN_URL = "https://diauth.garmin.com/di-oauth2-service/oauth/token"

_MAX_WINDOW_SECONDS = 86_400

# (summary type, field) → (metric, unit, multiplier to canonical unit)
_FIELD_MAP: dict[tuple[str, str], tuple[MetricType, str, float]] = {
    ("dailies", "steps"): (MetricType.STEPS, "count", 1.0),
    ("dailies", "distanceInMeters"): (MetricType.DISTANCE, "m", 1.0),
    ("dailies", "activeKilocalories"): (MetricType.CALORIES_BURNED, "kcal", 1.0),
    ("dailies", "averageHeartRateInBeatsPerMinute"): (MetricType.HEART_RATE, "bpm", 1.0),
    ("dailies", "restingHeartRateInBeatsPerMinute"): (MetricType.RESTING_HEART_RATE, "bpm", 1.0),
    ("dailies", "averageStressLevel"): (MetricType.STRESS_LEVEL, "score", 1.0),
    ("dailies", "vigorousIntensityDurationInSeconds"): (MetricType.ACTIVITY_MINUTES, "min", 1 / 60),
    ("sleeps", "durationInSeconds"): (MetricType.SLEEP_DURATION, "min", 1 / 60),
    ("sleeps", "averageSpO2Value"): (MetricType.BLOOD_OXYGEN, "pct", 1.0),
    ("sleeps", "averageRespirationValue"): (MetricType.RESPIRATORY_RATE, "brpm", 1.0),
    ("bodyComps", "weightInGrams"): (MetricType.WEIGHT, "kg", 1 / 1000),
    ("bodyComps", "bodyFatInPercent"): (MetricType.BODY_FAT, "pct", 1.0),
}
_SUMMARY_TYPES = ("dailies", "sleeps", "bodyComps")


class GarminConnector(DeviceConnector):
    """Garmin Health API connector.

    Each summary carries several metrics; ``pull`` flattens them into one
    raw record per (summary, field) so that ``normalize`` stays one-to-one.
    """

    DEVICE_TYPE = DeviceType.GARMIN
    DISPLAY_NAME = "Garmin Connect"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        initial_lookback_days: int = 7,
    ) -> None:
        self._client_id = client_id or os.environ.get("GARMIN_CLIENT_ID", "")
        self._client_secret = client_secret or os.environ.get("GARMIN_CLIENT_SECRET", "")
        self._http_client = http_client
        self._clock = clock
        self._initial_lookback = timedelta(days=initial_lookback_days)

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(
            metric_types=frozenset(metric for metric, _, _ in _FIELD_MAP.values()),
        )

    async def pull(
        self,
        device: WearableDevice,
        access_token: str,
        cursor: str | None,
        metric_types: frozenset[MetricType],
    ) -> PullPage:
        now_s = int(self._clock().timestamp())
        if cursor:
            try:
                start_s = int(cursor)
            except ValueError as exc:
                raise PermanentError(f"invalid Garmin cursor {cursor!r}") from exc
        else:
            start_s = now_s - int(self._initial_lookback.total_seconds())
        end_s = min(start_s + _MAX_WINDOW_SECONDS, now_s)
        if end_s <= start_s:
            return PullPage(records=[], cursor=str(start_s), has_more=False)

        wanted = self.capabilities().negotiate(metric_types)
        params = {"uploadStartTimeInSeconds": start_s, "uploadEndTimeInSeconds": end_s}
        records: list[dict[str, Any]] = []
        for summary_type in _SUMMARY_TYPES:
            fields = [f for (st, f), (m, _, _) in _FIELD_MAP.items() if st == summary_type and m in wanted]
            if not fields:
                continue
            summaries = await request_json(
                "GET",
                f"{_GARMIN_API_BASE}/{summary_type}",
                access_token=access_token,
                params=params,
                http_client=self._http_client,
            )
            for summary in summaries or []:
                for field_name in fields:
                    if summary.get(field_name) is None:
                        continue
                    records.append({
                        "summaryType": summary_type,
                        "field": field_name,
                        "value": summary[field_name],
                        "summaryId": summary.get("summaryId"),
                        "startTimeInSeconds": summary.get("startTimeInSeconds")
                        or summary.get("measurementTimeInSeconds"),
                        "durationInSeconds": summary.get("durationInSeconds"),
                    })

        logger.debug("Garmin: %d fields for device %s, uploads %d–%d", len(records), device.device_id, start_s, end_s)
        return PullPage(records=records, cursor=str(end_s), has_more=end_s < now_s)

    async def refresh_token(self, device: WearableDevice, tokens: OAuthTokens) -> OAuthTokens:
        return await refresh_oauth2(
            _GARMIN_TOKEN_URL,
            tokens,
            self._client_id,
            self._client_secret,
            now=self._clock(),
            http_client=self._http_client,
        )

    def normalize(self, record: dict[str, Any], device: WearableDevice) -> HealthObservation:
        """Convert one flattened summary field to a HealthObservation.

        Daily totals are stamped at the end of the summary period; sleep and
        body composition at their start.
        """
        key = (record.get("summaryType", ""), record.get("field", ""))
        mapping = _FIELD_MAP.get(key)
        if mapping is None:
            raise PermanentError(f"unsupported Garmin field {key!r}")
        metric_type, unit, multiplier = mapping

        value = self._safe_float(record.get("value"))
        if value is None:
            raise PermanentError(f"Garmin {key[1]} value {record.get('value')!r} is not numeric")

        start = self._safe_float(record.get("startTimeInSeconds"))
        if start is None:
            raise PermanentError(f"Garmin summary {record.get('summaryId')!r} has no start time")
        if key[0] == "dailies":
            start += self._safe_float(record.get("durationInSeconds")) or 0.0
        event_time = self._from_epoch(start)
        if event_time is None:
            raise PermanentError(f"Garmin timestamp {start!r} out of range")

        summary_id = record.get("summaryId") or f"{key[0]}-{int(start)}"
        return self._build_observation(
            device,
            metric_type=metric_type,
            value=round(value * multiplier, 4),
            unit=unit,
            event_time=event_time,
            source_record_id=f"{summary_id}:{key[1]}",
            metadata={"summary_type": key[0]},
        )
