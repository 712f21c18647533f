"""Whoop API v1 connector (wrist tracker).

Uses OAuth2.

Environment variables:
    WHOOP_CLIENT_ID     — OAuth2 client ID
    WHOOP_CLIENT_SECRET — OAuth2 client secret

API base: https://api.prod.whoop.com/developer

Endpoints used:
    /v1/recovery        — Recovery scores (resting HR, HRV, SpO2)
    /v1/activity/sleep  — Sleep data
    /v1/cycle           — Physiological cycles (strain, energy, average HR)

Whoop pages with ``nextToken``.  The cursor carries the collection being
walked, its page token and the high-water ``updated_at`` seen, so a pull
can resume after any page.
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
from src.wearables.connectors.http import decode_cursor, encode_cursor, refresh_oauth2, request_json
from src.wearables.errors import PermanentError

logger = logging.getLogger("nutrisync.wearables.whoop")

_WHOOP_API_BASE = "https://api.prod.whoop.com/developer"
_WHOOP_TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"

_PAGE_LIMIT = 25

_COLLECTIONS: tuple[tuple[str, str], ...] = (
    ("recovery", "/v1/recovery"),
    ("sleep", "/v1/activity/sleep"),
    ("cycle", "/v1/cycle"),
)

# (collection, score field) → (metric, unit, multiplier to canonical unit)
_SCORE_MAP: dict[tuple[str, str], tuple[MetricType, str, float]] = {
    ("recovery", "resting_heart_rate"): (MetricType.RESTING_HEART_RATE, "bpm", 1.0),
    ("recovery", "hrv_rmssd_milli"): (MetricType.HEART_RATE_VARIABILITY, "ms", 1.0),
    ("recovery", "spo2_percentage"): (MetricType.BLOOD_OXYGEN, "pct", 1.0),
    ("sleep", "total_sleep_time_milli"): (MetricType.SLEEP_DURATION, "min", 1 / 60_000),
    ("sleep", "respiratory_rate"): (MetricType.RESPIRATORY_RATE, "brpm", 1.0),
    ("cycle", "average_heart_rate"): (MetricType.HEART_RATE, "bpm", 1.0),
    ("cycle", "kilojoule"): (MetricType.CALORIES_BURNED, "kcal", 1 / 4.184),
}


def _sleep_total_milli(score: dict[str, Any]) -> float | None:
    stages = score.get("stage_summary") or {}
    in_bed = stages.get("total_in_bed_time_milli")
    awake = stages.get("total_awake_time_milli") or 0
    if in_bed is None:
        return score.get("total_sleep_time_milli")
    return in_bed - awake


class WhoopConnector(DeviceConnector):
    """Whoop API v1 connector.

    Whoop focuses on recovery and HRV tracking; its records carry a
    ``score_state`` and only ``SCORED`` records contain numbers.
    """

    DEVICE_TYPE = DeviceType.WHOOP
    DISPLAY_NAME = "Whoop"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        initial_lookback_days: int = 7,
    ) -> None:
        """Initialize the Whoop connector.

        Args:
            client_id:             OAuth2 client ID (WHOOP_CLIENT_ID env var).
            client_secret:         OAuth2 client secret (WHOOP_CLIENT_SECRET env var).
            http_client:           Optional pre-configured httpx client (for testing).
            clock:                 Returns the current UTC time.
            initial_lookback_days: History fetched on the first sync.
        """
        self._client_id = client_id or os.environ.get("WHOOP_CLIENT_ID", "")
        self._client_secret = client_secret or os.environ.get("WHOOP_CLIENT_SECRET", "")
        self._http_client = http_client
        self._clock = clock
        self._initial_lookback = timedelta(days=initial_lookback_days)

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(
            metric_types=frozenset(metric for metric, _, _ in _SCORE_MAP.values()),
        )

    async def pull(
        self,
        device: WearableDevice,
        access_token: str,
        cursor: str | None,
        metric_types: frozenset[MetricType],
    ) -> PullPage:
        state = decode_cursor(cursor)
        since = state.get("since") or (self._clock() - self._initial_lookback).isoformat()
        high_water = state.get("high_water") or since
        index = int(state.get("collection", 0))
        wanted = self.capabilities().negotiate(metric_types)

        # Skip collections that supply none of the wanted metrics.
        while index < len(_COLLECTIONS) and not any(
            m in wanted for (c, _), (m, _, _) in _SCORE_MAP.items() if c == _COLLECTIONS[index][0]
        ):
            index += 1
        if index >= len(_COLLECTIONS):
            return PullPage(records=[], cursor=encode_cursor({"since": high_water}), has_more=False)

        collection, path = _COLLECTIONS[index]
        params: dict[str, Any] = {"start": since, "limit": _PAGE_LIMIT}
        if state.get("next_token"):
            params["nextToken"] = state["next_token"]
        data = await request_json(
            "GET",
            f"{_WHOOP_API_BASE}{path}",
            access_token=access_token,
            params=params,
            http_client=self._http_client,
        )

        records: list[dict[str, Any]] = []
        for item in data.get("records", []):
            updated = item.get("updated_at")
            if updated and updated > high_water:
                high_water = updated
            if item.get("score_state", "SCORED") != "SCORED":
                continue
            score = dict(item.get("score") or {})
            if collection == "sleep":
                score["total_sleep_time_milli"] = _sleep_total_milli(score)
            for (coll, field_name), (metric, _, _) in _SCORE_MAP.items():
                if coll != collection or metric not in wanted or score.get(field_name) is None:
                    continue
                records.append({
                    "collection": collection,
                    "field": field_name,
                    "value": score[field_name],
                    "id": item.get("id") or item.get("cycle_id"),
                    "start": item.get("start") or item.get("created_at"),
                    "end": item.get("end"),
                })

        next_token = data.get("next_token") or data.get("nextToken")
        if next_token:
            next_state = {"since": since, "high_water": high_water, "collection": index, "next_token": next_token}
        elif index + 1 < len(_COLLECTIONS):
            next_state = {"since": since, "high_water": high_water, "collection": index + 1}
        else:
            next_state = {"since": high_water}
        return PullPage(
            records=records,
            cursor=encode_cursor(next_state),
            has_more="collection" in next_state,
        )

    async def refresh_token(self, device: WearableDevice, tokens: OAuthTokens) -> OAuthTokens:
        return await refresh_oauth2(
            _WHOOP_TOKEN_URL,
            tokens,
            self._client_id,
            self._client_secret,
            now=self._clock(),
            http_client=self._http_client,
        )

    def normalize(self, record: dict[str, Any], device: WearableDevice) -> HealthObservation:
        """Convert one flattened Whoop score field to a HealthObservation.

        Sleep is stamped at wake time, everything else at the record start.
        """
        key = (record.get("collection", ""), record.get("field", ""))
        mapping = _SCORE_MAP.get(key)
        if mapping is None:
            raise PermanentError(f"unsupported Whoop field {key!r}")
        metric_type, unit, multiplier = mapping

        value = self._safe_float(record.get("value"))
        if value is None:
            raise PermanentError(f"Whoop {key[1]} value {record.get('value')!r} is not numeric")

        stamp = record.get("end") if key[0] == "sleep" else record.get("start")
        event_time = self._parse_iso_datetime(stamp or record.get("start"))
        if event_time is None:
            raise PermanentError(f"Whoop record {record.get('id')!r} has no timestamp")
        if record.get("id") is None:
            raise PermanentError("Whoop record has no id")

        return self._build_observation(
            device,
            metric_type=metric_type,
            value=round(value * multiplier, 4),
            unit=unit,
            event_time=event_time,
            source_record_id=f"{key[0]}:{record['id']}:{key[1]}",
        )
