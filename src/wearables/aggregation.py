"""Time-bucket aggregation over authoritative observations.

Buckets are UTC-aligned:
    hourly  — top of the hour
    daily   — midnight
    weekly  — Monday midnight (ISO week)
    monthly — first of the month

Reducers: avg, sum, min, max, count, latest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable

from src.wearables.base import HealthObservation, MetricType

logger = logging.getLogger("nutrisync.wearables.aggregation")


class AggregationPeriod(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AggregateFunction(str, Enum):
    AVG = "avg"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    COUNT = "count"
    LATEST = "latest"


@dataclass(frozen=True)
class AggregatedPoint:
    """One reduced bucket for one metric."""

    period_start: datetime
    metric_type: MetricType
    value: float
    sample_count: int


def bucket_start(moment: datetime, period: AggregationPeriod) -> datetime:
    """Return the UTC start of the bucket containing ``moment``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    if period == AggregationPeriod.HOURLY:
        return moment.replace(minute=0, second=0, microsecond=0)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == AggregationPeriod.DAILY:
        return midnight
    if period == AggregationPeriod.WEEKLY:
        return midnight - timedelta(days=midnight.weekday())
    return midnight.replace(day=1)


def _latest(samples: list[HealthObservation]) -> float:
    return max(samples, key=lambda o: (o.event_time, o.source_device_id)).value


_REDUCERS: dict[AggregateFunction, Callable[[list[HealthObservation]], float]] = {
    AggregateFunction.AVG: lambda s: sum(o.value for o in s) / len(s),
    AggregateFunction.SUM: lambda s: sum(o.value for o in s),
    AggregateFunction.MIN: lambda s: min(o.value for o in s),
    AggregateFunction.MAX: lambda s: max(o.value for o in s),
    AggregateFunction.COUNT: lambda s: float(len(s)),
    AggregateFunction.LATEST: _latest,
}


def aggregate_observations(
    observations: Iterable[HealthObservation],
    period: AggregationPeriod | str = AggregationPeriod.DAILY,
    function: AggregateFunction | str = AggregateFunction.AVG,
) -> list[AggregatedPoint]:
    """Bucket and reduce observations.

    Superseded observations are ignored, so every physical event counts once.

    Args:
        observations: Observations of any number of metric types.
        period:       Bucket size.
        function:     Reducer applied to each bucket.

    Returns:
        Points ordered by (metric type, period start).

    Raises:
        ValueError: If ``period`` or ``function`` is not recognized.
    """
    period = AggregationPeriod(period)
    reducer = _REDUCERS[AggregateFunction(function)]

    buckets: dict[tuple[MetricType, datetime], list[HealthObservation]] = {}
    for obs in observations:
        if not obs.is_authoritative:
            continue
        key = (obs.metric_type, bucket_start(obs.event_time, period))
        buckets.setdefault(key, []).append(obs)

    points = [
        AggregatedPoint(
            period_start=start,
            metric_type=metric_type,
            value=round(reducer(samples), 4),
            sample_count=len(samples),
        )
        for (metric_type, start), samples in buckets.items()
    ]
    points.sort(key=lambda p: (p.metric_type.value, p.period_start))
    logger.debug("Aggregated %d buckets (%s/%s)", len(points), period.value, reducer.__name__)
    return points


def daily_series(
    observations: Iterable[HealthObservation],
    metric_type: MetricType,
    function: AggregateFunction | str,
) -> dict[datetime, float]:
    """Daily values for one metric, keyed by UTC midnight."""
    points = aggregate_observations(
        (o for o in observations if o.metric_type == metric_type),
        AggregationPeriod.DAILY,
        function,
    )
    return {p.period_start: p.value for p in points}
