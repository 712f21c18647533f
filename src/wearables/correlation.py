"""Correlation analyzer over reconciled observations.

For each configured metric pair (e.g. sleep duration vs next-day steps) it
builds daily series from authoritative observations only, pairs day ``d``
of metric A with day ``d + lag`` of metric B, and computes Pearson r over a
rolling window.  Results surface patterns like:
- "Nights with more sleep are followed by more active days"
- "Your resting heart rate drops after longer sleep"

Runs on a slow cadence and is best-effort: a failing pair is logged and
retried next run, and never touches the sync pipeline.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable

from src.wearables.aggregation import AggregationPeriod, bucket_start, daily_series
from src.wearables.base import CorrelationAnalysis, HealthObservation, utc_now
from src.wearables.config_loader import CorrelationPair, SyncConfig, get_sync_config
from src.wearables.sync.repository import SyncRepository

logger = logging.getLogger("nutrisync.wearables.correlation")

STRONG_THRESHOLD = 0.7
MODERATE_THRESHOLD = 0.4


def _pearson_r(x: list[float], y: list[float]) -> float | None:
    """Compute Pearson correlation coefficient between two lists.

    Args:
        x: First variable.
        y: Second variable.

    Returns:
        Pearson r (-1.0 to 1.0) or None if either series is constant or
        fewer than three pairs exist.
    """
    if len(x) != len(y) or len(x) < 3:
        return None

    n = len(x)
    mean_x = sum(x) / n
    mean_y = sum(y) / n

    cov = sum((xi - mean_x) * (yi - mean_y) for xi, yi in zip(x, y)) / n
    std_x = math.sqrt(sum((xi - mean_x) ** 2 for xi in x) / n)
    std_y = math.sqrt(sum((yi - mean_y) ** 2 for yi in y) / n)

    if std_x == 0 or std_y == 0:
        return None

    return round(cov / (std_x * std_y), 4)


def strength_label(r: float) -> str:
    magnitude = abs(r)
    if magnitude >= STRONG_THRESHOLD:
        return "strong"
    if magnitude >= MODERATE_THRESHOLD:
        return "moderate"
    return "weak"


class CorrelationAnalyzer:
    """Compute and persist CorrelationAnalysis rows per user / pair / period.

    Usage::

        analyzer = CorrelationAnalyzer(repository)
        analyses = await analyzer.run_for_user(user_id)
    """

    def __init__(
        self,
        repository: SyncRepository,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._config = config or get_sync_config()
        self._clock = clock

    def period_bounds(self, period_end: datetime | None = None) -> tuple[datetime, datetime]:
        """Return (start, end) of the rolling window ending at midnight UTC of ``period_end``."""
        end = bucket_start(period_end or self._clock(), AggregationPeriod.DAILY)
        if period_end is not None and period_end > end:
            end += timedelta(days=1)
        return end - timedelta(days=self._config.correlation.window_days), end

    def analyze_pair(
        self,
        user_id: str,
        pair: CorrelationPair,
        observations: list[HealthObservation],
        period_start: datetime,
        period_end: datetime,
    ) -> CorrelationAnalysis | None:
        """Correlate one metric pair over ``[period_start, period_end)``.

        Returns:
            A CorrelationAnalysis, or None if there are too few paired days
            or either series is constant.
        """
        settings = self._config.correlation
        series_a = daily_series(
            observations, pair.metric_a, self._config.metric(pair.metric_a).daily_aggregate
        )
        series_b = daily_series(
            observations, pair.metric_b, self._config.metric(pair.metric_b).daily_aggregate
        )
        lag = timedelta(days=pair.lag_days)

        xs: list[float] = []
        ys: list[float] = []
        for day in sorted(series_a):
            partner = day + lag
            if day < period_start or partner >= period_end or partner not in series_b:
                continue
            xs.append(series_a[day])
            ys.append(series_b[partner])

        if len(xs) < settings.min_data_points:
            logger.info(
                "Correlation %s for user %s: %d paired days (< %d), skipped",
                pair.name, user_id, len(xs), settings.min_data_points,
            )
            return None

        r = _pearson_r(xs, ys)
        if r is None:
            logger.info("Correlation %s for user %s: constant series, skipped", pair.name, user_id)
            return None

        confidence = min(abs(r) * 0.8 + len(xs) / settings.window_days * 0.2, 1.0)
        return CorrelationAnalysis(
            user_id=user_id,
            pair_name=pair.name,
            metric_a=pair.metric_a,
            metric_b=pair.metric_b,
            period_start=period_start,
            period_end=period_end,
            correlation_score=r,
            confidence=round(confidence, 4),
            data_points=len(xs),
            insights={
                "strength": strength_label(r),
                "direction": "negative" if r < 0 else "positive",
                "lag_days": pair.lag_days,
            },
            computed_at=self._clock(),
        )

    async def run_for_user(
        self, user_id: str, period_end: datetime | None = None
    ) -> list[CorrelationAnalysis]:
        """Analyze and upsert every configured pair for one user.

        A failure in one pair is logged and does not stop the others.
        """
        period_start, end = self.period_bounds(period_end)
        pairs = self._config.correlation.pairs
        metric_types = sorted({m for p in pairs for m in (p.metric_a, p.metric_b)}, key=lambda m: m.value)
        observations = await self._repository.list_observations(
            user_id, metric_types=metric_types, start=period_start, end=end
        )

        analyses: list[CorrelationAnalysis] = []
        for pair in pairs:
            try:
                analysis = self.analyze_pair(user_id, pair, observations, period_start, end)
                if analysis is None:
                    continue
                await self._repository.upsert_correlation(analysis)
                analyses.append(analysis)
            except Exception:
                logger.exception("Correlation %s failed for user %s", pair.name, user_id)

        logger.info("Correlations for user %s: %d of %d pairs stored", user_id, len(analyses), len(pairs))
        return analyses
