"""Tests for the correlation analyzer."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.wearables.base import MetricType
from src.wearables.config_loader import CorrelationPair
from src.wearables.correlation import CorrelationAnalyzer, _pearson_r, strength_label
from src.wearables.tests.conftest import TEST_USER_ID, make_observation

PERIOD_END = datetime(2026, 3, 2, tzinfo=timezone.utc)
SLEEP_VS_STEPS = CorrelationPair("sleep_vs_next_day_steps", MetricType.SLEEP_DURATION, MetricType.STEPS, 1)


def sleep_and_next_day_steps(days: int, steps_slope: float = 200.0, start_day: int = 19):
    """Sleep on Feb ``start_day`` onwards, steps on the following days."""
    observations = []
    for i in range(days):
        night = datetime(2026, 2, start_day, 7, tzinfo=timezone.utc) + timedelta(days=i)
        observations.append(make_observation(400 + 10 * i, night, metric=MetricType.SLEEP_DURATION))
        observations.append(
            make_observation(8000 + steps_slope * i, night + timedelta(days=1, hours=13), metric=MetricType.STEPS)
        )
    return observations


@pytest.fixture
def analyzer(repository, sync_config, clock) -> CorrelationAnalyzer:
    return CorrelationAnalyzer(repository, config=sync_config, clock=clock)


class TestPearson:
    def test_perfect_positive(self) -> None:
        assert _pearson_r([1, 2, 3, 4], [2, 4, 6, 8]) == 1.0

    def test_perfect_negative(self) -> None:
        assert _pearson_r([1, 2, 3, 4], [8, 6, 4, 2]) == -1.0

    def test_constant_series(self) -> None:
        assert _pearson_r([1, 1, 1], [1, 2, 3]) is None

    def test_too_few_points(self) -> None:
        assert _pearson_r([1, 2], [1, 2]) is None

    @pytest.mark.parametrize(("r", "label"), [(0.85, "strong"), (-0.7, "strong"), (0.5, "moderate"), (0.1, "weak")])
    def test_strength_label(self, r, label) -> None:
        assert strength_label(r) == label


class TestPeriodBounds:
    def test_midnight_end_is_exclusive_bound(self, analyzer) -> None:
        start, end = analyzer.period_bounds(PERIOD_END)
        assert end == PERIOD_END
        assert start == PERIOD_END - timedelta(days=30)

    def test_mid_day_end_includes_that_day(self, analyzer) -> None:
        _, end = analyzer.period_bounds(PERIOD_END + timedelta(hours=9))
        assert end == PERIOD_END + timedelta(days=1)

    def test_default_is_todays_midnight(self, analyzer) -> None:
        _, end = analyzer.period_bounds()
        assert end == PERIOD_END


class TestAnalyzePair:
    def test_lagged_pairing(self, analyzer) -> None:
        start, end = analyzer.period_bounds(PERIOD_END)

        analysis = analyzer.analyze_pair(TEST_USER_ID, SLEEP_VS_STEPS, sleep_and_next_day_steps(10), start, end)

        assert analysis.correlation_score == 1.0
        assert analysis.data_points == 10
        assert analysis.confidence == 0.8667
        assert analysis.insights == {"strength": "strong", "direction": "positive", "lag_days": 1}

    def test_negative_correlation(self, analyzer) -> None:
        start, end = analyzer.period_bounds(PERIOD_END)

        analysis = analyzer.analyze_pair(
            TEST_USER_ID, SLEEP_VS_STEPS, sleep_and_next_day_steps(10, steps_slope=-150), start, end
        )

        assert analysis.correlation_score == -1.0
        assert analysis.insights["direction"] == "negative"

    def test_partner_day_outside_window_is_dropped(self, analyzer) -> None:
        start, end = analyzer.period_bounds(PERIOD_END)

        # The last night's steps fall on Mar 2, outside the window.
        analysis = analyzer.analyze_pair(
            TEST_USER_ID, SLEEP_VS_STEPS, sleep_and_next_day_steps(10, start_day=20), start, end
        )

        assert analysis.data_points == 9

    def test_too_few_days(self, analyzer) -> None:
        start, end = analyzer.period_bounds(PERIOD_END)
        assert analyzer.analyze_pair(TEST_USER_ID, SLEEP_VS_STEPS, sleep_and_next_day_steps(6), start, end) is None

    def test_constant_series_is_skipped(self, analyzer) -> None:
        start, end = analyzer.period_bounds(PERIOD_END)
        assert (
            analyzer.analyze_pair(TEST_USER_ID, SLEEP_VS_STEPS, sleep_and_next_day_steps(10, steps_slope=0), start, end)
            is None
        )


class TestRunForUser:
    @pytest.mark.asyncio
    async def test_stores_pairs_with_enough_data(self, analyzer, repository) -> None:
        await repository.append_observations(sleep_and_next_day_steps(10))

        analyses = await analyzer.run_for_user(TEST_USER_ID, PERIOD_END)

        assert [a.pair_name for a in analyses] == ["sleep_vs_next_day_steps"]
        assert await repository.list_correlations(TEST_USER_ID) == analyses

    @pytest.mark.asyncio
    async def test_rerun_replaces_row_for_same_period(self, analyzer, repository) -> None:
        await repository.append_observations(sleep_and_next_day_steps(10))

        await analyzer.run_for_user(TEST_USER_ID, PERIOD_END)
        await analyzer.run_for_user(TEST_USER_ID, PERIOD_END)

        assert len(await repository.list_correlations(TEST_USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_superseded_values_are_ignored(self, analyzer, repository) -> None:
        observations = sleep_and_next_day_steps(10)
        winner = observations[1]
        noisy = make_observation(
            99999, winner.event_time, "device-b", metric=MetricType.STEPS
        ).superseded(winner.observation_id, PERIOD_END)
        await repository.append_observations(observations + [noisy])

        analyses = await analyzer.run_for_user(TEST_USER_ID, PERIOD_END)

        assert analyses[0].correlation_score == 1.0

    @pytest.mark.asyncio
    async def test_failing_pair_does_not_stop_others(self, analyzer, repository, monkeypatch) -> None:
        await repository.append_observations(sleep_and_next_day_steps(10))
        original = analyzer.analyze_pair

        def flaky(user_id, pair, *args):
            if pair.name == "sleep_vs_resting_hr":
                raise RuntimeError("boom")
            return original(user_id, pair, *args)

        monkeypatch.setattr(analyzer, "analyze_pair", flaky)

        analyses = await analyzer.run_for_user(TEST_USER_ID, PERIOD_END)

        assert [a.pair_name for a in analyses] == ["sleep_vs_next_day_steps"]
