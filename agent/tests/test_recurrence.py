"""
Tests for recurrence expansion
"""
import pytest
from datetime import date, timedelta

from scheduling.models import IntervalType, RecurrencePolicy
from scheduling.recurrence import (
    RecurrenceSettings,
    expand,
    expand_with_settings,
    horizon_end,
)

ANCHOR = date(2024, 1, 1)


class TestExpand:
    """Tests for expand()"""

    def test_daily_horizon_is_inclusive(self):
        dates = list(expand(ANCHOR, 0, RecurrencePolicy.repeating(IntervalType.DAILY), horizon_days=200))

        assert len(dates) == 201
        assert dates[0] == ANCHOR
        assert dates[-1] == ANCHOR + timedelta(days=200)

    def test_one_time_ignores_horizon(self):
        dates = list(expand(ANCHOR, 5, RecurrencePolicy.one_time(), horizon_days=3))
        assert dates == [ANCHOR + timedelta(days=5)]

    def test_weekly_scenario(self):
        dates = list(expand(ANCHOR, 2, RecurrencePolicy.repeating(IntervalType.WEEKLY), horizon_days=21))
        assert dates == [date(2024, 1, 3), date(2024, 1, 10), date(2024, 1, 17)]

    def test_repeating_start_past_horizon_is_empty(self):
        dates = list(expand(ANCHOR, 30, RecurrencePolicy.repeating(IntervalType.DAILY), horizon_days=21))
        assert dates == []

    def test_pre_anchor_start(self):
        dates = list(expand(ANCHOR, -3, RecurrencePolicy.repeating(IntervalType.EVERY_OTHER_DAY), horizon_days=2))
        assert dates == [date(2023, 12, 29), date(2023, 12, 31), date(2024, 1, 2)]

    def test_custom_interval(self):
        policy = RecurrencePolicy.repeating(IntervalType.CUSTOM, interval_days=10)
        dates = list(expand(ANCHOR, 0, policy, horizon_days=25))
        assert dates == [date(2024, 1, 1), date(2024, 1, 11), date(2024, 1, 21)]

    def test_monthly_uses_fixed_step(self):
        policy = RecurrencePolicy.repeating(IntervalType.MONTHLY)
        dates = list(expand(ANCHOR, 30, policy, horizon_days=90, monthly_interval_days=30))
        assert dates == [date(2024, 1, 31), date(2024, 3, 1), date(2024, 3, 31)]

    @pytest.mark.parametrize("horizon", [0, -1])
    def test_non_positive_horizon_rejected(self, horizon):
        with pytest.raises(ValueError):
            expand(ANCHOR, 0, RecurrencePolicy.repeating(IntervalType.DAILY), horizon_days=horizon)

    def test_occurrences_restart(self):
        occurrences = expand(ANCHOR, 0, RecurrencePolicy.repeating(IntervalType.WEEKLY), horizon_days=14)

        assert list(occurrences) == list(occurrences)
        assert len(occurrences) == 3

    def test_len_matches_iteration(self):
        for interval in (IntervalType.DAILY, IntervalType.EVERY_OTHER_DAY, IntervalType.BIWEEKLY):
            occurrences = expand(ANCHOR, 4, RecurrencePolicy.repeating(interval), horizon_days=45)
            assert len(occurrences) == len(list(occurrences))

    def test_ascending(self):
        dates = list(expand(ANCHOR, -7, RecurrencePolicy.repeating(IntervalType.DAILY), horizon_days=10))
        assert dates == sorted(dates)


class TestRecurrenceSettings:
    """Tests for RecurrenceSettings"""

    def test_rejects_non_positive_values(self):
        with pytest.raises(ValueError):
            RecurrenceSettings(horizon_days=0)
        with pytest.raises(ValueError):
            RecurrenceSettings(monthly_interval_days=0)

    def test_with_horizon(self):
        settings = RecurrenceSettings(horizon_days=200, monthly_interval_days=28)
        overridden = settings.with_horizon(30)

        assert overridden.horizon_days == 30
        assert overridden.monthly_interval_days == 28
        assert settings.with_horizon(None) is settings

    def test_expand_with_settings(self):
        settings = RecurrenceSettings(horizon_days=21, monthly_interval_days=30)
        dates = list(expand_with_settings(ANCHOR, 2, RecurrencePolicy.repeating(IntervalType.WEEKLY), settings))
        assert dates[-1] == date(2024, 1, 17)

    def test_horizon_end(self):
        assert horizon_end(ANCHOR, 21) == date(2024, 1, 22)
