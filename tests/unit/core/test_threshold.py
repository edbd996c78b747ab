"""Tests for the materiality threshold."""

import logging

import pytest

from fundflow.core.approval.threshold import (
    ThresholdSettings,
    change_percent,
    is_below_threshold,
    requires_review,
)


class TestIsBelowThreshold:
    """Test the two-limit threshold rule."""

    def test_small_change_is_below(self):
        """1000 -> 1050 is $50 and 5%: below both limits."""
        assert is_below_threshold(1000, 1050, ThresholdSettings())

    def test_percent_limit_exceeded(self):
        """1000 -> 1200 is only $200 but 20%."""
        assert not is_below_threshold(1000, 1200, ThresholdSettings())

    def test_usd_limit_exceeded(self):
        """1,000,000 -> 1,006,000 is 0.6% but $6000."""
        assert not is_below_threshold(1_000_000, 1_006_000, ThresholdSettings())

    def test_zero_baseline_counts_as_full_change(self):
        assert change_percent(0, 10) == 100.0
        assert not is_below_threshold(0, 10, ThresholdSettings())

    def test_negative_baseline_counts_as_full_change(self):
        assert change_percent(-50, -49) == 100.0

    def test_limits_are_strict(self):
        """A change exactly at a limit is not below it."""
        settings = ThresholdSettings(usd_limit=100, percent_limit=50)
        assert not is_below_threshold(1000, 1100, settings)
        assert not is_below_threshold(100, 150, settings)
        assert is_below_threshold(1000, 1099, settings)

    def test_decrease_uses_absolute_change(self):
        assert is_below_threshold(1000, 950, ThresholdSettings())
        assert not is_below_threshold(1000, 800, ThresholdSettings())

    def test_no_change_is_below(self):
        assert is_below_threshold(1000, 1000, ThresholdSettings())


class TestRequiresReview:
    """Test the submit-time review decision."""

    @pytest.mark.parametrize("old_value,new_value", [(None, 100.0), (100.0, None), (None, None)])
    def test_missing_values_always_need_review(self, old_value, new_value):
        assert requires_review(old_value, new_value, ThresholdSettings())

    def test_material_change_needs_review(self):
        assert requires_review(1000, 5000, ThresholdSettings())

    def test_immaterial_change_does_not(self):
        assert not requires_review(1000, 1050, ThresholdSettings())


class TestThresholdSettings:
    """Test building settings from stored values."""

    def test_defaults(self):
        settings = ThresholdSettings()
        assert settings.usd_limit == 5000
        assert settings.percent_limit == 10

    def test_unset_values_fall_back_per_field(self):
        defaults = ThresholdSettings(usd_limit=100, percent_limit=1)
        settings = ThresholdSettings.from_values(None, "", defaults=defaults)
        assert settings == defaults

    def test_stored_values_are_coerced(self):
        settings = ThresholdSettings.from_values("250", 5)
        assert settings.usd_limit == 250.0
        assert settings.percent_limit == 5.0

    def test_non_numeric_values_fall_back_with_warning(self, caplog):
        defaults = ThresholdSettings(usd_limit=100, percent_limit=1)
        with caplog.at_level(logging.WARNING, logger="fundflow.core.approval.threshold"):
            settings = ThresholdSettings.from_values("abc", {"pct": 5}, defaults=defaults)

        assert settings == defaults
        assert len(caplog.records) == 2
