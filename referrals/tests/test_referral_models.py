"""
Unit Tests for referral models, code helpers and the completion rule
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.config import Settings, get_settings
from referrals.codes import code_sequence, driver_abbreviation, format_code, is_valid_code, normalize_code
from referrals.models import CompletionCriteria, ReferralProgress, ReferralRecord, ReferralRewards, ReferralStatus
from rules import Condition, ConditionGroup, ConditionOperator


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_record(**kwargs):
    defaults = dict(
        referrer_id="drv-a",
        referred_id="drv-b",
        referral_code="GRP-SDS001-AY",
        start_date=NOW,
        expiry_date=NOW + timedelta(days=30),
    )
    defaults.update(kwargs)
    return ReferralRecord(**defaults)


class TestCodeHelpers:
    @pytest.mark.parametrize("name,expected", [
        ("Ayesha Khan", "AY"),
        ("rahul verma", "RA"),
        ("  Chen Wei ", "CH"),
        ("O'Neil Smith", "ON"),
        ("J", "DR"),
        ("", "DR"),
        (None, "DR"),
    ])
    def test_driver_abbreviation(self, name, expected):
        assert driver_abbreviation(name) == expected

    def test_format_code_pads_sequence(self):
        assert format_code(1, "Ayesha Khan") == "GRP-SDS001-AY"
        assert format_code(42, "Rahul Verma") == "GRP-SDS042-RA"
        assert format_code(1234, "Rahul Verma") == "GRP-SDS1234-RA"

    def test_normalize_and_validate(self):
        assert normalize_code(" grp-sds007-ay ") == "GRP-SDS007-AY"
        assert is_valid_code("GRP-SDS007-AY")
        assert not is_valid_code("GRP-SDS07-AY")
        assert not is_valid_code("XYZ-SDS007-AY")
        assert is_valid_code("ACME001-AY", prefix="ACME")

    def test_code_sequence(self):
        assert code_sequence("GRP-SDS041-AY") == 41
        assert code_sequence("not-a-code") is None


class TestCompletionPercentage:
    def test_untouched_referral_is_zero(self):
        assert make_record().completion_percentage() == 0

    def test_partial_progress_rounds_half_up(self):
        record = make_record(progress=ReferralProgress(deliveries_completed=3, total_earnings=200, days_active=10))

        assert record.completion_percentage() == 44

    def test_each_criterion_caps_at_one(self):
        record = make_record(progress=ReferralProgress(deliveries_completed=50, total_earnings=0, days_active=0))

        assert record.completion_percentage() == 33

    def test_zero_criteria_count_as_met(self):
        record = make_record(completion_criteria=CompletionCriteria(
            required_deliveries=0, required_earnings=0, required_days=0,
        ))

        assert record.completion_percentage() == 100
        assert record.meets_criteria()

    def test_mixed_ratios(self):
        record = make_record(
            completion_criteria=CompletionCriteria(required_deliveries=8, required_earnings=0, required_days=0),
            progress=ReferralProgress(deliveries_completed=1),
        )

        # (0.125 + 1 + 1) / 3 = 0.7083...
        assert record.completion_percentage() == 71

    def test_half_way_rounds_up(self):
        record = make_record(
            completion_criteria=CompletionCriteria(required_deliveries=200, required_earnings=0, required_days=0),
            progress=ReferralProgress(deliveries_completed=191),
        )

        # (0.955 + 1 + 1) / 3 = 0.985
        assert record.completion_percentage() == 99


class TestMeetsCriteria:
    def test_all_thresholds_met(self):
        record = make_record(progress=ReferralProgress(deliveries_completed=5, total_earnings=500, days_active=30))

        assert record.meets_criteria()

    def test_one_threshold_short(self):
        record = make_record(progress=ReferralProgress(
            deliveries_completed=5, total_earnings=Decimal("499.99"), days_active=30,
        ))

        assert not record.meets_criteria()


class TestUpdateProgress:
    def test_update_takes_latest_values(self):
        record = make_record()

        assert record.update_progress(2, Decimal("100"), 4)
        assert record.progress.deliveries_completed == 2

    def test_decreasing_value_is_kept_at_maximum(self):
        record = make_record(progress=ReferralProgress(deliveries_completed=4, total_earnings=300, days_active=9))

        assert not record.update_progress(3, Decimal("350"), 9)
        assert record.progress.deliveries_completed == 4
        assert record.progress.total_earnings == Decimal("350")


class TestTransitions:
    def test_overdue_only_when_pending(self):
        record = make_record()
        later = NOW + timedelta(days=31)

        assert record.is_overdue(later)
        assert not record.is_overdue(NOW + timedelta(days=30))

        record.mark_cancelled(NOW)
        assert not record.is_overdue(later)
        assert record.is_terminal
        assert not record.is_active

    def test_completed_is_active_and_terminal(self):
        record = make_record()
        record.mark_completed(NOW)

        assert record.status == ReferralStatus.COMPLETED
        assert record.completion_date == NOW
        assert record.is_active
        assert record.is_terminal
        assert not record.can_cancel()
        assert not record.can_expire()


class TestDefaultsFollowSettings:
    """Tests that model defaults come from the configured program constants."""

    def test_defaults_match_settings(self):
        settings = get_settings()

        assert CompletionCriteria() == CompletionCriteria.from_settings(settings)
        assert ReferralRewards() == ReferralRewards.from_settings(settings)

    def test_defaults_track_a_settings_change(self, monkeypatch):
        custom = Settings(DEFAULT_REQUIRED_DELIVERIES=12, REFERRED_REWARD_AMOUNT=Decimal("350"))
        monkeypatch.setattr("referrals.models.get_settings", lambda: custom)

        assert CompletionCriteria().required_deliveries == 12
        assert ReferralRewards().referred_amount == Decimal("350")
        assert make_record().completion_criteria.required_deliveries == 12


class TestRuleEngine:
    """Tests for the condition evaluator that backs completion criteria."""

    def test_all_conditions_must_hold(self):
        rule = ConditionGroup(conditions=[
            Condition(field="driver.rating", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=4.5),
            Condition(field="driver.trips", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=10),
        ])

        assert rule.evaluate({"driver": {"rating": 4.8, "trips": 10}})
        assert not rule.evaluate({"driver": {"rating": 4.8, "trips": 9}})

    def test_missing_field_fails_comparison(self):
        condition = Condition(field="progress.days_active", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=1)

        assert not condition.evaluate({"progress": {}})
        assert not condition.evaluate({"progress": 3})
        assert condition.ratio({"progress": {}}) == Decimal("0")

    def test_ratio_is_mean_of_clamped_members(self):
        rule = ConditionGroup(conditions=[
            Condition(field="a", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=10),
            Condition(field="b", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=4),
        ])

        assert rule.ratio({"a": 2, "b": 8}) == Decimal("0.6")

    def test_empty_group_is_met(self):
        rule = ConditionGroup(conditions=[])

        assert rule.evaluate({})
        assert rule.ratio({}) == Decimal("1")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
