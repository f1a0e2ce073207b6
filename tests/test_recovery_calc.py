"""
Tests for the recovery score calculator.

Covers:
- component score tables and their boundaries
- acute:chronic load ratio
- total score, status bands and the no-data case
- idempotent recalculation
- trend / prediction / debt / overtraining reports
"""
import sys
import os
from datetime import date, datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from recovery_calc import (
    NEUTRAL,
    RecoveryScoreCalculator,
    analyze_trend,
    classify,
    hrv_component,
    load_component,
    load_ratio,
    rhr_component,
    sleep_component,
)
from fakes import InMemoryStore

NOW = datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


@pytest.fixture
def store():
    s = InMemoryStore()
    s.add_user("u1")
    return s


@pytest.fixture
def calc(store):
    return RecoveryScoreCalculator(store, clock=lambda: NOW)


# ─── Components ───────────────────────────────────────────────


class TestComponents:

    @pytest.mark.parametrize("hrv,expected", [
        (80, 100), (79.9, 85), (60, 85), (59, 70), (40, 70), (25, 50), (15, 30), (14, 15),
    ])
    def test_hrv_table(self, hrv, expected):
        assert hrv_component(hrv) == expected

    def test_missing_hrv_is_neutral(self):
        assert hrv_component(None) == NEUTRAL

    @pytest.mark.parametrize("rhr,expected", [(48, 100), (50, 100), (55, 90), (62, 70), (80, 40), (81, 20)])
    def test_rhr_table(self, rhr, expected):
        assert rhr_component(rhr) == expected

    def test_sleep_full_marks(self):
        assert sleep_component({"duration_minutes": 480, "efficiency": 90, "deep_sleep_minutes": 90}) == 100

    def test_sleep_lowest_tiers(self):
        assert sleep_component({"duration_minutes": 200, "efficiency": 60, "deep_sleep_minutes": 10}) == 15

    def test_sleep_mixed(self):
        assert sleep_component({"duration_minutes": 430, "efficiency": 82, "deep_sleep_minutes": 50}) == 70

    def test_missing_sleep_is_neutral(self):
        assert sleep_component(None) == NEUTRAL

    @pytest.mark.parametrize("ratio,expected", [
        (0.4, 70), (0.5, 85), (0.8, 85), (1.0, 100), (1.3, 85), (1.5, 65), (2.0, 45), (2.5, 25),
    ])
    def test_load_table(self, ratio, expected):
        assert load_component(ratio) == expected


class TestLoadRatio:

    def test_no_workouts_is_balanced(self):
        assert load_ratio([], TODAY) == {"acute": 0.0, "chronic": 0.0, "ratio": 1.0}

    def test_steady_four_weeks_is_one(self):
        workouts = [
            {"scheduled_at": datetime(2026, 3, 20, 7) - timedelta(days=7 * w), "duration_minutes": 60, "rpe": 5}
            for w in range(4)
        ]
        load = load_ratio(workouts, TODAY)
        assert load["acute"] == pytest.approx(30.0)
        assert load["chronic"] == pytest.approx(30.0)
        assert load["ratio"] == pytest.approx(1.0)

    def test_missing_duration_and_rpe_use_defaults(self):
        load = load_ratio([{"scheduled_at": TODAY}], TODAY)
        assert load["acute"] == pytest.approx(42.0)
        assert load["ratio"] == pytest.approx(4.0)


class TestClassify:

    @pytest.mark.parametrize("total,status", [
        (100, "optimal"), (85, "optimal"), (84, "good"), (70, "good"), (55, "fair"), (40, "low"), (39, "very_low"),
    ])
    def test_bands(self, total, status):
        assert classify(total)["status"] == status


# ─── Daily score ──────────────────────────────────────────────


class TestDailyScore:

    def test_hrv_only_day(self, calc, store):
        store.add_records("u1", "wearable", [{"date": TODAY, "hrv": 80}])
        result = calc.calculate("u1")

        # 0.35*100 + 0.25*50 + 0.20*50 + 0.20*100 = 77.5
        assert result["total_score"] == 78
        assert result["components"] == {"hrv": 100, "rhr": 50, "sleep": 50, "training_load": 100}
        assert result["status"] == "good"

    def test_hrv_just_below_band(self, calc, store):
        store.add_records("u1", "wearable", [{"date": TODAY, "hrv": 79.9}])
        assert calc.calculate("u1")["components"]["hrv"] == 85

    def test_sleep_row_alone_is_enough(self, calc, store):
        store.sleep[("u1", TODAY)] = {"duration_minutes": 480, "efficiency": 90, "deep_sleep_minutes": 90}
        result = calc.calculate("u1")
        assert result["components"]["sleep"] == 100
        assert result["components"]["hrv"] == NEUTRAL

    def test_no_data_means_no_score(self, calc, store):
        assert calc.calculate("u1") is None
        assert store.recovery_scores == {}

    def test_recalculate_is_idempotent(self, calc, store):
        store.add_records("u1", "wearable", [{"date": TODAY, "hrv": 65, "resting_heart_rate": 52}])
        first = calc.calculate("u1")
        again = calc.recalculate("u1")
        assert again["total_score"] == first["total_score"]
        assert list(store.recovery_scores) == [("u1", TODAY)]

    def test_explicit_day(self, calc, store):
        day = TODAY - timedelta(days=3)
        store.add_records("u1", "wearable", [{"date": day, "hrv": 45}])
        assert calc.calculate("u1", day)["date"] == day
        assert ("u1", day) in store.recovery_scores


# ─── Reports ──────────────────────────────────────────────────


class TestTrend:

    def test_insufficient(self):
        assert analyze_trend([60, 70])["trend"] == "insufficient_data"

    def test_improving(self):
        trend = analyze_trend([50, 55, 60, 65, 70])
        assert trend["trend"] == "improving"
        assert trend["slope"] == 5.0
        assert trend["average"] == 60

    def test_declining(self):
        assert analyze_trend([80, 75, 70, 65])["direction"] == "down"

    def test_flat(self):
        assert analyze_trend([70, 70.5, 70, 70.5])["trend"] == "stable"


class TestReports:

    def test_trends_without_data(self, calc):
        assert calc.trends("u1")["trend"] == "no_data"

    def test_low_rolling_average_alerts(self, calc, store):
        store.seed_scores("u1", TODAY, [45, 40, 42, 44])
        out = calc.trends("u1")
        assert out["alert"] == "Low recovery detected"
        assert out["rolling_average"] == 43

    def test_prediction_needs_a_week(self, calc, store):
        store.seed_scores("u1", TODAY, [70] * 6)
        assert calc.predict("u1")["score"] is None

    def test_prediction_of_steady_scores(self, calc, store):
        store.seed_scores("u1", TODAY, [70] * 7)
        out = calc.predict("u1")
        assert out["score"] == 70
        assert out["confidence"] == 100
        assert out["trend"] == "stable"

    def test_debt(self, calc, store):
        store.seed_scores("u1", TODAY, [60] * 10)
        out = calc.debt("u1")
        assert out["score"] == 20
        assert out["days_to_recover"] == 4
        assert out["recommendations"][0] == "Moderate recovery debt"

    def test_overtraining_unknown_without_two_weeks(self, calc, store):
        store.seed_scores("u1", TODAY, [40] * 10)
        assert calc.overtraining_risk("u1")["level"] == "unknown"

    def test_overtraining_high(self, calc, store):
        store.seed_scores("u1", TODAY, [45] * 20)
        for i in range(10):
            store.sleep[("u1", TODAY - timedelta(days=i))] = {"duration_minutes": 300}
        out = calc.overtraining_risk("u1")
        assert out["level"] == "high"
        assert "Chronically low recovery scores" in out["indicators"]
        assert "Insufficient sleep duration" in out["indicators"]

    @pytest.mark.parametrize("score,first", [(45, "Extended Rest"), (60, "Active Recovery"), (80, "Maintenance")])
    def test_protocols_follow_latest_score(self, calc, store, score, first):
        store.seed_scores("u1", TODAY, [score])
        assert calc.protocols("u1")["recommendations"][0]["protocol"] == first

    def test_dashboard_sections(self, calc, store):
        store.seed_scores("u1", TODAY, [70, 72, 74])
        out = calc.dashboard("u1")
        assert set(out) == {
            "current", "trends", "prediction", "debt", "training_load", "overtraining_risk", "protocols",
        }
        assert out["current"]["total_score"] == 74
        assert out["training_load"]["status"] == "optimal"
