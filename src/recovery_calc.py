"""
Recovery Score Calculator
=========================
Deterministic daily recovery score from four components:

  total = round_half_up(0.35·HRV + 0.25·Sleep + 0.20·RHR + 0.20·Load)

Any component with missing input scores a neutral 50.  A day with neither a
wearable row nor a sleep row has no score at all (``None``).

The training-load component is the acute:chronic ratio, where
acute = Σ duration·RPE/10 over 7 days and chronic = the 28-day sum / 4
(defaults: 60 minutes, RPE 7).

On top of the daily score this module also produces the read-side reports:
trend (linear regression over the last 7 scores), next-day prediction,
rolling 7-day trends, recovery debt, overtraining risk, acute/chronic load
and recovery protocols.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
from scipy import stats as sp_stats

from correlation_engine import round_half_up

log = logging.getLogger("recovery_calc")


# ═══════════════════════════════════════════════════════════════
#  CONSTANTS
# ═══════════════════════════════════════════════════════════════

WEIGHTS = {"hrv": 0.35, "sleep": 0.25, "rhr": 0.20, "training_load": 0.20}
NEUTRAL = 50

DEFAULT_DURATION_MIN = 60
DEFAULT_RPE = 7
ACUTE_DAYS = 7
CHRONIC_DAYS = 28

OPTIMAL_SCORE = 80

# (floor, status, recommendation, training-load guidance), highest first
STATUS_BANDS = [
    (85, "optimal", "Full recovery - excellent day for intense training", "high_intensity"),
    (70, "good", "Good recovery - suitable for moderate to high intensity", "moderate_to_high"),
    (55, "fair", "Fair recovery - keep intensity moderate", "moderate"),
    (40, "low", "Low recovery - light training or active recovery recommended", "light"),
    (0, "very_low", "Very low recovery - rest day strongly recommended", "rest"),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Component scores ────────────────────────────────────────


def hrv_component(hrv: Optional[float]) -> int:
    if not hrv:
        return NEUTRAL
    if hrv >= 80:
        return 100
    if hrv >= 60:
        return 85
    if hrv >= 40:
        return 70
    if hrv >= 25:
        return 50
    if hrv >= 15:
        return 30
    return 15


def rhr_component(rhr: Optional[float]) -> int:
    if not rhr:
        return NEUTRAL
    for ceiling, score in ((50, 100), (55, 90), (60, 80), (65, 70), (70, 60), (75, 50), (80, 40)):
        if rhr <= ceiling:
            return score
    return 20


def _tier(value: float, steps: Sequence[tuple], floor: int) -> int:
    for minimum, points in steps:
        if value >= minimum:
            return points
    return floor


def sleep_component(sleep: Optional[Dict[str, Any]]) -> int:
    """Duration (0-40) + efficiency (0-30) + deep sleep (0-30), capped at 100."""
    if not sleep:
        return NEUTRAL
    duration = float(sleep.get("duration_minutes") or 0)
    efficiency = float(sleep.get("efficiency") or 0)
    deep = float(sleep.get("deep_sleep_minutes") or 0)
    score = (
        _tier(duration, ((480, 40), (420, 35), (360, 25), (300, 15)), 5)
        + _tier(efficiency, ((90, 30), (85, 25), (80, 20), (75, 15)), 5)
        + _tier(deep, ((90, 30), (75, 25), (60, 20), (45, 15)), 5)
    )
    return min(100, score)


def workout_load(workouts: Sequence[Dict[str, Any]]) -> float:
    total = 0.0
    for w in workouts:
        duration = w.get("duration_minutes") or DEFAULT_DURATION_MIN
        intensity = w.get("rpe") or DEFAULT_RPE
        total += float(duration) * float(intensity) / 10
    return total


def _workout_day(workout: Dict[str, Any]) -> Optional[date]:
    moment = workout.get("scheduled_at")
    if isinstance(moment, datetime):
        return moment.date()
    if isinstance(moment, date):
        return moment
    return None


def _within(workouts: Sequence[Dict[str, Any]], day: date, days: int) -> List[Dict[str, Any]]:
    start = day - timedelta(days=days - 1)
    out = []
    for w in workouts:
        d = _workout_day(w)
        if d is not None and start <= d <= day:
            out.append(w)
    return out


def load_ratio(workouts: Sequence[Dict[str, Any]], day: date, acute_days: int = ACUTE_DAYS) -> Dict[str, float]:
    acute = workout_load(_within(workouts, day, acute_days))
    chronic = workout_load(_within(workouts, day, CHRONIC_DAYS)) / 4
    ratio = acute / chronic if chronic > 0 else 1.0
    return {"acute": acute, "chronic": chronic, "ratio": ratio}


def load_component(ratio: float) -> int:
    if ratio < 0.5:
        return 70
    if ratio <= 0.8:
        return 85
    if ratio <= 1.0:
        return 100
    if ratio <= 1.3:
        return 85
    if ratio <= 1.5:
        return 65
    if ratio <= 2.0:
        return 45
    return 25


def classify(total: int) -> Dict[str, str]:
    for floor, status, recommendation, guidance in STATUS_BANDS:
        if total >= floor:
            return {"status": status, "recommendation": recommendation, "training_load": guidance}
    raise ValueError(f"score out of range: {total}")


def _scores(rows: Sequence[Dict[str, Any]]) -> List[float]:
    return [float(r["total_score"]) for r in rows if r.get("total_score") is not None]


def analyze_trend(scores: Sequence[float]) -> Dict[str, Any]:
    """Slope of the last 7 scores: > 1 improving, < -1 declining."""
    if len(scores) < 3:
        return {
            "trend": "insufficient_data",
            "direction": "stable",
            "message": "Need more data points for trend analysis",
        }
    recent = list(scores)[-7:]
    avg = sum(recent) / len(recent)
    slope = float(sp_stats.linregress(range(len(recent)), recent).slope)
    if slope > 1:
        trend, direction = "improving", "up"
    elif slope < -1:
        trend, direction = "declining", "down"
    else:
        trend, direction = "stable", "stable"
    return {
        "trend": trend,
        "direction": direction,
        "average": round_half_up(avg),
        "slope": round(slope, 2),
        "message": f"Recovery is {trend} with average score of {round_half_up(avg)}",
    }


# ─── Calculator ──────────────────────────────────────────────


class RecoveryScoreCalculator:
    """Scores, persists and reports on daily recovery for one user at a time."""

    def __init__(self, store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or _utcnow

    def today(self) -> date:
        return self._clock().date()

    def score_inputs(self, inputs: Dict[str, Any], day: date) -> Optional[Dict[str, Any]]:
        """Pure scoring of the rows returned by ``fetch_recovery_inputs``."""
        wearable = inputs.get("wearable")
        sleep = inputs.get("sleep")
        if not wearable and not sleep:
            return None

        wearable = wearable or {}
        load = load_ratio(inputs.get("workouts") or [], day)
        components = {
            "hrv": hrv_component(wearable.get("hrv")),
            "rhr": rhr_component(wearable.get("resting_heart_rate")),
            "sleep": sleep_component(sleep),
            "training_load": load_component(load["ratio"]),
        }
        total = round_half_up(sum(WEIGHTS[k] * v for k, v in components.items()))
        return {
            "date": day,
            "total_score": total,
            "components": components,
            **classify(total),
            "input_data": {
                "hrv": wearable.get("hrv"),
                "resting_heart_rate": wearable.get("resting_heart_rate"),
                "sleep": sleep,
                "load_ratio": round(load["ratio"], 2),
            },
        }

    def calculate(self, user_id: str, day: Optional[date] = None) -> Optional[Dict[str, Any]]:
        """Score ``day`` (default today) and store it, replacing any earlier score."""
        day = day or self.today()
        result = self.score_inputs(self.store.fetch_recovery_inputs(user_id, day), day)
        if result is None:
            log.info("No wearable or sleep data for %s on %s; no recovery score", user_id, day)
            return None
        self.store.replace_recovery_score(user_id, day, result)
        log.info("Recovery for %s on %s: %d (%s)", user_id, day, result["total_score"], result["status"])
        return result

    def recalculate(self, user_id: str, day: Optional[date] = None) -> Optional[Dict[str, Any]]:
        """Drop the stored score for the day, then calculate it again."""
        day = day or self.today()
        self.store.delete_recovery_score(user_id, day)
        return self.calculate(user_id, day)

    def _history(self, user_id: str, days: int) -> List[Dict[str, Any]]:
        end = self.today()
        return self.store.list_recovery_scores(user_id, end - timedelta(days=days), end)

    # ─── Reports ─────────────────────────────────────────────

    def trends(self, user_id: str) -> Dict[str, Any]:
        values = _scores(self._history(user_id, 7))
        if not values:
            return {
                "rolling_average": None,
                "trend": "no_data",
                "alert": "No recovery data available",
                "recommendation": "Start tracking recovery metrics",
            }
        rolling = round_half_up(sum(values) / len(values))
        trend = analyze_trend(values)["trend"]
        alert = None
        if rolling < 50:
            alert = "Low recovery detected"
            recommendation = "Consider taking additional rest days"
        elif trend == "declining":
            alert = "Recovery declining"
            recommendation = "Monitor training load and sleep quality"
        elif rolling >= 80:
            recommendation = "Excellent recovery - maintain current routine"
        else:
            recommendation = "Continue current recovery practices"
        return {
            "rolling_average": rolling,
            "trend": trend,
            "alert": alert,
            "recommendation": recommendation,
            "scores": values,
        }

    def predict(self, user_id: str) -> Dict[str, Any]:
        """Tomorrow's score from the 7-score average plus the trend slope."""
        values = _scores(self._history(user_id, 30))
        if len(values) < 7:
            return {
                "score": None,
                "confidence": 0,
                "factors": ["Insufficient historical data"],
                "message": "Need more recovery data for prediction",
            }
        recent = values[-7:]
        avg = sum(recent) / len(recent)
        trend = analyze_trend(values)
        predicted = max(0, min(100, round_half_up(avg + trend["slope"])))
        consistency = max(0.0, 100 - float(np.std(recent)) * 2)

        factors = []
        if trend["trend"] == "improving":
            factors.append("Positive trend")
        if trend["trend"] == "declining":
            factors.append("Negative trend")
        if avg > 70:
            factors.append("Good baseline recovery")
        if avg < 50:
            factors.append("Low baseline recovery")
        return {
            "score": predicted,
            "confidence": round_half_up(consistency),
            "factors": factors,
            "trend": trend["trend"],
        }

    def debt(self, user_id: str) -> Dict[str, Any]:
        values = _scores(self._history(user_id, 14))
        if not values:
            return {"score": 0, "days_to_recover": 0, "recommendations": ["Start tracking recovery"]}
        avg_debt = sum(max(0.0, OPTIMAL_SCORE - v) for v in values) / len(values)
        days_to_recover = math.ceil(avg_debt / 5)
        if avg_debt > 20:
            recommendations = [
                "Significant recovery debt detected",
                "Reduce training volume by 30-50%",
                "Prioritize sleep and nutrition",
                f"Estimated {days_to_recover} days to full recovery",
            ]
        elif avg_debt > 10:
            recommendations = [
                "Moderate recovery debt",
                "Add 1-2 rest days this week",
                "Focus on recovery protocols",
            ]
        else:
            recommendations = ["Recovery debt is minimal", "Continue current approach"]
        return {
            "score": round_half_up(avg_debt),
            "days_to_recover": days_to_recover,
            "recommendations": recommendations,
        }

    def training_load(self, user_id: str, days: int = ACUTE_DAYS) -> Dict[str, Any]:
        day = self.today()
        workouts = self.store.fetch_recovery_inputs(user_id, day).get("workouts") or []
        load = load_ratio(workouts, day, acute_days=days)
        ratio = load["ratio"]
        if ratio < 0.8:
            status = "fresh"
        elif ratio <= 1.3:
            status = "optimal"
        elif ratio <= 1.5:
            status = "high"
        else:
            status = "overload"
        return {
            "acute": round_half_up(load["acute"]),
            "chronic": round_half_up(load["chronic"]),
            "ratio": round(ratio, 2),
            "status": status,
        }

    def overtraining_risk(self, user_id: str) -> Dict[str, Any]:
        values = _scores(self._history(user_id, 30))
        if len(values) < 14:
            return {
                "level": "unknown",
                "indicators": ["Insufficient data"],
                "recommendations": ["Track recovery for at least 2 weeks"],
            }

        levels = ["low", "medium", "high"]
        risk = 0
        indicators = []

        recent = values[-14:]
        avg_recent = sum(recent) / len(recent)
        if avg_recent < 50:
            indicators.append("Chronically low recovery scores")
            risk = 2
        elif avg_recent < 60:
            indicators.append("Below-average recovery")
            risk = max(risk, 1)

        if analyze_trend(values)["trend"] == "declining":
            indicators.append("Declining recovery trend")
            risk = min(2, risk + 1)

        if load_component(self.training_load(user_id)["ratio"]) < 50:
            indicators.append("Excessive training load")
            risk = min(2, risk + 1)

        end = self.today()
        durations = self.store.fetch_sleep_durations(user_id, end - timedelta(days=30), end)
        if durations and sum(durations) / len(durations) < 360:
            indicators.append("Insufficient sleep duration")
            risk = max(risk, 1)

        level = levels[risk]
        if level == "high":
            recommendations = [
                "HIGH RISK: Immediate action required",
                "Take 5-7 days of complete rest",
                "Consult with coach or healthcare provider",
                "Focus on sleep, nutrition, and stress management",
            ]
        elif level == "medium":
            recommendations = [
                "MEDIUM RISK: Adjust training",
                "Reduce training volume by 30%",
                "Add 1-2 extra rest days per week",
                "Monitor recovery closely",
            ]
        else:
            recommendations = [
                "LOW RISK: Continue monitoring",
                "Maintain current training and recovery balance",
            ]
        return {
            "level": level,
            "indicators": indicators or ["No significant indicators"],
            "recommendations": recommendations,
        }

    def protocols(self, user_id: str) -> Dict[str, Any]:
        latest = self.store.latest_recovery_score(user_id)
        if not latest:
            return {"recommendations": ["Start tracking recovery metrics"], "effectiveness": None}
        score = latest["total_score"]
        if score < 50:
            recommendations = [
                {"protocol": "Extended Rest", "duration": "2-3 days",
                 "activities": ["Complete rest", "Light stretching", "Meditation"], "priority": "high"},
                {"protocol": "Sleep Optimization", "duration": "Ongoing",
                 "activities": ["Aim for 9+ hours", "No screens 2 hours before bed", "Cool, dark room"],
                 "priority": "high"},
                {"protocol": "Nutrition Focus", "duration": "Ongoing",
                 "activities": ["Increase protein intake", "Anti-inflammatory foods", "Proper hydration"],
                 "priority": "medium"},
            ]
        elif score < 70:
            recommendations = [
                {"protocol": "Active Recovery", "duration": "1-2 days",
                 "activities": ["Light yoga", "Walking", "Foam rolling"], "priority": "medium"},
                {"protocol": "Sleep Maintenance", "duration": "Ongoing",
                 "activities": ["Aim for 8 hours", "Consistent schedule"], "priority": "medium"},
            ]
        else:
            recommendations = [
                {"protocol": "Maintenance", "duration": "Ongoing",
                 "activities": ["Continue current routine", "Monitor for changes"], "priority": "low"},
            ]
        return {"recommendations": recommendations, "effectiveness": "High - based on current recovery status"}

    def dashboard(self, user_id: str) -> Dict[str, Any]:
        """Everything the recovery endpoint shows, read from stored scores."""
        latest = self.store.latest_recovery_score(user_id)
        return {
            "current": latest,
            "trends": self.trends(user_id),
            "prediction": self.predict(user_id),
            "debt": self.debt(user_id),
            "training_load": self.training_load(user_id),
            "overtraining_risk": self.overtraining_risk(user_id),
            "protocols": self.protocols(user_id)["recommendations"],
        }
