"""
Cross-Domain Correlation Probes
================================
Named hypothesis tests over a FeatureMatrix.  Every probe is a pure
function of the matrix and returns a CorrelationResult, or None when the
probe's minimum sample size is not met.

Two families:
  Pearson probes     : r = (nΣxy - ΣxΣy) / sqrt((nΣx² - (Σx)²)(nΣy² - (Σy)²)),
                       r = 0 on a zero denominator, clamped to [-1, 1],
                       two-sided t-test p-value (n - 2 df).
  Rule-based probes  : mean differences, categorical splits and threshold
                       rules.  They report ``coefficient=None`` and carry their
                       scalar in ``strength``; they are never forced into a
                       correlation coefficient.

Significance is two-tier:
  • each probe has its own cutoff, which only gates the insight text here;
  • the PatternStore applies its own (stricter) threshold before persisting.

Confidence is one function for every probe: 100 · n / reference_n, bounded
to [0, 100], where reference_n is set per probe.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from scipy import stats as sp_stats

from feature_matrix import FeatureMatrix

log = logging.getLogger("correlation_engine")


# ═══════════════════════════════════════════════════════════════
#  CONSTANTS
# ═══════════════════════════════════════════════════════════════

PEARSON = "pearson"
MEAN_DIFFERENCE = "mean_difference"
CATEGORICAL_SPLIT = "categorical_split"
THRESHOLD_RULE = "threshold_rule"

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

HIGH_STRAIN = 18
HIGH_SPEND = 200
LOW_HRV = 40
HIGH_HRV = 60
GOOD_MOOD = 4
HIGH_MEETINGS = 4
LOW_MEETINGS = 2
MIN_RECOVERY_DROP = 10


@dataclass(frozen=True)
class ProbeSpec:
    min_samples: int
    reference_n: int
    cutoff: Optional[float]
    method: str


PROBE_SPECS: Dict[str, ProbeSpec] = {
    "sleep_recovery":        ProbeSpec(30, 60, 0.7, PEARSON),
    "workout_performance":   ProbeSpec(10, 30, None, CATEGORICAL_SPLIT),
    "stress_spending":       ProbeSpec(15, 30, 0.5, PEARSON),
    "meeting_load_recovery": ProbeSpec(10, 30, MIN_RECOVERY_DROP, CATEGORICAL_SPLIT),
    "workload_illness":      ProbeSpec(7, 14, 0.5, THRESHOLD_RULE),
    "exercise_mood":         ProbeSpec(10, 30, 0.5, MEAN_DIFFERENCE),
    "sleep_weight":          ProbeSpec(10, 30, 0.4, PEARSON),
    "recovery_productivity": ProbeSpec(10, 30, 0.5, PEARSON),
    "financial_health":      ProbeSpec(10, 30, 5, MEAN_DIFFERENCE),
    "sleep_performance":     ProbeSpec(10, 30, 0.5, PEARSON),
    "social_energy":         ProbeSpec(10, 30, 0.3, PEARSON),
    "nutrition_recovery":    ProbeSpec(10, 30, 0.4, PEARSON),
    "recovery_predictor":    ProbeSpec(20, 60, 0.5, PEARSON),
    "weekly_rhythm":         ProbeSpec(28, 56, None, CATEGORICAL_SPLIT),
    "goal_progress":         ProbeSpec(1, 3, None, THRESHOLD_RULE),
}


# ═══════════════════════════════════════════════════════════════
#  MATH
# ═══════════════════════════════════════════════════════════════


def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson's r on paired samples, 0 when undefined, clamped to [-1, 1]."""
    n = len(x)
    if n != len(y) or n < 2:
        return 0.0
    sum_x = float(sum(x))
    sum_y = float(sum(y))
    sum_xy = sum(float(a) * float(b) for a, b in zip(x, y))
    sum_x2 = sum(float(a) * float(a) for a in x)
    sum_y2 = sum(float(b) * float(b) for b in y)

    numerator = n * sum_xy - sum_x * sum_y
    spread = (n * sum_x2 - sum_x * sum_x) * (n * sum_y2 - sum_y * sum_y)
    if spread <= 0:
        return 0.0
    r = numerator / math.sqrt(spread)
    return max(-1.0, min(1.0, r))


def pearson_p_value(r: float, n: int) -> Optional[float]:
    """Two-sided p-value for r under H0: rho = 0."""
    if n < 3:
        return None
    if abs(r) >= 1.0:
        return 0.0
    t_stat = r * math.sqrt(n - 2) / math.sqrt(1 - r * r)
    return float(2 * sp_stats.t.sf(abs(t_stat), n - 2))


def confidence_score(n: int, reference_n: int) -> float:
    """Sample-size confidence: 100 · n / reference_n, bounded to [0, 100]."""
    if reference_n <= 0 or n <= 0:
        return 0.0
    return round(max(0.0, min(100.0, 100.0 * n / reference_n)), 1)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


# ═══════════════════════════════════════════════════════════════
#  RESULT TYPES
# ═══════════════════════════════════════════════════════════════


@dataclass
class PatternTrigger:
    """Immediate-trigger predicate attached to a pattern.

    ``condition`` names a raw metric on an incoming data point.
    """

    condition: str
    threshold: float
    direction: str
    action: str
    severity: str = "medium"

    def fires(self, value: Any) -> bool:
        if value is None:
            return False
        try:
            v = float(value)
        except (TypeError, ValueError):
            return False
        if self.direction == "below":
            return v < self.threshold
        return v > self.threshold

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PatternTrigger":
        return cls(
            condition=raw["condition"],
            threshold=float(raw["threshold"]),
            direction=raw.get("direction", "above"),
            action=raw.get("action", ""),
            severity=raw.get("severity", "medium"),
        )


@dataclass
class CorrelationResult:
    pair_name: str
    coefficient: Optional[float]
    confidence: float
    sample_size: int
    insight: Optional[str]
    strength: float
    method: str
    recommendation: Optional[str] = None
    p_value: Optional[float] = None
    data: Dict[str, Any] = field(default_factory=dict)
    triggers: List[PatternTrigger] = field(default_factory=list)

    @property
    def significant(self) -> bool:
        return self.insight is not None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["triggers"] = [t.to_dict() for t in self.triggers]
        return out


@dataclass
class ProbeRun:
    results: Dict[str, CorrelationResult] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  ANALYZER
# ═══════════════════════════════════════════════════════════════


class CorrelationAnalyzer:
    """Runs the probe catalogue against one user's FeatureMatrix."""

    PROBES = (
        "sleep_recovery",
        "workout_performance",
        "stress_spending",
        "meeting_load_recovery",
        "workload_illness",
        "exercise_mood",
        "sleep_weight",
        "recovery_productivity",
        "financial_health",
        "sleep_performance",
        "social_energy",
        "nutrition_recovery",
        "recovery_predictor",
        "weekly_rhythm",
        "goal_progress",
    )

    def __init__(self, cutoffs: Optional[Dict[str, float]] = None,
                 today: Optional[Callable[[], date]] = None):
        self.cutoffs = dict(cutoffs or {})
        self._today = today or date.today

    def cutoff(self, name: str) -> Optional[float]:
        if name in self.cutoffs:
            return self.cutoffs[name]
        return PROBE_SPECS[name].cutoff

    # ─── Orchestration ───────────────────────────────────────

    def analyze(self, matrix: FeatureMatrix) -> ProbeRun:
        """Run every probe; a probe that raises is logged and skipped."""
        run = ProbeRun()
        for name in self.PROBES:
            probe = getattr(self, name)
            try:
                result = probe(matrix)
            except Exception as e:
                log.warning("Probe %s failed for %s: %s", name, matrix.user_id, e)
                run.failed.append(name)
                continue
            if result is not None:
                run.results[name] = result
        log.info(
            "Probes for %s: %d result(s), %d failed",
            matrix.user_id, len(run.results), len(run.failed),
        )
        return run

    def run_all(self, matrix: FeatureMatrix) -> Dict[str, CorrelationResult]:
        return self.analyze(matrix).results

    # ─── Helpers ─────────────────────────────────────────────

    def _pearson_result(self, name: str, xs: List[float], ys: List[float],
                        insight: Callable[[float], str],
                        recommendation: Optional[str] = None,
                        data: Optional[Dict[str, Any]] = None,
                        triggers: Optional[List[PatternTrigger]] = None) -> CorrelationResult:
        spec = PROBE_SPECS[name]
        n = len(xs)
        r = pearson(xs, ys)
        cutoff = self.cutoff(name)
        significant = cutoff is not None and abs(r) >= cutoff
        payload = {"correlation": r}
        payload.update(data or {})
        return CorrelationResult(
            pair_name=name,
            coefficient=r,
            confidence=confidence_score(n, spec.reference_n),
            sample_size=n,
            insight=insight(r) if significant else None,
            strength=abs(r),
            method=PEARSON,
            recommendation=recommendation if significant else None,
            p_value=pearson_p_value(r, n),
            data=payload,
            triggers=list(triggers or []) if significant else [],
        )

    def _rule_result(self, name: str, n: int, strength: float, insight: Optional[str],
                     method: str, recommendation: Optional[str] = None,
                     data: Optional[Dict[str, Any]] = None,
                     triggers: Optional[List[PatternTrigger]] = None) -> CorrelationResult:
        spec = PROBE_SPECS[name]
        return CorrelationResult(
            pair_name=name,
            coefficient=None,
            confidence=confidence_score(n, spec.reference_n),
            sample_size=n,
            insight=insight,
            strength=max(0.0, min(1.0, strength)),
            method=method,
            recommendation=recommendation if insight else None,
            data=dict(data or {}),
            triggers=list(triggers or []) if insight else [],
        )

    @staticmethod
    def _enough(name: str, n: int) -> bool:
        return n >= PROBE_SPECS[name].min_samples

    # ─── Pearson probes ──────────────────────────────────────

    def sleep_recovery(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Hours slept vs recovery score, plus the best whole-hour bucket."""
        pairs = [
            (row.wearable.sleep_minutes, row.wearable.recovery_score)
            for row in matrix.days()
            if row.wearable and row.wearable.sleep_minutes and row.wearable.recovery_score is not None
        ]
        if not self._enough("sleep_recovery", len(pairs)):
            return None

        buckets: Dict[int, List[float]] = {}
        for minutes, recovery in pairs:
            buckets.setdefault(round_half_up(minutes / 60), []).append(recovery)

        optimal, best = 0, 0.0
        for hours in sorted(buckets):
            avg = _mean(buckets[hours])
            if avg > best:
                optimal, best = hours, avg

        return self._pearson_result(
            "sleep_recovery",
            [m / 60 for m, _ in pairs],
            [r for _, r in pairs],
            insight=lambda r: f"Optimal sleep duration: {optimal} hours for {best:.0f}% recovery",
            recommendation=f"Target {optimal} hours of sleep for best recovery",
            data={
                "optimal_sleep_hours": optimal,
                "average_recovery_at_optimal": best,
                "buckets": {str(h): _mean(v) for h, v in sorted(buckets.items())},
            },
            triggers=[PatternTrigger("sleep_minutes", max(optimal - 1, 0) * 60, "below", "enforce_bedtime", "medium")],
        )

    def stress_spending(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """HRV vs daily spend; riskAmount = mean spend (HRV<40) − mean spend (HRV≥60)."""
        days = [
            row for row in matrix.days()
            if row.wearable and row.wearable.hrv and row.spending is not None
        ]
        if not self._enough("stress_spending", len(days)):
            return None

        low = [r.spending.total_amount for r in days if r.wearable.hrv < LOW_HRV]
        high = [r.spending.total_amount for r in days if r.wearable.hrv >= HIGH_HRV]
        risk_amount = (_mean(low) or 0.0) - (_mean(high) or 0.0)
        impulse = sum(
            1 for r in days if r.wearable.hrv < LOW_HRV
            for t in r.spending.transactions if t.is_impulse
        )

        return self._pearson_result(
            "stress_spending",
            [r.wearable.hrv for r in days],
            [r.spending.total_amount for r in days],
            insight=lambda r: f"Spending increases {abs(r) * 100:.0f}% when stressed (low HRV)",
            recommendation=f"Enable spending alerts when HRV drops below {LOW_HRV}ms",
            data={"risk_amount": risk_amount, "impulse_count": impulse, "hrv_threshold": LOW_HRV},
            triggers=[PatternTrigger("hrv", LOW_HRV, "below", "block_purchases", "high")],
        )

    def sleep_weight(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Sleep minutes vs weight change since the previous measurement."""
        sleep, delta = [], []
        last_weight = None
        for row in matrix.days():
            if not (row.measurement and row.measurement.weight):
                continue
            if last_weight is not None and row.wearable and row.wearable.sleep_minutes:
                sleep.append(row.wearable.sleep_minutes)
                delta.append(row.measurement.weight - last_weight)
            last_weight = row.measurement.weight
        if not self._enough("sleep_weight", len(sleep)):
            return None

        def insight(r: float) -> str:
            if r < 0:
                return "Sleep significantly affects weight: less sleep correlates with weight gain"
            return "Sleep significantly affects weight: more sleep correlates with weight loss"

        return self._pearson_result("sleep_weight", sleep, delta, insight=insight,
                                    recommendation="Keep sleep consistent during weight-change phases")

    def recovery_productivity(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Recovery vs proxy productivity (100 − 10 × meetings)."""
        days = [
            row for row in matrix.days()
            if row.wearable and row.wearable.recovery_score is not None and row.calendar is not None
        ]
        if not self._enough("recovery_productivity", len(days)):
            return None
        return self._pearson_result(
            "recovery_productivity",
            [r.wearable.recovery_score for r in days],
            [100 - 10 * r.calendar.meeting_count for r in days],
            insight=lambda r: f"High recovery days are {round_half_up(abs(r) * 40)}% "
                              f"{'more' if r > 0 else 'less'} productive",
            recommendation="Put deep work on high-recovery days",
            data={"optimal_recovery": 70},
        )

    def sleep_performance(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Sleep minutes vs first workout of the day completed (100) or not (0)."""
        days = [
            row for row in matrix.days()
            if row.wearable and row.wearable.sleep_minutes and row.workouts
        ]
        if not self._enough("sleep_performance", len(days)):
            return None
        return self._pearson_result(
            "sleep_performance",
            [r.wearable.sleep_minutes for r in days],
            [100.0 if r.first_workout.completed else 0.0 for r in days],
            insight=lambda r: f"Strong correlation: {round_half_up(r * 100)}% - every hour of sleep "
                              f"changes workout completion by {round_half_up(r * 15)}%",
            recommendation="Skip hard sessions after short nights",
            triggers=[PatternTrigger("sleep_minutes", 360, "below", "cancel_workout", "high")],
        )

    def social_energy(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Meetings per day vs recovery (signed)."""
        days = [
            row for row in matrix.days()
            if row.calendar is not None and row.wearable and row.wearable.recovery_score is not None
        ]
        if not self._enough("social_energy", len(days)):
            return None
        meetings = [r.calendar.meeting_count for r in days]
        overload = sum(1 for m in meetings if m > 5)
        return self._pearson_result(
            "social_energy",
            meetings,
            [r.wearable.recovery_score for r in days],
            insight=lambda r: (
                f"Social overload detected: {overload} day(s) exceeded optimal meeting load"
                if r < 0 else "Busy days coincide with better recovery"
            ),
            recommendation="Cap meetings at 3 per day",
            data={"optimal_meetings": 3, "current_average": round_half_up(_mean(meetings)), "overload_days": overload},
            triggers=[PatternTrigger("meeting_count", 3, "above", "reduce_social_load", "medium")],
        )

    def nutrition_recovery(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Protein grams vs recovery score."""
        days = [
            row for row in matrix.days()
            if row.nutrition and row.nutrition.protein_grams is not None
            and row.wearable and row.wearable.recovery_score is not None
        ]
        if not self._enough("nutrition_recovery", len(days)):
            return None
        return self._pearson_result(
            "nutrition_recovery",
            [r.nutrition.protein_grams for r in days],
            [r.wearable.recovery_score for r in days],
            insight=lambda r: f"Protein intake strongly affects recovery: +10g protein = "
                              f"{round_half_up(r * 5):+d}% recovery",
            recommendation="Hit your protein target on training days",
        )

    def recovery_predictor(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Which of today's sleep, HRV or steps best predicts tomorrow's recovery."""
        rows = matrix.rows
        samples: List[Tuple[float, float, float, float]] = []
        for day in sorted(rows):
            current, nxt = rows[day], rows.get(day + timedelta(days=1))
            if not (current.wearable and nxt and nxt.wearable):
                continue
            w = current.wearable
            if w.sleep_minutes and w.hrv and nxt.wearable.recovery_score is not None:
                samples.append((w.sleep_minutes, w.hrv, float(w.steps or 0), nxt.wearable.recovery_score))
        if not self._enough("recovery_predictor", len(samples)):
            return None

        target = [s[3] for s in samples]
        predictors = [
            {"factor": name, "correlation": pearson([s[i] for s in samples], target)}
            for i, name in enumerate(("Sleep", "HRV", "Steps"))
        ]
        predictors.sort(key=lambda p: abs(p["correlation"]), reverse=True)
        strongest = predictors[0]
        idx = ("Sleep", "HRV", "Steps").index(strongest["factor"])

        return self._pearson_result(
            "recovery_predictor",
            [s[idx] for s in samples],
            target,
            insight=lambda r: f"{strongest['factor']} is strongest predictor of next-day recovery "
                              f"({abs(r) * 100:.0f}% correlation)",
            recommendation=f"Optimize {strongest['factor'].lower()} for better recovery tomorrow",
            data={"predictors": predictors, "strongest_predictor": strongest["factor"]},
        )

    # ─── Rule-based probes ───────────────────────────────────

    def workout_performance(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Recovery on good-mood workout days and the best time of day to train."""
        completed = [(row, w) for row in matrix.days() for w in row.workouts if w.completed]
        paired = [
            (row.wearable.recovery_score, w.mood if w.mood is not None else 3)
            for row, w in completed
            if row.wearable and row.wearable.recovery_score is not None
        ]
        if len(completed) < PROBE_SPECS["workout_performance"].min_samples:
            return None
        if not self._enough("workout_performance", len(paired)):
            return None

        good = [rec for rec, mood in paired if mood >= GOOD_MOOD]
        threshold = _mean(good) or 0.0

        by_block: Dict[str, List[float]] = {"morning": [], "afternoon": [], "evening": []}
        for _, w in completed:
            if w.hour is None or w.mood is None:
                continue
            block = "morning" if w.hour < 12 else "afternoon" if w.hour < 17 else "evening"
            by_block[block].append(w.mood)
        best_time, best_score = "morning", 0.0
        for block, moods in by_block.items():
            avg = _mean(moods)
            if avg is not None and avg > best_score:
                best_time, best_score = block, avg

        return self._rule_result(
            "workout_performance", len(paired), 0.85,
            insight=f"Best workouts when recovery >{threshold:.0f}%, optimal time: {best_time}",
            method=CATEGORICAL_SPLIT,
            recommendation=f"Schedule high-intensity workouts in the {best_time} "
                           f"when recovery exceeds {threshold:.0f}%",
            data={
                "optimal_recovery_threshold": threshold,
                "best_time_of_day": best_time,
                "performance_score": best_score,
            },
        )

    def meeting_load_recovery(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Recovery on heavy (≥4) vs light (≤2) meeting days."""
        days = [
            (row.calendar.meeting_count, row.wearable.recovery_score)
            for row in matrix.days()
            if row.calendar is not None and row.wearable and row.wearable.recovery_score is not None
        ]
        if not self._enough("meeting_load_recovery", len(days)):
            return None
        heavy = [rec for m, rec in days if m >= HIGH_MEETINGS]
        light = [rec for m, rec in days if m <= LOW_MEETINGS]
        if not heavy or not light:
            return None

        drop = _mean(light) - _mean(heavy)
        cutoff = self.cutoff("meeting_load_recovery")
        insight = None
        if abs(drop) >= cutoff:
            insight = f"Recovery drops {drop:.0f}% on days with {HIGH_MEETINGS}+ meetings"
        return self._rule_result(
            "meeting_load_recovery", len(days), abs(drop) / 30,
            insight=insight,
            method=CATEGORICAL_SPLIT,
            recommendation="Limit meetings to 3 per day for optimal energy",
            data={
                "optimal_meeting_count": 3,
                "recovery_drop": drop,
                "recovery_drop_per_meeting": drop / 2,
                "high_meeting_recovery": _mean(heavy),
                "low_meeting_recovery": _mean(light),
            },
            triggers=[PatternTrigger("meeting_count", 3, "above", "reduce_social_load", "medium")],
        )

    def workload_illness(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Consecutive strain > 18 days combined with low HRV, decaying risk."""
        days = [row for row in matrix.days() if row.wearable is not None]
        if not self._enough("workload_illness", len(days)):
            return None

        streak, risk, peak, peak_day = 0, 0.0, 0.0, None
        prev_day = None
        for row in days:
            if prev_day is not None and (row.day - prev_day).days > 1:
                streak = 0
            prev_day = row.day
            load = row.wearable.strain or 0.0
            hrv = row.wearable.hrv or 0.0
            streak = streak + 1 if load > HIGH_STRAIN else 0

            if streak >= 3 and hrv < LOW_HRV:
                risk = 0.7
            elif streak >= 2 and hrv < 50:
                risk = 0.4
            else:
                risk = max(0.0, risk - 0.1)
            if risk > peak:
                peak, peak_day = risk, row.day

        insight = None
        if peak > self.cutoff("workload_illness"):
            insight = f"High illness risk: {round_half_up(peak * 100)}% - reduce training immediately"
        return self._rule_result(
            "workload_illness", len(days), peak,
            insight=insight,
            method=THRESHOLD_RULE,
            recommendation="Take two easy days and prioritise sleep",
            data={
                "risk_level": peak,
                "current_risk": risk,
                "consecutive_high_days": streak,
                "peak_day": peak_day.isoformat() if peak_day else None,
            },
            triggers=[PatternTrigger("strain", HIGH_STRAIN, "above", "implement_deload", "high")],
        )

    def exercise_mood(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Mood on days the first workout was completed vs skipped."""
        days = [
            (row.first_workout.completed, row.first_workout.mood)
            for row in matrix.days()
            if row.first_workout is not None and row.first_workout.mood
        ]
        if not self._enough("exercise_mood", len(days)):
            return None
        with_ex = [m for done, m in days if done]
        without = [m for done, m in days if not done]
        if not with_ex or not without:
            return None

        diff = _mean(with_ex) - _mean(without)
        insight = None
        if diff > self.cutoff("exercise_mood"):
            insight = f"Exercise boosts mood by {round_half_up(diff * 20)}%"
        return self._rule_result(
            "exercise_mood", len(days), abs(diff) / 5,
            insight=insight,
            method=MEAN_DIFFERENCE,
            recommendation="Keep at least a short session on low-mood days",
            data={
                "mood_with_exercise": _mean(with_ex),
                "mood_without_exercise": _mean(without),
                "difference": diff,
            },
        )

    def financial_health(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """HRV on high-spend (>200) vs normal days."""
        days = [
            (row.spending.total_amount, row.wearable.hrv)
            for row in matrix.days()
            if row.spending is not None and row.wearable and row.wearable.hrv
        ]
        if not self._enough("financial_health", len(days)):
            return None
        high = [h for spend, h in days if spend > HIGH_SPEND]
        normal = [h for spend, h in days if spend <= HIGH_SPEND]
        if not high or not normal:
            return None

        avg_high, avg_normal = _mean(high), _mean(normal)
        insight = None
        if avg_high < avg_normal - self.cutoff("financial_health"):
            insight = (f"Financial stress detected: HRV drops "
                       f"{round_half_up(avg_normal - avg_high)}ms on high spending days")
        level = "high" if avg_high < 40 else "moderate" if avg_high < 50 else "low"
        return self._rule_result(
            "financial_health", len(days), abs(avg_high - avg_normal) / avg_normal,
            insight=insight,
            method=MEAN_DIFFERENCE,
            recommendation="Review large purchases on low-HRV days",
            data={"hrv_high_spend": avg_high, "hrv_normal": avg_normal, "financial_stress_level": level},
        )

    def weekly_rhythm(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Average recovery by weekday; best and worst day."""
        wearable_days = [row for row in matrix.days() if row.wearable is not None]
        if not self._enough("weekly_rhythm", len(wearable_days)):
            return None
        by_day: Dict[int, List[float]] = {i: [] for i in range(7)}
        for row in wearable_days:
            if row.wearable.recovery_score is not None:
                by_day[row.day.weekday()].append(row.wearable.recovery_score)
        averages = {d: _mean(v) for d, v in by_day.items() if v}
        if not averages:
            return None

        best = max(averages, key=lambda d: averages[d])
        worst = min(averages, key=lambda d: averages[d])
        return self._rule_result(
            "weekly_rhythm", len(wearable_days), 0.8,
            insight=(f"Best recovery on {DAY_NAMES[best]} ({averages[best]:.0f}%), "
                     f"worst on {DAY_NAMES[worst]} ({averages[worst]:.0f}%)"),
            method=CATEGORICAL_SPLIT,
            recommendation=f"Schedule important activities on {DAY_NAMES[best]}, recovery on {DAY_NAMES[worst]}",
            data={
                "best_day": DAY_NAMES[best],
                "best_day_recovery": averages[best],
                "worst_day": DAY_NAMES[worst],
                "worst_day_recovery": averages[worst],
                "weekly_pattern": [
                    {"day": DAY_NAMES[d], "avg_recovery": averages.get(d, 0.0)} for d in range(7)
                ],
            },
        )

    def goal_progress(self, matrix: FeatureMatrix) -> Optional[CorrelationResult]:
        """Active goals behind their linear schedule."""
        today = self._today()
        active = [g for g in matrix.goals if (g.get("status") or "active") != "completed"]
        if not self._enough("goal_progress", len(active)):
            return None

        progress = []
        for goal in active:
            start_value = float(goal.get("start_value") or 0.0)
            current = float(goal.get("current_value") or 0.0)
            target = float(goal.get("target_value") or 0.0)
            span = target - start_value
            fraction = (current - start_value) / span if span else 0.0

            started = goal.get("start_date")
            days_active = max((today - started).days, 1) if isinstance(started, date) else 1
            deadline = goal.get("target_date")
            days_remaining = (deadline - today).days if isinstance(deadline, date) else 90

            on_track = (current - start_value) > 0 and fraction >= days_active / max(days_active + days_remaining, 1)
            progress.append({
                "goal": goal.get("title"),
                "on_track": on_track,
                "days_remaining": days_remaining,
                "percent_complete": fraction * 100,
            })

        on_track = [p for p in progress if p["on_track"]]
        at_risk = [p for p in progress if not p["on_track"] and p["days_remaining"] > 0]
        insight = None
        recommendation = None
        if at_risk:
            insight = f"{len(at_risk)} goal(s) at risk, {len(on_track)} on track"
            recommendation = (f'Focus on "{at_risk[0]["goal"]}" - only '
                              f'{at_risk[0]["percent_complete"]:.0f}% complete')
        return self._rule_result(
            "goal_progress", len(active), 0.9 if at_risk else 0.0,
            insight=insight,
            method=THRESHOLD_RULE,
            recommendation=recommendation,
            data={
                "on_track_count": len(on_track),
                "at_risk_count": len(at_risk),
                "most_at_risk": at_risk[0] if at_risk else None,
                "average_completion": sum(p["percent_complete"] for p in progress) / len(progress),
            },
        )
