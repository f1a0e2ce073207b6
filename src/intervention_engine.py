"""
Intervention Engine
===================
Maps correlation and forecast signals to discrete directives and executes
them against the user's domain data.

  decide    every rule in the decision table is evaluated independently;
            all matching directives fire, with no priority between them.
  execute   each directive runs in isolation: an executor that raises
            becomes a failed outcome and its siblings still run.
  report    outcomes are appended to the outcome log, an
            ``intervention_summary`` event is pushed, and critical actions
            (cancel_workout, block_purchases, enforce_bedtime) are emailed
            from a background pool that never blocks or fails the run.

The forecast engine is an external collaborator; its output is consumed as
a ForecastSnapshot.  ``RecoveryForecastProvider`` derives one from the
recovery calculator and the workload probe when no external forecast is
wired in.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from scipy import stats as sp_stats

from correlation_engine import PROBE_SPECS, CorrelationResult
from email_notifier import send_intervention_email
from feature_matrix import FeatureMatrix, resolve_timezone

log = logging.getLogger("intervention_engine")


# ═══════════════════════════════════════════════════════════════
#  CONSTANTS
# ═══════════════════════════════════════════════════════════════

CANCEL_WORKOUT = "cancel_workout"
RESCHEDULE_MORNING_MEETINGS = "reschedule_morning_meetings"
BLOCK_PURCHASES = "block_purchases"
ORDER_RECOVERY_MEAL = "order_recovery_meal"
ENFORCE_BEDTIME = "enforce_bedtime"
REDUCE_SOCIAL_LOAD = "reduce_social_load"
IMPLEMENT_DELOAD = "implement_deload"
SUPPLEMENT_REMINDER = "supplement_reminder"

CRITICAL_DIRECTIVES = {CANCEL_WORKOUT, BLOCK_PURCHASES, ENFORCE_BEDTIME}

# Probes the decision table reads; the snapshot window never drops below their minimum.
DIRECTIVE_PROBES = ("sleep_performance", "stress_spending", "social_energy", "nutrition_recovery")
MIN_WINDOW_DAYS = max(PROBE_SPECS[name].min_samples for name in DIRECTIVE_PROBES)

DEFAULT_CURRENT_HRV = 50.0

FREEZE_CATEGORIES = ["Shopping", "Entertainment", "Restaurants"]
FREEZE_THRESHOLD = 50

RECOVERY_MEAL = {
    "type": "recovery",
    "calories": 600,
    "protein": 40,
    "carbs": 60,
    "fat": 20,
    "items": ["Grilled chicken breast", "Sweet potato", "Steamed broccoli", "Mixed berries"],
}

SUPPLEMENTS = {
    "morning": ["Vitamin D3", "Omega-3", "Magnesium"],
    "postWorkout": ["Protein shake", "Creatine", "BCAAs"],
    "evening": ["Zinc", "Ashwagandha", "Melatonin"],
}
SUPPLEMENT_TIMES = {"morning": time(8, 0), "postWorkout": time(13, 0), "evening": time(21, 0)}

BURNOUT_BY_OVERTRAINING = {"low": 20.0, "medium": 50.0, "high": 85.0}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pick(raw: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return float(value)
    return None


# ─── Snapshots ───────────────────────────────────────────────


@dataclass
class CorrelationSnapshot:
    results: Dict[str, CorrelationResult] = field(default_factory=dict)
    current_hrv: Optional[float] = None

    @classmethod
    def from_matrix(cls, results: Dict[str, CorrelationResult], matrix: FeatureMatrix) -> "CorrelationSnapshot":
        hrv = None
        for row in reversed(matrix.days()):
            if row.wearable is not None and row.wearable.hrv is not None:
                hrv = row.wearable.hrv
                break
        return cls(results=dict(results), current_hrv=hrv)

    def coefficient(self, name: str) -> Optional[float]:
        result = self.results.get(name)
        return result.coefficient if result is not None else None

    def value(self, name: str, key: str) -> Any:
        result = self.results.get(name)
        return result.data.get(key) if result is not None else None


@dataclass
class ForecastSnapshot:
    hrv_next_day: Optional[float] = None
    morning_energy: Optional[float] = None
    performance_capacity: Optional[float] = None
    illness_risk_probability: Optional[float] = None
    burnout_risk: Optional[float] = None

    @classmethod
    def from_mapping(cls, raw: Optional[Dict[str, Any]]) -> "ForecastSnapshot":
        raw = raw or {}
        return cls(
            hrv_next_day=_pick(raw, "hrv_next_day", "hrvNextDay"),
            morning_energy=_pick(raw, "morning_energy", "morningEnergy"),
            performance_capacity=_pick(raw, "performance_capacity", "performanceCapacity"),
            illness_risk_probability=_pick(raw, "illness_risk_probability", "illnessRiskProbability"),
            burnout_risk=_pick(raw, "burnout_risk", "burnoutRisk"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hrv_next_day": self.hrv_next_day,
            "morning_energy": self.morning_energy,
            "performance_capacity": self.performance_capacity,
            "illness_risk_probability": self.illness_risk_probability,
            "burnout_risk": self.burnout_risk,
        }


@dataclass
class Directive:
    type: str
    reason: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InterventionOutcome:
    type: str
    success: bool
    affected_count: int = 0
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    reason: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def severity(self) -> str:
        return "high" if self.affected_count > 3 else "medium"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "success": self.success,
            "affected_count": self.affected_count,
            "message": self.message,
            "reason": self.reason,
            "error": self.error,
            "severity": self.severity,
            "data": self.data,
            "timestamp": self.timestamp,
        }


def needs_immediate_intervention(forecast: ForecastSnapshot) -> Dict[str, Any]:
    urgent = (
        (forecast.illness_risk_probability or 0) > 70
        or (forecast.burnout_risk or 0) > 80
        or (forecast.hrv_next_day is not None and forecast.hrv_next_day < 30)
    )
    return {"needed": urgent, "reason": "Critical health markers detected" if urgent else None}


# ─── Decision table ──────────────────────────────────────────


def determine_directives(correlations: CorrelationSnapshot, forecast: ForecastSnapshot) -> List[Directive]:
    directives: List[Directive] = []

    sleep_perf = correlations.coefficient("sleep_performance")
    if sleep_perf is not None and sleep_perf > 0.5:
        if forecast.hrv_next_day is not None and forecast.hrv_next_day < 35:
            directives.append(Directive(CANCEL_WORKOUT, "HRV critically low", {"hrv": forecast.hrv_next_day}))

    if forecast.morning_energy is not None and forecast.morning_energy < 40:
        directives.append(Directive(
            RESCHEDULE_MORNING_MEETINGS, "Low morning energy predicted", {"energy": forecast.morning_energy}
        ))

    risk_amount = correlations.value("stress_spending", "risk_amount")
    if risk_amount is not None and risk_amount > 100:
        current_hrv = correlations.current_hrv if correlations.current_hrv is not None else DEFAULT_CURRENT_HRV
        if current_hrv < 40:
            directives.append(Directive(
                BLOCK_PURCHASES, "Stress spending risk detected", {"hrv": current_hrv, "risk_amount": risk_amount}
            ))

    if forecast.performance_capacity is not None and forecast.performance_capacity < 50:
        directives.append(Directive(
            ORDER_RECOVERY_MEAL, "Low performance capacity - nutrition support needed",
            {"capacity": forecast.performance_capacity},
        ))

    illness = forecast.illness_risk_probability or 0
    if illness > 60:
        directives.append(Directive(
            ENFORCE_BEDTIME, f"{illness:g}% illness risk - sleep critical", {"risk": illness}
        ))

    social = correlations.coefficient("social_energy")
    if social is not None and social < -0.3:
        directives.append(Directive(
            REDUCE_SOCIAL_LOAD, "Social overload affecting recovery",
            {"meetings": correlations.value("social_energy", "current_average")},
        ))

    if forecast.burnout_risk is not None and forecast.burnout_risk > 60:
        directives.append(Directive(IMPLEMENT_DELOAD, "Burnout risk critical", {"burnout_risk": forecast.burnout_risk}))

    nutrition = correlations.coefficient("nutrition_recovery")
    if nutrition is not None and nutrition > 0.4:
        directives.append(Directive(
            SUPPLEMENT_REMINDER, "Nutrition critical for current recovery needs", {"correlation": nutrition}
        ))

    return directives


# ─── Forecast provider ───────────────────────────────────────


class RecoveryForecastProvider:
    """Forecast signals derived from stored recovery scores and the matrix."""

    def __init__(self, recovery_calc, analyzer):
        self.recovery_calc = recovery_calc
        self.analyzer = analyzer

    @staticmethod
    def hrv_next_day(matrix: FeatureMatrix) -> Optional[float]:
        readings = [row.wearable.hrv for row in matrix.days()
                    if row.wearable is not None and row.wearable.hrv is not None][-7:]
        if len(readings) < 3:
            return None
        fit = sp_stats.linregress(range(len(readings)), readings)
        return round(float(fit.intercept + fit.slope * len(readings)), 1)

    def forecast(self, user_id: str, matrix: FeatureMatrix) -> ForecastSnapshot:
        prediction = self.recovery_calc.predict(user_id)
        score = prediction.get("score")
        overtraining = self.recovery_calc.overtraining_risk(user_id)
        workload = self.analyzer.workload_illness(matrix)
        illness = None
        if workload is not None:
            illness = round(float(workload.data.get("current_risk", 0.0)) * 100, 1)
        return ForecastSnapshot(
            hrv_next_day=self.hrv_next_day(matrix),
            morning_energy=score,
            performance_capacity=score,
            illness_risk_probability=illness,
            burnout_risk=BURNOUT_BY_OVERTRAINING.get(overtraining.get("level")),
        )


# ─── Engine ──────────────────────────────────────────────────


class InterventionEngine:
    def __init__(self, store, actions, channel, builder=None, analyzer=None,
                 forecast_provider=None, window_days: int = 30, default_timezone: str = "UTC",
                 email_sender: Callable[..., bool] = send_intervention_email,
                 email_workers: int = 2,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.actions = actions
        self.channel = channel
        self.builder = builder
        self.analyzer = analyzer
        self.forecast_provider = forecast_provider
        self.window_days = max(window_days, MIN_WINDOW_DAYS)
        self.default_timezone = default_timezone
        self.email_sender = email_sender
        self._clock = clock or _utcnow
        self._email_pool = ThreadPoolExecutor(max_workers=email_workers, thread_name_prefix="intervention-email")
        self._executors = {
            CANCEL_WORKOUT: self._cancel_workout,
            RESCHEDULE_MORNING_MEETINGS: self._reschedule_morning_meetings,
            BLOCK_PURCHASES: self._block_purchases,
            ORDER_RECOVERY_MEAL: self._order_recovery_meal,
            ENFORCE_BEDTIME: self._enforce_bedtime,
            REDUCE_SOCIAL_LOAD: self._reduce_social_load,
            IMPLEMENT_DELOAD: self._implement_deload,
            SUPPLEMENT_REMINDER: self._supplement_reminder,
        }

    def shutdown(self, wait: bool = True) -> None:
        self._email_pool.shutdown(wait=wait)

    def _local_now(self, user_id: str) -> datetime:
        tz = resolve_timezone(self.store.get_user_timezone(user_id), self.default_timezone)
        return self._clock().astimezone(tz)

    # ─── Entry points ────────────────────────────────────────

    def snapshot(self, user_id: str):
        """(CorrelationSnapshot, ForecastSnapshot) over the intervention window."""
        if self.builder is None or self.analyzer is None:
            raise RuntimeError("execute_for_user needs a matrix builder and an analyzer")
        today = self._local_now(user_id).date()
        matrix = self.builder.build(user_id, today - timedelta(days=self.window_days), today)
        correlations = CorrelationSnapshot.from_matrix(self.analyzer.run_all(matrix), matrix)
        if self.forecast_provider is not None:
            forecast = self.forecast_provider.forecast(user_id, matrix)
        else:
            forecast = ForecastSnapshot()
        return correlations, forecast

    def execute_for_user(self, user_id: str) -> Dict[str, Any]:
        correlations, forecast = self.snapshot(user_id)
        return self.execute(user_id, correlations, forecast)

    def check_immediate(self, user_id: str) -> Dict[str, Any]:
        _, forecast = self.snapshot(user_id)
        return needs_immediate_intervention(forecast)

    def execute(self, user_id: str, correlations: CorrelationSnapshot,
                forecast: ForecastSnapshot) -> Dict[str, Any]:
        directives = determine_directives(correlations, forecast)
        log.info("🤖 %d directive(s) for %s: %s", len(directives), user_id,
                 ", ".join(d.type for d in directives) or "none")
        return self.run_directives(user_id, directives)

    def handle_trigger(self, user_id: str, pattern, trigger, value: float) -> Optional[Dict[str, Any]]:
        """Run the single directive named by a realtime pattern trigger."""
        if trigger.action not in self._executors:
            log.debug("Trigger action %s has no executor", trigger.action)
            return None
        directive = Directive(
            trigger.action,
            f"{pattern.pattern_type}: {trigger.condition} {trigger.direction} {trigger.threshold:g}",
            {trigger.condition: value, "pattern_id": pattern.id},
        )
        return self.run_directives(user_id, [directive])

    def run_directives(self, user_id: str, directives: List[Directive]) -> Dict[str, Any]:
        outcomes = [self._execute_one(user_id, d) for d in directives]
        self._log_outcomes(user_id, outcomes)
        self._notify(user_id, outcomes)
        return {
            "user_id": user_id,
            "executed": sum(1 for o in outcomes if o.success),
            "failed": sum(1 for o in outcomes if not o.success),
            "interventions": [o.to_dict() for o in outcomes],
            "timestamp": self._clock(),
        }

    def _execute_one(self, user_id: str, directive: Directive) -> InterventionOutcome:
        executor = self._executors.get(directive.type)
        now = self._clock()
        if executor is None:
            return InterventionOutcome(directive.type, False, error="Unknown intervention type",
                                       reason=directive.reason, timestamp=now)
        log.info("⚡ Executing %s for %s", directive.type, user_id)
        try:
            outcome = executor(user_id, directive)
        except Exception as e:
            log.error("Intervention %s failed for %s: %s", directive.type, user_id, e)
            return InterventionOutcome(directive.type, False, error=str(e), reason=directive.reason,
                                       data=dict(directive.data), timestamp=now)
        outcome.reason = directive.reason
        outcome.timestamp = now
        return outcome

    def _log_outcomes(self, user_id: str, outcomes: List[InterventionOutcome]) -> None:
        if not outcomes:
            return
        try:
            self.store.append_outcomes(user_id, [o.to_dict() for o in outcomes])
        except Exception as e:
            log.error("Failed to log %d intervention outcome(s) for %s: %s", len(outcomes), user_id, e)

    def _notify(self, user_id: str, outcomes: List[InterventionOutcome]) -> None:
        successful = [o for o in outcomes if o.success]
        if not successful:
            return
        self.channel.publish(user_id, "intervention_summary", {
            "title": f"Took {len(successful)} actions for you",
            "interventions": [
                {"action": o.type.replace("_", " ").upper(), "result": o.message, "affected": o.affected_count}
                for o in successful
            ],
            "totalAffected": sum(o.affected_count for o in successful),
        })
        critical = [o.to_dict() for o in successful if o.type in CRITICAL_DIRECTIVES]
        if critical:
            self._email_pool.submit(self._send_email, user_id, critical)

    def _send_email(self, user_id: str, critical: List[Dict[str, Any]]) -> bool:
        try:
            user = self.store.get_user(user_id) or {}
            return bool(self.email_sender(user_id, critical, recipient=user.get("email")))
        except Exception as e:
            log.warning("Intervention email for %s failed (non-fatal): %s", user_id, e)
            return False

    # ─── Outcome log ─────────────────────────────────────────

    def history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return self.store.list_outcomes(user_id, limit)

    def outcome_stats(self, user_id: str, limit: int = 500) -> Dict[str, Any]:
        rows = self.history(user_id, limit)
        by_type: Dict[str, int] = {}
        for row in rows:
            by_type[row["type"]] = by_type.get(row["type"], 0) + 1
        succeeded = sum(1 for r in rows if r.get("success"))
        return {
            "total": len(rows),
            "by_type": by_type,
            "success_rate": round(100.0 * succeeded / len(rows), 1) if rows else 0.0,
        }

    # ─── Executors ───────────────────────────────────────────

    def _cancel_workout(self, user_id: str, directive: Directive) -> InterventionOutcome:
        start = self._local_now(user_id).replace(hour=0, minute=0, second=0, microsecond=0)
        hrv = directive.data.get("hrv", "n/a")
        note = f"AUTO-CANCELLED: {directive.reason} (HRV: {hrv}ms)"
        cancelled = self.actions.cancel_workouts(user_id, start, start + timedelta(days=1), note)
        return InterventionOutcome(
            CANCEL_WORKOUT, True, len(cancelled),
            f"Cancelled {len(cancelled)} workout(s) - Rest day enforced",
            data={**directive.data, "workout_ids": list(cancelled)},
        )

    def _reschedule_morning_meetings(self, user_id: str, directive: Directive) -> InterventionOutcome:
        start = self._local_now(user_id).replace(hour=0, minute=0, second=0, microsecond=0)
        moved = self.actions.shift_events(user_id, start, start.replace(hour=12), timedelta(hours=4))
        return InterventionOutcome(
            RESCHEDULE_MORNING_MEETINGS, True, len(moved),
            f"Rescheduled {len(moved)} morning meetings to afternoon",
            data={"events": moved, "reason": directive.reason},
        )

    def _block_purchases(self, user_id: str, directive: Directive) -> InterventionOutcome:
        now = self._clock()
        restriction_id = self.actions.create_spending_restriction(
            user_id, FREEZE_CATEGORIES, FREEZE_THRESHOLD, directive.reason, now, now + timedelta(hours=24)
        )
        return InterventionOutcome(
            BLOCK_PURCHASES, True, len(FREEZE_CATEGORIES),
            f"24-hour purchase block activated for {', '.join(FREEZE_CATEGORIES)}",
            data={
                "restriction_id": restriction_id,
                "categories": FREEZE_CATEGORIES,
                "threshold": FREEZE_THRESHOLD,
                "hrv": directive.data.get("hrv"),
                "risk_amount": directive.data.get("risk_amount"),
            },
        )

    def _order_recovery_meal(self, user_id: str, directive: Directive) -> InterventionOutcome:
        reminder_id = self.actions.create_reminder(
            user_id, "recovery_meal", "Recovery meal",
            f"{RECOVERY_MEAL['calories']} kcal: {', '.join(RECOVERY_MEAL['items'])}",
            self._clock(), payload=RECOVERY_MEAL,
        )
        return InterventionOutcome(
            ORDER_RECOVERY_MEAL, True, 1, "Recovery meal plan sent",
            data={"meal_plan": RECOVERY_MEAL, "instructions": "Prep time: 30 minutes", "reminder_id": reminder_id},
        )

    def _enforce_bedtime(self, user_id: str, directive: Directive) -> InterventionOutcome:
        bedtime = self._local_now(user_id).replace(hour=22, minute=0, second=0, microsecond=0)
        wake = bedtime + timedelta(hours=9)
        block_id = self.actions.create_calendar_block(
            user_id, "MANDATORY BEDTIME - Phone Down", "bedtime_block", bedtime, wake
        )
        risk = directive.data.get("risk")
        return InterventionOutcome(
            ENFORCE_BEDTIME, True, 1,
            f"Bedtime enforced at 10 PM - {risk:g}% illness risk requires 9h sleep"
            if isinstance(risk, (int, float)) else "Bedtime enforced at 10 PM",
            data={"block_id": block_id, "bedtime": bedtime.isoformat(), "wake_time": wake.isoformat(),
                  "illness_risk": risk},
        )

    def _reduce_social_load(self, user_id: str, directive: Directive) -> InterventionOutcome:
        now = self._clock()
        events = self.actions.list_events(user_id, now, now + timedelta(days=7))
        large = [e for e in events if (e.get("attendee_count") or 0) > 3]
        to_move = large[:math.ceil(len(events) * 0.5)]
        moved = self.actions.postpone_events(user_id, [e["id"] for e in to_move], timedelta(days=7))
        return InterventionOutcome(
            REDUCE_SOCIAL_LOAD, True, moved,
            f"Rescheduled {moved} non-critical meetings to next week",
            data={"original_load": directive.data.get("meetings"), "reduced_by": moved},
        )

    def _implement_deload(self, user_id: str, directive: Directive) -> InterventionOutcome:
        now = self._clock()
        adjusted = self.actions.deload_workouts(user_id, now, now + timedelta(days=7), directive.reason)
        return InterventionOutcome(
            IMPLEMENT_DELOAD, True, adjusted,
            f"Deload week implemented - {adjusted} workouts adjusted",
            data={"burnout_risk": directive.data.get("burnout_risk"), "duration": "7 days",
                  "intensityReduction": "50%"},
        )

    def _supplement_reminder(self, user_id: str, directive: Directive) -> InterventionOutcome:
        local = self._local_now(user_id)
        timing = "morning" if local.hour < 12 else "postWorkout" if local.hour < 18 else "evening"
        created = [self.actions.create_reminder(
            user_id, "supplement", "Supplement Time",
            f"Take your {timing} supplements: {', '.join(SUPPLEMENTS[timing])}",
            self._clock(), payload={"timing": timing, "items": SUPPLEMENTS[timing], "urgency": "high"},
        )]
        schedule = []
        for slot, items in SUPPLEMENTS.items():
            at = local.replace(hour=SUPPLEMENT_TIMES[slot].hour, minute=SUPPLEMENT_TIMES[slot].minute,
                               second=0, microsecond=0)
            if at <= local:
                at += timedelta(days=1)
            created.append(self.actions.create_reminder(
                user_id, "supplement", f"{slot} supplements", ", ".join(items), at,
                payload={"timing": slot, "items": items, "recurring": "daily"},
            ))
            schedule.append({"time": slot, "items": items, "scheduled": True})
        return InterventionOutcome(
            SUPPLEMENT_REMINDER, True, len(created), "Supplement reminders activated",
            data={"immediate": SUPPLEMENTS[timing], "schedule": schedule, "reason": directive.reason},
        )
