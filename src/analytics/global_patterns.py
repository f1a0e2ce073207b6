"""Cross-user patterns over an unweighted 30-day pool.

Every user's rows count once per row, with no per-user weighting.  Each
detector returns a ``Pattern`` under the ``global`` scope, or None when the
pool holds nothing it can use.  Strength is data coverage (how much of the
pattern's grid actually has samples), confidence the usual 100·n/reference.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from correlation_engine import confidence_score
from feature_matrix import local_datetime, resolve_timezone
from pattern_store import GLOBAL_SCOPE, Pattern

log = logging.getLogger("global_patterns")

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
MONDAY_DROP = 5
TIME_BLOCKS = ("morning", "afternoon", "evening")


def season_for(day: date) -> str:
    if 3 <= day.month <= 5:
        return "spring"
    if 6 <= day.month <= 8:
        return "summer"
    if 9 <= day.month <= 11:
        return "fall"
    return "winter"


def _global(pattern_type: str, strength: float, confidence: float, insight: str,
            data: Dict[str, Any]) -> Pattern:
    return Pattern(
        user_id=None,
        scope_key=GLOBAL_SCOPE,
        pattern_type=pattern_type,
        strength=round(max(0.0, min(1.0, strength)), 3),
        confidence=confidence,
        insight=insight,
        supporting_data=data,
        source="batch",
    )


def _wearable_frame(rows: Sequence[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(list(rows), columns=["user_id", "date", "recovery_score", "sleep_minutes", "steps"])
    for col in ("recovery_score", "sleep_minutes", "steps"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    # zero readings are treated as missing
    df[["recovery_score", "sleep_minutes", "steps"]] = df[["recovery_score", "sleep_minutes", "steps"]].where(
        lambda v: v != 0
    )
    df["date"] = pd.to_datetime(df["date"], errors="coerce")
    return df.dropna(subset=["date"])


# ─── Day of week ─────────────────────────────────────────────


def day_of_week_pattern(rows: Sequence[Dict[str, Any]]) -> Optional[Pattern]:
    df = _wearable_frame(rows)
    recovery = df.dropna(subset=["recovery_score"])
    if recovery.empty:
        return None

    df["weekday"] = df["date"].dt.weekday
    grouped = df.groupby("weekday").agg(
        avg_recovery=("recovery_score", "mean"),
        avg_sleep=("sleep_minutes", "mean"),
        avg_steps=("steps", "mean"),
    ).reindex(range(7)).fillna(0.0)

    day_averages = [
        {
            "day": DAY_NAMES[i],
            "avg_recovery": round(float(grouped.loc[i, "avg_recovery"]), 1),
            "avg_sleep_hours": round(float(grouped.loc[i, "avg_sleep"]) / 60, 2),
            "avg_steps": round(float(grouped.loc[i, "avg_steps"]), 0),
        }
        for i in range(7)
    ]
    rec = grouped["avg_recovery"]
    monday_effect = bool(rec.loc[0] < rec.loc[6] - MONDAY_DROP)
    weekend = (rec.loc[5] + rec.loc[6]) / 2
    weekday = rec.loc[0:4].mean()
    weekend_boost = float(weekend - weekday)

    if monday_effect:
        insight = "Monday shows 5%+ recovery drop across all users (Monday syndrome)"
    else:
        insight = f"Weekend recovery {weekend_boost:.0f}% higher than weekdays"

    covered = recovery["date"].dt.weekday.nunique()
    return _global(
        "global_weekly",
        strength=covered / 7,
        confidence=confidence_score(len(recovery), 70),
        insight=insight,
        data={
            "day_averages": day_averages,
            "monday_effect": monday_effect,
            "weekend_boost": round(weekend_boost, 2),
            "sample_size": int(len(recovery)),
            "users": int(recovery["user_id"].nunique()),
        },
    )


# ─── Seasonal ────────────────────────────────────────────────


def seasonal_pattern(rows: Sequence[Dict[str, Any]], today: date) -> Optional[Pattern]:
    df = _wearable_frame(rows)
    if df.empty:
        return None
    season = season_for(today)
    avg_recovery = df["recovery_score"].mean()
    avg_sleep = df["sleep_minutes"].mean()
    avg_recovery = 0.0 if pd.isna(avg_recovery) else float(avg_recovery)
    avg_sleep = 0.0 if pd.isna(avg_sleep) else float(avg_sleep)

    return _global(
        "seasonal",
        strength=df["recovery_score"].notna().mean(),
        confidence=confidence_score(int(df["recovery_score"].notna().sum()), 30),
        insight=f"Current {season} averages: {avg_recovery:.0f}% recovery, {avg_sleep / 60:.1f}h sleep",
        data={
            "season": season,
            "metrics": {"recovery": round(avg_recovery, 1), "sleep_minutes": round(avg_sleep, 1)},
            "sample_size": int(len(df)),
        },
    )


# ─── Workout timing ──────────────────────────────────────────


def _time_block(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    return "evening"


def workout_timing_pattern(workouts: Sequence[Dict[str, Any]]) -> Optional[Pattern]:
    """Average workout mood by local time of day, best block first."""
    records = []
    for w in workouts:
        if not w.get("mood"):
            continue
        moment = local_datetime(w.get("scheduled_at"), resolve_timezone(w.get("timezone")))
        if moment is None:
            continue
        records.append({"block": _time_block(moment.hour), "mood": float(w["mood"])})
    if not records:
        return None

    df = pd.DataFrame(records)
    stats = df.groupby("block")["mood"].agg(["mean", "count"]).reindex(list(TIME_BLOCKS)).fillna(0)
    by_time = [
        {
            "time": block,
            "avg_mood": round(float(stats.loc[block, "mean"]), 2),
            "count": int(stats.loc[block, "count"]),
        }
        for block in TIME_BLOCKS
    ]
    by_time.sort(key=lambda t: t["avg_mood"], reverse=True)
    best = by_time[0]

    return _global(
        "global_workout_timing",
        strength=sum(1 for t in by_time if t["count"] > 0) / len(TIME_BLOCKS),
        confidence=confidence_score(len(df), 30),
        insight=f"Best workout satisfaction in {best['time']} ({best['avg_mood']:.1f}/5 rating)",
        data={"timing_preferences": by_time, "optimal_time": best["time"], "sample_size": int(len(df))},
    )


def detect_global_patterns(wearable_rows: Sequence[Dict[str, Any]],
                           workout_rows: Sequence[Dict[str, Any]],
                           today: date) -> List[Pattern]:
    found = [
        day_of_week_pattern(wearable_rows),
        seasonal_pattern(wearable_rows, today),
        workout_timing_pattern(workout_rows),
    ]
    patterns = [p for p in found if p is not None]
    log.info("Global patterns: %d of 3 detectors produced a pattern", len(patterns))
    return patterns
