"""
Daily Feature Matrix
====================
Joins the independent per-user record streams (wearable, workouts,
transactions, calendar, measurements, nutrition) into one row per local
calendar day.

Rules:
  • Exact day match only: no interpolation, no forward fill.
  • A domain with no record on a day is absent from that row (``None`` or an
    empty workout list), never a synthesised zero.
  • Days are local to the user's profile time zone.  Aware timestamps are
    converted into that zone before the date is taken; naive timestamps are
    treated as already local; plain ``date`` values are used as-is.

The join itself (``join_records``) is a pure function over record lists so
that the realtime stream can run it over its in-memory buffers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd

log = logging.getLogger("feature_matrix")

DOMAINS = ("wearable", "workouts", "transactions", "calendar", "measurements", "nutrition")

# Calendar rows the engine itself creates; they are not meetings.
NON_MEETING_EVENT_TYPES = {"bedtime_block", "recovery_block"}


# ─── Records ─────────────────────────────────────────────────


@dataclass
class WearableRecord:
    hrv: Optional[float] = None
    resting_heart_rate: Optional[float] = None
    steps: Optional[int] = None
    sleep_minutes: Optional[float] = None
    deep_sleep_minutes: Optional[float] = None
    recovery_score: Optional[float] = None
    strain: Optional[float] = None
    calories: Optional[float] = None


@dataclass
class WorkoutRecord:
    completed: bool = False
    duration_minutes: Optional[float] = None
    exercise_count: Optional[int] = None
    mood: Optional[float] = None
    pain: Optional[float] = None
    hour: Optional[int] = None


@dataclass
class TransactionRecord:
    amount: float
    category: Optional[str] = None
    is_impulse: bool = False


@dataclass
class SpendingRecord:
    total_amount: float = 0.0
    transactions: List[TransactionRecord] = field(default_factory=list)


@dataclass
class CalendarRecord:
    meeting_count: int = 0
    social_load: int = 0


@dataclass
class MeasurementRecord:
    weight: Optional[float] = None
    body_fat_pct: Optional[float] = None
    blood_pressure: Optional[str] = None


@dataclass
class NutritionRecord:
    protein_grams: Optional[float] = None
    calories: Optional[float] = None


@dataclass
class DailyFeatureRow:
    user_id: str
    day: date
    wearable: Optional[WearableRecord] = None
    workouts: List[WorkoutRecord] = field(default_factory=list)
    spending: Optional[SpendingRecord] = None
    calendar: Optional[CalendarRecord] = None
    measurement: Optional[MeasurementRecord] = None
    nutrition: Optional[NutritionRecord] = None

    @property
    def first_workout(self) -> Optional[WorkoutRecord]:
        return self.workouts[0] if self.workouts else None


@dataclass
class FeatureMatrix:
    user_id: str
    rows: Dict[date, DailyFeatureRow] = field(default_factory=dict)
    goals: List[Dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def days(self) -> List[DailyFeatureRow]:
        """Rows in ascending date order."""
        return [self.rows[d] for d in sorted(self.rows)]

    def restrict(self, start: date, end: date) -> "FeatureMatrix":
        kept = {d: r for d, r in self.rows.items() if start <= d <= end}
        return FeatureMatrix(user_id=self.user_id, rows=kept, goals=list(self.goals))

    def to_frame(self) -> pd.DataFrame:
        """Flatten to one DataFrame row per day; absent domains become NaN."""
        records = []
        for row in self.days():
            w = row.wearable
            moods = [x.mood for x in row.workouts if x.mood is not None]
            records.append({
                "date": row.day,
                "hrv": w.hrv if w else None,
                "resting_heart_rate": w.resting_heart_rate if w else None,
                "steps": w.steps if w else None,
                "sleep_minutes": w.sleep_minutes if w else None,
                "deep_sleep_minutes": w.deep_sleep_minutes if w else None,
                "recovery_score": w.recovery_score if w else None,
                "strain": w.strain if w else None,
                "calories_burned": w.calories if w else None,
                "workout_count": len(row.workouts) if row.workouts else None,
                "workouts_completed": sum(1 for x in row.workouts if x.completed) if row.workouts else None,
                "mood": sum(moods) / len(moods) if moods else None,
                "spend_total": row.spending.total_amount if row.spending else None,
                "meeting_count": row.calendar.meeting_count if row.calendar else None,
                "social_load": row.calendar.social_load if row.calendar else None,
                "weight": row.measurement.weight if row.measurement else None,
                "body_fat_pct": row.measurement.body_fat_pct if row.measurement else None,
                "protein_grams": row.nutrition.protein_grams if row.nutrition else None,
                "calories_eaten": row.nutrition.calories if row.nutrition else None,
            })
        df = pd.DataFrame.from_records(records)
        if not df.empty:
            df = df.set_index("date")
        return df


# ─── Time-zone bucketing ─────────────────────────────────────


def resolve_timezone(name: Optional[str], default: str = "UTC") -> ZoneInfo:
    for candidate in (name, default, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            log.warning("Unknown time zone %r, falling back", candidate)
    return ZoneInfo("UTC")


def _parse_moment(value: Any):
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text)
    return value


def local_datetime(value: Any, tz: ZoneInfo) -> Optional[datetime]:
    value = _parse_moment(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(tz)
        return value
    return None


def local_date(value: Any, tz: ZoneInfo) -> Optional[date]:
    """Calendar day of ``value`` in zone ``tz``."""
    value = _parse_moment(value)
    if value is None:
        return None
    if isinstance(value, datetime):
        return local_datetime(value, tz).date()
    if isinstance(value, date):
        return value
    raise TypeError(f"Cannot bucket {type(value).__name__} into a calendar day")


def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    n = _num(value)
    return int(n) if n is not None else None


def _moment(rec: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if rec.get(key) is not None:
            return rec[key]
    return None


# ─── Join ────────────────────────────────────────────────────


def join_records(
    user_id: str,
    records: Dict[str, Iterable[Dict[str, Any]]],
    tz: ZoneInfo,
    goals: Optional[List[Dict[str, Any]]] = None,
) -> FeatureMatrix:
    """Bucket raw record dicts (column-named, as read from the store) by local day."""
    matrix = FeatureMatrix(user_id=user_id, goals=list(goals or []))

    def row_for(day: date) -> DailyFeatureRow:
        row = matrix.rows.get(day)
        if row is None:
            row = DailyFeatureRow(user_id=user_id, day=day)
            matrix.rows[day] = row
        return row

    for rec in records.get("wearable") or []:
        day = local_date(_moment(rec, "date", "recorded_at"), tz)
        if day is None:
            continue
        row_for(day).wearable = WearableRecord(
            hrv=_num(rec.get("hrv")),
            resting_heart_rate=_num(rec.get("resting_heart_rate")),
            steps=_int(rec.get("steps")),
            sleep_minutes=_num(rec.get("sleep_minutes")),
            deep_sleep_minutes=_num(rec.get("deep_sleep_minutes")),
            recovery_score=_num(rec.get("recovery_score")),
            strain=_num(rec.get("strain")),
            calories=_num(rec.get("calories")),
        )

    workouts = [w for w in (records.get("workouts") or []) if _moment(w, "scheduled_at", "date") is not None]

    def local_sort_key(rec: Dict[str, Any]) -> datetime:
        moment = _moment(rec, "scheduled_at", "date")
        local = local_datetime(moment, tz)
        if local is not None:
            return local.replace(tzinfo=None)
        return datetime.combine(local_date(moment, tz), datetime.min.time())

    workouts.sort(key=local_sort_key)
    for rec in workouts:
        moment = _moment(rec, "scheduled_at", "date")
        day = local_date(moment, tz)
        local = local_datetime(moment, tz)
        row_for(day).workouts.append(WorkoutRecord(
            completed=bool(rec.get("completed")),
            duration_minutes=_num(rec.get("duration_minutes")),
            exercise_count=_int(rec.get("exercise_count")),
            mood=_num(rec.get("mood")),
            pain=_num(rec.get("pain")),
            hour=local.hour if local is not None else None,
        ))

    for rec in records.get("transactions") or []:
        day = local_date(_moment(rec, "occurred_at", "date"), tz)
        amount = _num(rec.get("amount"))
        if day is None or amount is None:
            continue
        row = row_for(day)
        if row.spending is None:
            row.spending = SpendingRecord()
        row.spending.total_amount += amount
        row.spending.transactions.append(TransactionRecord(
            amount=amount,
            category=rec.get("category"),
            is_impulse=bool(rec.get("is_impulse")),
        ))

    for rec in records.get("calendar") or []:
        if rec.get("event_type") in NON_MEETING_EVENT_TYPES:
            continue
        day = local_date(_moment(rec, "start_time", "date"), tz)
        if day is None:
            continue
        row = row_for(day)
        if row.calendar is None:
            row.calendar = CalendarRecord()
        row.calendar.meeting_count += 1
        row.calendar.social_load += _int(rec.get("attendee_count")) or 0

    for rec in records.get("measurements") or []:
        day = local_date(_moment(rec, "measured_at", "date"), tz)
        if day is None:
            continue
        row_for(day).measurement = MeasurementRecord(
            weight=_num(rec.get("weight")),
            body_fat_pct=_num(rec.get("body_fat_pct")),
            blood_pressure=rec.get("blood_pressure"),
        )

    for rec in records.get("nutrition") or []:
        day = local_date(_moment(rec, "date", "logged_at"), tz)
        if day is None:
            continue
        row_for(day).nutrition = NutritionRecord(
            protein_grams=_num(rec.get("protein_grams")),
            calories=_num(rec.get("calories")),
        )

    return matrix


# ─── Builder ─────────────────────────────────────────────────


class DataMatrixBuilder:
    """Reads every domain for one user and window, then joins by local day.

    Any domain query failure propagates; the caller skips the user for the
    pass.  The builder never writes.
    """

    def __init__(self, store, default_timezone: str = "UTC"):
        self.store = store
        self.default_timezone = default_timezone

    def build(self, user_id: str, start: date, end: date) -> FeatureMatrix:
        tz = resolve_timezone(self.store.get_user_timezone(user_id), self.default_timezone)

        # Pad the query by a day on each side; bucketing into the local zone can
        # move boundary rows across midnight.
        q_start = start - timedelta(days=1)
        q_end = end + timedelta(days=1)
        records = {
            domain: self.store.fetch_domain_records(user_id, domain, q_start, q_end)
            for domain in DOMAINS
        }
        goals = self.store.fetch_goals(user_id)

        matrix = join_records(user_id, records, tz, goals=goals).restrict(start, end)
        log.info(
            "Built matrix for %s: %d day(s) between %s and %s (%s)",
            user_id, len(matrix), start, end, tz.key,
        )
        return matrix
