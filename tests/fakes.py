"""
In-memory stand-ins for PostgresStore and DomainActions.

Same method names and return shapes as the psycopg2 implementations, so the
services can be wired end to end without a database.  Objects handed in and
out are deep-copied the way rows round-trip through PostgreSQL.
"""

import copy
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from db_utils import DataAccessError
from pattern_store import GLOBAL_SCOPE, Pattern

_MOMENT_KEYS = {
    "wearable": "date",
    "workouts": "scheduled_at",
    "transactions": "occurred_at",
    "calendar": "start_time",
    "measurements": "measured_at",
    "nutrition": "date",
}


def _day(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return None


class InMemoryStore:
    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.records: Dict[tuple, List[Dict[str, Any]]] = {}
        self.goals: Dict[str, List[Dict[str, Any]]] = {}
        self.sleep: Dict[tuple, Dict[str, Any]] = {}
        self.patterns: List[Pattern] = []
        self.generations: Dict[str, int] = {}
        self.recovery_scores: Dict[tuple, Dict[str, Any]] = {}
        self.outcomes: Dict[str, List[Dict[str, Any]]] = {}
        self.fail_users = set()
        self.fail_commit = False
        self.fail_outcomes = False
        self.ping_error: Optional[Exception] = None
        self._next_id = 1

    # ─── Seeding ─────────────────────────────────────────────

    def add_user(self, user_id: str, email: Optional[str] = None, timezone: str = "UTC",
                 is_active: bool = True) -> None:
        self.users[user_id] = {"user_id": user_id, "email": email, "timezone": timezone, "is_active": is_active}

    def add_records(self, user_id: str, domain: str, rows: List[Dict[str, Any]]) -> None:
        self.records.setdefault((user_id, domain), []).extend(dict(r) for r in rows)

    def seed_scores(self, user_id: str, end: date, values: List[float]) -> None:
        """Store ``values`` as consecutive daily scores ending on ``end``."""
        start = end - timedelta(days=len(values) - 1)
        for i, value in enumerate(values):
            day = start + timedelta(days=i)
            self.recovery_scores[(user_id, day)] = {"date": day, "total_score": value, "status": "fair"}

    # ─── Users & raw records ─────────────────────────────────

    def transaction(self, work):
        raise NotImplementedError("InMemoryStore has no SQL cursor")

    def ping(self) -> bool:
        if self.ping_error is not None:
            raise self.ping_error
        return True

    def list_active_users(self) -> List[str]:
        return sorted(u for u, row in self.users.items() if row["is_active"])

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = self.users.get(user_id)
        return dict(row) if row else None

    def get_user_timezone(self, user_id: str) -> Optional[str]:
        user = self.get_user(user_id)
        return user.get("timezone") if user else None

    def fetch_domain_records(self, user_id: str, domain: str, start: date, end: date) -> List[Dict[str, Any]]:
        if user_id in self.fail_users:
            raise DataAccessError(f"connection refused for {user_id}")
        if domain not in _MOMENT_KEYS:
            raise ValueError(f"Unknown domain: {domain}")
        key = _MOMENT_KEYS[domain]
        return [
            dict(r) for r in self.records.get((user_id, domain), [])
            if _day(r.get(key)) is not None and start <= _day(r.get(key)) <= end
        ]

    def fetch_goals(self, user_id: str) -> List[Dict[str, Any]]:
        return [dict(g) for g in self.goals.get(user_id, [])]

    def fetch_global_wearable(self, start: date, end: date) -> List[Dict[str, Any]]:
        out = []
        for (user_id, domain), rows in self.records.items():
            if domain != "wearable":
                continue
            for r in rows:
                if start <= _day(r["date"]) <= end:
                    out.append({
                        "user_id": user_id,
                        "date": r["date"],
                        "recovery_score": r.get("recovery_score"),
                        "sleep_minutes": r.get("sleep_minutes"),
                        "steps": r.get("steps"),
                    })
        return out

    def fetch_global_workouts(self, start: date, end: date) -> List[Dict[str, Any]]:
        out = []
        for (user_id, domain), rows in self.records.items():
            if domain != "workouts":
                continue
            tz = (self.users.get(user_id) or {}).get("timezone") or "UTC"
            for r in rows:
                if r.get("completed") and start <= _day(r["scheduled_at"]) <= end:
                    out.append({"user_id": user_id, "scheduled_at": r["scheduled_at"],
                                "mood": r.get("mood"), "timezone": tz})
        return out

    # ─── Patterns ────────────────────────────────────────────

    def _assign_id(self, pattern: Pattern) -> int:
        pattern.id = self._next_id
        self._next_id += 1
        return pattern.id

    def replace_generations(self, batches: Dict[str, List[Pattern]]) -> Dict[str, int]:
        if self.fail_commit:
            raise DataAccessError("commit failed")
        generations = {}
        for scope, patterns in batches.items():
            gen = self.generations.get(scope, 0) + 1
            self.generations[scope] = gen
            for p in self.patterns:
                if p.scope_key == scope:
                    p.is_active = False
            for p in patterns:
                p.generation = gen
                stored = copy.deepcopy(p)
                stored.is_active = True
                self._assign_id(stored)
                self.patterns.append(stored)
            generations[scope] = gen
        return generations

    def current_generation(self, scope_key: str) -> int:
        return self.generations.get(scope_key, 0)

    def find_active_patterns(self, scope_key: str, pattern_type: str) -> List[Pattern]:
        found = [p for p in self.patterns
                 if p.scope_key == scope_key and p.pattern_type == pattern_type and p.is_active]
        return [copy.deepcopy(p) for p in sorted(found, key=lambda p: -p.strength)]

    def list_patterns(self, scope_key: Optional[str] = None, active_only: bool = True,
                      limit: Optional[int] = None) -> List[Pattern]:
        found = [p for p in self.patterns
                 if (scope_key is None or p.scope_key == scope_key) and (p.is_active or not active_only)]
        found.sort(key=lambda p: (-p.strength, -(p.id or 0)))
        if limit:
            found = found[:limit]
        return [copy.deepcopy(p) for p in found]

    def insert_pattern(self, pattern: Pattern) -> int:
        stored = copy.deepcopy(pattern)
        self.patterns.append(stored)
        return self._assign_id(stored)

    def update_pattern(self, pattern: Pattern) -> None:
        for i, p in enumerate(self.patterns):
            if p.id == pattern.id:
                self.patterns[i] = copy.deepcopy(pattern)
                return

    def pattern_stats(self) -> Dict[str, Any]:
        active = [p for p in self.patterns if p.is_active]
        types: Dict[str, int] = {}
        for p in active:
            types[p.pattern_type] = types.get(p.pattern_type, 0) + 1
        return {
            "total_patterns": len(self.patterns),
            "active_patterns": len(active),
            "users_with_patterns": len({p.user_id for p in self.patterns if p.user_id}),
            "type_distribution": types,
            "last_discovery": max((p.discovered_at for p in self.patterns if p.discovered_at), default=None),
            "global_scope": GLOBAL_SCOPE,
        }

    # ─── Recovery ────────────────────────────────────────────

    def fetch_recovery_inputs(self, user_id: str, day: date) -> Dict[str, Any]:
        wearable = None
        for r in self.records.get((user_id, "wearable"), []):
            if _day(r["date"]) == day:
                wearable = {k: r.get(k) for k in ("hrv", "resting_heart_rate", "sleep_minutes", "deep_sleep_minutes")}
        start = day - timedelta(days=27)
        workouts = [
            {"scheduled_at": w["scheduled_at"], "duration_minutes": w.get("duration_minutes"), "rpe": w.get("rpe")}
            for w in self.records.get((user_id, "workouts"), [])
            if w.get("completed") and start <= _day(w["scheduled_at"]) <= day
        ]
        sleep = self.sleep.get((user_id, day))
        return {"wearable": wearable, "sleep": dict(sleep) if sleep else None, "workouts": workouts}

    def replace_recovery_score(self, user_id: str, day: date, row: Dict[str, Any]) -> None:
        self.recovery_scores[(user_id, day)] = {
            "date": day,
            "total_score": row["total_score"],
            "hrv_score": row["components"]["hrv"],
            "rhr_score": row["components"]["rhr"],
            "sleep_score": row["components"]["sleep"],
            "load_score": row["components"]["training_load"],
            "status": row["status"],
            "recommendation": row["recommendation"],
            "training_load": row["training_load"],
        }

    def delete_recovery_score(self, user_id: str, day: date) -> int:
        return 1 if self.recovery_scores.pop((user_id, day), None) is not None else 0

    def list_recovery_scores(self, user_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        rows = [dict(v) for (u, d), v in self.recovery_scores.items() if u == user_id and start <= d <= end]
        return sorted(rows, key=lambda r: r["date"])

    def latest_recovery_score(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = [dict(v) for (u, _), v in self.recovery_scores.items() if u == user_id]
        return max(rows, key=lambda r: r["date"]) if rows else None

    def fetch_sleep_durations(self, user_id: str, start: date, end: date) -> List[float]:
        return [
            float(v["duration_minutes"]) for (u, d), v in self.sleep.items()
            if u == user_id and start <= d <= end and v.get("duration_minutes") is not None
        ]

    # ─── Intervention outcomes ───────────────────────────────

    def append_outcomes(self, user_id: str, outcomes: List[Dict[str, Any]]) -> None:
        if self.fail_outcomes:
            raise DataAccessError("outcome log unavailable")
        self.outcomes.setdefault(user_id, []).extend(copy.deepcopy(o) for o in outcomes)

    def list_outcomes(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return list(reversed(self.outcomes.get(user_id, [])))[:limit]


class FakeActions:
    """Records every mutator call; ``fail`` maps a method name to an exception."""

    def __init__(self, events: Optional[List[Dict[str, Any]]] = None):
        self.calls: List[tuple] = []
        self.events = list(events or [])
        self.fail: Dict[str, Exception] = {}
        self._next_id = 100

    def _call(self, name: str, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise self.fail[name]

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def cancel_workouts(self, user_id, start, end, note):
        self._call("cancel_workouts", user_id, start, end, note)
        return [1, 2]

    def shift_events(self, user_id, start, end, offset):
        self._call("shift_events", user_id, start, end, offset)
        return [{"id": 7, "title": "Standup", "old_time": start, "new_time": start + offset}]

    def list_events(self, user_id, start, end, include_critical=False):
        self._call("list_events", user_id, start, end)
        return [dict(e) for e in self.events]

    def postpone_events(self, user_id, event_ids, offset):
        self._call("postpone_events", user_id, list(event_ids), offset)
        return len(event_ids)

    def create_spending_restriction(self, user_id, categories, threshold, reason, starts_at, ends_at):
        self._call("create_spending_restriction", user_id, categories, threshold, reason, starts_at, ends_at)
        return self._new_id()

    def create_calendar_block(self, user_id, title, event_type, start, end):
        self._call("create_calendar_block", user_id, title, event_type, start, end)
        return self._new_id()

    def create_reminder(self, user_id, reminder_type, title, message, remind_at, payload=None):
        self._call("create_reminder", user_id, reminder_type, title, message, remind_at, payload)
        return self._new_id()

    def deload_workouts(self, user_id, start, end, reason):
        self._call("deload_workouts", user_id, start, end, reason)
        return 3
