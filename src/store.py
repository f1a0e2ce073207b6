"""
PostgreSQL data access for the correlation engine.

Every call opens a short-lived connection (connect + statement timeouts from
settings), runs inline SQL and closes.  Transient ``OperationalError``s are
retried with exponential backoff; anything still failing surfaces as
``DataAccessError`` so callers can skip the user for the pass.
"""

from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor, execute_values
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from db_utils import DataAccessError, connect
from pattern_store import GLOBAL_SCOPE, Pattern

log = logging.getLogger("store")


_DOMAIN_QUERIES: Dict[str, str] = {
    "wearable": """
        SELECT date, hrv, resting_heart_rate, steps, sleep_minutes, deep_sleep_minutes,
               recovery_score, strain, calories
        FROM wearable_data
        WHERE user_id = %s AND date BETWEEN %s AND %s
        ORDER BY date, recorded_at
    """,
    "workouts": """
        SELECT id, name, scheduled_at, completed, duration_minutes, exercise_count,
               mood, pain, rpe
        FROM workouts
        WHERE user_id = %s AND is_active
          AND scheduled_at >= %s::date AND scheduled_at < (%s::date + 1)
        ORDER BY scheduled_at
    """,
    "transactions": """
        SELECT occurred_at, amount, category, is_impulse
        FROM transactions
        WHERE user_id = %s
          AND occurred_at >= %s::date AND occurred_at < (%s::date + 1)
        ORDER BY occurred_at
    """,
    "calendar": """
        SELECT start_time, event_type, attendee_count
        FROM calendar_events
        WHERE user_id = %s
          AND start_time >= %s::date AND start_time < (%s::date + 1)
        ORDER BY start_time
    """,
    "measurements": """
        SELECT measured_at, weight, body_fat_pct, blood_pressure
        FROM measurements
        WHERE user_id = %s
          AND measured_at >= %s::date AND measured_at < (%s::date + 1)
        ORDER BY measured_at
    """,
    "nutrition": """
        SELECT date, protein_grams, calories
        FROM nutrition_log
        WHERE user_id = %s AND date BETWEEN %s AND %s
        ORDER BY date
    """,
}

_PATTERN_COLUMNS = (
    "user_id, scope_key, pattern_type, strength, confidence, insight, recommendation, "
    "supporting_data, triggers, discovered_at, is_active, generation, sample_count, "
    "source, trigger_count, last_triggered_at"
)


def _pattern_values(p: Pattern, generation: Optional[int] = None) -> tuple:
    return (
        p.user_id, p.scope_key, p.pattern_type, p.strength, p.confidence,
        p.insight, p.recommendation,
        json.dumps(p.supporting_data, default=str),
        json.dumps([t.to_dict() for t in p.triggers]),
        p.discovered_at, p.is_active,
        p.generation if generation is None else generation,
        p.sample_count, p.source, p.trigger_count, p.last_triggered_at,
    )


class PostgresStore:
    def __init__(self, conn_str: str, connect_timeout: int = 10, statement_timeout_ms: int = 30_000):
        self.conn_str = conn_str
        self.connect_timeout = connect_timeout
        self.statement_timeout_ms = statement_timeout_ms

    # ─── Plumbing ────────────────────────────────────────────

    def _connect(self):
        return connect(self.conn_str, self.connect_timeout, self.statement_timeout_ms)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2, min=2, max=30),
        retry=retry_if_exception_type(psycopg2.OperationalError),
        reraise=True,
    )
    def _run(self, work: Callable[[Any], Any]) -> Any:
        """Run ``work(cursor)`` inside one transaction, retrying transient errors."""
        conn = self._connect()
        try:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    return work(cur)
        finally:
            conn.close()

    def transaction(self, work: Callable[[Any], Any]) -> Any:
        try:
            return self._run(work)
        except psycopg2.Error as e:
            log.warning("Query failed: %s", e)
            raise DataAccessError(str(e)) from e

    def _fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        def work(cur):
            cur.execute(query, params)
            return [dict(r) for r in cur.fetchall()]
        return self.transaction(work)

    def _execute(self, query: str, params: tuple = ()) -> int:
        def work(cur):
            cur.execute(query, params)
            return cur.rowcount
        return self.transaction(work)

    def ping(self) -> bool:
        self._fetch_all("SELECT 1 AS ok")
        return True

    # ─── Users & raw records ─────────────────────────────────

    def list_active_users(self) -> List[str]:
        rows = self._fetch_all("SELECT user_id FROM users WHERE is_active ORDER BY user_id")
        return [r["user_id"] for r in rows]

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch_all(
            "SELECT user_id, email, timezone, is_active FROM users WHERE user_id = %s", (user_id,)
        )
        return rows[0] if rows else None

    def get_user_timezone(self, user_id: str) -> Optional[str]:
        user = self.get_user(user_id)
        return user.get("timezone") if user else None

    def fetch_domain_records(self, user_id: str, domain: str, start: date, end: date) -> List[Dict[str, Any]]:
        query = _DOMAIN_QUERIES.get(domain)
        if query is None:
            raise ValueError(f"Unknown domain: {domain}")
        return self._fetch_all(query, (user_id, start, end))

    def fetch_goals(self, user_id: str) -> List[Dict[str, Any]]:
        return self._fetch_all(
            """
            SELECT id, title, category, start_value, target_value, current_value,
                   start_date, target_date, status
            FROM goals
            WHERE user_id = %s
            ORDER BY id
            """,
            (user_id,),
        )

    def fetch_global_wearable(self, start: date, end: date) -> List[Dict[str, Any]]:
        return self._fetch_all(
            """
            SELECT user_id, date, recovery_score, sleep_minutes, steps
            FROM wearable_data
            WHERE date BETWEEN %s AND %s
            """,
            (start, end),
        )

    def fetch_global_workouts(self, start: date, end: date) -> List[Dict[str, Any]]:
        """Completed workouts across users with each user's time zone."""
        return self._fetch_all(
            """
            SELECT w.user_id, w.scheduled_at, w.mood, COALESCE(u.timezone, 'UTC') AS timezone
            FROM workouts w
            LEFT JOIN users u ON u.user_id = w.user_id
            WHERE w.completed AND w.is_active
              AND w.scheduled_at >= %s::date AND w.scheduled_at < (%s::date + 1)
            """,
            (start, end),
        )

    # ─── Patterns ────────────────────────────────────────────

    def replace_generations(self, batches: Dict[str, List[Pattern]]) -> Dict[str, int]:
        """Deactivate each scope's active rows and insert its new set, atomically."""
        def work(cur):
            generations: Dict[str, int] = {}
            for scope, patterns in batches.items():
                cur.execute(
                    """
                    INSERT INTO pattern_generations (scope_key, generation, flipped_at)
                    VALUES (%s, 1, CURRENT_TIMESTAMP)
                    ON CONFLICT (scope_key) DO UPDATE SET
                        generation = pattern_generations.generation + 1,
                        flipped_at = CURRENT_TIMESTAMP
                    RETURNING generation
                    """,
                    (scope,),
                )
                gen = int(cur.fetchone()["generation"])
                cur.execute(
                    "UPDATE correlation_patterns SET is_active = FALSE WHERE scope_key = %s AND is_active",
                    (scope,),
                )
                if patterns:
                    execute_values(
                        cur,
                        f"INSERT INTO correlation_patterns ({_PATTERN_COLUMNS}) VALUES %s",
                        [_pattern_values(p, gen) for p in patterns],
                    )
                for p in patterns:
                    p.generation = gen
                generations[scope] = gen
            return generations
        return self.transaction(work)

    def current_generation(self, scope_key: str) -> int:
        rows = self._fetch_all(
            "SELECT generation FROM pattern_generations WHERE scope_key = %s", (scope_key,)
        )
        return int(rows[0]["generation"]) if rows else 0

    def find_active_patterns(self, scope_key: str, pattern_type: str) -> List[Pattern]:
        rows = self._fetch_all(
            """
            SELECT * FROM correlation_patterns
            WHERE scope_key = %s AND pattern_type = %s AND is_active
            ORDER BY strength DESC
            """,
            (scope_key, pattern_type),
        )
        return [Pattern.from_row(r) for r in rows]

    def list_patterns(self, scope_key: Optional[str] = None, active_only: bool = True,
                      limit: Optional[int] = None) -> List[Pattern]:
        clauses, params = [], []
        if scope_key is not None:
            clauses.append("scope_key = %s")
            params.append(scope_key)
        if active_only:
            clauses.append("is_active")
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        query = f"SELECT * FROM correlation_patterns {where} ORDER BY strength DESC, id DESC"
        if limit:
            query += " LIMIT %s"
            params.append(int(limit))
        return [Pattern.from_row(r) for r in self._fetch_all(query, tuple(params))]

    def insert_pattern(self, pattern: Pattern) -> int:
        def work(cur):
            cur.execute(
                f"INSERT INTO correlation_patterns ({_PATTERN_COLUMNS}) "
                f"VALUES ({', '.join(['%s'] * 16)}) RETURNING id",
                _pattern_values(pattern),
            )
            return int(cur.fetchone()["id"])
        return self.transaction(work)

    def update_pattern(self, pattern: Pattern) -> None:
        self._execute(
            """
            UPDATE correlation_patterns SET
                strength = %s, confidence = %s, insight = %s, recommendation = %s,
                supporting_data = %s, triggers = %s, sample_count = %s,
                trigger_count = %s, last_triggered_at = %s
            WHERE id = %s
            """,
            (
                pattern.strength, pattern.confidence, pattern.insight, pattern.recommendation,
                json.dumps(pattern.supporting_data, default=str),
                json.dumps([t.to_dict() for t in pattern.triggers]),
                pattern.sample_count, pattern.trigger_count, pattern.last_triggered_at,
                pattern.id,
            ),
        )

    def pattern_stats(self) -> Dict[str, Any]:
        totals = self._fetch_all(
            """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE is_active) AS active,
                   COUNT(DISTINCT user_id) AS users,
                   MAX(discovered_at) AS last_discovery
            FROM correlation_patterns
            """
        )[0]
        types = self._fetch_all(
            """
            SELECT pattern_type, COUNT(*) AS count
            FROM correlation_patterns
            WHERE is_active
            GROUP BY pattern_type
            ORDER BY count DESC
            """
        )
        return {
            "total_patterns": int(totals["total"]),
            "active_patterns": int(totals["active"]),
            "users_with_patterns": int(totals["users"]),
            "type_distribution": {r["pattern_type"]: int(r["count"]) for r in types},
            "last_discovery": totals["last_discovery"],
            "global_scope": GLOBAL_SCOPE,
        }

    # ─── Recovery ────────────────────────────────────────────

    def fetch_recovery_inputs(self, user_id: str, day: date) -> Dict[str, Any]:
        """Wearable + sleep rows for ``day`` and the trailing 28 days of workouts."""
        def work(cur):
            cur.execute(
                """
                SELECT hrv, resting_heart_rate, sleep_minutes, deep_sleep_minutes
                FROM wearable_data WHERE user_id = %s AND date = %s
                ORDER BY recorded_at DESC LIMIT 1
                """,
                (user_id, day),
            )
            wearable = cur.fetchone()
            cur.execute(
                """
                SELECT duration_minutes, efficiency, deep_sleep_minutes
                FROM sleep_data WHERE user_id = %s AND date = %s
                ORDER BY recorded_at DESC LIMIT 1
                """,
                (user_id, day),
            )
            sleep = cur.fetchone()
            cur.execute(
                """
                SELECT scheduled_at, duration_minutes, rpe
                FROM workouts
                WHERE user_id = %s AND completed AND is_active
                  AND scheduled_at >= %s::date AND scheduled_at < (%s::date + 1)
                ORDER BY scheduled_at
                """,
                (user_id, day - timedelta(days=27), day),
            )
            workouts = [dict(r) for r in cur.fetchall()]
            return {
                "wearable": dict(wearable) if wearable else None,
                "sleep": dict(sleep) if sleep else None,
                "workouts": workouts,
            }
        return self.transaction(work)

    def replace_recovery_score(self, user_id: str, day: date, row: Dict[str, Any]) -> None:
        """Delete any score for (user, day) and insert ``row`` in one transaction."""
        def work(cur):
            cur.execute("DELETE FROM recovery_scores WHERE user_id = %s AND date = %s", (user_id, day))
            cur.execute(
                """
                INSERT INTO recovery_scores
                    (user_id, date, total_score, hrv_score, rhr_score, sleep_score, load_score,
                     status, recommendation, training_load, input_data)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
                """,
                (
                    user_id, day, row["total_score"],
                    row["components"]["hrv"], row["components"]["rhr"],
                    row["components"]["sleep"], row["components"]["training_load"],
                    row["status"], row["recommendation"], row["training_load"],
                    json.dumps(row.get("input_data") or {}, default=str),
                ),
            )
        self.transaction(work)

    def delete_recovery_score(self, user_id: str, day: date) -> int:
        return self._execute("DELETE FROM recovery_scores WHERE user_id = %s AND date = %s", (user_id, day))

    def list_recovery_scores(self, user_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        return self._fetch_all(
            """
            SELECT date, total_score, hrv_score, rhr_score, sleep_score, load_score,
                   status, recommendation, training_load
            FROM recovery_scores
            WHERE user_id = %s AND date BETWEEN %s AND %s
            ORDER BY date
            """,
            (user_id, start, end),
        )

    def latest_recovery_score(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch_all(
            """
            SELECT date, total_score, hrv_score, rhr_score, sleep_score, load_score,
                   status, recommendation, training_load
            FROM recovery_scores WHERE user_id = %s
            ORDER BY date DESC LIMIT 1
            """,
            (user_id,),
        )
        return rows[0] if rows else None

    def fetch_sleep_durations(self, user_id: str, start: date, end: date) -> List[float]:
        rows = self._fetch_all(
            """
            SELECT duration_minutes FROM sleep_data
            WHERE user_id = %s AND date BETWEEN %s AND %s AND duration_minutes IS NOT NULL
            """,
            (user_id, start, end),
        )
        return [float(r["duration_minutes"]) for r in rows]

    # ─── Intervention outcomes ───────────────────────────────

    def append_outcomes(self, user_id: str, outcomes: List[Dict[str, Any]]) -> None:
        if not outcomes:
            return

        def work(cur):
            execute_values(
                cur,
                """
                INSERT INTO intervention_outcomes
                    (user_id, intervention_type, success, affected_count, message,
                     reason, error, severity, data, created_at)
                VALUES %s
                """,
                [
                    (
                        user_id, o["type"], o["success"], o.get("affected_count", 0),
                        o.get("message"), o.get("reason"), o.get("error"), o.get("severity"),
                        json.dumps(o.get("data") or {}, default=str), o["timestamp"],
                    )
                    for o in outcomes
                ],
            )
        self.transaction(work)

    def list_outcomes(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return self._fetch_all(
            """
            SELECT intervention_type AS type, success, affected_count, message, reason,
                   error, severity, data, created_at AS timestamp
            FROM intervention_outcomes
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (user_id, int(limit)),
        )
