"""
Domain mutators invoked by intervention executors.

Each method is one short transaction against the relational store and
returns what it touched so the executor can report an affected count.
Mutations are idempotent where the domain allows it (cancelled workouts are
no longer matched, deloaded workouts are not deloaded twice).
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

log = logging.getLogger("domain_actions")

DELOAD_PREFIX = "[DELOAD]"


def deload_exercises(exercises: List[Dict[str, Any]], reason: str) -> List[Dict[str, Any]]:
    """Halve sets (minimum 1) and take 70% of the weight for every exercise."""
    out = []
    for ex in exercises or []:
        updated = dict(ex)
        sets = ex.get("sets")
        weight = ex.get("weight")
        if sets is not None:
            updated["sets"] = max(1, math.floor(float(sets) * 0.5))
        if weight is not None:
            updated["weight"] = math.floor(float(weight) * 0.7)
        updated["notes"] = f"DELOAD WEEK: Reduced intensity ({reason})"
        out.append(updated)
    return out


class DomainActions:
    """psycopg2-backed mutators sharing the store's connection handling."""

    def __init__(self, store):
        self.store = store

    def cancel_workouts(self, user_id: str, start: datetime, end: datetime, note: str) -> List[int]:
        def work(cur):
            cur.execute(
                """
                UPDATE workouts
                SET is_active = FALSE, notes = %s, updated_at = CURRENT_TIMESTAMP
                WHERE user_id = %s AND is_active AND NOT completed
                  AND scheduled_at >= %s AND scheduled_at < %s
                RETURNING id
                """,
                (note, user_id, start, end),
            )
            return [r["id"] for r in cur.fetchall()]
        return self.store.transaction(work)

    def shift_events(self, user_id: str, start: datetime, end: datetime,
                     offset: timedelta) -> List[Dict[str, Any]]:
        """Move every meeting starting in [start, end) by ``offset``."""
        def work(cur):
            cur.execute(
                """
                UPDATE calendar_events
                SET start_time = start_time + %s,
                    end_time = end_time + %s
                WHERE user_id = %s
                  AND start_time >= %s AND start_time < %s
                  AND COALESCE(event_type, 'meeting') NOT IN ('bedtime_block', 'recovery_block')
                RETURNING id, title, start_time - %s AS old_time, start_time AS new_time
                """,
                (offset, offset, user_id, start, end, offset),
            )
            return [dict(r) for r in cur.fetchall()]
        return self.store.transaction(work)

    def list_events(self, user_id: str, start: datetime, end: datetime,
                    include_critical: bool = False) -> List[Dict[str, Any]]:
        def work(cur):
            cur.execute(
                """
                SELECT id, title, start_time, attendee_count, is_critical, event_type
                FROM calendar_events
                WHERE user_id = %s AND start_time >= %s AND start_time <= %s
                  AND COALESCE(event_type, 'meeting') NOT IN ('bedtime_block', 'recovery_block')
                  AND (%s OR NOT is_critical)
                ORDER BY start_time
                """,
                (user_id, start, end, include_critical),
            )
            return [dict(r) for r in cur.fetchall()]
        return self.store.transaction(work)

    def postpone_events(self, user_id: str, event_ids: List[int], offset: timedelta) -> int:
        if not event_ids:
            return 0

        def work(cur):
            cur.execute(
                """
                UPDATE calendar_events
                SET start_time = start_time + %s, end_time = end_time + %s
                WHERE user_id = %s AND id = ANY(%s)
                """,
                (offset, offset, user_id, list(event_ids)),
            )
            return cur.rowcount
        return self.store.transaction(work)

    def create_spending_restriction(self, user_id: str, categories: List[str], threshold: float,
                                    reason: str, starts_at: datetime, ends_at: datetime) -> int:
        def work(cur):
            cur.execute(
                """
                INSERT INTO spending_restrictions
                    (user_id, categories, threshold, reason, starts_at, ends_at)
                VALUES (%s, %s::jsonb, %s, %s, %s, %s)
                RETURNING id
                """,
                (user_id, json.dumps(categories), threshold, reason, starts_at, ends_at),
            )
            return cur.fetchone()["id"]
        return self.store.transaction(work)

    def create_calendar_block(self, user_id: str, title: str, event_type: str,
                              start: datetime, end: datetime) -> int:
        def work(cur):
            cur.execute(
                """
                INSERT INTO calendar_events (user_id, title, event_type, start_time, end_time, is_critical)
                VALUES (%s, %s, %s, %s, %s, TRUE)
                RETURNING id
                """,
                (user_id, title, event_type, start, end),
            )
            return cur.fetchone()["id"]
        return self.store.transaction(work)

    def create_reminder(self, user_id: str, reminder_type: str, title: str, message: str,
                        remind_at: datetime, payload: Optional[Dict[str, Any]] = None) -> int:
        def work(cur):
            cur.execute(
                """
                INSERT INTO reminders (user_id, reminder_type, title, message, remind_at, payload)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb)
                RETURNING id
                """,
                (user_id, reminder_type, title, message, remind_at, json.dumps(payload or {}, default=str)),
            )
            return cur.fetchone()["id"]
        return self.store.transaction(work)

    def deload_workouts(self, user_id: str, start: datetime, end: datetime, reason: str) -> int:
        """Deload every incomplete, not-yet-deloaded workout in [start, end]."""
        def work(cur):
            cur.execute(
                """
                SELECT id, name, exercises
                FROM workouts
                WHERE user_id = %s AND is_active AND NOT completed
                  AND scheduled_at >= %s AND scheduled_at <= %s
                  AND COALESCE(name, '') NOT LIKE %s
                FOR UPDATE
                """,
                (user_id, start, end, DELOAD_PREFIX + "%"),
            )
            rows = cur.fetchall()
            for row in rows:
                cur.execute(
                    """
                    UPDATE workouts
                    SET name = %s, exercises = %s::jsonb, updated_at = CURRENT_TIMESTAMP
                    WHERE id = %s
                    """,
                    (
                        f"{DELOAD_PREFIX} {row['name'] or 'Workout'}",
                        json.dumps(deload_exercises(row["exercises"] or [], reason)),
                        row["id"],
                    ),
                )
            return len(rows)
        return self.store.transaction(work)
