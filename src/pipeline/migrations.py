"""Startup migration and audit helpers for pipeline reliability."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from dotenv import load_dotenv

from db_utils import connect, get_conn_str
from schema import upgrade_database

log = logging.getLogger("pipeline.migrations")

# Column/index patches for databases created before these fields existed.
STARTUP_PATCHES = [
    "ALTER TABLE IF EXISTS correlation_patterns ADD COLUMN IF NOT EXISTS source TEXT DEFAULT 'batch'",
    "ALTER TABLE IF EXISTS users ADD COLUMN IF NOT EXISTS timezone TEXT DEFAULT 'UTC'",
    "CREATE INDEX IF NOT EXISTS idx_recovery_user_date ON recovery_scores(user_id, date DESC)",
]


def _resolve_conn_str(conn_str: str | None) -> str:
    load_dotenv()
    return (conn_str or get_conn_str()).strip()


def ensure_startup_schema(conn_str: str | None = None) -> None:
    """Create missing tables, then apply STARTUP_PATCHES.  Idempotent."""
    cs = _resolve_conn_str(conn_str)
    if not cs:
        raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")

    upgrade_database(cs)

    conn = connect(cs)
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            for stmt in STARTUP_PATCHES:
                cur.execute(stmt)
    finally:
        conn.close()

    log.info("Startup migrations completed (%d patches).", len(STARTUP_PATCHES))


REQUIRED_COLUMNS: Dict[str, List[str]] = {
    "users": ["user_id", "timezone", "is_active"],
    "wearable_data": [],
    "workouts": [],
    "correlation_patterns": ["scope_key", "generation", "is_active", "strength"],
    "recovery_scores": ["user_id", "date", "total_score"],
    "intervention_outcomes": [],
}


def schema_audit(conn_str: str | None = None) -> Dict[str, Any]:
    """Report missing tables/columns against REQUIRED_COLUMNS."""
    cs = _resolve_conn_str(conn_str)
    if not cs:
        return {
            "ok": False,
            "error": "POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured",
            "tables": {},
            "missing_tables": [],
        }

    conn = connect(cs)
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT table_name, column_name
                FROM information_schema.columns
                WHERE table_schema = 'public' AND table_name = ANY(%s)
                ORDER BY table_name, ordinal_position
                """,
                (list(REQUIRED_COLUMNS),),
            )
            rows = cur.fetchall()
    finally:
        conn.close()

    present: Dict[str, List[str]] = {}
    for table, column in rows:
        present.setdefault(table, []).append(column)

    tables: Dict[str, Any] = {}
    for table, expected in REQUIRED_COLUMNS.items():
        cols = present.get(table, [])
        tables[table] = {
            "exists": table in present,
            "columns": cols,
            "missing_columns": [c for c in expected if c not in cols] if table in present else list(expected),
        }
    missing_tables = [t for t, info in tables.items() if not info["exists"]]
    ok = not missing_tables and not any(info["missing_columns"] for info in tables.values())
    return {"ok": ok, "tables": tables, "missing_tables": missing_tables}
