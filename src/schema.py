"""
Database Schema
===============
Raw per-user record tables the feature matrix reads from, plus the tables
this engine writes to.

Input tables (read-only for the analyzers):
  - users               (active flag, IANA time zone)
  - wearable_data       (daily HRV / RHR / sleep / recovery / strain)
  - sleep_data          (sleep duration, efficiency, deep sleep)
  - workouts            (scheduled + completed sessions)
  - transactions        (spending)
  - calendar_events     (meetings, blocks)
  - measurements        (weight, body fat, blood pressure)
  - nutrition_log       (daily protein / calories)
  - goals

Output tables:
  - correlation_patterns     (every generation, active flag per scope)
  - pattern_generations      (current generation number per scope)
  - recovery_scores          (one row per user/date)
  - intervention_outcomes    (append-only log)
  - spending_restrictions
  - reminders
"""

from __future__ import annotations

import logging

from db_utils import connect, get_conn_str

logger = logging.getLogger("schema")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT,
    timezone TEXT DEFAULT 'UTC',
    is_active BOOLEAN DEFAULT TRUE,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS wearable_data (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    date DATE NOT NULL,
    hrv REAL,
    resting_heart_rate REAL,
    steps INTEGER,
    sleep_minutes INTEGER,
    deep_sleep_minutes INTEGER,
    recovery_score REAL,
    strain REAL,
    calories REAL,
    recorded_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS sleep_data (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    date DATE NOT NULL,
    duration_minutes INTEGER,
    efficiency REAL,
    deep_sleep_minutes INTEGER,
    recorded_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS workouts (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT,
    scheduled_at TIMESTAMPTZ NOT NULL,
    completed BOOLEAN DEFAULT FALSE,
    is_active BOOLEAN DEFAULT TRUE,
    duration_minutes INTEGER,
    exercise_count INTEGER,
    mood INTEGER,
    pain INTEGER,
    rpe REAL,
    notes TEXT,
    exercises JSONB DEFAULT '[]'::jsonb,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS transactions (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    occurred_at TIMESTAMPTZ NOT NULL,
    amount NUMERIC(12, 2) NOT NULL,
    category TEXT,
    merchant TEXT,
    is_impulse BOOLEAN DEFAULT FALSE
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    event_type TEXT DEFAULT 'meeting',
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ,
    attendee_count INTEGER DEFAULT 0,
    is_critical BOOLEAN DEFAULT FALSE,
    notes TEXT
);

CREATE TABLE IF NOT EXISTS measurements (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    measured_at TIMESTAMPTZ NOT NULL,
    weight REAL,
    body_fat_pct REAL,
    blood_pressure TEXT
);

CREATE TABLE IF NOT EXISTS nutrition_log (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    date DATE NOT NULL,
    protein_grams REAL,
    calories REAL
);

CREATE TABLE IF NOT EXISTS goals (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    category TEXT,
    start_value REAL,
    target_value REAL,
    current_value REAL,
    start_date DATE,
    target_date DATE,
    status TEXT DEFAULT 'active'
);

CREATE TABLE IF NOT EXISTS correlation_patterns (
    id SERIAL PRIMARY KEY,
    user_id TEXT,
    scope_key TEXT NOT NULL,
    pattern_type TEXT NOT NULL,
    strength REAL NOT NULL,
    confidence REAL NOT NULL,
    insight TEXT,
    recommendation TEXT,
    supporting_data JSONB DEFAULT '{}'::jsonb,
    triggers JSONB DEFAULT '[]'::jsonb,
    discovered_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    is_active BOOLEAN DEFAULT TRUE,
    generation INTEGER DEFAULT 0,
    sample_count INTEGER DEFAULT 1,
    source TEXT DEFAULT 'batch',
    trigger_count INTEGER DEFAULT 0,
    last_triggered_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_patterns_user_active
    ON correlation_patterns(user_id, is_active, strength DESC);

CREATE INDEX IF NOT EXISTS idx_patterns_scope
    ON correlation_patterns(scope_key, generation);

CREATE TABLE IF NOT EXISTS pattern_generations (
    scope_key TEXT PRIMARY KEY,
    generation INTEGER NOT NULL DEFAULT 0,
    flipped_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS recovery_scores (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    date DATE NOT NULL,
    total_score INTEGER NOT NULL,
    hrv_score INTEGER,
    rhr_score INTEGER,
    sleep_score INTEGER,
    load_score INTEGER,
    status TEXT,
    recommendation TEXT,
    training_load TEXT,
    input_data JSONB DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, date)
);

CREATE TABLE IF NOT EXISTS intervention_outcomes (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    intervention_type TEXT NOT NULL,
    success BOOLEAN NOT NULL,
    affected_count INTEGER DEFAULT 0,
    message TEXT,
    reason TEXT,
    error TEXT,
    severity TEXT,
    data JSONB DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_outcomes_user_time
    ON intervention_outcomes(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS spending_restrictions (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    categories JSONB NOT NULL,
    threshold NUMERIC(12, 2),
    reason TEXT,
    starts_at TIMESTAMPTZ NOT NULL,
    ends_at TIMESTAMPTZ NOT NULL,
    is_active BOOLEAN DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS reminders (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    reminder_type TEXT NOT NULL,
    title TEXT,
    message TEXT,
    remind_at TIMESTAMPTZ NOT NULL,
    payload JSONB DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
)
"""

TABLES = [
    "users", "wearable_data", "sleep_data", "workouts", "transactions",
    "calendar_events", "measurements", "nutrition_log", "goals",
    "correlation_patterns", "pattern_generations", "recovery_scores",
    "intervention_outcomes", "spending_restrictions", "reminders",
]


def upgrade_database(conn_str=None):
    """
    Apply the schema to an existing database.
    Safe to run multiple times (uses IF NOT EXISTS).

    Parameters
    ----------
    conn_str : str, optional
        PostgreSQL connection string.  Falls back to
        POSTGRES_CONNECTION_STRING env var.
    """
    conn_str = conn_str or get_conn_str()

    try:
        conn = connect(conn_str)
        conn.autocommit = True
        cur = conn.cursor()

        for statement in SCHEMA_SQL.split(';'):
            stmt = statement.strip()
            if stmt:
                cur.execute(stmt)

        cur.close()
        conn.close()

        logger.info("Database schema upgraded successfully (%d tables)", len(TABLES))

    except Exception as e:
        logger.error("Schema upgrade failed: %s", e)
        raise
