"""
Tests for settings.py and the connection-string helper in db_utils.py.
"""
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import settings
from db_utils import DataAccessError, connect, get_conn_str
from settings import EngineSettings, parse_cutoff_overrides

ENV_KEYS = [
    "POSTGRES_CONNECTION_STRING", "DATABASE_URL", "PATTERN_STORE_THRESHOLD", "PROBE_CUTOFFS",
    "SWEEP_INTERVAL_HOURS", "SWEEP_WINDOW_DAYS", "REALTIME_BUFFER_CAPACITY", "DEFAULT_TIMEZONE",
    "TRIGGER_COOLDOWN_HOURS", "SWEEP_STATUS_PATH",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(settings, "load_dotenv", lambda *a, **k: False)
    return monkeypatch


# ─── Probe cutoff overrides ───────────────────────────────────


class TestCutoffOverrides:

    def test_parses_pairs(self):
        assert parse_cutoff_overrides("sleep_recovery=0.6, stress_spending=0.45") == {
            "sleep_recovery": 0.6,
            "stress_spending": 0.45,
        }

    def test_skips_malformed_entries(self):
        assert parse_cutoff_overrides("sleep_recovery,meeting_load=abc,,weekly_rhythm=0.2") == {
            "weekly_rhythm": 0.2,
        }

    def test_empty(self):
        assert parse_cutoff_overrides("") == {}
        assert parse_cutoff_overrides(None) == {}


# ─── Environment ──────────────────────────────────────────────


class TestFromEnv:

    def test_defaults(self, clean_env):
        s = EngineSettings.from_env()
        assert s.conn_str == ""
        assert s.store_threshold == 0.7
        assert s.sweep_interval_hours == 6.0
        assert s.buffer_capacity == 100
        assert s.trigger_cooldown_hours == 24.0
        assert s.default_timezone == "UTC"
        assert s.probe_cutoffs == {}

    def test_overrides(self, clean_env):
        clean_env.setenv("PATTERN_STORE_THRESHOLD", "0.8")
        clean_env.setenv("PROBE_CUTOFFS", "sleep_recovery=0.6")
        clean_env.setenv("REALTIME_BUFFER_CAPACITY", "25")
        clean_env.setenv("DEFAULT_TIMEZONE", "Europe/Berlin")
        s = EngineSettings.from_env()
        assert s.store_threshold == 0.8
        assert s.probe_cutoffs == {"sleep_recovery": 0.6}
        assert s.buffer_capacity == 25
        assert s.default_timezone == "Europe/Berlin"

    def test_non_numeric_value_falls_back(self, clean_env):
        clean_env.setenv("SWEEP_WINDOW_DAYS", "sixty")
        assert EngineSettings.from_env().sweep_window_days == 60


# ─── Connection string ────────────────────────────────────────


class TestConnStr:

    def test_prefers_postgres_connection_string(self, clean_env):
        clean_env.setenv("POSTGRES_CONNECTION_STRING", "postgresql://a/db")
        clean_env.setenv("DATABASE_URL", "postgresql://b/db")
        assert get_conn_str() == "postgresql://a/db"

    def test_normalises_heroku_scheme(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgres://u:p@host:5432/db")
        assert get_conn_str() == "postgresql://u:p@host:5432/db"

    def test_connect_without_url_raises(self):
        with pytest.raises(DataAccessError):
            connect("")
