"""
Runtime settings for the correlation engine.

Everything tunable lives here: both significance tiers (per-probe cutoffs and
the pattern-store threshold), sweep cadence, realtime buffer limits, trigger
cooldowns and data-access timeouts.  Values come from the environment (a
``.env`` file is honoured) so that deployments can tune them without code
changes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

from db_utils import get_conn_str

log = logging.getLogger("settings")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Ignoring non-numeric %s=%r (using %s)", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def parse_cutoff_overrides(raw: str) -> Dict[str, float]:
    """Parse ``"sleep_recovery=0.6,stress_spending=0.45"`` into a dict.

    Malformed entries are skipped with a warning.
    """
    out: Dict[str, float] = {}
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, sep, value = chunk.partition("=")
        if not sep:
            log.warning("Ignoring probe cutoff override without '=': %r", chunk)
            continue
        try:
            out[name.strip()] = float(value)
        except ValueError:
            log.warning("Ignoring probe cutoff override with bad value: %r", chunk)
    return out


@dataclass
class EngineSettings:
    conn_str: str = ""

    # Significance tiers
    store_threshold: float = 0.7
    probe_cutoffs: Dict[str, float] = field(default_factory=dict)

    # Batch sweep
    sweep_interval_hours: float = 6.0
    sweep_window_days: int = 60
    global_window_days: int = 30
    status_path: str = ""

    # Realtime stream
    buffer_capacity: int = 100
    realtime_min_interval_sec: float = 60.0
    realtime_min_strength: float = 0.5
    realtime_min_confidence: float = 70.0
    merge_tolerance: float = 0.1
    trigger_cooldown_hours: float = 24.0

    # Interventions
    intervention_window_days: int = 30

    # Data access
    connect_timeout_sec: int = 10
    statement_timeout_ms: int = 30_000

    default_timezone: str = "UTC"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        load_dotenv()
        return cls(
            conn_str=get_conn_str(),
            store_threshold=_env_float("PATTERN_STORE_THRESHOLD", 0.7),
            probe_cutoffs=parse_cutoff_overrides(os.getenv("PROBE_CUTOFFS", "")),
            sweep_interval_hours=_env_float("SWEEP_INTERVAL_HOURS", 6.0),
            sweep_window_days=_env_int("SWEEP_WINDOW_DAYS", 60),
            global_window_days=_env_int("GLOBAL_WINDOW_DAYS", 30),
            status_path=os.getenv("SWEEP_STATUS_PATH", ""),
            buffer_capacity=_env_int("REALTIME_BUFFER_CAPACITY", 100),
            realtime_min_interval_sec=_env_float("REALTIME_MIN_INTERVAL_SEC", 60.0),
            realtime_min_strength=_env_float("REALTIME_MIN_STRENGTH", 0.5),
            realtime_min_confidence=_env_float("REALTIME_MIN_CONFIDENCE", 70.0),
            merge_tolerance=_env_float("PATTERN_MERGE_TOLERANCE", 0.1),
            trigger_cooldown_hours=_env_float("TRIGGER_COOLDOWN_HOURS", 24.0),
            intervention_window_days=_env_int("INTERVENTION_WINDOW_DAYS", 30),
            connect_timeout_sec=_env_int("DB_CONNECT_TIMEOUT_SEC", 10),
            statement_timeout_ms=_env_int("DB_STATEMENT_TIMEOUT_MS", 30_000),
            default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC").strip() or "UTC",
        )
