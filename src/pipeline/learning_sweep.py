"""Batch pattern-learning sweep with explicit health signaling."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from analytics.global_patterns import detect_global_patterns
from feature_matrix import resolve_timezone
from pattern_store import GLOBAL_SCOPE, Pattern, user_scope

log = logging.getLogger("learning_sweep")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PatternLearningSweep:
    """One pass over every active user plus the cross-user pool.

    Per-user matrices are analysed one at a time; nothing is written until
    the end, when every successfully processed scope flips to its new
    generation in a single transaction.  A user whose data could not be read
    keeps its previous active generation; a probe that raised keeps its
    previously active rows in the new one.  Each user's window ends on their
    local today.
    """

    def __init__(self, store, builder, analyzer, pattern_store,
                 window_days: int = 60, global_window_days: int = 30,
                 status_path: str = "", default_timezone: str = "UTC",
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.builder = builder
        self.analyzer = analyzer
        self.pattern_store = pattern_store
        self.window_days = window_days
        self.global_window_days = global_window_days
        self.status_path = status_path
        self.default_timezone = default_timezone
        self._clock = clock or _utcnow

    def run(self) -> Dict[str, Any]:
        """Execute one sweep and return (and optionally persist) its status."""
        started = self._clock()
        today = started.date()
        status: Dict[str, Any] = {
            "run_date": today.isoformat(),
            "run_started_at": started.isoformat(),
            "users_total": 0,
            "users_ok": 0,
            "users_failed": 0,
            "failed_users": [],
            "patterns_found": 0,
            "patterns_stored": 0,
            "global_patterns": 0,
            "generations": {},
            "committed": False,
            "analysis_status": "unknown",
            "degraded_reasons": [],
        }

        log.info("=" * 60)
        log.info("  PATTERN LEARNING SWEEP STARTED")
        log.info("  Date: %s", today)
        log.info("=" * 60)

        batches: Dict[str, List[Pattern]] = {}
        try:
            users = self.store.list_active_users()
            status["users_total"] = len(users)
            log.info("Step 1/3: Analysing %d active user(s)...", len(users))

            for user_id in users:
                try:
                    local_today = self._local_today(user_id, started)
                    matrix = self.builder.build(
                        user_id, local_today - timedelta(days=self.window_days), local_today
                    )
                    run = self.analyzer.analyze(matrix)
                    batch = self.pattern_store.build_generation(user_id, run.results.values())
                    if run.failed:
                        batch.extend(self.pattern_store.carry_forward(user_id, run.failed))
                except Exception as e:
                    status["users_failed"] += 1
                    status["failed_users"].append(user_id)
                    log.warning("Skipping %s for this pass: %s", user_id, e)
                    continue
                if run.failed:
                    log.warning("Keeping previous %s pattern(s) for %s", ", ".join(run.failed), user_id)
                    if "probe_failures" not in status["degraded_reasons"]:
                        status["degraded_reasons"].append("probe_failures")
                status["users_ok"] += 1
                status["patterns_found"] += len(run.results)
                batches[user_scope(user_id)] = batch

            log.info("Step 2/3: Detecting global patterns...")
            global_batch = self._global_patterns(today, status)
            if global_batch is not None:
                batches[GLOBAL_SCOPE] = global_batch
                status["global_patterns"] = len(global_batch)

            log.info("Step 3/3: Committing %d scope(s)...", len(batches))
            status["generations"] = self.pattern_store.commit_generations(batches)
            status["committed"] = True
            status["patterns_stored"] = sum(
                len(v) for k, v in batches.items() if k != GLOBAL_SCOPE
            )

            if status["users_failed"]:
                status["degraded_reasons"].append("user_data_unavailable")
            if status["users_total"] and not status["users_ok"]:
                status["analysis_status"] = "failed"
            elif status["degraded_reasons"]:
                status["analysis_status"] = "degraded"
            else:
                status["analysis_status"] = "success"

        except Exception as e:
            status["analysis_status"] = "failed"
            status["degraded_reasons"].append("sweep_exception")
            log.error("Sweep failed: %s", e)
        finally:
            status["run_finished_at"] = self._clock().isoformat()
            status["overall_status"] = self._overall_status(status)
            if self.status_path:
                self._write_pipeline_status_file(status, self.status_path)
            self._log_summary(status)

        return status

    def _local_today(self, user_id: str, moment: datetime) -> date:
        tz = resolve_timezone(self.store.get_user_timezone(user_id), self.default_timezone)
        return moment.astimezone(tz).date()

    def _global_patterns(self, today: date, status: Dict[str, Any]) -> Optional[List[Pattern]]:
        start = today - timedelta(days=self.global_window_days)
        try:
            wearable = self.store.fetch_global_wearable(start, today)
            workouts = self.store.fetch_global_workouts(start, today)
        except Exception as e:
            log.warning("Global pattern pool unavailable: %s", e)
            status["degraded_reasons"].append("global_patterns_unavailable")
            return None
        now = self._clock()
        patterns = detect_global_patterns(wearable, workouts, today)
        for p in patterns:
            p.discovered_at = now
        return patterns

    @staticmethod
    def _overall_status(status: Dict[str, Any]) -> str:
        if status.get("analysis_status") == "failed" or not status.get("committed", False):
            return "failed"
        if status.get("analysis_status") == "degraded":
            return "degraded"
        return "success"

    @staticmethod
    def _write_pipeline_status_file(status: Dict[str, Any], path: str) -> None:
        try:
            with open(path, "w", encoding="utf-8") as fh:
                json.dump(status, fh, indent=2, ensure_ascii=False, default=str)
            log.info("Sweep status written to %s", path)
        except Exception as e:
            log.warning("Failed to write sweep status file: %s", e)

    @staticmethod
    def _log_summary(status: Dict[str, Any]) -> None:
        log.info("SWEEP SUMMARY:")
        log.info("  Users:           %d ok / %d failed / %d total",
                 status["users_ok"], status["users_failed"], status["users_total"])
        log.info("  Patterns found:  %d", status["patterns_found"])
        log.info("  Patterns stored: %d", status["patterns_stored"])
        log.info("  Global patterns: %d", status["global_patterns"])
        reasons = status.get("degraded_reasons") or []
        if reasons:
            log.info("  Degraded reasons: %s", ", ".join(reasons))
        log.info("  Overall status: %s", status.get("overall_status"))
