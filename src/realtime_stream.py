"""
Realtime correlation stream.

Incoming data points are queued; one worker thread owns every buffer and
processes events strictly in order:

  point    append to the (user, domain) ring buffer (drop-oldest), check the
           user's active pattern triggers against the point, and queue an
           analysis if the user's last one is old enough;
  analyze  join the user's buffers into a FeatureMatrix, run the batch
           probes over it, merge strong results into the PatternStore and
           push them to the live channel.

``drain()`` runs the same handler on the caller's thread until the queue is
empty, which keeps tests deterministic.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from feature_matrix import DOMAINS, join_records, local_date, resolve_timezone

log = logging.getLogger("realtime_stream")

# field stamped on a point that arrives without its own time
_MOMENT_KEYS = {
    "wearable": "date",
    "workouts": "scheduled_at",
    "transactions": "occurred_at",
    "calendar": "start_time",
    "measurements": "measured_at",
    "nutrition": "date",
}
_DATE_KEYED = {"wearable", "nutrition"}

_STOP = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RealtimeCorrelationStream:
    def __init__(self, store, analyzer, pattern_store, channel,
                 buffer_capacity: int = 100,
                 min_interval_sec: float = 60.0,
                 min_strength: float = 0.5,
                 min_confidence: float = 70.0,
                 trigger_cooldown: timedelta = timedelta(hours=24),
                 default_timezone: str = "UTC",
                 on_trigger: Optional[Callable[[str, Any, Any, float], Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.analyzer = analyzer
        self.pattern_store = pattern_store
        self.channel = channel
        self.buffer_capacity = buffer_capacity
        self.min_interval = timedelta(seconds=min_interval_sec)
        self.min_strength = min_strength
        self.min_confidence = min_confidence
        self.trigger_cooldown = trigger_cooldown
        self.default_timezone = default_timezone
        self.on_trigger = on_trigger
        self._clock = clock or _utcnow

        # worker-owned state
        self._buffers: Dict[str, Dict[str, Deque[Dict[str, Any]]]] = {}
        self._last_processed: Dict[str, datetime] = {}
        self._pending: Set[str] = set()

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._handle_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # ─── Producer side ───────────────────────────────────────

    def ingest(self, user_id: str, domain: str, data: Dict[str, Any]) -> None:
        """Queue one data point; never blocks on analysis."""
        if domain not in DOMAINS:
            raise ValueError(f"Unknown domain: {domain}")
        self._queue.put(("point", user_id, domain, dict(data)))

    def start_monitoring(self, user_id: str) -> List[Dict[str, Any]]:
        """Open buffers for the user and push their strongest active patterns."""
        self._queue.put(("open", user_id))
        patterns = [p.to_dict() for p in self.pattern_store.strongest(user_id)]
        self.channel.publish(user_id, "existing_patterns", {"patterns": patterns})
        log.info("Monitoring %s (%d existing pattern(s))", user_id, len(patterns))
        return patterns

    def stop_monitoring(self, user_id: str) -> None:
        self._queue.put(("close", user_id))
        log.info("Stopping monitoring for %s", user_id)

    # ─── Worker ──────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="realtime-worker", daemon=True)
        self._thread.start()
        log.info("Realtime worker started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        log.info("Realtime worker stopped")

    def drain(self) -> int:
        """Process every queued event on the calling thread. Returns the count."""
        handled = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return handled
            if item is _STOP:
                self._queue.put(_STOP)
                return handled
            self._handle(item)
            handled += 1

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            self._handle(item)

    def _handle(self, item: Tuple[Any, ...]) -> None:
        with self._handle_lock:
            kind, user_id = item[0], item[1]
            try:
                if kind == "point":
                    self._on_point(user_id, item[2], item[3])
                elif kind == "analyze":
                    self._pending.discard(user_id)
                    self.analyze_user(user_id)
                elif kind == "open":
                    self._open(user_id)
                elif kind == "close":
                    self._buffers.pop(user_id, None)
                    self._last_processed.pop(user_id, None)
                    self._pending.discard(user_id)
            except Exception as e:
                log.error("Realtime %s for %s failed: %s", kind, user_id, e)

    # ─── Event handlers ──────────────────────────────────────

    def _open(self, user_id: str) -> Dict[str, Deque[Dict[str, Any]]]:
        buffers = self._buffers.get(user_id)
        if buffers is None:
            buffers = {d: deque(maxlen=self.buffer_capacity) for d in DOMAINS}
            self._buffers[user_id] = buffers
            self._last_processed[user_id] = self._clock()
        return buffers

    def buffer(self, user_id: str, domain: str) -> List[Dict[str, Any]]:
        buffers = self._buffers.get(user_id)
        return list(buffers[domain]) if buffers else []

    def _on_point(self, user_id: str, domain: str, data: Dict[str, Any]) -> None:
        now = self._clock()
        key = _MOMENT_KEYS[domain]
        if data.get(key) is None:
            data[key] = now.date() if domain in _DATE_KEYED else now
        self._open(user_id)[domain].append(data)

        self._check_triggers(user_id, self._point_metrics(user_id, domain, data), now)

        if now - self._last_processed[user_id] >= self.min_interval and user_id not in self._pending:
            self._pending.add(user_id)
            self._queue.put(("analyze", user_id))

    def _point_metrics(self, user_id: str, domain: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """The point's own fields plus the day aggregates triggers can read.

        A calendar point is one event row, so ``meeting_count`` is the number of
        meetings buffered for the point's local day, the same count the
        feature matrix uses.
        """
        metrics = dict(data)
        if domain == "calendar":
            tz = resolve_timezone(self.store.get_user_timezone(user_id), self.default_timezone)
            day = local_date(data.get(_MOMENT_KEYS[domain]), tz)
            calendar = join_records(user_id, {"calendar": list(self._buffers[user_id]["calendar"])}, tz)
            row = calendar.rows.get(day)
            if row is not None and row.calendar is not None:
                metrics["meeting_count"] = row.calendar.meeting_count
        return metrics

    def _check_triggers(self, user_id: str, data: Dict[str, Any], now: datetime) -> None:
        for pattern in self.pattern_store.active_triggers(user_id):
            for trigger in pattern.triggers:
                value = data.get(trigger.condition)
                if value is None:
                    continue
                try:
                    value = float(value)
                except (TypeError, ValueError):
                    continue
                if not trigger.fires(value):
                    continue
                if not pattern.should_trigger(now, self.trigger_cooldown):
                    log.debug("Trigger %s on %s in cooldown", trigger.action, pattern.pattern_type)
                    continue
                self.pattern_store.record_trigger(pattern)
                log.info(
                    "Immediate trigger for %s: %s %s %s (value=%s)",
                    user_id, trigger.condition, trigger.direction, trigger.threshold, value,
                )
                self.channel.publish(user_id, "immediate_trigger", {
                    "pattern": pattern.pattern_type,
                    "pattern_id": pattern.id,
                    "trigger": trigger.to_dict(),
                    "action": trigger.action,
                    "severity": trigger.severity,
                    "value": value,
                })
                if self.on_trigger is not None:
                    self.on_trigger(user_id, pattern, trigger, value)

    def analyze_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Run the probes over the user's buffers and merge strong results."""
        buffers = self._buffers.get(user_id)
        if buffers is None:
            return []
        tz = resolve_timezone(self.store.get_user_timezone(user_id), self.default_timezone)
        matrix = join_records(user_id, {d: list(buf) for d, buf in buffers.items()}, tz)
        results = self.analyzer.run_all(matrix)
        self._last_processed[user_id] = self._clock()

        pushed = []
        for name, result in results.items():
            if result.strength <= self.min_strength or result.confidence <= self.min_confidence:
                continue
            pattern, merged = self.pattern_store.merge(user_id, result)
            payload = {
                "type": name,
                "pattern_id": pattern.id,
                "strength": pattern.strength,
                "confidence": pattern.confidence,
                "insight": pattern.insight,
                "merged": merged,
            }
            self.channel.publish(user_id, "new_pattern", payload)
            pushed.append(payload)
        log.info("Realtime analysis for %s: %d result(s), %d pushed", user_id, len(results), len(pushed))
        return pushed
