"""
Tests for the realtime correlation stream.

Events are processed with drain() on the test thread, so ordering is
deterministic.  Covers buffering, immediate triggers with cooldown, the
analysis cadence and merging of streamed results.
"""
import sys
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from correlation_engine import PEARSON, CorrelationResult, PatternTrigger
from live_channel import LiveChannel
from pattern_store import PatternStore, user_scope
from realtime_stream import RealtimeCorrelationStream
from fakes import InMemoryStore

T0 = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _result(name="sleep_recovery", strength=0.8, confidence=80.0):
    return CorrelationResult(
        pair_name=name, coefficient=strength, confidence=confidence, sample_size=40,
        insight="streamed", strength=strength, method=PEARSON,
    )


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def env(clock):
    store = InMemoryStore()
    store.add_user("u1")
    patterns = PatternStore(store, clock=clock)
    channel = LiveChannel()
    analyzer = MagicMock()
    analyzer.run_all.return_value = {}
    on_trigger = MagicMock()
    stream = RealtimeCorrelationStream(
        store, analyzer, patterns, channel,
        buffer_capacity=3,
        min_interval_sec=60,
        on_trigger=on_trigger,
        clock=clock,
    )
    return stream, store, patterns, channel, analyzer, on_trigger


def _types(channel, user_id="u1"):
    return [e["type"] for e in channel.backlog(user_id)]


def _seed_trigger_pattern(patterns, trigger=None, name="stress_spending"):
    trigger = trigger or PatternTrigger("hrv", 40, "below", "block_purchases", "high")
    result = _result(name)
    result.triggers = [trigger]
    patterns.commit_generations({user_scope("u1"): patterns.build_generation("u1", [result])})


# ─── Buffering ────────────────────────────────────────────────


class TestBuffering:

    def test_unknown_domain_rejected(self, env):
        stream = env[0]
        with pytest.raises(ValueError):
            stream.ingest("u1", "weather", {"temp": 20})

    def test_ring_buffer_drops_oldest(self, env):
        stream = env[0]
        for steps in range(5):
            stream.ingest("u1", "wearable", {"steps": steps})
        assert stream.drain() == 5
        assert [p["steps"] for p in stream.buffer("u1", "wearable")] == [2, 3, 4]

    def test_point_without_time_is_stamped(self, env, clock):
        stream = env[0]
        stream.ingest("u1", "transactions", {"amount": 12})
        stream.ingest("u1", "wearable", {"hrv": 60})
        stream.drain()
        assert stream.buffer("u1", "transactions")[0]["occurred_at"] == T0
        assert stream.buffer("u1", "wearable")[0]["date"] == T0.date()

    def test_stop_monitoring_drops_buffers(self, env):
        stream = env[0]
        stream.ingest("u1", "wearable", {"hrv": 60})
        stream.stop_monitoring("u1")
        stream.drain()
        assert stream.buffer("u1", "wearable") == []


# ─── Immediate triggers ───────────────────────────────────────


class TestTriggers:

    def test_matching_point_fires_trigger(self, env):
        stream, store, patterns, channel, _, on_trigger = env
        _seed_trigger_pattern(patterns)

        stream.ingest("u1", "wearable", {"hrv": 35})
        stream.drain()

        assert _types(channel) == ["immediate_trigger"]
        payload = channel.backlog("u1")[0]["payload"]
        assert payload["action"] == "block_purchases"
        assert payload["value"] == 35.0
        on_trigger.assert_called_once()
        assert on_trigger.call_args[0][0] == "u1"
        assert patterns.active_triggers("u1")[0].trigger_count == 1

    def test_cooldown_suppresses_repeat(self, env, clock):
        stream, _, patterns, channel, _, on_trigger = env
        _seed_trigger_pattern(patterns)

        stream.ingest("u1", "wearable", {"hrv": 35})
        stream.drain()
        clock.advance(hours=1)
        stream.ingest("u1", "wearable", {"hrv": 30})
        stream.drain()

        assert on_trigger.call_count == 1

        clock.advance(hours=24)
        stream.ingest("u1", "wearable", {"hrv": 30})
        stream.drain()
        assert on_trigger.call_count == 2

    def test_non_matching_point_does_nothing(self, env):
        stream, _, patterns, channel, _, on_trigger = env
        _seed_trigger_pattern(patterns)

        stream.ingest("u1", "wearable", {"hrv": 65})
        stream.ingest("u1", "transactions", {"amount": 500})
        stream.drain()

        on_trigger.assert_not_called()
        assert _types(channel) == []


class TestMeetingLoadTrigger:

    TRIGGER = PatternTrigger("meeting_count", 2, "above", "reduce_social_load", "medium")

    def _meeting(self, hour, day_offset=0, **extra):
        return {"start_time": T0 + timedelta(days=day_offset, hours=hour), "attendee_count": 5, **extra}

    def test_third_meeting_of_the_day_fires(self, env):
        stream, _, patterns, channel, _, on_trigger = env
        _seed_trigger_pattern(patterns, self.TRIGGER, name="social_energy")

        for hour in range(2):
            stream.ingest("u1", "calendar", self._meeting(hour))
        stream.drain()
        on_trigger.assert_not_called()

        stream.ingest("u1", "calendar", self._meeting(4))
        stream.drain()

        on_trigger.assert_called_once()
        assert on_trigger.call_args[0][3] == 3.0
        assert channel.backlog("u1")[0]["payload"]["action"] == "reduce_social_load"

    def test_meetings_on_other_days_do_not_count(self, env):
        stream, _, patterns, _, _, on_trigger = env
        _seed_trigger_pattern(patterns, self.TRIGGER, name="social_energy")

        for offset in range(5):
            stream.ingest("u1", "calendar", self._meeting(2, day_offset=-offset))
        stream.drain()

        on_trigger.assert_not_called()

    def test_blocks_are_not_meetings(self, env):
        stream, _, patterns, _, _, on_trigger = env
        _seed_trigger_pattern(patterns, self.TRIGGER, name="social_energy")

        for hour in range(5):
            stream.ingest("u1", "calendar", self._meeting(hour, event_type="recovery_block"))
        stream.drain()

        on_trigger.assert_not_called()


# ─── Analysis cadence & merge ─────────────────────────────────


class TestAnalysis:

    def test_first_analysis_waits_min_interval(self, env, clock):
        stream, _, _, _, analyzer, _ = env
        stream.ingest("u1", "wearable", {"hrv": 60})
        stream.drain()
        analyzer.run_all.assert_not_called()

        clock.advance(seconds=61)
        stream.ingest("u1", "wearable", {"hrv": 62})
        stream.drain()
        analyzer.run_all.assert_called_once()

    def test_analysis_not_queued_twice(self, env, clock):
        stream, _, _, _, analyzer, _ = env
        stream.ingest("u1", "wearable", {"hrv": 60})
        stream.drain()
        clock.advance(seconds=61)
        stream.ingest("u1", "wearable", {"hrv": 61})
        stream.ingest("u1", "wearable", {"hrv": 62})
        stream.drain()
        assert analyzer.run_all.call_count == 1

    def test_strong_result_is_merged_and_pushed(self, env):
        stream, store, patterns, channel, analyzer, _ = env
        stream.ingest("u1", "wearable", {"hrv": 60})
        stream.drain()
        analyzer.run_all.return_value = {
            "sleep_recovery": _result(strength=0.8, confidence=80),
            "weekly_rhythm": _result("weekly_rhythm", strength=0.5, confidence=90),
            "social_energy": _result("social_energy", strength=0.9, confidence=70),
        }

        pushed = stream.analyze_user("u1")

        assert [p["type"] for p in pushed] == ["sleep_recovery"]
        assert pushed[0]["merged"] is False
        assert _types(channel) == ["new_pattern"]
        assert [p.pattern_type for p in patterns.patterns_for_user("u1")] == ["sleep_recovery"]

    def test_rediscovered_pattern_merges(self, env):
        stream, _, patterns, channel, analyzer, _ = env
        patterns.commit_generations({user_scope("u1"): patterns.build_generation("u1", [_result(strength=0.8)])})
        stream.ingest("u1", "wearable", {"hrv": 60})
        stream.drain()
        analyzer.run_all.return_value = {"sleep_recovery": _result(strength=0.84)}

        pushed = stream.analyze_user("u1")

        assert pushed[0]["merged"] is True
        assert pushed[0]["strength"] == pytest.approx(0.82)
        assert len(patterns.patterns_for_user("u1")) == 1

    def test_unknown_user_has_nothing_to_analyze(self, env):
        assert env[0].analyze_user("nobody") == []

    def test_analysis_error_is_contained(self, env, clock):
        stream, _, _, _, analyzer, _ = env
        analyzer.run_all.side_effect = RuntimeError("probe crash")
        stream.ingest("u1", "wearable", {"hrv": 60})
        stream.drain()
        clock.advance(seconds=61)
        stream.ingest("u1", "wearable", {"hrv": 60})
        assert stream.drain() == 2
        assert len(stream.buffer("u1", "wearable")) == 2


# ─── Monitoring ───────────────────────────────────────────────


class TestMonitoring:

    def test_start_monitoring_pushes_existing_patterns(self, env):
        stream, _, patterns, channel, _, _ = env
        patterns.commit_generations({user_scope("u1"): patterns.build_generation("u1", [_result(confidence=85)])})

        sent = stream.start_monitoring("u1")

        assert [p["type"] for p in sent] == ["sleep_recovery"]
        assert _types(channel) == ["existing_patterns"]

    def test_worker_thread_processes_queue(self, env):
        import time

        stream = env[0]
        stream.start()
        try:
            stream.ingest("u1", "wearable", {"hrv": 60})
            deadline = time.time() + 5
            while not stream.buffer("u1", "wearable") and time.time() < deadline:
                time.sleep(0.01)
        finally:
            stream.stop()
        assert len(stream.buffer("u1", "wearable")) == 1
