"""
Tests for the pattern store.

Covers:
- store threshold vs probe significance
- generation flips (atomic replace, history retained, untouched scopes)
- realtime merge (weighted strength, max confidence, new pattern otherwise)
- trigger bookkeeping and cooldown
"""
import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from correlation_engine import PEARSON, CorrelationResult, PatternTrigger
from pattern_store import GLOBAL_SCOPE, Pattern, PatternStore, user_scope
from fakes import InMemoryStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _result(name="sleep_recovery", strength=0.8, confidence=80.0, insight="insight", triggers=None):
    return CorrelationResult(
        pair_name=name,
        coefficient=strength,
        confidence=confidence,
        sample_size=30,
        insight=insight,
        strength=strength,
        method=PEARSON,
        recommendation="rec",
        p_value=0.01,
        data={"correlation": strength},
        triggers=list(triggers or []),
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def patterns(store):
    return PatternStore(store, threshold=0.7, merge_tolerance=0.1, clock=lambda: NOW)


# ─── Pattern ──────────────────────────────────────────────────


class TestPattern:

    def test_from_result_carries_method_and_stats(self):
        p = Pattern.from_result("u1", _result())
        assert p.scope_key == "user:u1"
        assert p.supporting_data["method"] == PEARSON
        assert p.supporting_data["sample_size"] == 30
        assert p.supporting_data["p_value"] == 0.01

    def test_to_dict_uses_type_key(self):
        d = Pattern.from_result("u1", _result(), discovered_at=NOW).to_dict()
        assert d["type"] == "sleep_recovery"
        assert d["discovered_at"] == NOW.isoformat()

    def test_from_row_parses_triggers(self):
        row = {
            "id": 3, "user_id": "u1", "scope_key": "user:u1", "pattern_type": "stress_spending",
            "strength": "0.75", "confidence": 90, "is_active": True,
            "triggers": [{"condition": "hrv", "threshold": 40, "direction": "below", "action": "block_purchases"}],
        }
        p = Pattern.from_row(row)
        assert p.strength == 0.75
        assert p.triggers[0].action == "block_purchases"

    def test_should_trigger_respects_cooldown(self):
        p = Pattern.from_result("u1", _result())
        assert p.should_trigger(NOW, timedelta(hours=24))
        p.last_triggered_at = NOW - timedelta(hours=2)
        assert not p.should_trigger(NOW, timedelta(hours=24))
        assert p.should_trigger(NOW + timedelta(hours=22), timedelta(hours=24))

    def test_inactive_pattern_never_triggers(self):
        p = Pattern.from_result("u1", _result())
        p.is_active = False
        assert not p.should_trigger(NOW, timedelta(0))


# ─── Batch generations ────────────────────────────────────────


class TestGenerations:

    def test_threshold_gates_persistence(self, patterns):
        kept = patterns.qualify([_result(strength=0.69), _result("b", strength=0.7), _result("c", strength=0.95)])
        assert [r.pair_name for r in kept] == ["b", "c"]

    def test_significant_probe_can_still_be_below_store_threshold(self, patterns):
        weak_but_significant = _result(strength=0.6, insight="r above probe cutoff")
        assert patterns.build_generation("u1", [weak_but_significant]) == []

    def test_flip_replaces_active_set_and_keeps_history(self, patterns, store):
        scope = user_scope("u1")
        patterns.commit_generations({scope: patterns.build_generation("u1", [_result("a"), _result("b")])})
        patterns.commit_generations({scope: patterns.build_generation("u1", [_result("c", strength=0.9)])})

        active = patterns.patterns_for_user("u1")
        assert [p.pattern_type for p in active] == ["c"]
        assert active[0].generation == 2

        history = patterns.patterns_for_user("u1", active_only=False)
        assert sorted(p.pattern_type for p in history) == ["a", "b", "c"]
        assert {p.generation for p in history if not p.is_active} == {1}

    def test_empty_generation_clears_active_set(self, patterns):
        scope = user_scope("u1")
        patterns.commit_generations({scope: patterns.build_generation("u1", [_result("a")])})
        patterns.commit_generations({scope: []})
        assert patterns.patterns_for_user("u1") == []
        assert len(patterns.patterns_for_user("u1", active_only=False)) == 1

    def test_scopes_not_in_batch_are_untouched(self, patterns, store):
        patterns.commit_generations({
            user_scope("u1"): patterns.build_generation("u1", [_result("a")]),
            user_scope("u2"): patterns.build_generation("u2", [_result("b")]),
        })
        patterns.commit_generations({user_scope("u1"): []})

        assert [p.pattern_type for p in patterns.patterns_for_user("u2")] == ["b"]
        assert store.current_generation(user_scope("u2")) == 1
        assert store.current_generation(user_scope("u1")) == 2

    def test_no_batches_is_a_no_op(self, patterns):
        assert patterns.commit_generations({}) == {}

    def test_global_scope(self, patterns):
        g = Pattern(user_id=None, scope_key=GLOBAL_SCOPE, pattern_type="seasonal", strength=0.4, confidence=50)
        patterns.commit_generations({GLOBAL_SCOPE: [g]})
        assert [p.pattern_type for p in patterns.global_patterns()] == ["seasonal"]


# ─── Realtime merge ───────────────────────────────────────────


class TestMerge:

    def test_result_within_tolerance_merges(self, patterns):
        patterns.commit_generations({user_scope("u1"): patterns.build_generation("u1", [_result(strength=0.8)])})

        merged, was_merged = patterns.merge("u1", _result(strength=0.86, confidence=95))

        assert was_merged
        assert merged.strength == pytest.approx(0.83)
        assert merged.confidence == 95
        assert merged.sample_count == 2
        assert len(patterns.patterns_for_user("u1")) == 1

    def test_weighting_follows_sample_count(self, patterns):
        patterns.commit_generations({user_scope("u1"): patterns.build_generation("u1", [_result(strength=0.8)])})
        patterns.merge("u1", _result(strength=0.8))
        merged, _ = patterns.merge("u1", _result(strength=0.89))
        assert merged.sample_count == 3
        assert merged.strength == pytest.approx((0.8 * 2 + 0.89) / 3)

    def test_result_outside_tolerance_adds_pattern(self, patterns):
        patterns.commit_generations({user_scope("u1"): patterns.build_generation("u1", [_result(strength=0.75)])})

        added, was_merged = patterns.merge("u1", _result(strength=0.95))

        assert not was_merged
        assert added.source == "realtime"
        assert added.generation == 1
        assert len(patterns.patterns_for_user("u1")) == 2

    def test_merge_without_existing_pattern(self, patterns):
        added, was_merged = patterns.merge("u1", _result())
        assert not was_merged
        assert added.id is not None
        assert added.generation == 0


# ─── Triggers & read side ─────────────────────────────────────


class TestReadSide:

    def test_record_trigger_persists_count_and_time(self, patterns):
        trigger = PatternTrigger("hrv", 40, "below", "block_purchases", "high")
        patterns.commit_generations({
            user_scope("u1"): patterns.build_generation("u1", [_result("stress_spending", triggers=[trigger])])
        })
        p = patterns.active_triggers("u1")[0]
        patterns.record_trigger(p)

        stored = patterns.active_triggers("u1")[0]
        assert stored.trigger_count == 1
        assert stored.last_triggered_at == NOW

    def test_strongest_filters_confidence_and_limits(self, patterns):
        results = [_result(f"p{i}", strength=0.7 + i * 0.05, confidence=60 + i * 5) for i in range(6)]
        patterns.commit_generations({user_scope("u1"): patterns.build_generation("u1", results)})

        strongest = patterns.strongest("u1", min_confidence=70, limit=3)
        assert [p.pattern_type for p in strongest] == ["p5", "p4", "p3"]

    def test_stats_passthrough(self, patterns):
        patterns.commit_generations({user_scope("u1"): patterns.build_generation("u1", [_result()])})
        stats = patterns.stats()
        assert stats["active_patterns"] == 1
        assert stats["type_distribution"] == {"sleep_recovery": 1}
