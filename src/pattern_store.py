"""
Pattern store: persisted, strength-scored relationships.

Lifecycle per scope (``user:<id>`` or ``global``):
  • a batch sweep replaces the scope's active set as one generation flip
    (deactivate previous active rows, insert the new ones, same transaction);
  • rows are never deleted, so every earlier generation stays queryable;
  • the realtime stream merges rediscovered patterns into the active set
    instead of overwriting them.

The store threshold here is deliberately separate from the probes' own
cutoffs: a probe may emit an insight that is still not persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from correlation_engine import CorrelationResult, PatternTrigger

log = logging.getLogger("pattern_store")

GLOBAL_SCOPE = "global"


def user_scope(user_id: str) -> str:
    return f"user:{user_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Pattern:
    user_id: Optional[str]
    scope_key: str
    pattern_type: str
    strength: float
    confidence: float
    insight: Optional[str] = None
    recommendation: Optional[str] = None
    supporting_data: Dict[str, Any] = field(default_factory=dict)
    triggers: List[PatternTrigger] = field(default_factory=list)
    discovered_at: Optional[datetime] = None
    is_active: bool = True
    generation: int = 0
    sample_count: int = 1
    source: str = "batch"
    trigger_count: int = 0
    last_triggered_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_result(cls, user_id: str, result: CorrelationResult, source: str = "batch",
                    discovered_at: Optional[datetime] = None) -> "Pattern":
        data = dict(result.data)
        data.setdefault("sample_size", result.sample_size)
        data["method"] = result.method
        if result.coefficient is not None:
            data["coefficient"] = result.coefficient
        if result.p_value is not None:
            data["p_value"] = result.p_value
        return cls(
            user_id=user_id,
            scope_key=user_scope(user_id),
            pattern_type=result.pair_name,
            strength=result.strength,
            confidence=result.confidence,
            insight=result.insight,
            recommendation=result.recommendation,
            supporting_data=data,
            triggers=list(result.triggers),
            discovered_at=discovered_at,
            source=source,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Pattern":
        return cls(
            id=row.get("id"),
            user_id=row.get("user_id"),
            scope_key=row["scope_key"],
            pattern_type=row["pattern_type"],
            strength=float(row["strength"]),
            confidence=float(row["confidence"]),
            insight=row.get("insight"),
            recommendation=row.get("recommendation"),
            supporting_data=row.get("supporting_data") or {},
            triggers=[PatternTrigger.from_dict(t) for t in (row.get("triggers") or [])],
            discovered_at=row.get("discovered_at"),
            is_active=bool(row.get("is_active")),
            generation=int(row.get("generation") or 0),
            sample_count=int(row.get("sample_count") or 1),
            source=row.get("source") or "batch",
            trigger_count=int(row.get("trigger_count") or 0),
            last_triggered_at=row.get("last_triggered_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "scope_key": self.scope_key,
            "type": self.pattern_type,
            "strength": self.strength,
            "confidence": self.confidence,
            "insight": self.insight,
            "recommendation": self.recommendation,
            "supporting_data": self.supporting_data,
            "triggers": [t.to_dict() for t in self.triggers],
            "discovered_at": self.discovered_at.isoformat() if self.discovered_at else None,
            "is_active": self.is_active,
            "generation": self.generation,
            "sample_count": self.sample_count,
            "source": self.source,
            "trigger_count": self.trigger_count,
            "last_triggered_at": self.last_triggered_at.isoformat() if self.last_triggered_at else None,
        }

    def should_trigger(self, now: datetime, cooldown: timedelta) -> bool:
        if not self.is_active:
            return False
        if self.last_triggered_at is None:
            return True
        return now - self.last_triggered_at >= cooldown


class PatternStore:
    """Domain layer over the relational store's pattern tables."""

    def __init__(self, store, threshold: float = 0.7, merge_tolerance: float = 0.1,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.threshold = threshold
        self.merge_tolerance = merge_tolerance
        self._clock = clock or _utcnow

    # ─── Batch generations ───────────────────────────────────

    def qualify(self, results: Iterable[CorrelationResult]) -> List[CorrelationResult]:
        """Results whose strength meets the store threshold."""
        return [r for r in results if r.strength >= self.threshold]

    def build_generation(self, user_id: str, results: Iterable[CorrelationResult]) -> List[Pattern]:
        now = self._clock()
        return [Pattern.from_result(user_id, r, source="batch", discovered_at=now) for r in self.qualify(results)]

    def carry_forward(self, user_id: str, pattern_types: Iterable[str]) -> List[Pattern]:
        """Copies of the user's active rows of ``pattern_types`` for the next generation."""
        carried = []
        for pattern_type in pattern_types:
            for p in self.store.find_active_patterns(user_scope(user_id), pattern_type):
                p.id = None
                carried.append(p)
        return carried

    def commit_generations(self, batches: Dict[str, List[Pattern]]) -> Dict[str, int]:
        """Flip every scope in ``batches`` to its new active set in one transaction.

        Scopes absent from ``batches`` keep their current generation.
        Returns the new generation number per scope.
        """
        if not batches:
            return {}
        now = self._clock()
        for patterns in batches.values():
            for p in patterns:
                p.discovered_at = p.discovered_at or now
                p.is_active = True
        generations = self.store.replace_generations(batches)
        log.info(
            "Committed %d pattern(s) across %d scope(s)",
            sum(len(v) for v in batches.values()), len(batches),
        )
        return generations

    # ─── Realtime merge ──────────────────────────────────────

    def merge(self, user_id: str, result: CorrelationResult) -> Tuple[Pattern, bool]:
        """Merge a streaming result into the user's active set.

        An active pattern of the same type whose strength is within the
        tolerance band absorbs the result: strength becomes the
        sample-weighted mean, confidence the max, sample_count increments.
        Otherwise a new active pattern joins the current generation.
        Returns (pattern, merged).
        """
        scope = user_scope(user_id)
        for existing in self.store.find_active_patterns(scope, result.pair_name):
            if abs(existing.strength - result.strength) > self.merge_tolerance:
                continue
            total = existing.sample_count + 1
            existing.strength = (existing.strength * existing.sample_count + result.strength) / total
            existing.confidence = max(existing.confidence, result.confidence)
            existing.sample_count = total
            existing.supporting_data = {**existing.supporting_data, **result.data}
            if result.insight:
                existing.insight = result.insight
            if result.recommendation:
                existing.recommendation = result.recommendation
            if result.triggers:
                existing.triggers = list(result.triggers)
            self.store.update_pattern(existing)
            log.debug("Merged %s into pattern %s for %s", result.pair_name, existing.id, user_id)
            return existing, True

        pattern = Pattern.from_result(user_id, result, source="realtime", discovered_at=self._clock())
        pattern.generation = self.store.current_generation(scope)
        pattern.id = self.store.insert_pattern(pattern)
        log.info("New realtime pattern %s for %s (strength=%.2f)", result.pair_name, user_id, result.strength)
        return pattern, False

    def record_trigger(self, pattern: Pattern) -> None:
        pattern.trigger_count += 1
        pattern.last_triggered_at = self._clock()
        self.store.update_pattern(pattern)

    # ─── Read side ───────────────────────────────────────────

    def patterns_for_user(self, user_id: str, active_only: bool = True,
                          limit: Optional[int] = None) -> List[Pattern]:
        """Patterns for a user, strongest first."""
        return self.store.list_patterns(scope_key=user_scope(user_id), active_only=active_only, limit=limit)

    def global_patterns(self, active_only: bool = True) -> List[Pattern]:
        return self.store.list_patterns(scope_key=GLOBAL_SCOPE, active_only=active_only)

    def strongest(self, user_id: str, min_confidence: float = 70.0, limit: int = 5) -> List[Pattern]:
        patterns = [p for p in self.patterns_for_user(user_id) if p.confidence >= min_confidence]
        return patterns[:limit]

    def active_triggers(self, user_id: str) -> List[Pattern]:
        return [p for p in self.patterns_for_user(user_id) if p.triggers]

    def stats(self) -> Dict[str, Any]:
        return self.store.pattern_stats()
