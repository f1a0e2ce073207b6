"""Composition root: builds every service from one EngineSettings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from correlation_engine import CorrelationAnalyzer
from domain_actions import DomainActions
from feature_matrix import DataMatrixBuilder
from intervention_engine import InterventionEngine, RecoveryForecastProvider
from live_channel import LiveChannel
from pattern_store import PatternStore
from pipeline.learning_sweep import PatternLearningSweep
from pipeline.scheduler import PeriodicTask
from realtime_stream import RealtimeCorrelationStream
from recovery_calc import RecoveryScoreCalculator
from settings import EngineSettings
from store import PostgresStore

log = logging.getLogger("services")


@dataclass
class Services:
    settings: EngineSettings
    store: object
    builder: DataMatrixBuilder
    analyzer: CorrelationAnalyzer
    patterns: PatternStore
    recovery: RecoveryScoreCalculator
    channel: LiveChannel
    interventions: InterventionEngine
    stream: RealtimeCorrelationStream
    sweep: PatternLearningSweep
    scheduler: PeriodicTask

    def start_background(self) -> None:
        self.stream.start()
        self.scheduler.start()

    def stop_background(self) -> None:
        self.scheduler.stop()
        self.stream.stop()
        self.interventions.shutdown(wait=False)


def build_services(settings: Optional[EngineSettings] = None, store=None, actions=None,
                   clock=None) -> Services:
    """Wire the object graph.

    ``store`` and ``actions`` default to the PostgreSQL implementations;
    tests pass in-memory fakes with the same methods.
    """
    settings = settings or EngineSettings.from_env()
    if store is None:
        store = PostgresStore(
            settings.conn_str,
            connect_timeout=settings.connect_timeout_sec,
            statement_timeout_ms=settings.statement_timeout_ms,
        )
    actions = actions or DomainActions(store)

    builder = DataMatrixBuilder(store, default_timezone=settings.default_timezone)
    today = (lambda: clock().date()) if clock else None
    analyzer = CorrelationAnalyzer(cutoffs=settings.probe_cutoffs, today=today)
    patterns = PatternStore(
        store, threshold=settings.store_threshold, merge_tolerance=settings.merge_tolerance, clock=clock
    )
    recovery = RecoveryScoreCalculator(store, clock=clock)
    channel = LiveChannel()

    interventions = InterventionEngine(
        store, actions, channel,
        builder=builder,
        analyzer=analyzer,
        forecast_provider=RecoveryForecastProvider(recovery, analyzer),
        window_days=settings.intervention_window_days,
        default_timezone=settings.default_timezone,
        clock=clock,
    )
    stream = RealtimeCorrelationStream(
        store, analyzer, patterns, channel,
        buffer_capacity=settings.buffer_capacity,
        min_interval_sec=settings.realtime_min_interval_sec,
        min_strength=settings.realtime_min_strength,
        min_confidence=settings.realtime_min_confidence,
        trigger_cooldown=timedelta(hours=settings.trigger_cooldown_hours),
        default_timezone=settings.default_timezone,
        on_trigger=interventions.handle_trigger,
        clock=clock,
    )
    sweep = PatternLearningSweep(
        store, builder, analyzer, patterns,
        window_days=settings.sweep_window_days,
        global_window_days=settings.global_window_days,
        status_path=settings.status_path,
        default_timezone=settings.default_timezone,
        clock=clock,
    )
    scheduler = PeriodicTask("pattern-sweep", settings.sweep_interval_hours * 3600, sweep.run)

    log.info(
        "Services ready (store threshold %.2f, sweep every %.1fh)",
        settings.store_threshold, settings.sweep_interval_hours,
    )
    return Services(
        settings=settings,
        store=store,
        builder=builder,
        analyzer=analyzer,
        patterns=patterns,
        recovery=recovery,
        channel=channel,
        interventions=interventions,
        stream=stream,
        sweep=sweep,
        scheduler=scheduler,
    )
