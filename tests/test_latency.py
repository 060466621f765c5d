"""Tests for per-turn latency tracking and budgets."""
from config.settings import LatencyConfig
from voice.latency import (
    AggregateLatencyTracker, CallLatencyTracker, LatencyBudget, StageTracker, TurnStage,
)


class TestBudget:
    def test_from_config(self):
        budget = LatencyBudget.from_config(LatencyConfig(llm_ms=900))
        assert budget.budget_for(TurnStage.LLM) == 900
        assert budget.budget_for(TurnStage.TURN_TOTAL) == 1500


class TestStageTracker:
    def test_percentiles(self):
        tracker = StageTracker(TurnStage.LLM)
        for ms in range(1, 101):
            tracker.record(float(ms))
        assert tracker.count == 100
        assert tracker.p50_ms == 51.0
        assert tracker.p99_ms == 100.0
        assert tracker.to_dict()["min_ms"] == 1.0

    def test_empty(self):
        assert StageTracker(TurnStage.TTS).p90_ms == 0.0


class TestCallTracker:
    def test_violation_recorded(self):
        tracker = CallLatencyTracker("c1", LatencyBudget(llm_ms=100))
        tracker.record(TurnStage.LLM, 250.0)
        tracker.record(TurnStage.LLM, 50.0)
        assert len(tracker.violations) == 1
        assert tracker.violations[0]["overage_ms"] == 150.0

    def test_turn_total_counts_turns(self):
        tracker = CallLatencyTracker("c1")
        tracker.record(TurnStage.TURN_TOTAL, 10.0)
        tracker.record(TurnStage.TURN_TOTAL, 12.0)
        assert tracker.to_dict()["turns"] == 2

    def test_track_context_manager(self):
        tracker = CallLatencyTracker("c1")
        with tracker.track(TurnStage.INTENT):
            pass
        assert tracker.to_dict()["stages"]["intent"]["count"] == 1

    def test_end_without_start(self):
        assert CallLatencyTracker("c1").end(TurnStage.TTS) == 0.0


class TestAggregate:
    def test_call_trackers_feed_aggregate(self):
        agg = AggregateLatencyTracker(LatencyBudget(tts_ms=100))
        tracker = agg.create_call_tracker("c1")
        tracker.record(TurnStage.TTS, 40.0)

        stats = agg.get_all_stats()
        assert stats["tts"]["count"] == 1
        assert stats["active_calls"] == 1
        assert agg.is_within_budget(TurnStage.TTS)

        agg.remove_call("c1")
        assert agg.get_all_stats()["active_calls"] == 0
