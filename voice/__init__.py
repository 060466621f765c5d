"""
Voice turn instrumentation.

Modules:
- latency: per-stage turn timing, budgets and percentile reporting
"""
from voice.latency import (
    TurnStage, LatencyBudget, CallLatencyTracker,
    AggregateLatencyTracker, StageTracker,
)

__all__ = [
    "TurnStage", "LatencyBudget", "CallLatencyTracker",
    "AggregateLatencyTracker", "StageTracker",
]
