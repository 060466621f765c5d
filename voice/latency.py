"""
Latency Tracker - per-turn stage timing for live calls.

A human turn passes through transcribe (recording mode only), intent,
escalation check, LLM and TTS before the next document goes back to the
provider. Each stage is timed against a LatencyBudget; overruns are
logged per call, and every measurement also feeds a process-wide
rolling window reported as p50/p90/p99 on /api/v1/latency.
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from config.settings import LatencyConfig

logger = structlog.get_logger()

PERCENTILES = (50, 90, 99)


class TurnStage(str, Enum):
    TRANSCRIBE = "transcribe"    # recording → text
    INTENT = "intent"
    ESCALATION = "escalation"
    LLM = "llm"                  # next utterance
    TTS = "tts"
    TURN_TOTAL = "turn_total"    # webhook in → control document out


@dataclass
class LatencyBudget:
    transcribe_ms: int = 400
    intent_ms: int = 300
    escalation_ms: int = 300
    llm_ms: int = 700
    tts_ms: int = 400
    turn_total_ms: int = 1500

    @classmethod
    def from_config(cls, config: LatencyConfig) -> "LatencyBudget":
        return cls(**{f"{stage.value}_ms": getattr(config, f"{stage.value}_ms") for stage in TurnStage})

    def budget_for(self, stage: TurnStage) -> int:
        return getattr(self, f"{stage.value}_ms")


class StageTracker:
    """Lifetime count/min/max of one stage plus a rolling window for percentiles."""

    def __init__(self, stage: TurnStage, window_size: int = 200):
        self.stage = stage
        self.window: deque[float] = deque(maxlen=window_size)
        self.count = 0
        self.total_ms = 0.0
        self.min_ms: Optional[float] = None
        self.max_ms = 0.0

    def record(self, duration_ms: float) -> None:
        self.window.append(duration_ms)
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    def percentile(self, pct: int) -> float:
        """Nearest-rank percentile over the rolling window."""
        if not self.window:
            return 0.0
        ordered = sorted(self.window)
        return ordered[min(len(ordered) * pct // 100, len(ordered) - 1)]

    @property
    def p50_ms(self) -> float:
        return self.percentile(50)

    @property
    def p90_ms(self) -> float:
        return self.percentile(90)

    @property
    def p99_ms(self) -> float:
        return self.percentile(99)

    def to_dict(self) -> dict[str, Any]:
        summary = {
            "stage": self.stage.value,
            "count": self.count,
            "avg_ms": round(self.total_ms / self.count, 1) if self.count else 0.0,
            "min_ms": round(self.min_ms or 0.0, 1),
            "max_ms": round(self.max_ms, 1),
        }
        for pct in PERCENTILES:
            summary[f"p{pct}_ms"] = round(self.percentile(pct), 1)
        return summary


# ══════════════════════════════════════════════════════════════
#  PER CALL
# ══════════════════════════════════════════════════════════════

class CallLatencyTracker:
    """
    Stage timings for one call.

    Usage:
        with tracker.track(TurnStage.LLM):
            reply = await engine.next_utterance(...)
    """

    def __init__(
        self,
        call_id: str,
        budget: LatencyBudget = None,
        on_measure: Optional[Callable[[TurnStage, float], None]] = None,
    ):
        self.call_id = call_id
        self.budget = budget or LatencyBudget()
        self.on_measure = on_measure
        self.stages: dict[TurnStage, StageTracker] = {}
        self.turns = 0
        self.violations: list[dict[str, Any]] = []
        self._open: dict[TurnStage, float] = {}

    def start(self, stage: TurnStage) -> None:
        self._open[stage] = time.perf_counter()

    def end(self, stage: TurnStage) -> float:
        """Close a stage opened with start(). Returns its duration in ms, 0 if it was never opened."""
        started = self._open.pop(stage, None)
        if started is None:
            return 0.0
        return self.record(stage, (time.perf_counter() - started) * 1000)

    def record(self, stage: TurnStage, duration_ms: float) -> float:
        self.stages.setdefault(stage, StageTracker(stage)).record(duration_ms)
        if stage == TurnStage.TURN_TOTAL:
            self.turns += 1
        if self.on_measure is not None:
            self.on_measure(stage, duration_ms)

        budget_ms = self.budget.budget_for(stage)
        if duration_ms > budget_ms:
            violation = {
                "stage": stage.value,
                "duration_ms": round(duration_ms, 1),
                "budget_ms": budget_ms,
                "overage_ms": round(duration_ms - budget_ms, 1),
                "turn": self.turns,
            }
            self.violations.append(violation)
            logger.warning("latency_budget_exceeded", call_id=self.call_id, **violation)
        return duration_ms

    @contextmanager
    def track(self, stage: TurnStage) -> Iterator[None]:
        self.start(stage)
        try:
            yield
        finally:
            self.end(stage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "turns": self.turns,
            "violations": len(self.violations),
            "stages": {stage.value: tracker.to_dict() for stage, tracker in self.stages.items()},
        }


# ══════════════════════════════════════════════════════════════
#  PROCESS-WIDE
# ══════════════════════════════════════════════════════════════

class AggregateLatencyTracker:
    """Rolls every live call's measurements into one set of stage windows."""

    def __init__(self, budget: LatencyBudget = None):
        self.budget = budget or LatencyBudget()
        self.stages = {stage: StageTracker(stage) for stage in TurnStage}
        self._calls: dict[str, CallLatencyTracker] = {}

    def create_call_tracker(self, call_id: str) -> CallLatencyTracker:
        tracker = CallLatencyTracker(call_id, self.budget, on_measure=self.record)
        self._calls[call_id] = tracker
        return tracker

    def get_call_tracker(self, call_id: str) -> Optional[CallLatencyTracker]:
        return self._calls.get(call_id)

    def remove_call(self, call_id: str) -> Optional[CallLatencyTracker]:
        return self._calls.pop(call_id, None)

    def record(self, stage: TurnStage, duration_ms: float) -> None:
        self.stages[stage].record(duration_ms)

    def get_all_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            stage.value: tracker.to_dict() for stage, tracker in self.stages.items() if tracker.count
        }
        stats["active_calls"] = len(self._calls)
        stats["budget"] = {stage.value: self.budget.budget_for(stage) for stage in TurnStage}
        return stats

    def is_within_budget(self, stage: TurnStage) -> bool:
        """p90 of the rolling window is inside the stage budget."""
        return self.stages[stage].p90_ms <= self.budget.budget_for(stage)
