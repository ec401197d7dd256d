"""Rolling performance metrics for the diff engine."""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

STAGES = (
    "image_loading",
    "ignore_region_detection",
    "diff_calculation",
    "perceptual_hash",
    "diff_visualization",
)


@dataclass
class PerformanceStats:
    """Snapshot of engine performance, accumulated since creation or the last reset."""

    average_comparison_time: float = 0.0  # ms
    total_comparisons: int = 0
    success_rate: float = 0.0  # 0-1
    recent_comparison_times: list = field(default_factory=list)  # ms, oldest first
    stage_stats: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "average_comparison_time": self.average_comparison_time,
            "total_comparisons": self.total_comparisons,
            "success_rate": self.success_rate,
            "recent_comparison_times": list(self.recent_comparison_times),
            "stage_stats": dict(self.stage_stats),
        }


def _summarize(times) -> dict:
    if not times:
        return {"avg": 0.0, "min": 0.0, "max": 0.0, "count": 0}
    return {
        "avg": sum(times) / len(times),
        "min": min(times),
        "max": max(times),
        "count": len(times),
    }


class PerformanceMonitor:
    """
    Ring buffers of comparison and stage durations plus outcome counters.

    Every update goes through one lock so concurrent comparisons never lose
    a sample, whichever thread or event loop they finish on.
    """

    def __init__(self, history_size: int = 100):
        self.history_size = max(1, int(history_size))
        self._lock = threading.Lock()
        self._comparisons: deque = deque(maxlen=self.history_size)
        self._stages: dict[str, deque] = {}
        self._total = 0
        self._successes = 0
        self._time_sum = 0.0

    def record_comparison(self, duration_ms: float, success: bool):
        with self._lock:
            self._comparisons.append(duration_ms)
            self._total += 1
            self._time_sum += duration_ms
            if success:
                self._successes += 1

    def record_stage(self, stage: str, duration_ms: float):
        with self._lock:
            times = self._stages.get(stage)
            if times is None:
                times = self._stages[stage] = deque(maxlen=self.history_size)
            times.append(duration_ms)

    @contextmanager
    def timing(self, stage: str):
        """Time the enclosed block and record it under ``stage``."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_stage(stage, (time.perf_counter() - start) * 1000)

    def stats(self) -> PerformanceStats:
        with self._lock:
            total = self._total
            return PerformanceStats(
                average_comparison_time=self._time_sum / total if total else 0.0,
                total_comparisons=total,
                success_rate=self._successes / total if total else 0.0,
                recent_comparison_times=list(self._comparisons),
                stage_stats={
                    stage: _summarize(list(self._stages.get(stage, ())))
                    for stage in STAGES
                },
            )

    def reset(self):
        with self._lock:
            self._comparisons.clear()
            self._stages.clear()
            self._total = 0
            self._successes = 0
            self._time_sum = 0.0
