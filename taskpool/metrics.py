"""
Run Metrics Collection

Thread-safe collection of WorkerResults during a run, with throughput and
duration percentile helpers used by the scheduler, the throttle controller's
decision history and the aggregator.
"""

from __future__ import annotations

from collections import deque
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence
import statistics
import time

from taskpool.models import ResultStatus, WorkerResult


def percentile(data: Sequence[float], p: float) -> float:
    """
    Linear-interpolated percentile of already sorted data.

    Args:
        data: Sorted values.
        p: Percentile in [0, 100].

    Returns:
        The interpolated value, or 0.0 for empty data.
    """
    if not data:
        return 0.0
    k = (len(data) - 1) * p / 100
    f = int(k)
    c = f + 1 if f + 1 < len(data) else f
    return data[f] + (data[c] - data[f]) * (k - f)


def duration_percentiles(results: Sequence[WorkerResult]) -> Dict[str, float]:
    """
    Duration percentiles for results that actually ran.

    Skipped items that never started are excluded.

    Returns:
        Dictionary with p50, p95, p99 durations in milliseconds.
    """
    durations = sorted(r.duration_ms for r in results if r.started_at is not None)
    return {
        "p50": percentile(durations, 50),
        "p95": percentile(durations, 95),
        "p99": percentile(durations, 99),
    }


class MetricsCollector:
    """
    Thread-safe collector for per-item results of one run.

    Example:
        collector = MetricsCollector()
        collector.record(result)
        rate = collector.get_throughput()
    """

    def __init__(self, window_size: int = 100):
        """
        Initialize the collector.

        Args:
            window_size: Number of recent results used for rolling statistics.
        """
        self.window_size = window_size
        self._results: List[WorkerResult] = []
        self._recent: deque = deque(maxlen=window_size)
        self._lock = Lock()
        self._start_time = time.monotonic()
        self._status_counts: Dict[ResultStatus, int] = {s: 0 for s in ResultStatus}

    def record(self, result: WorkerResult) -> None:
        """Record one completed, skipped or abandoned item."""
        with self._lock:
            self._results.append(result)
            self._recent.append(result)
            self._status_counts[result.status] += 1

    @property
    def total_recorded(self) -> int:
        with self._lock:
            return len(self._results)

    def count(self, status: ResultStatus) -> int:
        with self._lock:
            return self._status_counts[status]

    def get_throughput(self) -> float:
        """
        Items finished per second since the collector was created.

        Skipped items that never ran are not counted.
        """
        with self._lock:
            elapsed = time.monotonic() - self._start_time
            if elapsed < 0.1:
                return 0.0
            finished = sum(1 for r in self._results if r.started_at is not None)
            return finished / elapsed

    def get_recent_mean_duration(self, n: Optional[int] = None) -> float:
        """
        Mean duration in milliseconds over the most recent results.

        Returns:
            Mean duration, or 0.0 when nothing has run yet.
        """
        n = n or self.window_size
        with self._lock:
            recent = [r.duration_ms for r in list(self._recent)[-n:] if r.started_at is not None]
        if not recent:
            return 0.0
        return statistics.mean(recent)

    def get_duration_percentiles(self) -> Dict[str, float]:
        with self._lock:
            snapshot = list(self._results)
        return duration_percentiles(snapshot)

    def results(self) -> List[WorkerResult]:
        """Copy of all recorded results in recording order."""
        with self._lock:
            return list(self._results)

    def export_to_list(self) -> List[Dict[str, Any]]:
        """
        Export all results as dictionaries for serialization.

        Returns:
            List of result dictionaries suitable for CSV/JSON export.
        """
        with self._lock:
            return [r.to_dict() for r in self._results]
