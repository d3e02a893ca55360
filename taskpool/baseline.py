"""
Baseline Persistence and Calibration

A Baseline records the empirically best thread count for a workload type on
a host profile. BaselineRecorder measures it by running a sample workload at
several candidate thread counts; BaselineStore keeps the latest record per
(workload_type, host_fingerprint) key. Later calibrations replace earlier
ones, nothing is merged and no history is kept.

Stores never raise on a missing or corrupt backing file. get() returns None
and the profiler falls back to heuristics.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union
import json
import logging
import os
import tempfile
import time

import numpy as np

from taskpool.config import CalibrationConfig, SchedulerConfig, default_baseline_path
from taskpool.errors import BaselineError
from taskpool.models import (
    Baseline,
    ExecutionSettings,
    WorkItem,
    WorkloadType,
    baseline_key,
)
from taskpool.profiler import ResourceProfiler
from taskpool.scheduler import Scheduler

logger = logging.getLogger(__name__)

_STORE_VERSION = 1

SampleWorkload = Union[Sequence[WorkItem], Callable[[], Sequence[WorkItem]]]


class BaselineStore(ABC):
    """Key-value persistence of the latest Baseline per workload and host."""

    @abstractmethod
    def get(self, workload_type: WorkloadType, host_fingerprint: str) -> Optional[Baseline]:
        """Return the stored baseline, or None if there is none or it is unreadable."""

    @abstractmethod
    def put(self, baseline: Baseline) -> None:
        """Store a baseline, replacing any record with the same key."""

    @abstractmethod
    def delete(self, workload_type: WorkloadType, host_fingerprint: str) -> bool:
        """Remove a record. Returns True if one existed."""


class InMemoryBaselineStore(BaselineStore):
    """Process-local store, mainly for tests."""

    def __init__(self, baselines: Iterable[Baseline] = ()):
        self._lock = Lock()
        self._records: Dict[str, Baseline] = {}
        for baseline in baselines:
            self.put(baseline)

    def get(self, workload_type: WorkloadType, host_fingerprint: str) -> Optional[Baseline]:
        with self._lock:
            return self._records.get(baseline_key(workload_type, host_fingerprint))

    def put(self, baseline: Baseline) -> None:
        with self._lock:
            self._records[baseline.key] = baseline

    def delete(self, workload_type: WorkloadType, host_fingerprint: str) -> bool:
        with self._lock:
            return self._records.pop(baseline_key(workload_type, host_fingerprint), None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonFileBaselineStore(BaselineStore):
    """
    Baselines in one JSON document on disk.

    Layout:
        {"version": 1, "baselines": {"<Workload>|<fingerprint>": {...}}}

    Writes go to a temporary file that replaces the store atomically.

    Example:
        store = JsonFileBaselineStore()  # TASKPOOL_BASELINE_PATH or ~/.cache
        store.put(baseline)
        store.get(WorkloadType.TEST, fingerprint)
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else default_baseline_path()
        self._lock = Lock()

    def _read_records(self) -> Dict[str, Any]:
        """Load raw records; any problem yields an empty mapping."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable baseline store {self.path}: {e}")
            return {}

        if not isinstance(document, dict) or not isinstance(document.get("baselines"), dict):
            logger.warning(f"Ignoring baseline store {self.path} with unexpected layout")
            return {}
        return document["baselines"]

    def get(self, workload_type: WorkloadType, host_fingerprint: str) -> Optional[Baseline]:
        key = baseline_key(workload_type, host_fingerprint)
        with self._lock:
            record = self._read_records().get(key)
        if record is None:
            return None
        try:
            return Baseline.from_dict(record)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring malformed baseline {key} in {self.path}: {e}")
            return None

    def put(self, baseline: Baseline) -> None:
        with self._lock:
            records = self._read_records()
            records[baseline.key] = baseline.to_dict()
            self._write_records(records)
        logger.info(f"Stored baseline {baseline.key} in {self.path}")

    def delete(self, workload_type: WorkloadType, host_fingerprint: str) -> bool:
        key = baseline_key(workload_type, host_fingerprint)
        with self._lock:
            records = self._read_records()
            if key not in records:
                return False
            del records[key]
            self._write_records(records)
            return True

    def _write_records(self, records: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = {"version": _STORE_VERSION, "baselines": records}
        fd, tmp_path = tempfile.mkstemp(
            prefix=".baselines-", suffix=".json", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class BaselineRecorder:
    """
    Calibrate the best thread count for a workload on this host.

    Example:
        recorder = BaselineRecorder(JsonFileBaselineStore())
        baseline = recorder.create_baseline(
            WorkloadType.TEST,
            candidate_thread_counts=[1, 2, 4, 8],
            iterations_per_candidate=3,
            sample_workload=lambda: WorkloadGenerator.sleep_items(16, 50.0),
        )
    """

    def __init__(
        self,
        store: BaselineStore,
        profiler: Optional[ResourceProfiler] = None,
        config: Optional[CalibrationConfig] = None,
    ):
        self.store = store
        self.profiler = profiler or ResourceProfiler()
        self.config = config or CalibrationConfig()

    @staticmethod
    def _normalize_candidates(candidates: Iterable[int]) -> List[int]:
        normalized = sorted({int(c) for c in candidates if int(c) >= 1})
        if 1 not in normalized:
            logger.debug("Adding sequential candidate 1 to calibration")
            normalized.insert(0, 1)
        return normalized

    @staticmethod
    def _materialize(sample_workload: SampleWorkload) -> List[WorkItem]:
        if callable(sample_workload):
            return list(sample_workload())
        return list(sample_workload)

    def _measure_once(self, threads: int, items: List[WorkItem]) -> float:
        """
        Run the workload once at a fixed thread count.

        Returns:
            Throughput in items per second.

        Raises:
            BaselineError: If any item did not pass.
        """
        settings = ExecutionSettings.override(threads)
        scheduler = Scheduler(
            settings,
            config=SchedulerConfig(grace_period_sec=self.config.grace_period_sec),
        )
        start = time.perf_counter()
        result = scheduler.execute(items, deadline=self.config.run_deadline_sec)
        elapsed = time.perf_counter() - start

        if result.total_count == 0:
            raise BaselineError(threads, "sample workload is empty")
        if result.passed_count != result.total_count:
            raise BaselineError(
                threads,
                f"{result.total_count - result.passed_count} of "
                f"{result.total_count} items did not pass",
            )
        return result.total_count / max(elapsed, 1e-9)

    def _persist(self, baseline: Baseline) -> None:
        # Measurements are returned even when the store rejects them.
        try:
            self.store.put(baseline)
        except OSError as e:
            logger.warning(f"Could not persist baseline {baseline.key}: {e}")

    def create_baseline(
        self,
        workload_type: WorkloadType,
        candidate_thread_counts: Iterable[int],
        iterations_per_candidate: int,
        sample_workload: SampleWorkload,
    ) -> Baseline:
        """
        Measure each candidate and store the resulting baseline.

        Args:
            workload_type: Workload the baseline applies to.
            candidate_thread_counts: Thread counts to try; 1 is always included.
            iterations_per_candidate: Runs per candidate; the median is kept.
            sample_workload: Work items, or a factory producing fresh ones.

        Returns:
            The Baseline, also when persisting it fails. validated is
            False when no usable measurement exists for both the sequential
            reference and a best candidate.
        """
        if iterations_per_candidate < 1:
            raise ValueError("iterations_per_candidate must be at least 1")

        workload_type = WorkloadType(workload_type)
        candidates = self._normalize_candidates(candidate_thread_counts)
        medians: Dict[int, float] = {}
        sample_size = 0

        for threads in candidates:
            samples: List[float] = []
            try:
                for _ in range(iterations_per_candidate):
                    items = self._materialize(sample_workload)
                    sample_size = max(sample_size, len(items))
                    samples.append(self._measure_once(threads, items))
            except BaselineError as e:
                logger.warning(f"Calibration candidate failed: {e}")
                continue
            medians[threads] = float(np.median(samples))
            logger.info(
                f"Calibration {workload_type.value}: {threads} threads -> "
                f"{medians[threads]:.2f} items/sec (median of {len(samples)})"
            )

        fingerprint = self.profiler.fingerprint()
        created_at = datetime.now(timezone.utc).isoformat()

        if not medians:
            fallback = self.profiler.heuristic_default(workload_type)
            logger.warning(
                f"Calibration failed for every candidate; recording unvalidated "
                f"baseline with heuristic default {fallback}"
            )
            baseline = Baseline(
                workload_type=workload_type,
                host_fingerprint=fingerprint,
                recommended_threads=fallback,
                throughput_items_per_second=0.0,
                performance_improvement_percent=0.0,
                sample_size=sample_size,
                created_at=created_at,
                validated=False,
            )
            self._persist(baseline)
            return baseline

        best_threads = max(medians, key=lambda t: (medians[t], -t))
        best = medians[best_threads]
        sequential = medians.get(1)
        if sequential:
            improvement = (best - sequential) / sequential * 100.0
            validated = True
        else:
            logger.warning("Sequential reference failed; baseline is not validated")
            improvement = 0.0
            validated = False

        baseline = Baseline(
            workload_type=workload_type,
            host_fingerprint=fingerprint,
            recommended_threads=best_threads,
            throughput_items_per_second=best,
            performance_improvement_percent=improvement,
            sample_size=sample_size,
            created_at=created_at,
            validated=validated,
            candidate_throughput=dict(medians),
        )
        self._persist(baseline)
        logger.info(
            f"Baseline {baseline.key}: {best_threads} threads, "
            f"{improvement:+.1f}% over sequential"
        )
        return baseline
