"""
taskpool: Adaptive, Resource-Aware Parallel Execution Engine

Runs independent units of work (test files, build steps, analysis tasks)
concurrently while respecting host resource limits. Unbounded parallelism
causes contention and flaky failures on constrained CI runners, while a fixed
low concurrency wastes powerful workstations; taskpool picks a starting
concurrency from the host and adjusts it while the run is in progress.

Key Features:
- ResourceProfiler: host detection, heuristics and calibrated baselines
- Scheduler: bounded worker pool with a live, externally adjustable limit
- AdaptiveThrottleController: hysteresis control from CPU and memory pressure
- ResultAggregator: one consistent summary, even when everything failed
- BaselineRecorder: empirical calibration of the best thread count

Example:
    from taskpool import ParallelEngine, WorkItem, WorkloadType

    items = [WorkItem(id=path, action=make_runner(path)) for path in paths]
    result = ParallelEngine().run(items, workload_type=WorkloadType.TEST)
    print(result.passed_count, result.failed_count)
"""

from __future__ import annotations

import logging

from taskpool.aggregator import ResultAggregator
from taskpool.baseline import (
    BaselineRecorder,
    BaselineStore,
    InMemoryBaselineStore,
    JsonFileBaselineStore,
)
from taskpool.config import (
    CalibrationConfig,
    HeuristicConfig,
    SchedulerConfig,
    ThrottleConfig,
)
from taskpool.engine import ParallelEngine, run_parallel
from taskpool.errors import (
    BaselineError,
    ConfigurationError,
    ItemExecutionError,
    ResourceDetectionError,
    TaskPoolError,
    WorkItemCancelled,
    WorkItemFailed,
    WorkItemSkipped,
)
from taskpool.metrics import MetricsCollector
from taskpool.models import (
    AggregateResult,
    Baseline,
    ExecutionSettings,
    FailureEntry,
    PressureLevel,
    ResourceSnapshot,
    ResultReason,
    ResultStatus,
    SettingsSource,
    WorkerResult,
    WorkItem,
    WorkloadType,
)
from taskpool.profiler import HostResources, ResourceProfiler, host_fingerprint
from taskpool.scheduler import ConcurrencyGate, Scheduler, WorkerPool
from taskpool.throttle import (
    AdaptiveThrottleController,
    ResourceSampler,
    ThrottleHandle,
    ThrottleState,
    classify_pressure,
)
from taskpool.workloads import WorkloadGenerator

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "1.0.0"

__all__ = [
    # Engine
    "ParallelEngine",
    "run_parallel",
    # Components
    "ResourceProfiler",
    "HostResources",
    "host_fingerprint",
    "Scheduler",
    "WorkerPool",
    "ConcurrencyGate",
    "AdaptiveThrottleController",
    "ResourceSampler",
    "ThrottleHandle",
    "ThrottleState",
    "classify_pressure",
    "ResultAggregator",
    "MetricsCollector",
    "BaselineRecorder",
    "BaselineStore",
    "InMemoryBaselineStore",
    "JsonFileBaselineStore",
    "WorkloadGenerator",
    # Configuration
    "HeuristicConfig",
    "ThrottleConfig",
    "SchedulerConfig",
    "CalibrationConfig",
    # Data model
    "WorkItem",
    "ExecutionSettings",
    "ResourceSnapshot",
    "WorkerResult",
    "FailureEntry",
    "AggregateResult",
    "Baseline",
    "WorkloadType",
    "SettingsSource",
    "PressureLevel",
    "ResultStatus",
    "ResultReason",
    # Errors
    "TaskPoolError",
    "ConfigurationError",
    "ItemExecutionError",
    "ResourceDetectionError",
    "BaselineError",
    "WorkItemFailed",
    "WorkItemSkipped",
    "WorkItemCancelled",
]
