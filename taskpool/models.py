"""
Data Model for the Execution Engine

Records exchanged between the profiler, scheduler, throttle controller,
aggregator and baseline store. Records that must not change after creation
are frozen dataclasses; the live concurrency limit is never stored here, it
belongs to the scheduler's ConcurrencyGate.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from taskpool.errors import ItemExecutionError


class WorkloadType(str, Enum):
    """Tag selecting heuristics and baselines for a run."""
    TEST = "Test"
    BUILD = "Build"
    ANALYSIS = "Analysis"
    GENERAL = "General"


class SettingsSource(str, Enum):
    """Where an ExecutionSettings snapshot came from."""
    HEURISTIC = "Heuristic"
    BASELINE = "Baseline"
    OVERRIDE = "Override"
    FALLBACK = "Fallback"


class PressureLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class ResultStatus(str, Enum):
    PASSED = "Passed"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    ERROR = "Error"


class ResultReason(str, Enum):
    """Why a result is not a plain pass."""
    TIMEOUT = "Timeout"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"
    EXCEPTION = "Exception"
    EXIT_CODE = "ExitCode"


@dataclass(frozen=True)
class WorkItem:
    """
    An independently executable unit of work.

    Attributes:
        id: Unique identifier within a run.
        action: Callable executing the work. Called with no arguments, or
            with the item's cancellation Event when accepts_cancel_event is set.
        weight: Optional relative cost hint.
        accepts_cancel_event: Pass a threading.Event to the action so it can
            stop cooperatively once a deadline expires.
    """
    id: str
    action: Callable[..., Any]
    weight: Optional[float] = None
    accepts_cancel_event: bool = False


@dataclass(frozen=True)
class ExecutionSettings:
    """
    Concurrency settings computed once per run.

    The snapshot is immutable. The scheduler initializes its live limit from
    optimal_threads and adjusts that limit without touching this record.

    Attributes:
        optimal_threads: Starting concurrency.
        max_safe_threads: Upper bound the live limit may never exceed.
        recommend_parallel: Whether parallel execution is advisable on this host.
        source: Heuristic, Baseline, Override or Fallback.
        workload_type: Workload tag the settings were computed for.
        ci_mode: Conservative CI settings were requested.
        processor_count: Detected logical processors (0 for overrides).
        total_memory_gb: Detected physical memory (0.0 for overrides).
        ci_thread_cap: CI cap applied by the profiler, None when not in CI
            mode or for overrides. The live limit never rises above it.
    """
    optimal_threads: int
    max_safe_threads: int
    recommend_parallel: bool
    source: SettingsSource
    workload_type: WorkloadType = WorkloadType.GENERAL
    ci_mode: bool = False
    processor_count: int = 0
    total_memory_gb: float = 0.0
    ci_thread_cap: Optional[int] = None

    @classmethod
    def override(
        cls,
        threads: int,
        max_safe_threads: Optional[int] = None,
        workload_type: WorkloadType = WorkloadType.GENERAL,
        ci_mode: bool = False,
    ) -> "ExecutionSettings":
        """Build explicit settings that bypass host detection."""
        return cls(
            optimal_threads=threads,
            max_safe_threads=max_safe_threads if max_safe_threads is not None else threads,
            recommend_parallel=threads > 1,
            source=SettingsSource.OVERRIDE,
            workload_type=workload_type,
            ci_mode=ci_mode,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["workload_type"] = self.workload_type.value
        return data


@dataclass(frozen=True)
class ResourceSnapshot:
    """
    One sample of host load, produced every poll interval. Not persisted.
    """
    timestamp: float
    cpu_utilization_percent: float
    available_memory_gb: float
    memory_available_percent: float
    processor_count: int
    pressure_level: PressureLevel


@dataclass(frozen=True)
class WorkerResult:
    """
    Outcome of exactly one work item.

    Attributes:
        work_item_id: Identifier of the item.
        status: Passed, Failed, Skipped or Error.
        duration_ms: Time the item ran, 0 if it never started.
        message: Human readable detail, empty for a plain pass.
        reason: Why the item did not simply pass, if applicable.
        started_at: Monotonic dispatch time in seconds, None if never started.
        finished_at: Monotonic completion or abandonment time in seconds.
    """
    work_item_id: str
    status: ResultStatus
    duration_ms: float
    message: str = ""
    reason: Optional[ResultReason] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_failure(self) -> bool:
        return self.status in (ResultStatus.FAILED, ResultStatus.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "work_item_id": self.work_item_id,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "message": self.message,
            "reason": self.reason.value if self.reason else None,
        }


@dataclass(frozen=True)
class FailureEntry:
    work_item_id: str
    status: ResultStatus
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "work_item_id": self.work_item_id,
            "status": self.status.value,
            "message": self.message,
        }


@dataclass
class AggregateResult:
    """
    Summary of a run, consumed by report generators.

    Invariant: total_count equals the sum of the four status counts and the
    number of submitted work items.

    Attributes:
        total_count: Number of results.
        passed_count: Results with status Passed.
        failed_count: Results with status Failed.
        skipped_count: Results with status Skipped.
        error_count: Results with status Error.
        total_duration_ms: Wall-clock span from first dispatch to last completion.
        failures: One entry per Failed or Error result, in completion order.
        per_item: Every WorkerResult.
        p50_duration_ms: Median duration of items that ran.
        p95_duration_ms: 95th percentile duration of items that ran.
        settings: Settings snapshot the run started from.
        final_thread_limit: Live concurrency limit when the run finished.
    """
    total_count: int
    passed_count: int
    failed_count: int
    skipped_count: int
    error_count: int
    total_duration_ms: float
    failures: List[FailureEntry] = field(default_factory=list)
    per_item: List[WorkerResult] = field(default_factory=list)
    p50_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    settings: Optional[ExecutionSettings] = None
    final_thread_limit: Optional[int] = None

    @property
    def pass_rate(self) -> float:
        """Percentage of passed items, 0 for an empty run."""
        if self.total_count == 0:
            return 0.0
        return self.passed_count / self.total_count * 100

    @property
    def success(self) -> bool:
        return self.failed_count == 0 and self.error_count == 0

    def result_for(self, work_item_id: str) -> Optional[WorkerResult]:
        for result in self.per_item:
            if result.work_item_id == work_item_id:
                return result
        return None

    def raise_for_failures(self) -> None:
        """Raise ItemExecutionError for the first failure, if any."""
        if self.failures:
            first = self.failures[0]
            raise ItemExecutionError(first.work_item_id, first.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the field names report generators expect."""
        return {
            "TotalCount": self.total_count,
            "PassedCount": self.passed_count,
            "FailedCount": self.failed_count,
            "SkippedCount": self.skipped_count,
            "ErrorCount": self.error_count,
            "Duration": self.total_duration_ms,
            "PassRate": self.pass_rate,
            "Failures": [f.to_dict() for f in self.failures],
            "Results": [r.to_dict() for r in self.per_item],
        }


@dataclass(frozen=True)
class Baseline:
    """
    Empirically measured optimal concurrency for a workload on a host profile.

    Created only by calibration and superseded, never mutated, by later
    calibrations for the same (workload_type, host_fingerprint) key.
    """
    workload_type: WorkloadType
    host_fingerprint: str
    recommended_threads: int
    throughput_items_per_second: float
    performance_improvement_percent: float
    sample_size: int
    created_at: str
    validated: bool
    candidate_throughput: Dict[int, float] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return baseline_key(self.workload_type, self.host_fingerprint)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workload_type": self.workload_type.value,
            "host_fingerprint": self.host_fingerprint,
            "recommended_threads": self.recommended_threads,
            "throughput_items_per_second": self.throughput_items_per_second,
            "performance_improvement_percent": self.performance_improvement_percent,
            "sample_size": self.sample_size,
            "created_at": self.created_at,
            "validated": self.validated,
            "candidate_throughput": {
                str(k): v for k, v in self.candidate_throughput.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Baseline":
        """
        Rebuild a Baseline from its serialized form.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed.
        """
        validated = data["validated"]
        if not isinstance(validated, bool):
            raise ValueError(f"validated must be a boolean, got {validated!r}")
        recommended_threads = int(data["recommended_threads"])
        if recommended_threads < 1:
            raise ValueError(f"recommended_threads must be at least 1, got {recommended_threads}")

        return cls(
            workload_type=WorkloadType(data["workload_type"]),
            host_fingerprint=str(data["host_fingerprint"]),
            recommended_threads=recommended_threads,
            throughput_items_per_second=float(data["throughput_items_per_second"]),
            performance_improvement_percent=float(data["performance_improvement_percent"]),
            sample_size=int(data["sample_size"]),
            created_at=str(data["created_at"]),
            validated=validated,
            candidate_throughput={
                int(k): float(v)
                for k, v in data.get("candidate_throughput", {}).items()
            },
        )


def baseline_key(workload_type: WorkloadType, host_fingerprint: str) -> str:
    return f"{WorkloadType(workload_type).value}|{host_fingerprint}"
