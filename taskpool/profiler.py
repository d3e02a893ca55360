"""
Resource Profiler

One-shot detection of host capacity and computation of the starting
concurrency settings for a run. Settings come from, in order of preference:

1. an explicit override, returned verbatim,
2. a validated baseline for (workload type, host fingerprint),
3. heuristics over processor count and total memory.

Detection failures never raise. The profiler falls back to the logical CPU
count and 8 GB of memory and marks the settings with source=Fallback.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple, TYPE_CHECKING
import logging
import math
import os
import platform

import psutil

from taskpool.config import HeuristicConfig
from taskpool.errors import ResourceDetectionError
from taskpool.models import ExecutionSettings, SettingsSource, WorkloadType

if TYPE_CHECKING:
    from taskpool.baseline import BaselineStore
    from taskpool.models import Baseline

logger = logging.getLogger(__name__)

_BYTES_PER_GB = 1024 ** 3


@dataclass(frozen=True)
class HostResources:
    """
    Detected host capacity.

    Attributes:
        processor_count: Logical processors.
        total_memory_gb: Physical memory.
        system: Operating system name, as platform.system() reports it.
        machine: Machine architecture.
        detection_fallback: True if any value is a fallback default.
    """
    processor_count: int
    total_memory_gb: float
    system: str
    machine: str
    detection_fallback: bool = False


def host_fingerprint(
    processor_count: int,
    system: Optional[str] = None,
    machine: Optional[str] = None,
) -> str:
    """
    Key scoping baseline reuse to similar hosts.

    Derived from processor count and platform, e.g. "linux-x86_64-8cpu".
    """
    system = (system if system is not None else platform.system()) or "unknown"
    machine = (machine if machine is not None else platform.machine()) or "unknown"
    return f"{system.lower()}-{machine.lower()}-{processor_count}cpu"


def _query_host() -> Tuple[int, float]:
    """
    Query processor count and total memory.

    Raises:
        ResourceDetectionError: If psutil cannot provide either value.
    """
    try:
        cores = psutil.cpu_count(logical=True)
        total_bytes = psutil.virtual_memory().total
    except Exception as e:
        raise ResourceDetectionError(f"psutil query failed: {e}") from e
    if not cores or cores < 1:
        raise ResourceDetectionError(f"Invalid processor count: {cores!r}")
    if not total_bytes or total_bytes <= 0:
        raise ResourceDetectionError(f"Invalid memory size: {total_bytes!r}")
    return int(cores), total_bytes / _BYTES_PER_GB


def detect_host(config: Optional[HeuristicConfig] = None) -> HostResources:
    """
    Detect host capacity, falling back to conservative defaults.

    Returns:
        HostResources; detection_fallback is set when defaults were used.
    """
    config = config or HeuristicConfig()
    system = platform.system()
    machine = platform.machine()
    try:
        cores, memory_gb = _query_host()
    except ResourceDetectionError as e:
        cores = os.cpu_count() or 1
        logger.warning(
            f"Resource detection failed ({e}); assuming {cores} processors "
            f"and {config.fallback_memory_gb}GB memory"
        )
        return HostResources(
            processor_count=cores,
            total_memory_gb=config.fallback_memory_gb,
            system=system,
            machine=machine,
            detection_fallback=True,
        )
    return HostResources(
        processor_count=cores,
        total_memory_gb=memory_gb,
        system=system,
        machine=machine,
    )


def heuristic_threads(
    processor_count: int,
    total_memory_gb: float,
    ci_mode: bool,
    config: Optional[HeuristicConfig] = None,
) -> int:
    """
    Heuristic starting thread count, never above processor_count.

    CI runs are capped at ci_thread_cap. Otherwise memory selects a tier:
    half the cores below low_memory_gb, three quarters below
    medium_memory_gb, else up to workstation_thread_cap.
    """
    config = config or HeuristicConfig()
    cores = max(1, processor_count)
    if ci_mode:
        threads = min(cores, config.ci_thread_cap)
    elif total_memory_gb < config.low_memory_gb:
        threads = max(cores // 2, config.memory_tier_floor)
    elif total_memory_gb < config.medium_memory_gb:
        threads = max(math.floor(cores * 0.75), config.memory_tier_floor)
    else:
        threads = min(cores, config.workstation_thread_cap)
    return max(1, min(threads, cores))


class ResourceProfiler:
    """
    Compute ExecutionSettings for a run.

    Example:
        profiler = ResourceProfiler(store=JsonFileBaselineStore())
        settings = profiler.detect_settings(WorkloadType.TEST, ci_mode=True)

    Attributes:
        store: Optional baseline store consulted before heuristics.
        config: Heuristic thresholds.
    """

    def __init__(
        self,
        store: Optional["BaselineStore"] = None,
        config: Optional[HeuristicConfig] = None,
        host_probe: Optional[Callable[[], HostResources]] = None,
    ):
        """
        Initialize the profiler.

        Args:
            store: Baseline store to consult. None disables baselines.
            config: Heuristic configuration. Uses defaults if None.
            host_probe: Replacement for detect_host, mainly for tests.
        """
        self.store = store
        self.config = config or HeuristicConfig()
        self._host_probe = host_probe
        self._host: Optional[HostResources] = None

    def host(self) -> HostResources:
        """Detect host resources once and reuse them."""
        if self._host is None:
            if self._host_probe is not None:
                self._host = self._host_probe()
            else:
                self._host = detect_host(self.config)
        return self._host

    def fingerprint(self) -> str:
        host = self.host()
        return host_fingerprint(host.processor_count, host.system, host.machine)

    def heuristic_default(
        self,
        workload_type: WorkloadType = WorkloadType.GENERAL,
        ci_mode: bool = False,
    ) -> int:
        """Heuristic thread count, ignoring any baseline."""
        host = self.host()
        return heuristic_threads(
            host.processor_count, host.total_memory_gb, ci_mode, self.config
        )

    def detect_settings(
        self,
        workload_type: WorkloadType = WorkloadType.GENERAL,
        ci_mode: bool = False,
        override: Optional[ExecutionSettings] = None,
    ) -> ExecutionSettings:
        """
        Compute the starting settings for a run.

        Args:
            workload_type: Workload tag selecting the baseline.
            ci_mode: Use conservative CI heuristics.
            override: Explicit settings; returned verbatim with source=Override.

        Returns:
            ExecutionSettings with optimal_threads <= max_safe_threads.
        """
        if override is not None:
            if override.source is SettingsSource.OVERRIDE:
                return override
            return replace(override, source=SettingsSource.OVERRIDE)

        workload_type = WorkloadType(workload_type)
        host = self.host()
        cores = max(1, host.processor_count)
        recommend_parallel = cores >= self.config.parallel_min_cores and not ci_mode

        baseline = self._lookup_baseline(workload_type, host)
        if baseline is not None:
            threads = min(baseline.recommended_threads, cores)
            if ci_mode:
                threads = min(threads, self.config.ci_thread_cap)
            settings = ExecutionSettings(
                optimal_threads=max(1, threads),
                max_safe_threads=cores,
                recommend_parallel=recommend_parallel,
                source=SettingsSource.BASELINE,
                workload_type=workload_type,
                ci_mode=ci_mode,
                processor_count=cores,
                total_memory_gb=host.total_memory_gb,
                ci_thread_cap=self.config.ci_thread_cap if ci_mode else None,
            )
        else:
            settings = ExecutionSettings(
                optimal_threads=heuristic_threads(
                    cores, host.total_memory_gb, ci_mode, self.config
                ),
                max_safe_threads=cores,
                recommend_parallel=recommend_parallel,
                source=SettingsSource.FALLBACK if host.detection_fallback else SettingsSource.HEURISTIC,
                workload_type=workload_type,
                ci_mode=ci_mode,
                processor_count=cores,
                total_memory_gb=host.total_memory_gb,
                ci_thread_cap=self.config.ci_thread_cap if ci_mode else None,
            )

        logger.info(
            f"Execution settings for {workload_type.value}: "
            f"threads={settings.optimal_threads}/{settings.max_safe_threads}, "
            f"parallel={settings.recommend_parallel}, source={settings.source.value}"
        )
        return settings

    def _lookup_baseline(
        self, workload_type: WorkloadType, host: HostResources
    ) -> Optional["Baseline"]:
        if self.store is None:
            return None
        fingerprint = host_fingerprint(host.processor_count, host.system, host.machine)
        try:
            baseline = self.store.get(workload_type, fingerprint)
        except Exception as e:
            logger.warning(f"Baseline lookup failed, using heuristics: {e}")
            return None
        if baseline is None:
            return None
        if not baseline.validated:
            logger.debug(f"Ignoring unvalidated baseline for {baseline.key}")
            return None
        return baseline
