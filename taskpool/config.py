"""
Tunable Configuration Defaults

The thresholds here were chosen empirically. They are defaults for the
profiler, scheduler and controller, not guaranteed optima; adjust them per
deployment by passing a modified dataclass to the component constructor.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASELINE_PATH_ENV = "TASKPOOL_BASELINE_PATH"

DEFAULT_CI_THREAD_CAP = 3


def default_baseline_path() -> Path:
    """
    Location of the baseline store file.

    Uses TASKPOOL_BASELINE_PATH when set, otherwise a file under the
    user's cache directory.
    """
    override = os.environ.get(BASELINE_PATH_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".cache" / "taskpool" / "baselines.json"


@dataclass
class HeuristicConfig:
    """
    Parameters for heuristic thread count selection.

    Attributes:
        ci_thread_cap: Maximum threads used in CI mode.
        low_memory_gb: Hosts below this total memory get half the cores.
        medium_memory_gb: Hosts below this get three quarters of the cores.
        memory_tier_floor: Minimum threads for the low and medium tiers.
        workstation_thread_cap: Maximum threads for well-provisioned hosts.
        parallel_min_cores: Core count from which parallel runs are recommended.
        fallback_memory_gb: Memory assumed when detection fails.
    """
    ci_thread_cap: int = DEFAULT_CI_THREAD_CAP
    low_memory_gb: float = 4.0
    medium_memory_gb: float = 8.0
    memory_tier_floor: int = 2
    workstation_thread_cap: int = 6
    parallel_min_cores: int = 4
    fallback_memory_gb: float = 8.0


@dataclass
class ThrottleConfig:
    """
    Configuration for the adaptive throttle controller.

    Attributes:
        poll_interval_sec: Default time between resource samples.
        cpu_high_percent: CPU utilization at or above which pressure is High.
        cpu_low_percent: CPU utilization below which pressure may be Low.
        memory_high_free_percent: Free memory below this is High pressure.
        memory_low_free_percent: Free memory above this allows Low pressure.
        high_samples_to_decrease: Consecutive High samples before scaling down.
        low_samples_to_increase: Consecutive Low samples before scaling up.
        step: Threads added or removed per decision.
        stop_timeout_sec: How long stop() waits for the sampling thread.
    """
    poll_interval_sec: float = 2.0
    cpu_high_percent: float = 85.0
    cpu_low_percent: float = 60.0
    memory_high_free_percent: float = 10.0
    memory_low_free_percent: float = 20.0
    high_samples_to_decrease: int = 2
    low_samples_to_increase: int = 3
    step: int = 1
    stop_timeout_sec: float = 2.0


@dataclass
class SchedulerConfig:
    """
    Configuration for the worker pool.

    Attributes:
        grace_period_sec: Time running items get to honour cancellation
            after the deadline before they are abandoned.
        ci_thread_cap: Ceiling for the live limit in CI mode when the settings
            do not record the cap the profiler applied.
        thread_name_prefix: Prefix for worker thread names.
    """
    grace_period_sec: float = 2.0
    ci_thread_cap: int = DEFAULT_CI_THREAD_CAP
    thread_name_prefix: str = "taskpool-worker"


@dataclass
class CalibrationConfig:
    """
    Configuration for baseline calibration runs.

    Attributes:
        run_deadline_sec: Optional deadline applied to each calibration run.
        grace_period_sec: Grace period for calibration runs.
    """
    run_deadline_sec: Optional[float] = None
    grace_period_sec: float = 2.0
