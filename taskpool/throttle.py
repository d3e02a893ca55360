"""
Adaptive Throttle Controller

Samples host load while a run is in progress and nudges the scheduler's
live concurrency limit within [1, ceiling]. It is a bounded
proportional-hysteresis controller, not a PID loop:

    2 consecutive High samples  -> limit - 1 (floor 1)
    3 consecutive Low samples   -> limit + 1 (ceiling max_safe_threads)
    Medium                      -> no change, both streaks reset

Pressure classification:

    High   if cpu >= 85% or free memory < 10%
    Low    if cpu <  60% and free memory > 20%
    Medium otherwise

A failed sample counts as Medium. The controller only gates new dispatches;
running items are never preempted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Any, Dict, List, Optional, TYPE_CHECKING
import logging
import os
import time

import psutil

from taskpool.config import ThrottleConfig
from taskpool.models import PressureLevel, ResourceSnapshot

if TYPE_CHECKING:
    from taskpool.scheduler import ConcurrencyGate, Scheduler

logger = logging.getLogger(__name__)

_BYTES_PER_GB = 1024 ** 3


def classify_pressure(
    cpu_percent: float,
    free_memory_percent: float,
    config: Optional[ThrottleConfig] = None,
) -> PressureLevel:
    """
    Classify host load into Low, Medium or High pressure.

    Args:
        cpu_percent: System-wide CPU utilization.
        free_memory_percent: Available memory as a percentage of total.
        config: Thresholds. Uses defaults if None.
    """
    config = config or ThrottleConfig()
    if (cpu_percent >= config.cpu_high_percent
            or free_memory_percent < config.memory_high_free_percent):
        return PressureLevel.HIGH
    if (cpu_percent < config.cpu_low_percent
            and free_memory_percent > config.memory_low_free_percent):
        return PressureLevel.LOW
    return PressureLevel.MEDIUM


class ResourceSampler:
    """
    Produce ResourceSnapshots from psutil.

    CPU load comes from psutil.cpu_percent(interval=None), which measures
    since the previous call anywhere in the process. Samplers running at the
    same time share that counter, so each one sees a shorter window than its
    own poll interval. Run one controller per process for steady readings.
    """

    def __init__(self, config: Optional[ThrottleConfig] = None):
        self.config = config or ThrottleConfig()
        try:
            self.processor_count = psutil.cpu_count(logical=True) or os.cpu_count() or 1
            # First call primes the counter; its value is meaningless.
            psutil.cpu_percent(interval=None)
        except Exception as e:
            logger.warning(f"Could not initialize CPU sampling: {e}")
            self.processor_count = os.cpu_count() or 1

    def sample(self) -> ResourceSnapshot:
        """
        Take one sample of CPU and memory load.

        Raises:
            Exception: Whatever psutil raises. The controller treats this as
                a Medium sample.
        """
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()
        if memory.total > 0:
            free_percent = memory.available / memory.total * 100.0
        else:
            free_percent = 0.0
        return ResourceSnapshot(
            timestamp=time.time(),
            cpu_utilization_percent=cpu_percent,
            available_memory_gb=memory.available / _BYTES_PER_GB,
            memory_available_percent=free_percent,
            processor_count=self.processor_count,
            pressure_level=classify_pressure(cpu_percent, free_percent, self.config),
        )


@dataclass
class ThrottleState:
    """
    Runtime state of one controller attachment.

    Attributes:
        consecutive_high: Current streak of High samples.
        consecutive_low: Current streak of Low samples.
        scale_up_count: Total increases applied.
        scale_down_count: Total decreases applied.
        sample_failures: Samples that raised and were treated as Medium.
        decision_history: Every decision, for analysis.
    """
    consecutive_high: int = 0
    consecutive_low: int = 0
    scale_up_count: int = 0
    scale_down_count: int = 0
    sample_failures: int = 0
    decision_history: List[Dict[str, Any]] = field(default_factory=list)

    def record_decision(
        self,
        timestamp: float,
        limit_before: int,
        limit_after: int,
        pressure: PressureLevel,
        cpu_percent: Optional[float],
        memory_free_percent: Optional[float],
        throughput: float,
        decision: str,
    ) -> None:
        """
        Record a decision for later analysis.

        Args:
            timestamp: Time of decision.
            limit_before: Limit before the decision.
            limit_after: Limit after the decision.
            pressure: Classified pressure level.
            cpu_percent: Sampled CPU utilization, None if sampling failed.
            memory_free_percent: Sampled free memory, None if sampling failed.
            throughput: Items per second finished so far.
            decision: scale_up, scale_down or hold.
        """
        self.decision_history.append({
            "timestamp": timestamp,
            "limit_before": limit_before,
            "limit_after": limit_after,
            "pressure": pressure.value,
            "cpu_percent": cpu_percent,
            "memory_free_percent": memory_free_percent,
            "throughput": throughput,
            "decision": decision,
        })


class ThrottleHandle:
    """
    Handle for a running controller, returned by start().

    Usable as a context manager; leaving the block stops the controller.
    """

    def __init__(
        self,
        controller: "AdaptiveThrottleController",
        gate: "ConcurrencyGate",
        poll_interval_sec: float,
        scheduler: Optional["Scheduler"] = None,
    ):
        self.controller = controller
        self.gate = gate
        self.poll_interval_sec = poll_interval_sec
        self.scheduler = scheduler
        self.state = ThrottleState()
        self.state_lock = Lock()
        self.stop_event = Event()
        self.thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def get_decision_history(self) -> List[Dict[str, Any]]:
        with self.state_lock:
            return list(self.state.decision_history)

    def stop(self) -> None:
        self.controller.stop(self)

    def __enter__(self) -> "ThrottleHandle":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        self.stop()
        return False


class AdaptiveThrottleController:
    """
    Adjust a scheduler's live concurrency limit from host pressure.

    Example:
        controller = AdaptiveThrottleController()
        with controller.start(scheduler, poll_interval_sec=2.0):
            result = scheduler.execute(items)

    Attributes:
        sampler: Source of ResourceSnapshots.
        config: Thresholds and hysteresis parameters.
    """

    def __init__(
        self,
        sampler: Optional[ResourceSampler] = None,
        config: Optional[ThrottleConfig] = None,
        enable_logging: bool = False,
    ):
        self.config = config or ThrottleConfig()
        self.sampler = sampler or ResourceSampler(self.config)
        self._enable_logging = enable_logging

    def start(
        self,
        scheduler: "Scheduler",
        poll_interval_sec: Optional[float] = None,
    ) -> ThrottleHandle:
        """
        Start sampling alongside a scheduler.

        Args:
            scheduler: Scheduler whose gate is adjusted.
            poll_interval_sec: Seconds between samples. Defaults to config.

        Returns:
            Handle to pass to stop().
        """
        interval = poll_interval_sec if poll_interval_sec is not None else self.config.poll_interval_sec
        if interval <= 0:
            raise ValueError("poll_interval_sec must be positive")

        handle = ThrottleHandle(self, scheduler.gate, interval, scheduler=scheduler)
        handle.thread = Thread(
            target=self._monitor_loop,
            args=(handle,),
            daemon=True,
            name="taskpool-throttle",
        )
        handle.thread.start()
        logger.debug(
            f"Throttle controller started: interval={interval}s, "
            f"limit={scheduler.gate.current_limit}, ceiling={scheduler.gate.ceiling}"
        )
        return handle

    def stop(self, handle: ThrottleHandle) -> None:
        """Stop the sampling thread. Safe to call more than once."""
        handle.stop_event.set()
        if handle.thread and handle.thread.is_alive():
            handle.thread.join(timeout=self.config.stop_timeout_sec)
        logger.debug(
            f"Throttle controller stopped: up={handle.state.scale_up_count}, "
            f"down={handle.state.scale_down_count}"
        )

    def _monitor_loop(self, handle: ThrottleHandle) -> None:
        """Sample once per interval until stopped."""
        while not handle.stop_event.wait(handle.poll_interval_sec):
            snapshot: Optional[ResourceSnapshot] = None
            try:
                snapshot = self.sampler.sample()
            except Exception as e:
                logger.warning(f"Resource sampling failed, treating as Medium: {e}")

            throughput = 0.0
            if handle.scheduler is not None:
                throughput = handle.scheduler.metrics.get_throughput()

            try:
                with handle.state_lock:
                    self.observe(handle.gate, snapshot, handle.state, throughput)
            except Exception as e:
                logger.error(f"Error in throttle loop: {e}")

    def observe(
        self,
        gate: "ConcurrencyGate",
        snapshot: Optional[ResourceSnapshot],
        state: ThrottleState,
        throughput: float = 0.0,
    ) -> str:
        """
        Apply one controller step.

        Args:
            gate: Gate holding the live limit.
            snapshot: Latest sample, or None if sampling failed.
            state: Streak counters and history for this attachment.
            throughput: Items per second, recorded in the history only.

        Returns:
            The decision taken: scale_up, scale_down or hold.
        """
        if snapshot is None:
            state.sample_failures += 1
            pressure = PressureLevel.MEDIUM
        else:
            pressure = snapshot.pressure_level

        limit_before, _ = gate.snapshot()
        limit_after = limit_before
        decision = "hold"

        if pressure == PressureLevel.HIGH:
            state.consecutive_low = 0
            state.consecutive_high += 1
            if state.consecutive_high >= self.config.high_samples_to_decrease:
                state.consecutive_high = 0
                limit_before, limit_after = gate.adjust_limit(-self.config.step)
                if limit_after < limit_before:
                    decision = "scale_down"
                    state.scale_down_count += 1

        elif pressure == PressureLevel.LOW:
            state.consecutive_high = 0
            state.consecutive_low += 1
            if (state.consecutive_low >= self.config.low_samples_to_increase
                    and limit_before < gate.ceiling):
                state.consecutive_low = 0
                limit_before, limit_after = gate.adjust_limit(self.config.step)
                if limit_after > limit_before:
                    decision = "scale_up"
                    state.scale_up_count += 1

        else:
            state.consecutive_high = 0
            state.consecutive_low = 0

        state.record_decision(
            timestamp=time.time(),
            limit_before=limit_before,
            limit_after=limit_after,
            pressure=pressure,
            cpu_percent=snapshot.cpu_utilization_percent if snapshot else None,
            memory_free_percent=snapshot.memory_available_percent if snapshot else None,
            throughput=throughput,
            decision=decision,
        )

        if decision != "hold":
            logger.info(
                f"Throttle {decision}: limit {limit_before} -> {limit_after} "
                f"(pressure={pressure.value})"
            )
        elif self._enable_logging:
            logger.debug(
                f"Throttle: limit={limit_before}, pressure={pressure.value}, "
                f"throughput={throughput:.1f}, decision=hold"
            )
        return decision
