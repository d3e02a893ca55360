"""
Parallel Execution Engine

Composes the components for a single call:

    ResourceProfiler -> ExecutionSettings -> Scheduler
                                   AdaptiveThrottleController alongside
    Scheduler -> WorkerResults -> ResultAggregator -> AggregateResult
"""

from __future__ import annotations

from typing import Optional, Sequence
import logging

from taskpool.config import SchedulerConfig, ThrottleConfig
from taskpool.models import AggregateResult, ExecutionSettings, WorkItem, WorkloadType
from taskpool.profiler import ResourceProfiler
from taskpool.scheduler import Scheduler
from taskpool.throttle import AdaptiveThrottleController

logger = logging.getLogger(__name__)


class ParallelEngine:
    """
    Run work items with resource-aware, adaptive concurrency.

    Example:
        engine = ParallelEngine(profiler=ResourceProfiler(store=JsonFileBaselineStore()))
        result = engine.run(items, workload_type=WorkloadType.TEST, ci_mode=True)
        print(result.passed_count, result.failed_count)
    """

    def __init__(
        self,
        profiler: Optional[ResourceProfiler] = None,
        throttle: Optional[AdaptiveThrottleController] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        throttle_config: Optional[ThrottleConfig] = None,
    ):
        self.profiler = profiler or ResourceProfiler()
        self.scheduler_config = scheduler_config or SchedulerConfig()
        self.throttle_config = throttle_config or ThrottleConfig()
        self._throttle = throttle

    @property
    def throttle(self) -> AdaptiveThrottleController:
        if self._throttle is None:
            self._throttle = AdaptiveThrottleController(config=self.throttle_config)
        return self._throttle

    def run(
        self,
        items: Sequence[WorkItem],
        workload_type: WorkloadType = WorkloadType.GENERAL,
        ci_mode: bool = False,
        override: Optional[ExecutionSettings] = None,
        deadline: Optional[float] = None,
        force_sequential: bool = False,
        adaptive: bool = True,
        poll_interval_sec: Optional[float] = None,
    ) -> AggregateResult:
        """
        Execute items and return the aggregate result.

        Args:
            items: Work items to run.
            workload_type: Selects heuristics and baselines.
            ci_mode: Conservative settings; the live limit never rises above
                the CI cap.
            override: Explicit settings bypassing detection.
            deadline: Seconds after which unfinished items are skipped or
                abandoned.
            force_sequential: Pin the live limit to 1.
            adaptive: Run the throttle controller alongside the scheduler.
            poll_interval_sec: Controller sampling interval.

        Returns:
            AggregateResult with one result per item.

        Raises:
            ConfigurationError: If the settings are invalid. Nothing runs.
        """
        settings = self.profiler.detect_settings(
            workload_type=workload_type, ci_mode=ci_mode, override=override
        )
        scheduler = Scheduler(
            settings,
            config=self.scheduler_config,
            force_sequential=force_sequential,
        )

        if not adaptive or force_sequential or settings.max_safe_threads <= 1:
            return scheduler.execute(items, deadline=deadline)

        handle = self.throttle.start(scheduler, poll_interval_sec)
        try:
            return scheduler.execute(items, deadline=deadline)
        finally:
            self.throttle.stop(handle)
            logger.debug(
                f"Throttle made {len(handle.get_decision_history())} decisions"
            )


def run_parallel(
    items: Sequence[WorkItem],
    workload_type: WorkloadType = WorkloadType.GENERAL,
    ci_mode: bool = False,
    override: Optional[ExecutionSettings] = None,
    deadline: Optional[float] = None,
    force_sequential: bool = False,
    adaptive: bool = True,
) -> AggregateResult:
    """Run items with a default ParallelEngine."""
    return ParallelEngine().run(
        items,
        workload_type=workload_type,
        ci_mode=ci_mode,
        override=override,
        deadline=deadline,
        force_sequential=force_sequential,
        adaptive=adaptive,
    )
