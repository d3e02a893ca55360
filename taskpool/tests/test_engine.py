"""
Integration Tests for the Parallel Engine
"""

import time
import unittest

from taskpool import (
    AdaptiveThrottleController,
    ConfigurationError,
    ExecutionSettings,
    HeuristicConfig,
    HostResources,
    ParallelEngine,
    PressureLevel,
    ResourceProfiler,
    ResourceSnapshot,
    ResultStatus,
    SettingsSource,
    WorkItem,
    WorkloadGenerator,
    WorkloadType,
    run_parallel,
)


class ScriptedSampler:

    def __init__(self, pressure: PressureLevel):
        self.pressure = pressure

    def sample(self) -> ResourceSnapshot:
        return ResourceSnapshot(
            timestamp=time.time(),
            cpu_utilization_percent=10.0,
            available_memory_gb=8.0,
            memory_available_percent=80.0,
            processor_count=8,
            pressure_level=self.pressure,
        )


def make_engine(cores: int = 8, memory_gb: float = 16.0,
                pressure: PressureLevel = PressureLevel.LOW,
                heuristics=None) -> ParallelEngine:
    host = HostResources(cores, memory_gb, "Linux", "x86_64")
    return ParallelEngine(
        profiler=ResourceProfiler(config=heuristics, host_probe=lambda: host),
        throttle=AdaptiveThrottleController(sampler=ScriptedSampler(pressure)),
    )


class TestParallelEngine(unittest.TestCase):
    """End-to-end runs through profiler, scheduler, throttle and aggregator."""

    def test_mixed_outcomes(self):
        engine = make_engine()
        items = WorkloadGenerator.sleep_items(6, duration_ms=20.0)
        items.append(WorkloadGenerator.failing_item("broken", "boom"))

        result = engine.run(items, workload_type=WorkloadType.TEST, poll_interval_sec=0.01)

        self.assertEqual(result.total_count, 7)
        self.assertEqual(result.passed_count, 6)
        self.assertEqual(result.error_count, 1)
        self.assertEqual(result.failures[0].work_item_id, "broken")
        self.assertEqual(result.settings.source, SettingsSource.HEURISTIC)
        self.assertEqual(result.settings.workload_type, WorkloadType.TEST)

    def test_force_sequential(self):
        """Forced sequential runs one item at a time."""
        engine = make_engine()
        items = WorkloadGenerator.sleep_items(4, duration_ms=50.0)

        result = engine.run(items, force_sequential=True)

        self.assertEqual(result.passed_count, 4)
        self.assertEqual(result.final_thread_limit, 1)
        self.assertGreaterEqual(result.total_duration_ms, 195.0)

    def test_invalid_override_runs_nothing(self):
        engine = make_engine()
        calls = []
        items = [WorkItem("a", lambda: calls.append("a"))]

        with self.assertRaises(ConfigurationError):
            engine.run(items, override=ExecutionSettings.override(0))
        self.assertEqual(calls, [])

    def test_override_used(self):
        engine = make_engine(cores=2)
        result = engine.run(
            WorkloadGenerator.sleep_items(3, duration_ms=10.0),
            override=ExecutionSettings.override(3),
        )

        self.assertEqual(result.settings.source, SettingsSource.OVERRIDE)
        self.assertEqual(result.settings.optimal_threads, 3)

    def test_ci_mode_limit_capped(self):
        """Low pressure in CI mode never raises the limit past the CI cap."""
        engine = make_engine(cores=16, memory_gb=64.0)
        items = WorkloadGenerator.sleep_items(30, duration_ms=20.0)

        result = engine.run(items, ci_mode=True, poll_interval_sec=0.01)

        self.assertEqual(result.passed_count, 30)
        self.assertLessEqual(result.settings.optimal_threads, 3)
        self.assertLessEqual(result.final_thread_limit, 3)

    def test_tuned_ci_cap_bounds_live_limit(self):
        """A CI cap tuned on the profiler also bounds throttle increases."""
        engine = make_engine(cores=16, memory_gb=64.0, heuristics=HeuristicConfig(ci_thread_cap=2))
        items = WorkloadGenerator.sleep_items(40, duration_ms=20.0)

        result = engine.run(items, ci_mode=True, poll_interval_sec=0.01)

        self.assertEqual(result.passed_count, 40)
        self.assertEqual(result.settings.optimal_threads, 2)
        self.assertEqual(result.settings.ci_thread_cap, 2)
        self.assertLessEqual(result.final_thread_limit, 2)

    def test_high_pressure_still_completes(self):
        engine = make_engine(pressure=PressureLevel.HIGH)
        items = WorkloadGenerator.sleep_items(12, duration_ms=20.0)

        result = engine.run(items, poll_interval_sec=0.01)

        self.assertEqual(result.passed_count, 12)
        self.assertGreaterEqual(result.final_thread_limit, 1)

    def test_non_adaptive_keeps_initial_limit(self):
        engine = make_engine()
        result = engine.run(
            WorkloadGenerator.sleep_items(4, duration_ms=10.0),
            override=ExecutionSettings.override(2, max_safe_threads=4),
            adaptive=False,
        )
        self.assertEqual(result.final_thread_limit, 2)

    def test_deadline_skips_pending(self):
        engine = make_engine()
        items = WorkloadGenerator.sleep_items(6, duration_ms=300.0)

        result = engine.run(
            items,
            override=ExecutionSettings.override(1),
            deadline=0.1,
        )

        self.assertEqual(result.total_count, 6)
        self.assertGreaterEqual(result.skipped_count, 5)
        skipped = [r for r in result.per_item if r.status == ResultStatus.SKIPPED]
        self.assertTrue(all(r.reason is not None for r in skipped))


class TestRunParallel(unittest.TestCase):

    def test_shortcut(self):
        items = WorkloadGenerator.sleep_items(4, duration_ms=10.0)
        result = run_parallel(items, override=ExecutionSettings.override(2), adaptive=False)

        self.assertEqual(result.passed_count, 4)
        self.assertTrue(result.success)


if __name__ == "__main__":
    unittest.main(verbosity=2)
