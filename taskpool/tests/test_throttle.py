"""
Unit Tests for the Adaptive Throttle Controller

Validates pressure classification, hysteresis and the limit bounds.
"""

import random
import time
import unittest

from taskpool import (
    AdaptiveThrottleController,
    ConcurrencyGate,
    ExecutionSettings,
    PressureLevel,
    ResourceSampler,
    ResourceSnapshot,
    Scheduler,
    ThrottleConfig,
    ThrottleState,
    WorkloadGenerator,
    classify_pressure,
)


def make_snapshot(pressure: PressureLevel, cpu: float = 50.0, free: float = 50.0) -> ResourceSnapshot:
    return ResourceSnapshot(
        timestamp=time.time(),
        cpu_utilization_percent=cpu,
        available_memory_gb=8.0,
        memory_available_percent=free,
        processor_count=8,
        pressure_level=pressure,
    )


class ScriptedSampler:
    """Sampler returning a fixed pressure, or raising when told to."""

    def __init__(self, pressure: PressureLevel = PressureLevel.LOW, fail: bool = False):
        self.pressure = pressure
        self.fail = fail
        self.calls = 0

    def sample(self) -> ResourceSnapshot:
        self.calls += 1
        if self.fail:
            raise RuntimeError("sensor unavailable")
        return make_snapshot(self.pressure)


class TestClassifyPressure(unittest.TestCase):
    """Tests for pressure classification thresholds."""

    def test_high_cpu(self):
        self.assertEqual(classify_pressure(85.0, 50.0), PressureLevel.HIGH)
        self.assertEqual(classify_pressure(99.0, 90.0), PressureLevel.HIGH)

    def test_low_free_memory(self):
        self.assertEqual(classify_pressure(10.0, 9.9), PressureLevel.HIGH)

    def test_low_pressure(self):
        self.assertEqual(classify_pressure(59.9, 20.1), PressureLevel.LOW)

    def test_medium_band(self):
        """Values between the bands should be Medium."""
        self.assertEqual(classify_pressure(60.0, 50.0), PressureLevel.MEDIUM)
        self.assertEqual(classify_pressure(30.0, 20.0), PressureLevel.MEDIUM)
        self.assertEqual(classify_pressure(84.9, 15.0), PressureLevel.MEDIUM)

    def test_custom_thresholds(self):
        config = ThrottleConfig(cpu_high_percent=50.0)
        self.assertEqual(classify_pressure(55.0, 50.0, config), PressureLevel.HIGH)


class TestHysteresis(unittest.TestCase):
    """Tests for the controller step function."""

    def setUp(self):
        self.controller = AdaptiveThrottleController(sampler=ScriptedSampler())
        self.state = ThrottleState()

    def test_two_high_samples_decrease(self):
        gate = ConcurrencyGate(initial_limit=4, ceiling=8)
        high = make_snapshot(PressureLevel.HIGH)

        self.assertEqual(self.controller.observe(gate, high, self.state), "hold")
        self.assertEqual(gate.current_limit, 4)
        self.assertEqual(self.controller.observe(gate, high, self.state), "scale_down")
        self.assertEqual(gate.current_limit, 3)

    def test_three_low_samples_increase(self):
        gate = ConcurrencyGate(initial_limit=2, ceiling=8)
        low = make_snapshot(PressureLevel.LOW)

        self.controller.observe(gate, low, self.state)
        self.controller.observe(gate, low, self.state)
        self.assertEqual(gate.current_limit, 2)
        self.assertEqual(self.controller.observe(gate, low, self.state), "scale_up")
        self.assertEqual(gate.current_limit, 3)

    def test_medium_resets_streaks(self):
        """A Medium sample breaks a High streak."""
        gate = ConcurrencyGate(initial_limit=4, ceiling=8)
        high = make_snapshot(PressureLevel.HIGH)
        medium = make_snapshot(PressureLevel.MEDIUM)

        self.controller.observe(gate, high, self.state)
        self.controller.observe(gate, medium, self.state)
        self.controller.observe(gate, high, self.state)
        self.assertEqual(gate.current_limit, 4)

    def test_alternating_pressure_holds(self):
        gate = ConcurrencyGate(initial_limit=4, ceiling=8)
        for _ in range(10):
            self.controller.observe(gate, make_snapshot(PressureLevel.HIGH), self.state)
            self.controller.observe(gate, make_snapshot(PressureLevel.LOW), self.state)
        self.assertEqual(gate.current_limit, 4)

    def test_floor_of_one(self):
        gate = ConcurrencyGate(initial_limit=1, ceiling=8)
        high = make_snapshot(PressureLevel.HIGH)
        for _ in range(6):
            self.controller.observe(gate, high, self.state)
        self.assertEqual(gate.current_limit, 1)
        self.assertEqual(self.state.scale_down_count, 0)

    def test_ceiling_respected(self):
        gate = ConcurrencyGate(initial_limit=3, ceiling=4)
        low = make_snapshot(PressureLevel.LOW)
        for _ in range(30):
            self.controller.observe(gate, low, self.state)
        self.assertEqual(gate.current_limit, 4)
        self.assertEqual(self.state.scale_up_count, 1)

    def test_sampling_failure_is_medium(self):
        """A missing snapshot counts as Medium and never raises."""
        gate = ConcurrencyGate(initial_limit=4, ceiling=8)
        high = make_snapshot(PressureLevel.HIGH)

        self.controller.observe(gate, high, self.state)
        self.assertEqual(self.controller.observe(gate, None, self.state), "hold")
        self.controller.observe(gate, high, self.state)
        self.assertEqual(gate.current_limit, 4)
        self.assertEqual(self.state.sample_failures, 1)

    def test_limit_bounded_for_any_sequence(self):
        """Random pressure sequences never leave [1, ceiling]."""
        rng = random.Random(17)
        levels = list(PressureLevel) + [None]
        for ceiling in (1, 2, 5, 16):
            gate = ConcurrencyGate(initial_limit=rng.randint(1, ceiling), ceiling=ceiling)
            state = ThrottleState()
            for _ in range(500):
                level = rng.choice(levels)
                snapshot = make_snapshot(level) if level is not None else None
                self.controller.observe(gate, snapshot, state)
                limit = gate.current_limit
                self.assertGreaterEqual(limit, 1)
                self.assertLessEqual(limit, ceiling)

    def test_decision_history_recorded(self):
        gate = ConcurrencyGate(initial_limit=2, ceiling=4)
        self.controller.observe(gate, make_snapshot(PressureLevel.MEDIUM, cpu=70.0), self.state)

        self.assertEqual(len(self.state.decision_history), 1)
        entry = self.state.decision_history[0]
        self.assertEqual(entry["decision"], "hold")
        self.assertEqual(entry["pressure"], "Medium")
        self.assertEqual(entry["cpu_percent"], 70.0)


class TestControllerThread(unittest.TestCase):
    """Tests for the background sampling loop."""

    def _wait_for(self, predicate, timeout=3.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    def test_low_pressure_raises_limit_to_max(self):
        scheduler = Scheduler(ExecutionSettings.override(1, max_safe_threads=3))
        controller = AdaptiveThrottleController(sampler=ScriptedSampler(PressureLevel.LOW))

        with controller.start(scheduler, poll_interval_sec=0.01) as handle:
            self.assertTrue(self._wait_for(lambda: scheduler.gate.current_limit == 3))

        self.assertFalse(handle.running)
        self.assertGreaterEqual(handle.state.scale_up_count, 2)
        self.assertLessEqual(scheduler.gate.current_limit, 3)

    def test_high_pressure_lowers_limit_to_one(self):
        scheduler = Scheduler(ExecutionSettings.override(4))
        controller = AdaptiveThrottleController(sampler=ScriptedSampler(PressureLevel.HIGH))

        handle = controller.start(scheduler, poll_interval_sec=0.01)
        try:
            self.assertTrue(self._wait_for(lambda: scheduler.gate.current_limit == 1))
        finally:
            controller.stop(handle)
        controller.stop(handle)

    def test_failing_sampler_never_raises(self):
        sampler = ScriptedSampler(fail=True)
        scheduler = Scheduler(ExecutionSettings.override(2, max_safe_threads=4))
        controller = AdaptiveThrottleController(sampler=sampler)

        with controller.start(scheduler, poll_interval_sec=0.01) as handle:
            self.assertTrue(self._wait_for(lambda: sampler.calls >= 5))

        self.assertEqual(scheduler.gate.current_limit, 2)
        self.assertGreaterEqual(handle.state.sample_failures, 5)

    def test_ci_mode_caps_increase(self):
        """In CI mode the limit never rises above the CI cap."""
        settings = ExecutionSettings.override(2, max_safe_threads=16, ci_mode=True)
        scheduler = Scheduler(settings)
        controller = AdaptiveThrottleController(sampler=ScriptedSampler(PressureLevel.LOW))

        with controller.start(scheduler, poll_interval_sec=0.01):
            self._wait_for(lambda: scheduler.gate.current_limit == 3)
            time.sleep(0.2)

        self.assertEqual(scheduler.gate.ceiling, 3)
        self.assertEqual(scheduler.gate.current_limit, 3)

    def test_controller_runs_alongside_execute(self):
        scheduler = Scheduler(ExecutionSettings.override(1, max_safe_threads=4))
        controller = AdaptiveThrottleController(sampler=ScriptedSampler(PressureLevel.LOW))
        items = WorkloadGenerator.sleep_items(20, duration_ms=30.0)

        with controller.start(scheduler, poll_interval_sec=0.01):
            result = scheduler.execute(items)

        self.assertEqual(result.passed_count, 20)
        self.assertLessEqual(scheduler.gate.peak_active, 4)

    def test_invalid_interval_rejected(self):
        scheduler = Scheduler(ExecutionSettings.override(1))
        controller = AdaptiveThrottleController(sampler=ScriptedSampler())
        with self.assertRaises(ValueError):
            controller.start(scheduler, poll_interval_sec=0)


class TestResourceSampler(unittest.TestCase):
    """Tests against the real host via psutil."""

    def test_interleaved_samplers_stay_in_range(self):
        """Samplers share psutil's CPU counter but each reading stays valid."""
        first, second = ResourceSampler(), ResourceSampler()
        for _ in range(5):
            for snapshot in (first.sample(), second.sample()):
                self.assertGreaterEqual(snapshot.cpu_utilization_percent, 0.0)
                self.assertLessEqual(snapshot.cpu_utilization_percent, 100.0)
            time.sleep(0.01)

    def test_sample_is_consistent(self):
        sampler = ResourceSampler()
        snapshot = sampler.sample()

        self.assertGreaterEqual(snapshot.cpu_utilization_percent, 0.0)
        self.assertGreaterEqual(snapshot.memory_available_percent, 0.0)
        self.assertLessEqual(snapshot.memory_available_percent, 100.0)
        self.assertGreaterEqual(snapshot.processor_count, 1)
        self.assertEqual(
            snapshot.pressure_level,
            classify_pressure(snapshot.cpu_utilization_percent, snapshot.memory_available_percent),
        )


if __name__ == "__main__":
    unittest.main(verbosity=2)
