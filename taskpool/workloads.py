"""
Sample Workloads for Calibration and Testing

Factories producing lists of WorkItems with controlled I/O-bound, CPU-bound
and mixed behaviour. BaselineRecorder uses them as calibration workloads when
no representative real workload is at hand.
"""

from threading import Event
from typing import Any, Callable, List, Optional
import math
import time

import numpy as np

from taskpool.errors import WorkItemCancelled
from taskpool.models import WorkItem


class WorkloadGenerator:
    """
    Factory for WorkItem lists.

    Example:
        # Ten items that each wait 100ms
        items = WorkloadGenerator.sleep_items(count=10, duration_ms=100.0)

        # Sixteen CPU-bound items
        items = WorkloadGenerator.cpu_items(count=16, iterations=100000)
    """

    @staticmethod
    def io_task(duration_ms: float = 50.0) -> Callable[[], bool]:
        """
        Create an I/O-bound action using sleep.

        Sleep releases the GIL, so these actions overlap well on threads,
        like tests waiting on subprocesses or network calls.

        Args:
            duration_ms: Sleep duration in milliseconds.

        Returns:
            Callable that sleeps for the specified duration.
        """
        def task() -> bool:
            time.sleep(duration_ms / 1000.0)
            return True

        return task

    @staticmethod
    def cpu_task_python(iterations: int = 100000) -> Callable[[], float]:
        """
        Create a CPU-bound action in pure Python.

        Holds the GIL throughout, so thread parallelism does not speed it up.
        """
        def task() -> float:
            result = 0.0
            for i in range(iterations):
                result += math.sin(i) * math.cos(i)
            return result

        return task

    @staticmethod
    def cpu_task_numpy(matrix_size: int = 100) -> Callable[[], Any]:
        """
        Create a CPU-bound action using NumPy matrix multiplication.

        NumPy releases the GIL during the product, allowing real parallelism.

        Args:
            matrix_size: Size of the square matrices.
        """
        def task() -> Any:
            a = np.random.rand(matrix_size, matrix_size)
            b = np.random.rand(matrix_size, matrix_size)
            return np.dot(a, b)

        return task

    @staticmethod
    def sleep_items(
        count: int,
        duration_ms: float = 50.0,
        prefix: str = "sleep",
    ) -> List[WorkItem]:
        """I/O-bound items named <prefix>-<n>."""
        return [
            WorkItem(id=f"{prefix}-{i}", action=WorkloadGenerator.io_task(duration_ms))
            for i in range(count)
        ]

    @staticmethod
    def cpu_items(count: int, iterations: int = 100000, prefix: str = "cpu") -> List[WorkItem]:
        """Pure Python CPU-bound items."""
        return [
            WorkItem(id=f"{prefix}-{i}", action=WorkloadGenerator.cpu_task_python(iterations))
            for i in range(count)
        ]

    @staticmethod
    def numpy_items(count: int, matrix_size: int = 100, prefix: str = "numpy") -> List[WorkItem]:
        """NumPy CPU-bound items."""
        return [
            WorkItem(id=f"{prefix}-{i}", action=WorkloadGenerator.cpu_task_numpy(matrix_size))
            for i in range(count)
        ]

    @staticmethod
    def mixed_items(
        count: int,
        io_duration_ms: float = 20.0,
        cpu_iterations: int = 10000,
        prefix: str = "mixed",
    ) -> List[WorkItem]:
        """
        Alternating I/O-bound and CPU-bound items.

        Even positions sleep, odd positions compute.
        """
        items = []
        for i in range(count):
            if i % 2 == 0:
                action = WorkloadGenerator.io_task(io_duration_ms)
            else:
                action = WorkloadGenerator.cpu_task_python(cpu_iterations)
            items.append(WorkItem(id=f"{prefix}-{i}", action=action))
        return items

    @staticmethod
    def failing_item(item_id: str, message: str = "simulated failure") -> WorkItem:
        """An item whose action raises RuntimeError."""
        def task() -> None:
            raise RuntimeError(message)

        return WorkItem(id=item_id, action=task)

    @staticmethod
    def cancellable_sleep_item(
        item_id: str,
        duration_ms: float,
    ) -> WorkItem:
        """
        An item that sleeps but stops once its cancellation event is set.

        Raises WorkItemCancelled when cancelled.
        """
        def task(cancel_event: Event) -> bool:
            if cancel_event.wait(duration_ms / 1000.0):
                raise WorkItemCancelled(f"{item_id} cancelled")
            return True

        return WorkItem(id=item_id, action=task, accepts_cancel_event=True)

    @staticmethod
    def blocking_item(item_id: str, release: Optional[Event] = None) -> WorkItem:
        """
        An item that ignores cancellation and blocks until release is set.

        Used to exercise abandonment after the grace period.
        """
        release = release or Event()

        def task() -> bool:
            release.wait()
            return True

        return WorkItem(id=item_id, action=task)
