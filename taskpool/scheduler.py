"""
Bounded Worker Pool with a Live Concurrency Limit

The scheduler dispatches work items from a FIFO queue onto worker threads
while the number of active workers is below the current limit. The limit is
held by a ConcurrencyGate, the only state shared with the throttle
controller, which can raise or lower it while the run is in progress.
Lowering the limit only gates new dispatches; running items are never
preempted.

Every submitted item yields exactly one WorkerResult:

- items that ran produce Passed, Failed, Skipped or Error,
- items still queued when the deadline expires become Skipped (Timeout),
- items still running after the deadline plus grace period are abandoned
  and recorded as Error (TimedOut).
"""

from __future__ import annotations

from collections import deque
from concurrent.futures import Future, wait
from dataclasses import dataclass
from threading import Condition, Event, Lock, Thread
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple
import logging
import time

from taskpool.aggregator import ResultAggregator
from taskpool.config import SchedulerConfig
from taskpool.errors import (
    ConfigurationError,
    ItemExecutionError,
    WorkItemCancelled,
    WorkItemFailed,
    WorkItemSkipped,
)
from taskpool.metrics import MetricsCollector
from taskpool.models import (
    AggregateResult,
    ExecutionSettings,
    ResultReason,
    ResultStatus,
    WorkerResult,
    WorkItem,
)

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """
    Synchronized accessor for the (current_limit, active_workers) pair.

    All reads and writes go through one Condition, so the scheduler's
    dispatch loop and the throttle controller always see a consistent pair.
    The limit is clamped to [1, ceiling]. A pinned gate stays at 1.
    """

    def __init__(self, initial_limit: int, ceiling: int, pinned: bool = False):
        self._condition = Condition(Lock())
        self._ceiling = max(1, ceiling)
        self._pinned = pinned
        self._limit = 1 if pinned else self._clamp(initial_limit)
        self._active = 0
        self._peak_active = 0

    def _clamp(self, limit: int) -> int:
        return max(1, min(limit, self._ceiling))

    @property
    def ceiling(self) -> int:
        return self._ceiling

    @property
    def pinned(self) -> bool:
        return self._pinned

    @property
    def current_limit(self) -> int:
        with self._condition:
            return self._limit

    @property
    def active_workers(self) -> int:
        with self._condition:
            return self._active

    @property
    def peak_active(self) -> int:
        """Highest number of simultaneously active workers seen so far."""
        with self._condition:
            return self._peak_active

    def snapshot(self) -> Tuple[int, int]:
        """Return (current_limit, active_workers) read under one lock."""
        with self._condition:
            return self._limit, self._active

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Claim a worker slot, waiting until active < limit.

        Args:
            timeout: Maximum seconds to wait, None to wait indefinitely.

        Returns:
            True if a slot was claimed, False on timeout.
        """
        with self._condition:
            if not self._condition.wait_for(
                lambda: self._active < self._limit, timeout=timeout
            ):
                return False
            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
            return True

    def release(self) -> None:
        """Return a worker slot."""
        with self._condition:
            if self._active > 0:
                self._active -= 1
            self._condition.notify_all()

    def set_limit(self, limit: int) -> int:
        """
        Set the live limit, clamped to [1, ceiling].

        Returns:
            The limit in effect after the call.
        """
        with self._condition:
            if not self._pinned:
                self._limit = self._clamp(limit)
                self._condition.notify_all()
            return self._limit

    def adjust_limit(self, delta: int) -> Tuple[int, int]:
        """
        Change the live limit by delta, clamped to [1, ceiling].

        Returns:
            (limit_before, limit_after).
        """
        with self._condition:
            before = self._limit
            if not self._pinned:
                self._limit = self._clamp(before + delta)
                self._condition.notify_all()
            return before, self._limit


@dataclass
class _RunningItem:
    item: WorkItem
    cancel_event: Event
    dispatched_at: float
    thread: Thread


def _interpret_outcome(outcome: Any) -> Tuple[ResultStatus, Optional[ResultReason], str]:
    """Map an action's return value onto a result status."""
    if isinstance(outcome, ResultStatus):
        return outcome, None, ""
    if isinstance(outcome, bool):
        if outcome:
            return ResultStatus.PASSED, None, ""
        return ResultStatus.FAILED, None, "returned False"
    if isinstance(outcome, int) and outcome != 0:
        return ResultStatus.ERROR, ResultReason.EXIT_CODE, f"exited with code {outcome}"
    return ResultStatus.PASSED, None, ""


class Scheduler:
    """
    Bounded worker pool executing one batch of work items.

    A scheduler owns its settings snapshot, its gate and its metrics, and
    runs exactly once. Construct a new instance per run.

    Example:
        settings = ExecutionSettings.override(threads=4)
        scheduler = Scheduler(settings)
        result = scheduler.execute(items, deadline=60.0)

    Attributes:
        settings: Settings snapshot the run starts from.
        config: Scheduler configuration.
        gate: Live concurrency limit shared with the throttle controller.
        metrics: Results recorded during the run.
    """

    def __init__(
        self,
        settings: ExecutionSettings,
        config: Optional[SchedulerConfig] = None,
        force_sequential: bool = False,
    ):
        self.settings = settings
        self.config = config or SchedulerConfig()
        self.force_sequential = force_sequential

        ceiling = settings.max_safe_threads
        if settings.ci_mode:
            ci_cap = settings.ci_thread_cap
            if ci_cap is None:
                ci_cap = self.config.ci_thread_cap
            ceiling = min(ceiling, max(ci_cap, settings.optimal_threads))

        self.gate = ConcurrencyGate(
            initial_limit=settings.optimal_threads,
            ceiling=ceiling,
            pinned=force_sequential,
        )
        self.metrics = MetricsCollector()
        self._aggregator = ResultAggregator()
        self._executed = False
        self._executed_lock = Lock()

    @property
    def current_limit(self) -> int:
        return self.gate.current_limit

    def _validate(self, items: Sequence[WorkItem]) -> None:
        if self.settings.optimal_threads < 1:
            raise ConfigurationError(
                f"optimal_threads must be at least 1, got {self.settings.optimal_threads}"
            )
        if self.settings.max_safe_threads < 1:
            raise ConfigurationError(
                f"max_safe_threads must be at least 1, got {self.settings.max_safe_threads}"
            )
        if self.settings.optimal_threads > self.settings.max_safe_threads:
            raise ConfigurationError(
                f"optimal_threads ({self.settings.optimal_threads}) exceeds "
                f"max_safe_threads ({self.settings.max_safe_threads})"
            )
        seen = set()
        for item in items:
            if item.id in seen:
                raise ConfigurationError(f"Duplicate work item id: {item.id}")
            seen.add(item.id)

    def execute(
        self,
        items: Sequence[WorkItem],
        deadline: Optional[float] = None,
    ) -> AggregateResult:
        """
        Run every item and return the merged result.

        Args:
            items: Work items, dispatched in FIFO order.
            deadline: Seconds from now after which queued items are skipped
                and running items are cancelled. None for no deadline.

        Returns:
            AggregateResult with exactly one result per item.

        Raises:
            ConfigurationError: If the settings are invalid or the scheduler
                already ran. No item is started in that case.
        """
        items = list(items)
        self._validate(items)
        with self._executed_lock:
            if self._executed:
                raise ConfigurationError("A Scheduler instance can only execute once")
            self._executed = True

        start = time.monotonic()
        deadline_at = None if deadline is None else start + max(0.0, deadline)
        pending: Deque[WorkItem] = deque(items)
        running: Dict[Future, _RunningItem] = {}

        logger.info(
            f"Executing {len(items)} items: limit={self.gate.current_limit}, "
            f"max_safe={self.settings.max_safe_threads}, "
            f"source={self.settings.source.value}, deadline={deadline}"
        )

        while pending:
            timeout = None
            if deadline_at is not None:
                timeout = deadline_at - time.monotonic()
                if timeout <= 0:
                    break
            if not self.gate.acquire(timeout=timeout):
                break
            item = pending.popleft()
            future, entry = self._dispatch(item)
            running[future] = entry
            self._harvest([f for f in running if f.done()], running)

        if pending:
            logger.warning(
                f"Deadline expired with {len(pending)} items pending; skipping them"
            )
            for item in pending:
                self.metrics.record(WorkerResult(
                    work_item_id=item.id,
                    status=ResultStatus.SKIPPED,
                    duration_ms=0.0,
                    message="Deadline expired before the item started",
                    reason=ResultReason.TIMEOUT,
                ))
            pending.clear()

        self._await_running(running, deadline_at)

        result = self._aggregator.merge(
            self.metrics.results(),
            settings=self.settings,
            final_thread_limit=self.gate.current_limit,
        )
        logger.info(
            f"Run finished: {result.passed_count}/{result.total_count} passed "
            f"in {result.total_duration_ms:.0f}ms"
        )
        return result

    def _dispatch(self, item: WorkItem) -> Tuple[Future, _RunningItem]:
        """Start a worker thread for one item. The caller holds a gate slot."""
        future: Future = Future()
        future.set_running_or_notify_cancel()
        cancel_event = Event()
        thread = Thread(
            target=self._run_item,
            args=(item, cancel_event, future),
            daemon=True,
            name=f"{self.config.thread_name_prefix}-{item.id}",
        )
        entry = _RunningItem(
            item=item,
            cancel_event=cancel_event,
            dispatched_at=time.monotonic(),
            thread=thread,
        )
        try:
            thread.start()
        except RuntimeError:
            self.gate.release()
            raise
        return future, entry

    def _run_item(self, item: WorkItem, cancel_event: Event, future: Future) -> None:
        """Worker thread body. Always releases its gate slot."""
        try:
            future.set_result(self._execute_action(item, cancel_event))
        except BaseException as exc:
            future.set_exception(exc)
            raise
        finally:
            self.gate.release()

    def _execute_action(self, item: WorkItem, cancel_event: Event) -> WorkerResult:
        started = time.monotonic()
        reason: Optional[ResultReason] = None
        message = ""
        try:
            if item.accepts_cancel_event:
                outcome = item.action(cancel_event)
            else:
                outcome = item.action()
            status, reason, message = _interpret_outcome(outcome)
        except (WorkItemFailed, AssertionError) as exc:
            status = ResultStatus.FAILED
            message = str(exc) or type(exc).__name__
        except WorkItemSkipped as exc:
            status = ResultStatus.SKIPPED
            message = str(exc)
        except WorkItemCancelled as exc:
            status = ResultStatus.ERROR
            reason = ResultReason.CANCELLED
            message = str(exc) or "Cancelled after deadline"
        except SystemExit as exc:
            code = exc.code
            if code is None or code == 0:
                status = ResultStatus.PASSED
            else:
                status = ResultStatus.ERROR
                reason = ResultReason.EXIT_CODE
                message = f"exited with code {code}"
        except Exception as exc:
            error = ItemExecutionError(item.id, f"{type(exc).__name__}: {exc}", cause=exc)
            logger.warning(f"Work item raised: {error}")
            status = ResultStatus.ERROR
            reason = ResultReason.EXCEPTION
            message = error.message
        finished = time.monotonic()

        return WorkerResult(
            work_item_id=item.id,
            status=status,
            duration_ms=(finished - started) * 1000.0,
            message=message,
            reason=reason,
            started_at=started,
            finished_at=finished,
        )

    def _harvest(self, done: List[Future], running: Dict[Future, _RunningItem]) -> None:
        """Record results of finished futures and forget them."""
        for future in done:
            entry = running.pop(future)
            exc = future.exception()
            if exc is None:
                self.metrics.record(future.result())
                continue
            # Only BaseExceptions escaping the worker land here.
            now = time.monotonic()
            self.metrics.record(WorkerResult(
                work_item_id=entry.item.id,
                status=ResultStatus.ERROR,
                duration_ms=(now - entry.dispatched_at) * 1000.0,
                message=f"{type(exc).__name__}: {exc}",
                reason=ResultReason.EXCEPTION,
                started_at=entry.dispatched_at,
                finished_at=now,
            ))

    def _await_running(
        self,
        running: Dict[Future, _RunningItem],
        deadline_at: Optional[float],
    ) -> None:
        """Wait for in-flight items, cancelling and abandoning after the deadline."""
        if not running:
            return

        timeout = None
        if deadline_at is not None:
            timeout = max(0.0, deadline_at - time.monotonic())
        done, not_done = wait(list(running), timeout=timeout)
        self._harvest(list(done), running)
        if not not_done:
            return

        logger.warning(
            f"Deadline expired with {len(not_done)} items running; "
            f"signalling cancellation, grace period {self.config.grace_period_sec}s"
        )
        for future in not_done:
            running[future].cancel_event.set()

        done, not_done = wait(list(not_done), timeout=self.config.grace_period_sec)
        self._harvest(list(done), running)

        now = time.monotonic()
        for future in list(not_done):
            if future.done():
                self._harvest([future], running)
                continue
            entry = running.pop(future)
            logger.error(
                f"Abandoning work item {entry.item.id} after grace period "
                f"(thread {entry.thread.name})"
            )
            self.metrics.record(WorkerResult(
                work_item_id=entry.item.id,
                status=ResultStatus.ERROR,
                duration_ms=(now - entry.dispatched_at) * 1000.0,
                message="Did not finish within the grace period after the deadline",
                reason=ResultReason.TIMED_OUT,
                started_at=entry.dispatched_at,
                finished_at=now,
            ))


WorkerPool = Scheduler
