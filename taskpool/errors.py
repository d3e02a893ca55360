"""
Error Taxonomy

Only ConfigurationError ever escapes a run. Every other error kind is
recovered where it happens and becomes data in the returned result:

- ItemExecutionError: a work item raised or reported failure.
- ResourceDetectionError: host queries failed, fallback defaults are used.
- BaselineError: a calibration candidate could not be measured.

Work item actions may raise WorkItemFailed, WorkItemSkipped or
WorkItemCancelled to report an outcome other than a plain error.
"""

from __future__ import annotations

from typing import Optional


class TaskPoolError(Exception):
    """Base class for all taskpool errors."""


class ConfigurationError(TaskPoolError, ValueError):
    """Invalid execution settings. Raised before any work item runs."""


class ItemExecutionError(TaskPoolError):
    """
    A single work item failed.

    Attributes:
        work_item_id: Identifier of the failing item.
        cause: Original exception, if the failure came from one.
    """

    def __init__(
        self,
        work_item_id: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(f"{work_item_id}: {message}")
        self.work_item_id = work_item_id
        self.message = message
        self.cause = cause


class ResourceDetectionError(TaskPoolError):
    """Platform resource queries are unavailable."""


class BaselineError(TaskPoolError):
    """A calibration run failed for one candidate thread count."""

    def __init__(self, thread_count: int, message: str):
        super().__init__(f"candidate {thread_count} threads: {message}")
        self.thread_count = thread_count


class WorkItemFailed(TaskPoolError):
    """Raised by an action to mark its item Failed rather than Error."""


class WorkItemSkipped(TaskPoolError):
    """Raised by an action to mark its item Skipped."""


class WorkItemCancelled(TaskPoolError):
    """Raised by a cooperative action after its cancellation event was set."""
