"""
Result Aggregation

Merges per-item WorkerResults into one AggregateResult. Called only after
every worker has finished or been abandoned, so it works on a plain list.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from taskpool.metrics import duration_percentiles
from taskpool.models import (
    AggregateResult,
    ExecutionSettings,
    FailureEntry,
    ResultStatus,
    WorkerResult,
)

logger = logging.getLogger(__name__)


def _completion_order(result: WorkerResult) -> tuple:
    # Never-finished entries sort last, keeping their relative order.
    if result.finished_at is None:
        return (1, 0.0)
    return (0, result.finished_at)


class ResultAggregator:
    """
    Partition WorkerResults into status buckets and summarize them.

    Example:
        summary = ResultAggregator().merge(results)
        print(summary.passed_count, summary.pass_rate)
    """

    def merge(
        self,
        results: Iterable[WorkerResult],
        settings: Optional[ExecutionSettings] = None,
        final_thread_limit: Optional[int] = None,
    ) -> AggregateResult:
        """
        Merge results into an AggregateResult.

        Args:
            results: One WorkerResult per submitted work item.
            settings: Settings snapshot the run started from.
            final_thread_limit: Live limit at the end of the run.

        Returns:
            AggregateResult whose status counts partition the results.

        Raises:
            ValueError: If a result carries an unknown status.
        """
        ordered: List[WorkerResult] = sorted(results, key=_completion_order)

        buckets = {status: 0 for status in ResultStatus}
        failures: List[FailureEntry] = []
        for result in ordered:
            if result.status not in buckets:
                raise ValueError(
                    f"Unknown status {result.status!r} for {result.work_item_id}"
                )
            buckets[result.status] += 1
            if result.is_failure:
                failures.append(FailureEntry(
                    work_item_id=result.work_item_id,
                    status=result.status,
                    message=result.message,
                ))

        started = [r.started_at for r in ordered if r.started_at is not None]
        finished = [r.finished_at for r in ordered if r.finished_at is not None]
        if started and finished:
            total_duration_ms = max(0.0, (max(finished) - min(started)) * 1000.0)
        else:
            total_duration_ms = 0.0

        percentiles = duration_percentiles(ordered)

        aggregate = AggregateResult(
            total_count=len(ordered),
            passed_count=buckets[ResultStatus.PASSED],
            failed_count=buckets[ResultStatus.FAILED],
            skipped_count=buckets[ResultStatus.SKIPPED],
            error_count=buckets[ResultStatus.ERROR],
            total_duration_ms=total_duration_ms,
            failures=failures,
            per_item=ordered,
            p50_duration_ms=percentiles["p50"],
            p95_duration_ms=percentiles["p95"],
            settings=settings,
            final_thread_limit=final_thread_limit,
        )

        logger.debug(
            f"Aggregated {aggregate.total_count} results: "
            f"passed={aggregate.passed_count}, failed={aggregate.failed_count}, "
            f"skipped={aggregate.skipped_count}, error={aggregate.error_count}, "
            f"duration={aggregate.total_duration_ms:.1f}ms"
        )
        return aggregate
