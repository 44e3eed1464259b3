# src/seqflow/engine/reporter.py
"""Run reporter: turns a RunState snapshot into a RunSummary.

finalize() is pure: it reads only the snapshot it is given, so calling it
twice on the same snapshot yields equal summaries, and calling it mid-run
yields a partial summary (complete=False) measured up to the snapshot time.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from seqflow.contracts import (
    FailureSummary,
    RunState,
    RunStatus,
    RunSummary,
    TaskStatus,
)


class RunReporter:
    """Aggregates per-instance records into run-level counts."""

    def finalize(self, state: RunState) -> RunSummary:
        counts = Counter(record.status.value for record in state.records)
        skipped = Counter(
            record.skip_reason.value
            for record in state.records
            if record.status == TaskStatus.SKIPPED and record.skip_reason is not None
        )
        tasks: dict[str, Counter[str]] = {}
        for record in state.records:
            tasks.setdefault(record.task_id, Counter())[record.status.value] += 1

        failures = tuple(
            FailureSummary(
                instance_id=record.instance_id,
                task_id=record.task_id,
                key=record.key,
                cause=record.failure_cause,
                error=record.error,
                attempts=record.attempts,
            )
            for record in state.records
            if record.status == TaskStatus.FAILED
        )

        end = state.ended_at or state.as_of
        return RunSummary(
            run_id=state.run_id,
            status=state.status,
            total=len(state.records),
            counts={status.value: counts.get(status.value, 0) for status in TaskStatus},
            skipped_by_reason=dict(sorted(skipped.items())),
            tasks={task_id: dict(sorted(c.items())) for task_id, c in tasks.items()},
            cached=sum(1 for record in state.records if record.cached),
            duration_seconds=round(max((end - state.started_at).total_seconds(), 0.0), 3),
            failures=failures,
            complete=state.status != RunStatus.RUNNING,
        )

    def trace(self, state: RunState) -> list[dict[str, Any]]:
        """Per-instance timeline, in the snapshot's order."""
        return [record.to_dict() for record in state.records]


def render_text(summary: RunSummary) -> str:
    """Human-readable multi-line rendering of a summary."""
    lines = [
        f"Run {summary.run_id}: {summary.status.value.upper()}"
        + ("" if summary.complete else " (in progress)"),
        f"  instances: {summary.total}  "
        + "  ".join(f"{name}={count}" for name, count in summary.counts.items() if count),
        f"  cached: {summary.cached}  duration: {summary.duration_seconds:.1f}s",
    ]
    if summary.skipped_by_reason:
        lines.append(
            "  skipped: " + ", ".join(f"{r}={n}" for r, n in summary.skipped_by_reason.items())
        )
    for task_id, task_counts in summary.tasks.items():
        lines.append(f"  {task_id}: " + ", ".join(f"{s}={n}" for s, n in task_counts.items()))
    for failure in summary.failures:
        cause = failure.cause.value if failure.cause else "unknown"
        lines.append(
            f"  FAILED {failure.instance_id} ({cause}, {failure.retries} retries): {failure.error}"
        )
    return "\n".join(lines)
