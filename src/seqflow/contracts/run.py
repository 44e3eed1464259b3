"""Run state and run summaries.

InstanceRecord and RunState are immutable: the orchestrator replaces a
record on every transition, so a RunState snapshot never changes after it
is taken.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from seqflow.contracts.enums import FailureCause, RunStatus, SkipReason, TaskStatus


@dataclass(frozen=True)
class InstanceRecord:
    """Status of one task instance."""

    instance_id: str
    task_id: str
    key: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    skip_reason: SkipReason | None = None
    attempts: int = 0
    failure_cause: FailureCause | None = None
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    cached: bool = False
    fingerprint: str | None = None
    usage: dict[str, float] = field(default_factory=dict)

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "task_id": self.task_id,
            "key": self.key,
            "status": self.status.value,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "attempts": self.attempts,
            "failure_cause": self.failure_cause.value if self.failure_cause else None,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "cached": self.cached,
            "fingerprint": self.fingerprint,
            "usage": dict(self.usage),
        }


@dataclass(frozen=True)
class RunState:
    """Snapshot of a run.

    Attributes:
        as_of: When the snapshot was taken; used as the end of the wall-clock
            window while the run is still in progress.
    """

    run_id: str
    status: RunStatus
    started_at: datetime
    as_of: datetime
    records: tuple[InstanceRecord, ...]
    ended_at: datetime | None = None

    def record(self, instance_id: str) -> InstanceRecord:
        for rec in self.records:
            if rec.instance_id == instance_id:
                return rec
        raise KeyError(f"Instance not found: {instance_id}")


@dataclass(frozen=True)
class FailureSummary:
    """Last known failure of a Failed instance."""

    instance_id: str
    task_id: str
    key: str | None
    cause: FailureCause | None
    error: str | None
    attempts: int

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


@dataclass(frozen=True)
class RunSummary:
    """Aggregated view of a run, produced by RunReporter.finalize()."""

    run_id: str
    status: RunStatus
    total: int
    counts: dict[str, int]
    skipped_by_reason: dict[str, int]
    tasks: dict[str, dict[str, int]]
    cached: int
    duration_seconds: float
    failures: tuple[FailureSummary, ...] = ()
    complete: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "complete": self.complete,
            "total": self.total,
            "counts": dict(self.counts),
            "skipped_by_reason": dict(self.skipped_by_reason),
            "tasks": {k: dict(v) for k, v in self.tasks.items()},
            "cached": self.cached,
            "duration_seconds": self.duration_seconds,
            "failures": [
                {
                    "instance_id": f.instance_id,
                    "task_id": f.task_id,
                    "key": f.key,
                    "cause": f.cause.value if f.cause else None,
                    "error": f.error,
                    "attempts": f.attempts,
                    "retries": f.retries,
                }
                for f in self.failures
            ],
        }
