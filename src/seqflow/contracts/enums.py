"""All status codes, kinds and causes used across subsystem boundaries.

Every enum is (str, Enum) because the values are written to cache records
and run reports as plain strings.
"""

from enum import Enum


class TaskStatus(str, Enum):
    """Lifecycle of a task instance.

    PENDING -> READY -> RUNNING -> SUCCEEDED | FAILED.
    SKIPPED is terminal and may be entered from PENDING or READY
    (condition false at build time, upstream failure, or cancellation).
    """

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition can happen."""
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED)


class SkipReason(str, Enum):
    """Why an instance was skipped instead of executed."""

    CONDITION = "condition"
    UPSTREAM_FAILED = "upstream_failed"
    CANCELLED = "cancelled"


class FailureCause(str, Enum):
    """Why an attempt failed.

    TIMEOUT and NONZERO_EXIT are deliberately distinct so an operator can
    tell "ran out of time" from "crashed".
    """

    NONZERO_EXIT = "nonzero_exit"
    TIMEOUT = "timeout"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    SUBMIT_ERROR = "submit_error"
    CANCELLED = "cancelled"


class ChannelKind(str, Enum):
    """Delivery semantics of a channel edge.

    VALUE: exactly one item, broadcast to every consumer instance.
    STREAM: zero or more keyed items; a consumer instance for key k depends
        only on the producer instance for key k, so stages overlap.
    COLLECT: every upstream item buffered until all producer instances are
        terminal, then delivered once as an Aggregate.
    """

    VALUE = "value"
    STREAM = "stream"
    COLLECT = "collect"


class BackendState(str, Enum):
    """State reported by ExecutionBackend.poll()."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class RunStatus(str, Enum):
    """Status of a whole pipeline run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
