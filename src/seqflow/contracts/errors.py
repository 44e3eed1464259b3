"""Error taxonomy.

ConfigurationError and InputNotFoundError abort a run before any task is
dispatched. The task-level errors are built by the orchestrator to describe
a failed attempt; they never abort sibling branches.
"""

from __future__ import annotations


class SeqflowError(Exception):
    """Base class for all seqflow errors."""


class ConfigurationError(SeqflowError):
    """Malformed pipeline or settings: cycle, dangling reference, bad resources."""


class GraphValidationError(ConfigurationError):
    """Raised when the dependency graph cannot be built."""


class TemplateError(ConfigurationError):
    """Command template is invalid or references unknown variables."""


class InputNotFoundError(SeqflowError):
    """A declared source glob matched no files."""

    def __init__(self, channel: str, pattern: str) -> None:
        self.channel = channel
        self.pattern = pattern
        super().__init__(f"No input files for channel '{channel}' match pattern: {pattern}")


class TaskExecutionError(SeqflowError):
    """A dispatched task exited non-zero."""

    def __init__(self, instance_id: str, exit_code: int | None, stderr_summary: str = "") -> None:
        self.instance_id = instance_id
        self.exit_code = exit_code
        self.stderr_summary = stderr_summary
        message = f"{instance_id} exited with status {exit_code}"
        if stderr_summary:
            message += f": {stderr_summary}"
        super().__init__(message)


class TaskTimeoutError(SeqflowError):
    """A dispatched task exceeded its timeout."""

    def __init__(self, instance_id: str, timeout: float | None) -> None:
        self.instance_id = instance_id
        self.timeout = timeout
        if timeout is None:
            super().__init__(f"{instance_id} timed out (reported by backend)")
        else:
            super().__init__(f"{instance_id} exceeded its timeout of {timeout:g}s")


class ResourceExhaustionError(SeqflowError):
    """A task's resource request can never be satisfied."""

    def __init__(self, instance_id: str, requested: str, available: str) -> None:
        self.instance_id = instance_id
        super().__init__(
            f"{instance_id} requests {requested} but at most {available} can ever be granted"
        )
