# src/seqflow/backends/base.py
"""Execution backend protocol.

A backend runs resolved commands somewhere (local processes, a cluster
scheduler) and reports their state. The orchestrator treats every backend
the same way: submit returns an opaque handle, poll is non-blocking, and
cancel is best-effort.

Lifecycle:
1. set_notifier(callback) - optional, before the first submit
2. submit(command, resources) - returns a handle
3. poll(handle) - until the result is terminal
4. collect_outputs(handle) - after a SUCCEEDED poll (also called by poll)
5. cancel(handle) - on timeout or run cancellation
6. close() - release backend resources at the end of the run
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from seqflow.contracts import PollResult, ResolvedCommand, Resources

# Called from backend threads with the handle whose state changed.
Notifier = Callable[[str], None]


@runtime_checkable
class ExecutionBackend(Protocol):
    """Protocol for execution backends.

    Example:
        class BatchBackend:
            name = "batch"
            max_resources = Resources(cpus=96, memory=768 * GiB)

            def submit(self, command: ResolvedCommand, resources: Resources) -> str:
                return self._client.submit_job(command.script, cpus=resources.cpus)
    """

    name: str

    @property
    def max_resources(self) -> Resources | None:
        """Largest request a single instance may make, or None if unbounded."""
        ...

    def set_notifier(self, notifier: Notifier | None) -> None:
        """Register a callback invoked when a handle changes state."""
        ...

    def submit(self, command: ResolvedCommand, resources: Resources) -> str:
        """Start running `command`.

        Raises:
            Exception: Any error is recorded as a submit failure and retried
        """
        ...

    def poll(self, handle: str) -> PollResult:
        """Non-blocking state check."""
        ...

    def cancel(self, handle: str) -> None:
        """Request termination. Must not raise for finished handles."""
        ...

    def collect_outputs(self, handle: str) -> dict[str, Any]:
        """Declared outputs of a succeeded handle.

        Raises:
            FileNotFoundError: If a declared output is missing
        """
        ...

    def close(self) -> None:
        """Release backend resources."""
        ...
