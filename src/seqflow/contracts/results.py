"""Backend-facing results.

These types answer: "What exactly was submitted, and what came back?"
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from seqflow.contracts.descriptors import OutputSpec
from seqflow.contracts.enums import BackendState


@dataclass(frozen=True)
class ResolvedCommand:
    """A task command after template substitution with concrete input paths.

    Built once per instance and reused unchanged for every retry.
    """

    instance_id: str
    task_id: str
    script: str
    workdir: Path
    fingerprint: str
    outputs: tuple[OutputSpec, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PollResult:
    """State of a submitted command as reported by a backend.

    Use the factory methods to create instances.
    """

    state: BackendState
    exit_code: int | None = None
    stderr_summary: str = ""
    outputs: dict[str, Any] = field(default_factory=dict)
    usage: dict[str, float] = field(default_factory=dict)

    @classmethod
    def running(cls) -> PollResult:
        return cls(state=BackendState.RUNNING)

    @classmethod
    def succeeded(
        cls,
        outputs: dict[str, Any] | None = None,
        usage: dict[str, float] | None = None,
    ) -> PollResult:
        return cls(
            state=BackendState.SUCCEEDED,
            exit_code=0,
            outputs=outputs or {},
            usage=usage or {},
        )

    @classmethod
    def failed(
        cls,
        exit_code: int | None,
        stderr_summary: str = "",
        usage: dict[str, float] | None = None,
    ) -> PollResult:
        return cls(
            state=BackendState.FAILED,
            exit_code=exit_code,
            stderr_summary=stderr_summary,
            usage=usage or {},
        )

    @classmethod
    def timed_out(cls, usage: dict[str, float] | None = None) -> PollResult:
        return cls(state=BackendState.TIMED_OUT, usage=usage or {})

    @property
    def is_terminal(self) -> bool:
        return self.state != BackendState.RUNNING
