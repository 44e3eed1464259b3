# tests/conftest.py
"""Shared test fixtures and helpers.

This module provides a scripted in-memory execution backend so engine
tests run without spawning processes, plus a factory fixture that wires an
Orchestrator around it.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/engine/
"""

import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from seqflow.contracts import GiB, PollResult, ResolvedCommand, Resources

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Fake execution backend
# =============================================================================


class FakeBackend:
    """Scripted in-memory backend.

    Each instance follows a list of per-attempt outcomes (the last outcome
    repeats):
        "ok"            succeed after `polls_to_finish` polls
        "fail"          exit 1 after `polls_to_finish` polls
        "timeout"       backend reports timed_out
        "hang"          run until cancelled
        "submit_error"  submit() raises

    Successful attempts write one file per declared output into the work
    directory, so cache records point at real artifacts.

    Usage:
        backend = FakeBackend({"t1[s2]": ["fail"]})
    """

    name = "fake"

    def __init__(
        self,
        outcomes: dict[str, list[str]] | None = None,
        *,
        polls_to_finish: int = 2,
        max_resources: Resources | None = None,
    ) -> None:
        self._outcomes = outcomes or {}
        self._polls_to_finish = polls_to_finish
        self._max_resources = max_resources
        self._jobs: dict[str, dict[str, Any]] = {}
        self._counter = 0
        self.notifier: Callable[[str], None] | None = None

        self.submitted: list[str] = []
        self.commands: list[ResolvedCommand] = []
        self.events: list[tuple[str, str]] = []
        self.cancelled: list[str] = []
        self.running: set[str] = set()
        self.max_concurrent = 0
        self.closed = False

    @property
    def max_resources(self) -> Resources | None:
        return self._max_resources

    def set_notifier(self, notifier: Callable[[str], None] | None) -> None:
        self.notifier = notifier

    def attempts(self, instance_id: str) -> int:
        return self.submitted.count(instance_id)

    def submit(self, command: ResolvedCommand, resources: Resources) -> str:
        instance_id = command.instance_id
        script = self._outcomes.get(instance_id, ["ok"])
        outcome = script[min(self.attempts(instance_id), len(script) - 1)]
        self.submitted.append(instance_id)
        self.commands.append(command)
        if outcome == "submit_error":
            raise RuntimeError(f"cannot submit {instance_id}")

        self._counter += 1
        handle = f"{instance_id}#{self._counter}"
        self._jobs[handle] = {"command": command, "outcome": outcome, "polls": 0, "cancelled": False}
        self.events.append(("start", instance_id))
        self.running.add(handle)
        self.max_concurrent = max(self.max_concurrent, len(self.running))
        return handle

    def _finish(self, handle: str) -> None:
        job = self._jobs[handle]
        if handle in self.running:
            self.running.discard(handle)
            self.events.append(("end", job["command"].instance_id))

    def poll(self, handle: str) -> PollResult:
        job = self._jobs[handle]
        if handle not in self.running:
            return job["result"]
        job["polls"] += 1
        outcome = job["outcome"]
        if job["cancelled"]:
            result = PollResult.failed(exit_code=-15, stderr_summary="terminated")
        elif outcome == "hang" or job["polls"] < self._polls_to_finish:
            return PollResult.running()
        elif outcome == "ok":
            result = PollResult.succeeded(outputs=self.collect_outputs(handle), usage={"wall_seconds": 0.01})
        elif outcome == "timeout":
            result = PollResult.timed_out()
        else:
            result = PollResult.failed(exit_code=1, stderr_summary="boom")
        job["result"] = result
        self._finish(handle)
        return result

    def cancel(self, handle: str) -> None:
        self.cancelled.append(self._jobs[handle]["command"].instance_id)
        self._jobs[handle]["cancelled"] = True

    def collect_outputs(self, handle: str) -> dict[str, Any]:
        command: ResolvedCommand = self._jobs[handle]["command"]
        command.workdir.mkdir(parents=True, exist_ok=True)
        outputs: dict[str, Any] = {}
        for spec in command.outputs:
            artifacts = {}
            for name in spec.patterns():
                path = command.workdir / f"{name}.out"
                path.write_text(f"{command.instance_id}:{name}\n{command.script}\n")
                artifacts[name] = str(path)
            outputs[spec.name] = artifacts if spec.is_named_set else artifacts[spec.name]
        return outputs

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Undo configure_logging() calls made by CLI tests.

    CliRunner swaps sys.stderr for a buffer that is closed after invoke, so a
    logger factory bound to it must not outlive the test.
    """
    yield
    structlog.reset_defaults()


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def run_graph(work_dir: Path) -> Iterator[Callable[..., Any]]:
    """Factory running an ExecutionGraph on a backend with a fresh Orchestrator.

    Usage:
        result = run_graph(graph, FakeBackend(), cpus=8)
    """
    from seqflow.core.cache_store import FilesystemTaskCache
    from seqflow.core.config import RetrySettings
    from seqflow.engine import Orchestrator, ResourceBudget

    def _run(
        graph: Any,
        backend: Any,
        *,
        cpus: int = 8,
        memory: int = 64 * GiB,
        resume: bool = False,
        retry: RetrySettings | None = None,
        **kwargs: Any,
    ) -> Any:
        orchestrator = Orchestrator(
            backend,
            ResourceBudget(Resources(cpus=cpus, memory=memory)),
            cache=FilesystemTaskCache(work_dir),
            retry=retry or RetrySettings(max_attempts=1, initial_delay_seconds=0.0),
            resume=resume,
            poll_interval=kwargs.pop("poll_interval", 0.001),
            **kwargs,
        )
        return orchestrator.run(graph)

    yield _run


@pytest.fixture
def fake_backend_cls() -> type[FakeBackend]:
    """The FakeBackend class, for tests that script outcomes."""
    return FakeBackend
