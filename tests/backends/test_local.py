# tests/backends/test_local.py
"""Tests for the local process backend.

These run real bash processes inside pytest's tmp_path.
"""

import threading
import time
from collections.abc import Iterator
from pathlib import Path

import pytest

from seqflow.backends.local import (
    EXITCODE_FILE,
    SCRIPT_FILE,
    STDERR_FILE,
    LocalProcessBackend,
    collect_declared_outputs,
)
from seqflow.contracts import BackendState, GiB, OutputSpec, PollResult, ResolvedCommand, Resources


def make_command(workdir: Path, script: str, outputs: tuple[OutputSpec, ...] = ()) -> ResolvedCommand:
    return ResolvedCommand(
        instance_id="t[s1]",
        task_id="t",
        script=script,
        workdir=workdir,
        fingerprint="ab" * 32,
        outputs=outputs,
        env={"SAMPLE": "s1"},
    )


def wait_for(backend: LocalProcessBackend, handle: str, timeout: float = 10.0) -> PollResult:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = backend.poll(handle)
        if result.is_terminal:
            return result
        time.sleep(0.01)
    raise AssertionError(f"{handle} did not finish within {timeout}s")


@pytest.fixture
def backend() -> Iterator[LocalProcessBackend]:
    backend = LocalProcessBackend(kill_grace_seconds=0.5)
    yield backend
    backend.close()


class TestLocalProcessBackend:
    def test_success_collects_outputs(self, backend: LocalProcessBackend, tmp_path: Path) -> None:
        command = make_command(
            tmp_path / "w",
            'echo "$SAMPLE" > counts.txt',
            outputs=(OutputSpec("counts", "*.txt"),),
        )
        handle = backend.submit(command, Resources())

        result = wait_for(backend, handle)

        assert result.state == BackendState.SUCCEEDED
        counts = Path(result.outputs["counts"])
        assert counts.read_text() == "s1\n"
        assert (tmp_path / "w" / SCRIPT_FILE).exists()
        assert (tmp_path / "w" / EXITCODE_FILE).read_text().strip() == "0"
        assert result.usage["wall_seconds"] >= 0

    def test_resource_env_exported(self, backend: LocalProcessBackend, tmp_path: Path) -> None:
        command = make_command(
            tmp_path / "w",
            'echo "$SEQFLOW_CPUS $SEQFLOW_MEMORY" > env.txt',
            outputs=(OutputSpec("env", "env.txt"),),
        )
        handle = backend.submit(command, Resources(cpus=3, memory=2 * GiB))

        result = wait_for(backend, handle)

        assert Path(result.outputs["env"]).read_text() == f"3 {2 * GiB}\n"

    def test_nonzero_exit_reports_stderr_tail(self, backend: LocalProcessBackend, tmp_path: Path) -> None:
        command = make_command(tmp_path / "w", "echo first >&2\necho 'bad input' >&2\nexit 3")
        handle = backend.submit(command, Resources())

        result = wait_for(backend, handle)

        assert result.state == BackendState.FAILED
        assert result.exit_code == 3
        assert result.stderr_summary.endswith("bad input")
        assert (tmp_path / "w" / STDERR_FILE).exists()

    def test_pipefail_enabled(self, backend: LocalProcessBackend, tmp_path: Path) -> None:
        command = make_command(tmp_path / "w", "false | cat")
        handle = backend.submit(command, Resources())

        assert wait_for(backend, handle).state == BackendState.FAILED

    def test_missing_output_fails(self, backend: LocalProcessBackend, tmp_path: Path) -> None:
        command = make_command(tmp_path / "w", "true", outputs=(OutputSpec("bam", "*.bam"),))
        handle = backend.submit(command, Resources())

        result = wait_for(backend, handle)

        assert result.state == BackendState.FAILED
        assert result.exit_code == 0
        assert "bam" in result.stderr_summary

    def test_cancel_terminates_process(self, backend: LocalProcessBackend, tmp_path: Path) -> None:
        command = make_command(tmp_path / "w", "sleep 30")
        handle = backend.submit(command, Resources())
        assert backend.poll(handle).state == BackendState.RUNNING

        backend.cancel(handle)
        result = wait_for(backend, handle)

        assert result.state == BackendState.FAILED
        assert result.exit_code != 0

    def test_notifier_called_on_exit(self, backend: LocalProcessBackend, tmp_path: Path) -> None:
        done = threading.Event()
        seen: list[str] = []

        def notify(handle: str) -> None:
            seen.append(handle)
            done.set()

        backend.set_notifier(notify)
        handle = backend.submit(make_command(tmp_path / "w", "true"), Resources())

        assert done.wait(10)
        assert seen == [handle]

    def test_unknown_handle(self, backend: LocalProcessBackend) -> None:
        with pytest.raises(KeyError, match="Unknown handle"):
            backend.poll("nope#1")

    def test_max_resources(self) -> None:
        assert LocalProcessBackend().max_resources is None

        limited = LocalProcessBackend(max_cpus=4, max_memory="8 GB")

        assert limited.max_resources == Resources(cpus=4, memory=8 * GiB)


class TestCollectDeclaredOutputs:
    def test_single_and_multiple_matches(self, tmp_path: Path) -> None:
        for name in ("a_1_fastqc.zip", "a_2_fastqc.zip", "a.bam"):
            (tmp_path / name).write_text("x")

        outputs = collect_declared_outputs(
            tmp_path,
            [OutputSpec("zip", "*_fastqc.zip"), OutputSpec("bam", "*.bam")],
        )

        assert outputs["bam"] == str((tmp_path / "a.bam").resolve())
        assert outputs["zip"] == (
            str((tmp_path / "a_1_fastqc.zip").resolve()),
            str((tmp_path / "a_2_fastqc.zip").resolve()),
        )

    def test_named_set(self, tmp_path: Path) -> None:
        (tmp_path / "Aligned.bam").write_text("x")
        (tmp_path / "Log.final.out").write_text("x")

        outputs = collect_declared_outputs(
            tmp_path, [OutputSpec("aligned", {"bam": "*.bam", "log": "Log.final.out"})]
        )

        assert set(outputs["aligned"]) == {"bam", "log"}

    def test_no_match_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="matched nothing"):
            collect_declared_outputs(tmp_path, [OutputSpec("bam", "*.bam")])
