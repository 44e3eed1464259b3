# src/seqflow/backends/local.py
"""Local process backend.

Runs each resolved command as a bash script inside its work directory:

    <workdir>/.command.sh    the resolved script
    <workdir>/.command.out   stdout
    <workdir>/.command.err   stderr
    <workdir>/.exitcode      exit status, written when the process ends

Processes are started without blocking. A waiter thread per process records
the exit status and notifies the orchestrator so it does not have to wait
for the next poll tick.
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections.abc import Iterable
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from seqflow.backends.base import Notifier
from seqflow.contracts import OutputSpec, PollResult, ResolvedCommand, Resources, parse_memory
from seqflow.core.logging import get_logger

logger = get_logger(__name__)

SCRIPT_FILE = ".command.sh"
STDOUT_FILE = ".command.out"
STDERR_FILE = ".command.err"
EXITCODE_FILE = ".exitcode"

_SCRIPT_HEADER = "#!/usr/bin/env bash\nset -eo pipefail\n"


def _match_one(workdir: Path, name: str, pattern: str) -> str | tuple[str, ...]:
    matches = sorted(str(p.resolve()) for p in workdir.glob(pattern))
    if not matches:
        raise FileNotFoundError(f"Declared output '{name}' matched nothing: {pattern}")
    if len(matches) == 1:
        return matches[0]
    return tuple(matches)


def collect_declared_outputs(workdir: Path, outputs: Iterable[OutputSpec]) -> dict[str, Any]:
    """Resolve declared output patterns relative to `workdir`.

    A pattern matching one file yields its path; several files yield a
    sorted tuple. Named sets yield a mapping of artifact name to value.

    Raises:
        FileNotFoundError: If any declared pattern matches nothing
    """
    collected: dict[str, Any] = {}
    for spec in outputs:
        if spec.is_named_set:
            collected[spec.name] = {
                name: _match_one(workdir, f"{spec.name}.{name}", pattern)
                for name, pattern in spec.patterns().items()
            }
        else:
            collected[spec.name] = _match_one(workdir, spec.name, str(spec.pattern))
    return collected


def _tail(path: Path, lines: int) -> str:
    if not path.exists():
        return ""
    text = path.read_text(encoding="utf-8", errors="replace")
    return "\n".join(text.splitlines()[-lines:])


@dataclass
class _LocalJob:
    command: ResolvedCommand
    process: subprocess.Popen[bytes]
    started: float
    ended: float | None = None
    cancelled: bool = False
    waiter: threading.Thread | None = field(default=None, repr=False)


class LocalProcessBackend:
    """Runs task scripts as local bash processes.

    Resource requests are not enforced by the operating system; the
    orchestrator's budget keeps the sum of running requests within the
    configured capacity.
    """

    name = "local"

    def __init__(
        self,
        *,
        shell: str = "bash",
        max_cpus: int | None = None,
        max_memory: int | str | None = None,
        kill_grace_seconds: float = 5.0,
        stderr_tail_lines: int = 20,
    ) -> None:
        self._shell = shell
        self._max_resources: Resources | None = None
        if max_cpus is not None or max_memory is not None:
            self._max_resources = Resources(
                cpus=max_cpus or os.cpu_count() or 1,
                memory=parse_memory(max_memory) if max_memory is not None else 1024**5,
            )
        self._kill_grace_seconds = kill_grace_seconds
        self._stderr_tail_lines = stderr_tail_lines
        self._jobs: dict[str, _LocalJob] = {}
        self._lock = threading.Lock()
        self._notifier: Notifier | None = None

    @property
    def max_resources(self) -> Resources | None:
        return self._max_resources

    def set_notifier(self, notifier: Notifier | None) -> None:
        self._notifier = notifier

    def submit(self, command: ResolvedCommand, resources: Resources) -> str:
        workdir = command.workdir
        workdir.mkdir(parents=True, exist_ok=True)
        script_path = workdir / SCRIPT_FILE
        script_path.write_text(_SCRIPT_HEADER + command.script + "\n", encoding="utf-8")
        (workdir / EXITCODE_FILE).unlink(missing_ok=True)

        env = dict(os.environ)
        env.update(command.env)
        env["SEQFLOW_CPUS"] = str(resources.cpus)
        env["SEQFLOW_MEMORY"] = str(resources.memory)

        with (
            (workdir / STDOUT_FILE).open("wb") as stdout,
            (workdir / STDERR_FILE).open("wb") as stderr,
        ):
            process = subprocess.Popen(
                [self._shell, SCRIPT_FILE],
                cwd=workdir,
                stdout=stdout,
                stderr=stderr,
                env=env,
                start_new_session=True,
            )

        handle = f"{command.instance_id}#{uuid4().hex[:8]}"
        job = _LocalJob(command=command, process=process, started=time.monotonic())
        job.waiter = threading.Thread(
            target=self._wait, args=(handle, job), name=f"seqflow-wait-{handle}", daemon=True
        )
        with self._lock:
            self._jobs[handle] = job
        job.waiter.start()
        logger.debug("process_started", handle=handle, pid=process.pid, workdir=str(workdir))
        return handle

    def _wait(self, handle: str, job: _LocalJob) -> None:
        returncode = job.process.wait()
        job.ended = time.monotonic()
        with suppress(OSError):
            (job.command.workdir / EXITCODE_FILE).write_text(f"{returncode}\n", encoding="utf-8")
        notifier = self._notifier
        if notifier is not None:
            notifier(handle)

    def _job(self, handle: str) -> _LocalJob:
        with self._lock:
            try:
                return self._jobs[handle]
            except KeyError:
                raise KeyError(f"Unknown handle: {handle}") from None

    def poll(self, handle: str) -> PollResult:
        job = self._job(handle)
        returncode = job.process.poll()
        ended = job.ended if job.ended is not None else time.monotonic()
        usage = {"wall_seconds": round(ended - job.started, 3)}
        if returncode is None:
            return PollResult.running()
        if returncode == 0 and not job.cancelled:
            try:
                outputs = self.collect_outputs(handle)
            except FileNotFoundError as e:
                return PollResult.failed(exit_code=0, stderr_summary=str(e), usage=usage)
            return PollResult.succeeded(outputs=outputs, usage=usage)
        stderr = _tail(job.command.workdir / STDERR_FILE, self._stderr_tail_lines)
        return PollResult.failed(exit_code=returncode, stderr_summary=stderr, usage=usage)

    def cancel(self, handle: str) -> None:
        job = self._job(handle)
        if job.process.poll() is not None:
            return
        job.cancelled = True
        logger.info("process_terminating", handle=handle, pid=job.process.pid)
        with suppress(ProcessLookupError):
            os.killpg(job.process.pid, signal.SIGTERM)
        killer = threading.Timer(self._kill_grace_seconds, self._kill, args=(job,))
        killer.daemon = True
        killer.start()

    def _kill(self, job: _LocalJob) -> None:
        if job.process.poll() is None:
            with suppress(ProcessLookupError):
                os.killpg(job.process.pid, signal.SIGKILL)

    def collect_outputs(self, handle: str) -> dict[str, Any]:
        job = self._job(handle)
        return collect_declared_outputs(job.command.workdir, job.command.outputs)

    def close(self) -> None:
        with self._lock:
            handles = list(self._jobs)
        for handle in handles:
            self.cancel(handle)
