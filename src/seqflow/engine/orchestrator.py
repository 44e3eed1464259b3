# src/seqflow/engine/orchestrator.py
"""Orchestrator: Full run lifecycle management.

Coordinates:
- Readiness of task instances (producers succeeded)
- Resume from cache records
- Dispatch under the resource budget
- Completion polling, timeouts and retries
- Failure propagation to dependents
- Cancellation
- Publishing of outputs

All run state and the budget are owned by the coordinating loop in run().
Backends and cancel() only wake the loop; they never mutate state.
"""

from __future__ import annotations

import queue
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from seqflow.backends.base import ExecutionBackend
from seqflow.contracts import (
    Aggregate,
    BackendState,
    ChannelItem,
    ChannelKind,
    FailureCause,
    InstanceRecord,
    PollResult,
    ResolvedCommand,
    ResourceExhaustionError,
    Resources,
    RunState,
    RunStatus,
    SkipReason,
    TaskExecutionError,
    TaskStatus,
    TaskTimeoutError,
    TemplateError,
    format_memory,
)
from seqflow.core.cache_store import CacheRecord, CacheStore
from seqflow.core.config import RetrySettings
from seqflow.core.dag import ExecutionGraph, NodeInfo, ProducerRef
from seqflow.core.logging import get_logger
from seqflow.core.templates import CommandTemplate
from seqflow.engine.artifacts import PublishedArtifact, publish_outputs
from seqflow.engine.budget import ResourceBudget

logger = get_logger(__name__)

ProgressCallback = Callable[[RunState], None]

# Causes that are never retried
_PERMANENT_CAUSES = frozenset({FailureCause.RESOURCE_EXHAUSTED, FailureCause.CANCELLED})


@dataclass
class RunResult:
    """Result of a pipeline run."""

    run_id: str
    status: RunStatus
    state: RunState
    dispatched: int
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    published: list[PublishedArtifact] = field(default_factory=list)


@dataclass
class _Slot:
    """Loop-private runtime data of one instance."""

    info: NodeInfo
    resources: Resources
    command: ResolvedCommand | None = None
    handle: str | None = None
    deadline: float | None = None
    timed_out_at: float | None = None
    retry_at: float | None = None


class Orchestrator:
    """Drives every task instance of an ExecutionGraph to a terminal state.

    Lifecycle of an instance:
    1. PENDING until every producer instance has SUCCEEDED
    2. resolved once: command template rendered, fingerprint computed
    3. SUCCEEDED (cached) on a resume hit, otherwise READY
    4. RUNNING while it holds budget; back to READY while waiting for a retry
    5. SUCCEEDED, FAILED, or SKIPPED (condition, upstream_failed, cancelled)

    Example:
        orchestrator = Orchestrator(
            backend=LocalProcessBackend(),
            budget=ResourceBudget(Resources(cpus=8, memory=32 * GiB)),
            cache=FilesystemTaskCache(Path("work")),
        )
        result = orchestrator.run(ExecutionGraph.from_pipeline(pipeline))
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        budget: ResourceBudget,
        *,
        cache: CacheStore,
        retry: RetrySettings | None = None,
        resume: bool = False,
        poll_interval: float = 0.5,
        cancel_grace_seconds: float = 30.0,
        outdir: Path | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._backend = backend
        self._budget = budget
        self._cache = cache
        self._retry = retry or RetrySettings()
        self._resume = resume
        self._poll_interval = poll_interval
        self._cancel_grace_seconds = cancel_grace_seconds
        self._outdir = outdir
        self._on_progress = on_progress

        self._events: queue.Queue[str] = queue.Queue()
        self._cancel_requested = False
        self._cancel_deadline: float | None = None

        self._run_id = ""
        self._started_at = datetime.now(UTC)
        self._order: list[str] = []
        self._graph: ExecutionGraph | None = None
        self._records: dict[str, InstanceRecord] = {}
        self._slots: dict[str, _Slot] = {}
        self._outputs: dict[str, dict[str, Any]] = {}
        self._published: list[PublishedArtifact] = []
        self._dispatched = 0
        self._state: RunState | None = None

    # === Public API ===

    def cancel(self) -> None:
        """Request cancellation of the current run.

        Safe to call from any thread and from a signal handler: it only sets
        a flag, which the loop observes within one poll interval.
        """
        self._cancel_requested = True

    @property
    def snapshot(self) -> RunState | None:
        """Latest immutable run state, or None before the first run."""
        state = self._state
        if state is None:
            return None
        return replace(state, as_of=datetime.now(UTC))

    def run(self, graph: ExecutionGraph, run_id: str | None = None) -> RunResult:
        """Execute every instance of `graph`.

        Args:
            graph: Pre-validated execution graph
            run_id: Run identifier (generated when omitted)

        Raises:
            GraphValidationError: If the graph is not a valid DAG
        """
        graph.validate()
        self._reset(graph, run_id or f"run-{uuid4().hex[:12]}")
        log = logger.bind(run_id=self._run_id)
        log.info("run_started", instances=len(self._order), budget=self._budget.capacity.describe())

        self._backend.set_notifier(self._events.put)
        try:
            while not self._all_terminal():
                now = time.monotonic()
                if self._cancel_requested and self._cancel_deadline is None:
                    self._begin_cancel(now)
                self._poll_running(now)
                self._enforce_timeouts(now)
                if self._cancel_deadline is not None:
                    self._enforce_cancel_deadline(now)
                else:
                    self._resolve_pending()
                    self._dispatch_ready(now)
                if self._all_terminal():
                    break
                self._wait(self._next_wake(now))
        finally:
            self._backend.set_notifier(None)

        status = self._final_status()
        # A cancel() issued before run() applies to this run; clear it only now
        self._cancel_requested = False
        self._publish_state(status=status, ended=True)
        assert self._state is not None
        log.info(
            "run_finished",
            status=status.value,
            dispatched=self._dispatched,
            failed=sum(1 for r in self._records.values() if r.status == TaskStatus.FAILED),
        )
        return RunResult(
            run_id=self._run_id,
            status=status,
            state=self._state,
            dispatched=self._dispatched,
            outputs=dict(self._outputs),
            published=list(self._published),
        )

    # === Setup ===

    def _reset(self, graph: ExecutionGraph, run_id: str) -> None:
        self._graph = graph
        self._run_id = run_id
        self._started_at = datetime.now(UTC)
        self._cancel_deadline = None
        self._events = queue.Queue()
        self._outputs = {}
        self._published = []
        self._dispatched = 0
        self._order = graph.topological_order()
        self._records = {}
        self._slots = {}
        for instance_id in self._order:
            info = graph.get_node_info(instance_id)
            record = InstanceRecord(instance_id=instance_id, task_id=info.task_id, key=info.key)
            if info.skip_reason is not None:
                record = replace(record, status=TaskStatus.SKIPPED, skip_reason=info.skip_reason)
            self._records[instance_id] = record
            self._slots[instance_id] = _Slot(info=info, resources=info.descriptor.resources)
        self._publish_state()

    # === State transitions ===

    def _set(self, instance_id: str, **changes: Any) -> InstanceRecord:
        record = replace(self._records[instance_id], **changes)
        self._records[instance_id] = record
        self._publish_state()
        return record

    def _publish_state(self, *, status: RunStatus = RunStatus.RUNNING, ended: bool = False) -> None:
        now = datetime.now(UTC)
        self._state = RunState(
            run_id=self._run_id,
            status=status,
            started_at=self._started_at,
            as_of=now,
            records=tuple(self._records.values()),
            ended_at=now if ended else None,
        )
        if self._on_progress is not None:
            self._on_progress(self._state)

    def _all_terminal(self) -> bool:
        return all(r.status.is_terminal for r in self._records.values())

    def _final_status(self) -> RunStatus:
        if self._cancel_requested:
            return RunStatus.CANCELLED
        if any(r.status == TaskStatus.FAILED for r in self._records.values()):
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    # === Readiness and resolution ===

    def _producers_succeeded(self, slot: _Slot) -> bool:
        return all(
            self._records[producer].status == TaskStatus.SUCCEEDED
            for binding in slot.info.bindings
            for producer in binding.producer_ids
        )

    def _resolve_pending(self) -> None:
        # Topological order lets a chain of cache hits resolve in one pass
        for instance_id in self._order:
            record = self._records[instance_id]
            slot = self._slots[instance_id]
            if record.status != TaskStatus.PENDING or not self._producers_succeeded(slot):
                continue
            try:
                inputs = self._resolve_inputs(slot.info)
                slot.command = self._resolve_command(slot, inputs)
            except TemplateError as e:
                logger.error("instance_unresolvable", instance=instance_id, error=str(e))
                self._fail(instance_id, FailureCause.SUBMIT_ERROR, str(e))
                continue
            except Exception as e:
                logger.error("instance_resolution_failed", instance=instance_id, error=str(e))
                self._fail(instance_id, FailureCause.SUBMIT_ERROR, f"{type(e).__name__}: {e}")
                continue

            if self._resume:
                cached = self._cache.lookup(slot.command.fingerprint)
                if cached is not None:
                    self._complete(instance_id, cached.outputs, usage={}, cached=True)
                    logger.info("instance_cached", instance=instance_id)
                    continue
            self._set(instance_id, status=TaskStatus.READY, fingerprint=slot.command.fingerprint)

    def _delivery_item(self, delivery: ChannelItem | ProducerRef) -> ChannelItem:
        if isinstance(delivery, ChannelItem):
            return delivery
        value = self._outputs[delivery.instance_id][delivery.output]
        return ChannelItem(key=delivery.key, value=value, tag=delivery.tag)

    def _resolve_inputs(self, info: NodeInfo) -> dict[str, Any]:
        """Concrete input values: a single value per input, an Aggregate per collect input."""
        inputs: dict[str, Any] = {}
        for binding in info.bindings:
            items = [self._delivery_item(d) for d in binding.deliveries]
            if binding.kind == ChannelKind.COLLECT:
                inputs[binding.name] = Aggregate(tuple(items))
            elif len(items) == 1:
                inputs[binding.name] = items[0].value
            else:
                raise TemplateError(
                    f"Instance {info.instance_id}: input '{binding.name}' expected one item, "
                    f"got {len(items)}"
                )
        return inputs

    def _resolve_command(self, slot: _Slot, inputs: dict[str, Any]) -> ResolvedCommand:
        info = slot.info
        resources = slot.resources
        task_namespace = {
            "task_id": info.task_id,
            "instance_id": info.instance_id,
            "key": info.key,
            "cpus": resources.cpus,
            "memory": resources.memory,
            "memory_gb": max(resources.memory // 1024**3, 1),
            "memory_text": format_memory(resources.memory),
        }
        template = CommandTemplate(info.descriptor.command, task_id=info.task_id)
        script = template.render(**inputs, task=task_namespace)
        fingerprint = self._cache.fingerprint(
            info.task_id,
            script,
            inputs,
            key=info.key,
            outputs=[spec.name for spec in info.descriptor.outputs],
        )
        return ResolvedCommand(
            instance_id=info.instance_id,
            task_id=info.task_id,
            script=script,
            workdir=self._cache.workdir_for(fingerprint),
            fingerprint=fingerprint,
            outputs=info.descriptor.outputs,
            env=dict(info.descriptor.env),
        )

    # === Dispatch ===

    def _exceeds_capacity(self, resources: Resources) -> str | None:
        if not self._budget.can_ever_fit(resources):
            return self._budget.capacity.describe()
        limit = self._backend.max_resources
        if limit is not None and not resources.fits_within(limit):
            return f"{limit.describe()} ({self._backend.name} backend limit)"
        return None

    def _dispatch_ready(self, now: float) -> None:
        for instance_id in self._order:
            if self._records[instance_id].status != TaskStatus.READY:
                continue
            slot = self._slots[instance_id]
            if slot.retry_at is not None and slot.retry_at > now:
                continue
            limit = self._exceeds_capacity(slot.resources)
            if limit is not None:
                error = ResourceExhaustionError(instance_id, slot.resources.describe(), limit)
                logger.error("instance_resource_exhausted", instance=instance_id, error=str(error))
                self._fail(instance_id, FailureCause.RESOURCE_EXHAUSTED, str(error))
                continue
            # No head-of-line blocking: an instance that does not fit now is
            # skipped and smaller ones behind it may still start
            if not self._budget.acquire(instance_id, slot.resources):
                continue
            self._submit(instance_id, slot, now)

    def _submit(self, instance_id: str, slot: _Slot, now: float) -> None:
        assert slot.command is not None
        record = self._records[instance_id]
        attempt = record.attempts + 1
        self._set(
            instance_id,
            status=TaskStatus.RUNNING,
            attempts=attempt,
            started_at=record.started_at or datetime.now(UTC),
        )
        slot.retry_at = None
        slot.timed_out_at = None
        try:
            slot.handle = self._backend.submit(slot.command, slot.resources)
        except Exception as e:
            # Submit errors are attempt failures: record and retry
            self._budget.release(instance_id)
            logger.warning("instance_submit_failed", instance=instance_id, attempt=attempt, error=str(e))
            self._attempt_failed(instance_id, FailureCause.SUBMIT_ERROR, f"{type(e).__name__}: {e}", now)
            return
        self._dispatched += 1
        timeout = slot.resources.timeout
        slot.deadline = now + timeout if timeout is not None else None
        logger.info(
            "instance_dispatched",
            instance=instance_id,
            attempt=attempt,
            resources=slot.resources.describe(),
            workdir=str(slot.command.workdir),
        )

    # === Completion ===

    def _running(self) -> list[str]:
        return [iid for iid in self._order if self._records[iid].status == TaskStatus.RUNNING]

    def _poll_running(self, now: float) -> None:
        for instance_id in self._running():
            slot = self._slots[instance_id]
            assert slot.handle is not None
            try:
                result = self._backend.poll(slot.handle)
            except Exception as e:
                self._budget.release(instance_id)
                logger.warning("instance_poll_failed", instance=instance_id, error=str(e))
                self._attempt_failed(instance_id, FailureCause.SUBMIT_ERROR, f"{type(e).__name__}: {e}", now)
                continue
            if result.is_terminal:
                self._budget.release(instance_id)
                self._handle_result(instance_id, slot, result, now)

    def _handle_result(self, instance_id: str, slot: _Slot, result: PollResult, now: float) -> None:
        if result.state == BackendState.SUCCEEDED:
            self._complete(instance_id, result.outputs, usage=result.usage, cached=False)
            return
        if self._cancel_deadline is not None:
            self._fail(instance_id, FailureCause.CANCELLED, "cancelled", usage=result.usage)
        elif result.state == BackendState.TIMED_OUT or slot.timed_out_at is not None:
            timeout = slot.resources.timeout if slot.timed_out_at is not None else None
            error = TaskTimeoutError(instance_id, timeout)
            self._attempt_failed(instance_id, FailureCause.TIMEOUT, str(error), now, usage=result.usage)
        else:
            error = TaskExecutionError(instance_id, result.exit_code, result.stderr_summary)
            self._attempt_failed(instance_id, FailureCause.NONZERO_EXIT, str(error), now, usage=result.usage)

    def _complete(
        self,
        instance_id: str,
        outputs: dict[str, Any],
        *,
        usage: dict[str, float],
        cached: bool,
    ) -> None:
        slot = self._slots[instance_id]
        assert slot.command is not None
        self._outputs[instance_id] = outputs
        if not cached:
            self._cache.store(
                CacheRecord(
                    fingerprint=slot.command.fingerprint,
                    instance_id=instance_id,
                    task_id=slot.info.task_id,
                    outputs=outputs,
                )
            )
        publish_dir = slot.info.descriptor.publish_dir
        if publish_dir is not None and self._outdir is not None:
            try:
                self._published.extend(publish_outputs(outputs, self._outdir, publish_dir))
            except OSError as e:
                # The work directory copy stays authoritative
                logger.warning("publish_failed", instance=instance_id, error=str(e))
        now = datetime.now(UTC)
        record = self._records[instance_id]
        self._set(
            instance_id,
            status=TaskStatus.SUCCEEDED,
            cached=cached,
            fingerprint=slot.command.fingerprint,
            started_at=record.started_at or now,
            ended_at=now,
            usage=dict(usage),
        )
        if not cached:
            logger.info("instance_succeeded", instance=instance_id, attempts=record.attempts)

    def _attempt_failed(
        self,
        instance_id: str,
        cause: FailureCause,
        error: str,
        now: float,
        usage: dict[str, float] | None = None,
    ) -> None:
        record = self._records[instance_id]
        retryable = cause not in _PERMANENT_CAUSES and self._cancel_deadline is None
        if retryable and record.attempts < self._retry.max_attempts:
            delay = self._retry.delay_for(record.attempts)
            self._slots[instance_id].retry_at = now + delay
            self._set(
                instance_id,
                status=TaskStatus.READY,
                failure_cause=cause,
                error=error,
                usage=dict(usage or {}),
            )
            logger.warning(
                "instance_retry_scheduled",
                instance=instance_id,
                attempt=record.attempts,
                cause=cause.value,
                delay_seconds=delay,
            )
            return
        self._fail(instance_id, cause, error, usage=usage)

    def _fail(
        self,
        instance_id: str,
        cause: FailureCause,
        error: str,
        usage: dict[str, float] | None = None,
    ) -> None:
        now = datetime.now(UTC)
        record = self._records[instance_id]
        self._set(
            instance_id,
            status=TaskStatus.FAILED,
            failure_cause=cause,
            error=error,
            started_at=record.started_at or now,
            ended_at=now,
            usage=dict(usage or record.usage),
        )
        logger.error(
            "instance_failed",
            instance=instance_id,
            cause=cause.value,
            attempts=record.attempts,
            error=error,
        )
        if cause != FailureCause.CANCELLED:
            self._skip_descendants(instance_id)

    def _skip_descendants(self, instance_id: str) -> None:
        assert self._graph is not None
        for descendant in sorted(self._graph.descendants(instance_id)):
            if not self._records[descendant].status.is_terminal:
                self._set(
                    descendant,
                    status=TaskStatus.SKIPPED,
                    skip_reason=SkipReason.UPSTREAM_FAILED,
                )
                logger.info("instance_skipped", instance=descendant, upstream=instance_id)

    # === Timeouts and cancellation ===

    def _enforce_timeouts(self, now: float) -> None:
        for instance_id in self._running():
            slot = self._slots[instance_id]
            if slot.deadline is None or now < slot.deadline:
                continue
            if slot.timed_out_at is None:
                slot.timed_out_at = now
                logger.warning("instance_timed_out", instance=instance_id, timeout=slot.resources.timeout)
                self._cancel_handle(instance_id, slot)
            elif now - slot.timed_out_at >= self._cancel_grace_seconds:
                # Backend did not stop the process; give up on the handle
                self._budget.release(instance_id)
                error = TaskTimeoutError(instance_id, slot.resources.timeout)
                self._attempt_failed(instance_id, FailureCause.TIMEOUT, str(error), now)

    def _cancel_handle(self, instance_id: str, slot: _Slot) -> None:
        assert slot.handle is not None
        try:
            self._backend.cancel(slot.handle)
        except Exception as e:
            logger.warning("instance_cancel_failed", instance=instance_id, error=str(e))

    def _begin_cancel(self, now: float) -> None:
        logger.warning("run_cancelling", run_id=self._run_id, grace_seconds=self._cancel_grace_seconds)
        self._cancel_deadline = now + self._cancel_grace_seconds
        for instance_id in self._order:
            record = self._records[instance_id]
            if record.status == TaskStatus.RUNNING:
                self._cancel_handle(instance_id, self._slots[instance_id])
            elif record.status in (TaskStatus.PENDING, TaskStatus.READY):
                if record.attempts:
                    self._fail(instance_id, FailureCause.CANCELLED, "cancelled before retry")
                else:
                    self._set(instance_id, status=TaskStatus.SKIPPED, skip_reason=SkipReason.CANCELLED)

    def _enforce_cancel_deadline(self, now: float) -> None:
        assert self._cancel_deadline is not None
        if now < self._cancel_deadline:
            return
        for instance_id in self._running():
            self._budget.release(instance_id)
            self._fail(instance_id, FailureCause.CANCELLED, "did not stop within the cancel grace period")

    # === Waiting ===

    def _next_wake(self, now: float) -> float:
        """Seconds until the loop has timed work to do, capped at the poll interval."""
        wake = self._poll_interval
        for instance_id in self._order:
            status = self._records[instance_id].status
            slot = self._slots[instance_id]
            if status == TaskStatus.READY and slot.retry_at is not None:
                wake = min(wake, slot.retry_at - now)
            elif status == TaskStatus.RUNNING and slot.deadline is not None:
                wake = min(wake, slot.deadline - now)
        if self._cancel_deadline is not None:
            wake = min(wake, self._cancel_deadline - now)
        return max(wake, 0.0)

    def _wait(self, timeout: float) -> None:
        """Block until a backend event arrives or `timeout` elapses, then drain events."""
        if timeout <= 0:
            return
        try:
            self._events.get(timeout=timeout)
        except queue.Empty:
            return
        while True:
            try:
                self._events.get_nowait()
            except queue.Empty:
                return
