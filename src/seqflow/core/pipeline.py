# src/seqflow/core/pipeline.py
"""Graph-construction API.

A Pipeline collects source channels and task descriptors. Every call
returns a typed handle, so wiring is explicit:

    pipeline = Pipeline("rnaseq")
    reads = pipeline.from_file_pairs("reads", "/data/*_R{1,2}.fq.gz")
    qc = pipeline.task(
        "fastqc",
        "fastqc {{ reads | shquote }}",
        inputs={"reads": reads},
        outputs={"zip": "*_fastqc.zip"},
    )
    report = pipeline.task(
        "multiqc",
        "multiqc {{ reports | shquote }}",
        inputs={"reports": pipeline.collect(qc.out("zip"))},
        outputs={"html": "multiqc_report.html"},
    )

String references such as "fastqc.zip" (a task output) or "genome" (a source
name) are also accepted and resolved when the graph is built, which is where
dangling references and cycles are reported.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from seqflow.contracts import (
    ChannelItem,
    ChannelKind,
    ChannelRef,
    ConfigurationError,
    InputSpec,
    OutputSpec,
    Resources,
    TaskDescriptor,
)
from seqflow.core.sources import find_file_groups


@dataclass(frozen=True)
class SourceChannel:
    """A channel whose items are known before any task runs."""

    ref: ChannelRef
    items: tuple[ChannelItem, ...]


@dataclass(frozen=True)
class TaskHandle:
    """Handle returned by Pipeline.task().

    `kind` is the kind the task's outputs are expected to have (STREAM for
    per-key tasks, VALUE for singletons). The graph builder recomputes it
    once all string references are resolved.
    """

    descriptor: TaskDescriptor
    kind: ChannelKind

    @property
    def task_id(self) -> str:
        return self.descriptor.task_id

    def out(self, name: str) -> ChannelRef:
        """Channel carrying output `name` of this task."""
        self.descriptor.output(name)
        return ChannelRef(channel_id=f"{self.task_id}.{name}", kind=self.kind)

    def __getitem__(self, name: str) -> ChannelRef:
        return self.out(name)


class Pipeline:
    """Declarative pipeline definition: sources, tasks and their wiring."""

    def __init__(self, name: str = "pipeline") -> None:
        self.name = name
        self._sources: dict[str, SourceChannel] = {}
        self._tasks: dict[str, TaskDescriptor] = {}

    @property
    def sources(self) -> dict[str, SourceChannel]:
        return dict(self._sources)

    @property
    def tasks(self) -> list[TaskDescriptor]:
        """Task descriptors in declaration order."""
        return list(self._tasks.values())

    def _register_source(self, name: str, kind: ChannelKind, items: Iterable[ChannelItem]) -> ChannelRef:
        if not name or name in self._sources:
            raise ConfigurationError(f"Source channel '{name}' is empty or already defined")
        ref = ChannelRef(channel_id=name, kind=kind)
        self._sources[name] = SourceChannel(ref=ref, items=tuple(items))
        return ref

    def from_file_pairs(self, name: str, pattern: str, size: int = 2) -> ChannelRef:
        """Stream channel of file groups keyed by sample.

        Raises:
            InputNotFoundError: If the pattern matches no complete group
        """
        return self._register_source(name, ChannelKind.STREAM, find_file_groups(name, pattern, size))

    def from_items(self, name: str, items: Iterable[tuple[str, Any]]) -> ChannelRef:
        """Stream channel of explicit (key, value) pairs. Zero items are allowed."""
        pairs = list(items)
        keys = [str(key) for key, _ in pairs]
        if len(set(keys)) != len(keys):
            raise ConfigurationError(f"Source channel '{name}' has duplicate keys")
        return self._register_source(
            name,
            ChannelKind.STREAM,
            (ChannelItem(key=str(key), value=value, tag=name) for key, value in pairs),
        )

    def value(self, name: str, value: Any) -> ChannelRef:
        """Single-value channel, broadcast to every consumer."""
        return self._register_source(
            name, ChannelKind.VALUE, [ChannelItem(key=None, value=value, tag=name)]
        )

    def collect(self, *refs: ChannelRef | str) -> ChannelRef:
        """Collected channel over one or more upstream channels.

        Items keep the id of the channel they came from, so heterogeneous
        upstreams form a tagged union rather than an untyped pile of files.
        """
        if not refs:
            raise ConfigurationError("collect() needs at least one channel")
        members: list[str] = []
        for ref in refs:
            if isinstance(ref, ChannelRef):
                if ref.kind == ChannelKind.COLLECT:
                    raise ConfigurationError(
                        f"Cannot collect an already collected channel: {ref.channel_id}"
                    )
                members.append(ref.channel_id)
            else:
                members.append(ref)
        return ChannelRef(
            channel_id=f"collect({','.join(members)})",
            kind=ChannelKind.COLLECT,
            members=tuple(members),
        )

    def add(self, descriptor: TaskDescriptor) -> TaskHandle:
        """Register a prebuilt descriptor."""
        if descriptor.task_id in self._tasks:
            raise ConfigurationError(f"Task '{descriptor.task_id}' is already defined")
        self._tasks[descriptor.task_id] = descriptor
        return TaskHandle(descriptor=descriptor, kind=self._expected_kind(descriptor, set()))

    def task(
        self,
        task_id: str,
        command: str,
        *,
        inputs: Mapping[str, ChannelRef | str] | None = None,
        outputs: Mapping[str, str | Mapping[str, str]] | None = None,
        resources: Resources | None = None,
        condition: Callable[[], bool] | None = None,
        fallback: Mapping[str, ChannelRef | str] | None = None,
        publish_dir: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> TaskHandle:
        """Declare a task and return its handle."""
        descriptor = TaskDescriptor(
            task_id=task_id,
            command=command,
            inputs=tuple(InputSpec(name, source) for name, source in (inputs or {}).items()),
            outputs=tuple(OutputSpec(name, pattern) for name, pattern in (outputs or {}).items()),
            resources=resources or Resources(),
            condition=condition,
            fallback=dict(fallback or {}),
            publish_dir=publish_dir,
            env=dict(env or {}),
        )
        return self.add(descriptor)

    def _expected_kind(self, descriptor: TaskDescriptor, seen: set[str]) -> ChannelKind:
        seen.add(descriptor.task_id)
        for spec in descriptor.inputs:
            source = spec.source
            if isinstance(source, str):
                known = self._sources.get(source)
                if known is not None:
                    source = known.ref
                else:
                    task_id = source.split(".", 1)[0]
                    upstream = self._tasks.get(task_id)
                    if upstream is None or task_id in seen:
                        continue
                    source = ChannelRef(source, self._expected_kind(upstream, seen))
            if source.kind == ChannelKind.STREAM:
                return ChannelKind.STREAM
        return ChannelKind.VALUE
