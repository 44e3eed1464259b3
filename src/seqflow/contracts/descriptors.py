"""Static pipeline definitions: resources, channels and task descriptors.

These types answer: "What should run, and how is it wired?"

Descriptors are frozen. They are produced by core.pipeline.Pipeline and
consumed by core.dag when task instances are materialized.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from seqflow.contracts.enums import ChannelKind
from seqflow.contracts.errors import ConfigurationError

_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B?)\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "B": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}

GiB = 1024**3


def parse_memory(value: int | str) -> int:
    """Parse a memory amount into bytes.

    Accepts plain integers (bytes) or strings such as "512 MB", "4 GB" or
    "8G". Units are binary (1 GB = 1024**3 bytes).

    Raises:
        ConfigurationError: If the value cannot be parsed or is not positive
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid memory amount: {value!r}")
    if isinstance(value, int):
        amount = value
    else:
        match = _MEMORY_PATTERN.match(value)
        if match is None:
            raise ConfigurationError(f"Invalid memory amount: {value!r}")
        number, unit = match.groups()
        amount = int(float(number) * _MEMORY_UNITS[unit.upper().rstrip("B")])
    if amount <= 0:
        raise ConfigurationError(f"Memory must be positive, got {value!r}")
    return amount


def format_memory(amount: int) -> str:
    """Render a byte count with the largest whole binary unit."""
    for unit in ("TB", "GB", "MB", "KB"):
        size = _MEMORY_UNITS[unit[0]]
        if amount >= size:
            return f"{amount / size:g} {unit}"
    return f"{amount} B"


@dataclass(frozen=True)
class Resources:
    """Resource request of one task instance.

    Attributes:
        cpus: Number of CPU cores (>= 1)
        memory: Memory in bytes (> 0)
        timeout: Wall-clock limit in seconds, or None for no limit
    """

    cpus: int = 1
    memory: int = GiB
    timeout: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.cpus, bool) or not isinstance(self.cpus, int) or self.cpus < 1:
            raise ConfigurationError(f"cpus must be a positive integer, got {self.cpus!r}")
        if isinstance(self.memory, bool) or not isinstance(self.memory, int) or self.memory <= 0:
            raise ConfigurationError(f"memory must be a positive byte count, got {self.memory!r}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout!r}")

    def fits_within(self, other: Resources) -> bool:
        """Whether this request is no larger than `other` on every axis."""
        return self.cpus <= other.cpus and self.memory <= other.memory

    def with_overrides(
        self,
        *,
        cpus: int | None = None,
        memory: int | None = None,
        timeout: float | None = None,
    ) -> Resources:
        """Return a copy with the given fields replaced (None keeps the current value)."""
        return replace(
            self,
            cpus=self.cpus if cpus is None else cpus,
            memory=self.memory if memory is None else memory,
            timeout=self.timeout if timeout is None else timeout,
        )

    def describe(self) -> str:
        return f"{self.cpus} cpus, {format_memory(self.memory)}"


@dataclass(frozen=True)
class ChannelRef:
    """Typed handle to a channel.

    Handles are returned by the Pipeline builder so wiring never depends on
    shared variable names. A collect handle lists the ids of the channels it
    aggregates in `members`.
    """

    channel_id: str
    kind: ChannelKind
    members: tuple[str, ...] = ()

    def collect(self) -> ChannelRef:
        """Collected view of this channel (one aggregate after all producers finish)."""
        if self.kind == ChannelKind.COLLECT:
            return self
        return ChannelRef(
            channel_id=f"collect({self.channel_id})",
            kind=ChannelKind.COLLECT,
            members=(self.channel_id,),
        )


@dataclass(frozen=True)
class ChannelItem:
    """One element flowing on a channel.

    Attributes:
        key: Grouping key (e.g. sample id); None for single-value channels
        value: Opaque payload, usually a path or tuple of paths
        tag: Id of the channel the item was emitted on
    """

    key: str | None
    value: Any
    tag: str


def _flatten_paths(value: Any) -> Iterator[str]:
    if value is None:
        return
    if isinstance(value, str | Path):
        yield str(value)
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _flatten_paths(v)
    elif isinstance(value, list | tuple):
        for v in value:
            yield from _flatten_paths(v)
    else:
        yield str(value)


@dataclass(frozen=True)
class Aggregate:
    """Items delivered once to a collect consumer.

    Items from heterogeneous upstreams are kept as a tagged union: each item
    remembers the channel it came from. Ordering is deterministic (member
    order, then key).
    """

    items: tuple[ChannelItem, ...] = ()

    def __iter__(self) -> Iterator[ChannelItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def values(self) -> list[Any]:
        return [item.value for item in self.items]

    def keys(self) -> list[str | None]:
        return [item.key for item in self.items]

    def paths(self) -> list[str]:
        """All paths in the aggregate, flattened, in item order."""
        return [p for item in self.items for p in _flatten_paths(item.value)]

    def by_tag(self, tag: str) -> Aggregate:
        return Aggregate(tuple(item for item in self.items if item.tag == tag))

    @property
    def tags(self) -> list[str]:
        seen: dict[str, None] = {}
        for item in self.items:
            seen.setdefault(item.tag, None)
        return list(seen)


@dataclass(frozen=True)
class InputSpec:
    """One named input of a task, bound to a channel reference.

    `source` is either a resolved ChannelRef or a string reference such as
    "align.bam" (task output) or "genome" (source name) that is resolved at
    build time.
    """

    name: str
    source: ChannelRef | str


@dataclass(frozen=True)
class OutputSpec:
    """One named output of a task.

    `pattern` is either a single glob (one value per invocation) or a mapping
    of artifact name to glob (a fixed set of named artifacts). Patterns are
    relative to the instance work directory.
    """

    name: str
    pattern: str | Mapping[str, str]

    @property
    def is_named_set(self) -> bool:
        return not isinstance(self.pattern, str)

    def patterns(self) -> dict[str, str]:
        if isinstance(self.pattern, str):
            return {self.name: self.pattern}
        return dict(self.pattern)


@dataclass(frozen=True)
class TaskDescriptor:
    """Static definition of one unit of work.

    Attributes:
        task_id: Unique, stable identifier
        command: Jinja2 command template (opaque to the engine beyond substitution)
        inputs: Ordered inputs
        outputs: Declared outputs
        resources: Resource request per instance
        condition: Pure predicate evaluated once at build time; False skips the task
        fallback: Output name -> channel used by consumers when the task is skipped
        publish_dir: Directory under the run output directory to copy outputs to
        env: Extra environment variables for the task body
    """

    task_id: str
    command: str
    inputs: tuple[InputSpec, ...] = ()
    outputs: tuple[OutputSpec, ...] = ()
    resources: Resources = field(default_factory=Resources)
    condition: Callable[[], bool] | None = None
    fallback: Mapping[str, ChannelRef | str] = field(default_factory=dict)
    publish_dir: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not _IDENTIFIER_PATTERN.match(self.task_id):
            raise ConfigurationError(
                f"Task id '{self.task_id}' must be a valid identifier"
            )
        for kind, names in (
            ("input", [i.name for i in self.inputs]),
            ("output", [o.name for o in self.outputs]),
        ):
            for name in names:
                if not _IDENTIFIER_PATTERN.match(name):
                    raise ConfigurationError(
                        f"Task '{self.task_id}': {kind} name '{name}' must be a valid identifier"
                    )
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise ConfigurationError(
                    f"Task '{self.task_id}' declares duplicate {kind} names: {duplicates}"
                )
        unknown = sorted(set(self.fallback) - {o.name for o in self.outputs})
        if unknown:
            raise ConfigurationError(
                f"Task '{self.task_id}' declares fallbacks for unknown outputs: {unknown}"
            )

    def output(self, name: str) -> OutputSpec:
        for spec in self.outputs:
            if spec.name == name:
                return spec
        raise KeyError(f"Task '{self.task_id}' has no output '{name}'")
