# src/seqflow/core/dag.py
"""DAG (Directed Acyclic Graph) operations for execution planning.

Uses NetworkX for graph operations including:
- Acyclicity validation of the declared task graph
- Topological ordering of task instances
- Descendant lookup for failure propagation

Two graphs are kept:
- the task graph: one node per TaskDescriptor, edges from channel wiring
- the instance graph: one node per task instance (one per key for per-key
  tasks, one for singleton tasks), edges from producer instance to consumer
  instance labelled with the input name and channel kind
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast

import networkx as nx
from networkx import DiGraph

from seqflow.contracts import (
    ChannelItem,
    ChannelKind,
    ChannelRef,
    ConfigurationError,
    GraphValidationError,
    SkipReason,
    TaskDescriptor,
)
from seqflow.core.logging import get_logger
from seqflow.core.templates import CommandTemplate

if TYPE_CHECKING:
    from seqflow.core.pipeline import Pipeline, SourceChannel

logger = get_logger(__name__)

__all__ = [
    "ExecutionGraph",
    "GraphValidationError",
    "InputBinding",
    "NodeInfo",
    "ProducerRef",
    "build_graph",
    "instance_id_for",
]


def instance_id_for(task_id: str, key: str | None) -> str:
    """Stable instance id: `task` for singletons, `task[key]` for per-key instances."""
    return task_id if key is None else f"{task_id}[{key}]"


@dataclass(frozen=True)
class ProducerRef:
    """An item that will be emitted by a producer instance when it succeeds."""

    instance_id: str
    output: str
    tag: str
    key: str | None


@dataclass(frozen=True)
class InputBinding:
    """Where the value(s) of one input of one instance come from.

    `deliveries` mixes items already known at build time (source channels)
    and references to producer instances. The expected producer cardinality
    of a collect input is fixed here, at build time.
    """

    name: str
    kind: ChannelKind
    channel_id: str
    deliveries: tuple[ChannelItem | ProducerRef, ...] = ()

    @property
    def producer_ids(self) -> tuple[str, ...]:
        return tuple(d.instance_id for d in self.deliveries if isinstance(d, ProducerRef))

    @property
    def expected_producers(self) -> int:
        return len(self.producer_ids)


@dataclass(frozen=True)
class NodeInfo:
    """Information about a task instance in the execution graph."""

    instance_id: str
    task_id: str
    key: str | None
    descriptor: TaskDescriptor
    bindings: tuple[InputBinding, ...] = field(default_factory=tuple)
    skip_reason: SkipReason | None = None


class ExecutionGraph:
    """Instance-level execution graph.

    Wraps NetworkX DiGraph with domain-specific operations.
    """

    def __init__(self) -> None:
        self._graph: DiGraph[str] = nx.DiGraph()
        self._task_graph: DiGraph[str] = nx.DiGraph()

    @property
    def node_count(self) -> int:
        """Number of task instances in the graph."""
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        """Number of instance-level edges."""
        return self._graph.number_of_edges()

    @property
    def task_count(self) -> int:
        return self._task_graph.number_of_nodes()

    def has_node(self, instance_id: str) -> bool:
        """Check if instance exists."""
        return self._graph.has_node(instance_id)

    def add_node(self, info: NodeInfo) -> None:
        """Add a task instance to the execution graph."""
        if self._graph.has_node(info.instance_id):
            raise GraphValidationError(f"Duplicate task instance: {info.instance_id}")
        self._graph.add_node(info.instance_id, info=info)
        self._task_graph.add_node(info.task_id)

    def add_edge(
        self,
        from_node: str,
        to_node: str,
        *,
        label: str,
        kind: ChannelKind = ChannelKind.VALUE,
    ) -> None:
        """Add a producer -> consumer edge.

        Args:
            from_node: Producer instance id
            to_node: Consumer instance id
            label: Consumer input name
            kind: Channel kind of the edge
        """
        if self._graph.has_edge(from_node, to_node):
            data = self._graph.edges[from_node, to_node]
            data["labels"] = (*data["labels"], label)
            return
        self._graph.add_edge(from_node, to_node, labels=(label,), kind=kind)

    def is_acyclic(self) -> bool:
        """Check if the graph is acyclic (a valid DAG)."""
        return nx.is_directed_acyclic_graph(self._graph)

    def validate(self) -> None:
        """Validate the execution graph.

        Validates:
        1. Graph is acyclic (no cycles)
        2. Every edge endpoint is a registered instance
        3. Every producer referenced by a binding has an edge to its consumer

        Raises:
            GraphValidationError: If validation fails
        """
        if not self.is_acyclic():
            try:
                cycle = nx.find_cycle(self._graph)
                cycle_str = " -> ".join(f"{u}" for u, v in cycle)
                raise GraphValidationError(f"Graph contains a cycle: {cycle_str}")
            except nx.NetworkXNoCycle:
                raise GraphValidationError("Graph contains a cycle") from None

        for node_id, data in self._graph.nodes(data=True):
            if "info" not in data:
                raise GraphValidationError(f"Edge references unknown instance: {node_id}")
            info = cast(NodeInfo, data["info"])
            for binding in info.bindings:
                for producer in binding.producer_ids:
                    if not self._graph.has_edge(producer, node_id):
                        raise GraphValidationError(
                            f"Instance {node_id} input '{binding.name}' expects {producer} "
                            "but no edge connects them"
                        )

    def topological_order(self) -> list[str]:
        """Return instance ids in a deterministic topological order.

        Raises:
            GraphValidationError: If graph has cycles
        """
        try:
            return list(nx.lexicographical_topological_sort(self._graph))
        except nx.NetworkXUnfeasible as e:
            raise GraphValidationError(f"Cannot sort graph: {e}") from e

    def task_order(self) -> list[str]:
        """Task ids in topological order of the task graph."""
        return list(nx.lexicographical_topological_sort(self._task_graph))

    def get_node_info(self, instance_id: str) -> NodeInfo:
        """Get NodeInfo for an instance.

        Raises:
            KeyError: If instance doesn't exist
        """
        if not self._graph.has_node(instance_id):
            raise KeyError(f"Instance not found: {instance_id}")
        return cast(NodeInfo, self._graph.nodes[instance_id]["info"])

    def instances(self) -> list[NodeInfo]:
        """All instances in topological order."""
        return [self.get_node_info(iid) for iid in self.topological_order()]

    def instances_of(self, task_id: str) -> list[NodeInfo]:
        return [info for info in self.instances() if info.task_id == task_id]

    def get_edges(self) -> list[tuple[str, str, dict[str, Any]]]:
        """Get all edges with their data.

        Returns:
            List of (producer, consumer, edge_data) tuples
        """
        return [(u, v, dict(data)) for u, v, data in self._graph.edges(data=True)]

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe node and edge lists, written next to the run reports."""
        nodes = [
            {
                "instance_id": info.instance_id,
                "task_id": info.task_id,
                "key": info.key,
                "skip_reason": info.skip_reason.value if info.skip_reason else None,
            }
            for info in self.instances()
        ]
        edges = [
            {
                "from": u,
                "to": v,
                "labels": list(data["labels"]),
                "kind": ChannelKind(data["kind"]).value,
            }
            for u, v, data in sorted(self.get_edges(), key=lambda e: (e[0], e[1]))
        ]
        return {"nodes": nodes, "edges": edges}

    def predecessors(self, instance_id: str) -> set[str]:
        return set(self._graph.predecessors(instance_id))

    def successors(self, instance_id: str) -> set[str]:
        return set(self._graph.successors(instance_id))

    def descendants(self, instance_id: str) -> set[str]:
        """Every instance that transitively depends on `instance_id`."""
        return set(nx.descendants(self._graph, instance_id))

    @classmethod
    def from_pipeline(cls, pipeline: Pipeline) -> ExecutionGraph:
        """Build an ExecutionGraph from a pipeline definition.

        Raises:
            GraphValidationError: On dangling references, cycles, or skipped
                outputs consumed without a fallback
            TemplateError: If a command references undeclared variables
        """
        return _GraphBuilder(pipeline).build()


@dataclass(frozen=True)
class _ChannelDef:
    channel_id: str
    producer: str | None = None
    output: str | None = None
    source: SourceChannel | None = None


@dataclass(frozen=True)
class _ResolvedInput:
    name: str
    members: tuple[str, ...]
    collect: bool


class _GraphBuilder:
    """Turns a Pipeline into an ExecutionGraph.

    Steps, all before any scheduling:
    1. resolve every channel reference (dangling -> error)
    2. check the task graph for cycles
    3. evaluate conditions once and rewire consumers of skipped tasks to
       their fallback channels
    4. materialize instances in topological order and connect them
    """

    def __init__(self, pipeline: Pipeline) -> None:
        self._pipeline = pipeline
        self._tasks: dict[str, TaskDescriptor] = {t.task_id: t for t in pipeline.tasks}
        self._declaration = {task_id: i for i, task_id in enumerate(self._tasks)}
        self._channels: dict[str, _ChannelDef] = {}
        self._alias: dict[str, str | None] = {}
        self._task_kind: dict[str, ChannelKind] = {}
        self._task_keys: dict[str, list[str | None]] = {}

    def build(self) -> ExecutionGraph:
        self._register_channels()
        inputs = {
            task_id: [self._resolve_input(task_id, spec.name, spec.source) for spec in desc.inputs]
            for task_id, desc in self._tasks.items()
        }
        fallbacks = {
            task_id: {
                output: self._resolve_single(task_id, f"fallback for '{output}'", ref)
                for output, ref in desc.fallback.items()
            }
            for task_id, desc in self._tasks.items()
        }

        declared = self._declared_graph(inputs, fallbacks)
        order = list(
            nx.lexicographical_topological_sort(declared, key=lambda t: self._declaration[t])
        )

        skipped = self._evaluate_conditions(order, fallbacks)

        graph = ExecutionGraph()
        graph._task_graph = declared
        for task_id in order:
            desc = self._tasks[task_id]
            CommandTemplate(desc.command, task_id=task_id).check_variables(
                spec.name for spec in desc.inputs
            )
            if task_id in skipped:
                graph.add_node(
                    NodeInfo(
                        instance_id=task_id,
                        task_id=task_id,
                        key=None,
                        descriptor=desc,
                        skip_reason=SkipReason.CONDITION,
                    )
                )
                self._task_keys[task_id] = []
                logger.info("task_skipped_by_condition", task=task_id)
                continue
            self._materialize(graph, desc, inputs[task_id])

        graph.validate()
        logger.debug(
            "graph_built",
            pipeline=self._pipeline.name,
            tasks=graph.task_count,
            instances=graph.node_count,
            edges=graph.edge_count,
        )
        return graph

    def _register_channels(self) -> None:
        for name, source in self._pipeline.sources.items():
            self._channels[name] = _ChannelDef(channel_id=name, source=source)
        for task_id, desc in self._tasks.items():
            for spec in desc.outputs:
                channel_id = f"{task_id}.{spec.name}"
                if channel_id in self._channels:
                    raise GraphValidationError(
                        f"Channel '{channel_id}' is produced by both a source and task '{task_id}'"
                    )
                self._channels[channel_id] = _ChannelDef(
                    channel_id=channel_id, producer=task_id, output=spec.name
                )

    def _lookup(self, task_id: str, what: str, channel_id: str) -> str:
        if channel_id not in self._channels:
            raise GraphValidationError(
                f"Task '{task_id}' {what} references unknown channel '{channel_id}'. "
                f"Known channels: {sorted(self._channels)}"
            )
        return channel_id

    def _resolve_single(self, task_id: str, what: str, ref: ChannelRef | str) -> str:
        if isinstance(ref, ChannelRef):
            if ref.kind == ChannelKind.COLLECT:
                raise GraphValidationError(f"Task '{task_id}' {what} cannot be a collected channel")
            ref = ref.channel_id
        return self._lookup(task_id, what, ref)

    def _resolve_input(self, task_id: str, name: str, ref: ChannelRef | str) -> _ResolvedInput:
        what = f"input '{name}'"
        if isinstance(ref, ChannelRef) and ref.kind == ChannelKind.COLLECT:
            members = tuple(self._lookup(task_id, what, m) for m in ref.members)
            return _ResolvedInput(name=name, members=members, collect=True)
        return _ResolvedInput(
            name=name, members=(self._resolve_single(task_id, what, ref),), collect=False
        )

    def _declared_graph(
        self,
        inputs: dict[str, list[_ResolvedInput]],
        fallbacks: dict[str, dict[str, str]],
    ) -> DiGraph[str]:
        declared: DiGraph[str] = nx.DiGraph()
        declared.add_nodes_from(self._tasks)
        for task_id, resolved in inputs.items():
            for res in resolved:
                for member in res.members:
                    producer = self._channels[member].producer
                    if producer is not None:
                        declared.add_edge(producer, task_id, label=res.name)
        for task_id, outputs in fallbacks.items():
            for output, channel_id in outputs.items():
                producer = self._channels[channel_id].producer
                if producer is not None:
                    declared.add_edge(producer, task_id, label=f"fallback:{output}")

        if not nx.is_directed_acyclic_graph(declared):
            cycle = nx.find_cycle(declared)
            edges = ", ".join(
                f"{u} -> {v} ({declared.edges[u, v]['label']})" for u, v in cycle
            )
            raise GraphValidationError(f"Pipeline graph contains a cycle: {edges}")
        return declared

    def _evaluate_conditions(
        self,
        order: Sequence[str],
        fallbacks: dict[str, dict[str, str]],
    ) -> set[str]:
        skipped: set[str] = set()
        for task_id in order:
            desc = self._tasks[task_id]
            if desc.condition is None:
                continue
            try:
                run_task = bool(desc.condition())
            except Exception as e:
                raise ConfigurationError(
                    f"Task '{task_id}': condition raised {type(e).__name__}: {e}"
                ) from e
            if run_task:
                continue
            skipped.add(task_id)
            for spec in desc.outputs:
                self._alias[f"{task_id}.{spec.name}"] = fallbacks[task_id].get(spec.name)
        return skipped

    def _effective(self, channel_id: str) -> str | None:
        seen: set[str] = set()
        current: str | None = channel_id
        while current is not None and current in self._alias:
            if current in seen:
                raise GraphValidationError(f"Fallback channels form a loop at '{current}'")
            seen.add(current)
            current = self._alias[current]
        return current

    def _channel_kind(self, channel_id: str) -> ChannelKind:
        channel = self._channels[channel_id]
        if channel.source is not None:
            return channel.source.ref.kind
        assert channel.producer is not None
        return self._task_kind[channel.producer]

    def _channel_keys(self, channel_id: str) -> list[str | None]:
        channel = self._channels[channel_id]
        if channel.source is not None:
            return [item.key for item in channel.source.items]
        assert channel.producer is not None
        return list(self._task_keys[channel.producer])

    def _materialize(
        self,
        graph: ExecutionGraph,
        desc: TaskDescriptor,
        resolved: list[_ResolvedInput],
    ) -> None:
        task_id = desc.task_id
        effective: list[tuple[str, ChannelKind, list[str]]] = []
        for res in resolved:
            members: list[str] = []
            for member in res.members:
                target = self._effective(member)
                if target is None:
                    raise GraphValidationError(
                        f"Task '{task_id}' input '{res.name}' consumes '{member}', "
                        "whose producer is skipped by its condition and declares no fallback"
                    )
                members.append(target)
            kind = ChannelKind.COLLECT if res.collect else self._channel_kind(members[0])
            effective.append((res.name, kind, members))

        stream_inputs = [members[0] for _, kind, members in effective if kind == ChannelKind.STREAM]
        keys: list[str | None]
        if stream_inputs:
            key_sets = [set(self._channel_keys(cid)) for cid in stream_inputs]
            joined = set.intersection(*key_sets)
            dropped = sorted(k for k in set.union(*key_sets) - joined if k is not None)
            if dropped:
                logger.warning("unmatched_keys_dropped", task=task_id, keys=dropped)
            keys = sorted(k for k in joined if k is not None)
            self._task_kind[task_id] = ChannelKind.STREAM
        else:
            keys = [None]
            self._task_kind[task_id] = ChannelKind.VALUE
        self._task_keys[task_id] = keys

        for key in keys:
            instance_id = instance_id_for(task_id, key)
            bindings = tuple(
                self._bind(name, kind, members, key) for name, kind, members in effective
            )
            graph.add_node(
                NodeInfo(
                    instance_id=instance_id,
                    task_id=task_id,
                    key=key,
                    descriptor=desc,
                    bindings=bindings,
                )
            )
            for binding in bindings:
                for producer in binding.producer_ids:
                    graph.add_edge(producer, instance_id, label=binding.name, kind=binding.kind)

    def _deliveries(self, channel_id: str, key: str | None, *, all_keys: bool) -> list[ChannelItem | ProducerRef]:
        channel = self._channels[channel_id]
        if channel.source is not None:
            return [
                item
                for item in channel.source.items
                if all_keys or item.key is None or item.key == key
            ]
        assert channel.producer is not None and channel.output is not None
        producer_keys = self._task_keys[channel.producer]
        if not all_keys and self._task_kind[channel.producer] == ChannelKind.STREAM:
            producer_keys = [key]
        return [
            ProducerRef(
                instance_id=instance_id_for(channel.producer, k),
                output=channel.output,
                tag=channel_id,
                key=k,
            )
            for k in producer_keys
        ]

    def _bind(
        self,
        name: str,
        kind: ChannelKind,
        members: list[str],
        key: str | None,
    ) -> InputBinding:
        if kind == ChannelKind.COLLECT:
            deliveries = [d for m in members for d in self._deliveries(m, key, all_keys=True)]
            channel_id = f"collect({','.join(members)})"
        else:
            deliveries = self._deliveries(members[0], key, all_keys=False)
            channel_id = members[0]
        return InputBinding(
            name=name,
            kind=kind,
            channel_id=channel_id,
            deliveries=tuple(deliveries),
        )


def build_graph(pipeline: Pipeline) -> ExecutionGraph:
    """Build and validate the instance graph of `pipeline`."""
    return ExecutionGraph.from_pipeline(pipeline)
